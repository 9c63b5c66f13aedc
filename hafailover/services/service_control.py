from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Callable, Literal, Sequence

from hafailover.core.errors import CommandError, ErrorKind, ServiceControlError
from hafailover.core.logging import StructuredLogger
from hafailover.domain.ha_config import ServiceSpec
from hafailover.services.system import SystemGateway


ServiceAction = Literal["start", "stop", "restart"]
_RUNNING_ACTIONS = {"start", "restart"}


@dataclass(frozen=True)
class ServiceFailure:
    name: str
    kind: ErrorKind
    message: str


@dataclass
class ServiceControlReport:
    # Summarize one control pass; verification outcomes are informative, not fatal.
    action: str
    verified: list[str] = field(default_factory=list)
    unverifiable: list[str] = field(default_factory=list)
    verify_failed: list[str] = field(default_factory=list)
    errors: list[ServiceFailure] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.verify_failed and not self.errors


class ServiceController:
    def __init__(
        self,
        system: SystemGateway,
        logger: StructuredLogger,
        *,
        verify_timeout: int = 15,
        sleep: Callable[[float], None] = time.sleep,
        dry_run: bool = False,
    ) -> None:
        self._system = system
        self._log = logger
        self._verify_timeout = verify_timeout
        self._sleep = sleep
        self._dry_run = dry_run

    def control(self, action: ServiceAction, services: Sequence[ServiceSpec]) -> ServiceControlReport:
        report = ServiceControlReport(action=action)
        self._log.info("service_control_start", action=action, service_count=len(services))
        for service in services:
            if not service.name:
                continue
            if self._dry_run:
                self._log.info("service_control_planned", service=service.name, action=action)
                continue
            try:
                self._invoke(action, service.name)
            except ServiceControlError as exc:
                # Keep going: one broken service must not strand the rest of the list.
                report.errors.append(ServiceFailure(service.name, exc.kind, str(exc)))
                self._log.error("service_control_error", service=service.name, action=action, error=str(exc))
                continue
            self._verify(action, service, report)
        return report

    def _invoke(self, action: str, name: str) -> None:
        try:
            self._system.control_service(action, name)
        except CommandError as exc:
            raise ServiceControlError(f"exception with service '{name}': {exc}") from exc

    def _verify(self, action: str, service: ServiceSpec, report: ServiceControlReport) -> None:
        if not service.pid_file:
            self._log.warning("service_verify_skipped", service=service.name, reason="no_pid_file")
            report.unverifiable.append(service.name)
            return
        if self.verify_state(service.pid_file, action in _RUNNING_ACTIONS):
            self._log.info("service_verify_success", service=service.name, action=action)
            report.verified.append(service.name)
        else:
            self._log.error("service_verify_failed", service=service.name, action=action)
            report.verify_failed.append(service.name)

    def verify_state(self, pid_file: str, should_be_running: bool) -> bool:
        # Poll once per second until the pid file matches the expectation or time runs out.
        remaining = self._verify_timeout
        while remaining > 0:
            if self._system.pid_file_alive(pid_file) == should_be_running:
                return True
            self._sleep(1)
            remaining -= 1
        return False
