from __future__ import annotations

from pathlib import Path
import logging
import time
from typing import Callable

from hafailover.core.errors import CommandError, ErrorKind, HAFailoverError
from hafailover.core.logging import NOTICE, StructuredLogger
from hafailover.domain.ha_config import HAConfig
from hafailover.domain.models import FailoverEvent, PersistedState, Role
from hafailover.services.config_apply import ConfigApplyPipeline, ConfigBackups
from hafailover.services.health import HealthCheckEngine
from hafailover.services.interfaces import activate_interfaces, deactivate_interfaces, managed_entries
from hafailover.services.service_control import ServiceControlReport, ServiceController
from hafailover.services.state_store import StateStore
from hafailover.services.system import SystemGateway
from hafailover.services.system_config import ConfigHandle


MAX_CONSECUTIVE_FAILURES = 3
FAILURE_COOLDOWN_S = 900
DHCP_LEASE_WAIT_S = 15

EXIT_OK = 0
EXIT_FAILURE = 1

MASTER_DESCRIPTION = "HA Failover: Activating MASTER state"
BACKUP_DESCRIPTION = "HA Failover: Deactivating to BACKUP state"


class CircuitBreaker:
    """Time-decayed breaker over consecutive MASTER-transition failures.

    Trips once ``threshold`` failures have been recorded and the latest one is
    still inside the cooldown window; an elapsed window clears the counter so
    the breaker resets without operator action.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        threshold: int = MAX_CONSECUTIVE_FAILURES,
        cooldown_s: int = FAILURE_COOLDOWN_S,
    ) -> None:
        self._store = store
        self._threshold = threshold
        self._cooldown_s = cooldown_s

    @property
    def threshold(self) -> int:
        return self._threshold

    def is_tripped(self) -> bool:
        failures = self._store.read_failure()
        if self._store.now() - failures.timestamp > self._cooldown_s:
            self._store.clear_failure()
            return False
        return failures.count >= self._threshold


class FailoverStateMachine:
    def __init__(
        self,
        *,
        settings: HAConfig,
        store: StateStore,
        breaker: CircuitBreaker,
        config: ConfigHandle,
        config_path: Path,
        backups: ConfigBackups,
        pipeline: ConfigApplyPipeline,
        services: ServiceController,
        health: HealthCheckEngine,
        system: SystemGateway,
        logger: StructuredLogger,
        dpinger_pid_template: str = "/var/run/dpinger_{gateway}.pid",
        sleep: Callable[[float], None] = time.sleep,
        dry_run: bool = False,
    ) -> None:
        self._settings = settings
        self._store = store
        self._breaker = breaker
        self._config = config
        self._config_path = config_path
        self._backups = backups
        self._pipeline = pipeline
        self._services = services
        self._health = health
        self._system = system
        self._log = logger
        self._dpinger_pid_template = dpinger_pid_template
        self._sleep = sleep
        self._dry_run = dry_run

    def handle(self, event: FailoverEvent) -> int:
        if event.role is None:
            return EXIT_OK
        target = event.role
        current = self._store.read_role()

        if target is Role.BACKUP:
            # A node standing by is not failing; its MASTER history no longer applies.
            self._store.clear_failure()

        if target is current.role:
            return self._handle_redundant(target, current)

        if target is Role.MASTER and self._breaker.is_tripped():
            self._log.critical("circuit_breaker_tripped", max_failures=self._breaker.threshold)
            return EXIT_FAILURE

        self._log.info("state_change_detected", **{"from": current.role.value, "to": target.value})
        try:
            success = self._run_transition(target)
        except Exception:
            # Any failed MASTER attempt counts toward the breaker.
            if target is Role.MASTER:
                self._store.record_failure()
            raise

        if success:
            self._store.write_role(target)
            if target is Role.MASTER:
                self._store.clear_failure()
        elif target is Role.MASTER:
            self._store.record_failure()

        self._log.event(
            "transition_summary",
            {"to_state": target.value, "success": success, "dry_run": self._dry_run},
            NOTICE if success else logging.CRITICAL,
        )
        return EXIT_OK if success else EXIT_FAILURE

    def _handle_redundant(self, target: Role, current: PersistedState) -> int:
        cooldown = self._settings.timeouts.event_cooldown_period
        if target is not Role.MASTER or self._store.now() - current.timestamp <= cooldown:
            self._log.debug("event_redundant", role=target.value, last_update=current.timestamp)
            return EXIT_OK
        # Re-verify only; re-applying here would turn duplicate heartbeats into reconfiguration storms.
        self._log.notice("redundant_master_event", cooldown_period=cooldown)
        if self._health.check_with_retries():
            self._store.write_role(Role.MASTER)
        else:
            self._store.record_failure()
        return EXIT_OK

    def _run_transition(self, target: Role) -> bool:
        try:
            if target is Role.MASTER:
                return self.transition_to_master()
            return self.transition_to_backup()
        except HAFailoverError as exc:
            self._log.critical("transition_error", to_state=target.value, kind=exc.kind.value, error=str(exc))
            return False

    def transition_to_master(self) -> bool:
        self._log.info("master_transition_start", dry_run=self._dry_run)
        self._rotate_backups()
        backup_path = self._snapshot_config()

        self._config.reload()
        interfaces = activate_interfaces(self._config.interfaces(), self._settings)
        result = self._pipeline.apply_with_retry(MASTER_DESCRIPTION, managed_entries(interfaces, self._settings))
        if not result.ok:
            event = "config_apply_error" if result.error_kind is ErrorKind.CONFIGURATION else "config_apply_failed"
            self._log.critical(event, error=result.message, attempts=result.attempts, backup_path=backup_path)
            return False

        self._sleep(self._settings.timeouts.master_transition_delay)

        self._report_services(self._services.control("restart", self._settings.core_services))
        self._report_services(self._services.control("restart", self._settings.standard_services))

        if self._settings.is_dhcp:
            self._log.info("dhcp_lease_wait", delay=DHCP_LEASE_WAIT_S)
            self._sleep(DHCP_LEASE_WAIT_S)

        if not self._health.check_with_retries():
            self._log.critical("health_check_failed_all_retries")
            return False

        self._log.notice("master_transition_complete")
        return True

    def transition_to_backup(self) -> bool:
        self._log.info("backup_transition_start", dry_run=self._dry_run)
        self._report_services(self._services.control("stop", self._settings.standard_services))
        self._report_services(self._services.control("stop", self._settings.core_services))
        self._stop_gateway_monitor()

        self._config.reload()
        interfaces = deactivate_interfaces(self._config.interfaces(), self._settings)
        result = self._pipeline.apply_with_retry(BACKUP_DESCRIPTION, managed_entries(interfaces, self._settings))
        if not result.ok:
            self._log.error("config_apply_failed", error=result.message, attempts=result.attempts, to_state="BACKUP")
            return False

        self._log.notice("backup_transition_complete")
        return True

    def _rotate_backups(self) -> None:
        try:
            self._backups.rotate()
        except OSError as exc:
            self._log.warning("config_backup_rotate_failed", error=str(exc))

    def _snapshot_config(self) -> str | None:
        try:
            return str(self._backups.snapshot(self._config_path))
        except OSError as exc:
            # Losing the rollback copy is worth a warning, not worth staying offline.
            self._log.warning("config_backup_failed", source=str(self._config_path), error=str(exc))
            return None

    def _stop_gateway_monitor(self) -> None:
        pid_file = self._dpinger_pid_template.format(gateway=self._settings.network.wan_gateway_name)
        if self._dry_run:
            self._log.info("gateway_monitor_stop_planned", pid_file=pid_file)
            return
        try:
            stopped = self._system.terminate_pid_file(pid_file)
        except CommandError as exc:
            # The WAN is parked whether or not the monitor could be stopped.
            self._log.warning("gateway_monitor_stop_failed", pid_file=pid_file, error=str(exc))
            return
        self._log.info("gateway_monitor_stopped", pid_file=pid_file, was_running=stopped)

    def _report_services(self, report: ServiceControlReport) -> None:
        if report.clean:
            return
        self._log.warning(
            "service_control_incomplete",
            action=report.action,
            verify_failed=report.verify_failed,
            errors=[{"service": item.name, "kind": item.kind.value, "error": item.message} for item in report.errors],
        )

