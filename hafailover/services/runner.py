from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import time
from typing import Callable

from hafailover.core.config import Settings
from hafailover.core.errors import ConfigurationError
from hafailover.core.logging import StructuredLogger
from hafailover.domain.ha_config import HAConfig, load_ha_config
from hafailover.domain.models import FailoverEvent
from hafailover.services.config_apply import ConfigApplyPipeline, ConfigBackups
from hafailover.services.failover import EXIT_FAILURE, EXIT_OK, CircuitBreaker, FailoverStateMachine
from hafailover.services.health import HealthCheckEngine
from hafailover.services.lock import LockManager
from hafailover.services.service_control import ServiceController
from hafailover.services.state_store import StateStore
from hafailover.services.system import SystemGateway
from hafailover.services.system_config import ConfigHandle, XmlConfigHandle


def _no_sleep(_seconds: float) -> None:
    return None


@dataclass(frozen=True)
class RunContext:
    # Collaborators shared by every component of one run; tests swap in fakes here.
    settings: Settings
    logger: StructuredLogger
    system: SystemGateway
    config: ConfigHandle
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.time

    @classmethod
    def default(cls, settings: Settings, logger: StructuredLogger, *, dry_run: bool = False) -> RunContext:
        return cls(
            settings=settings,
            logger=logger,
            system=SystemGateway(settings),
            config=XmlConfigHandle(Path(settings.system_config_path)),
            sleep=_no_sleep if dry_run else time.sleep,
        )


def build_state_machine(ctx: RunContext, ha_config: HAConfig, *, dry_run: bool = False) -> FailoverStateMachine:
    settings = ctx.settings
    store = StateStore(
        Path(settings.state_path),
        Path(settings.failure_state_path),
        ctx.logger,
        observe_role=ctx.system.carp_status,
        clock=ctx.clock,
        dry_run=dry_run,
    )
    return FailoverStateMachine(
        settings=ha_config,
        store=store,
        breaker=CircuitBreaker(store),
        config=ctx.config,
        config_path=Path(settings.system_config_path),
        backups=ConfigBackups(Path(settings.backup_dir), ctx.logger, clock=ctx.clock, dry_run=dry_run),
        pipeline=ConfigApplyPipeline(ctx.config, ctx.system, ctx.logger, sleep=ctx.sleep, dry_run=dry_run),
        services=ServiceController(
            ctx.system,
            ctx.logger,
            verify_timeout=ha_config.timeouts.service_verify_timeout,
            sleep=ctx.sleep,
            dry_run=dry_run,
        ),
        health=HealthCheckEngine(
            ha_config,
            ctx.system,
            ctx.logger,
            resolve_device=ctx.config.interface_device,
            sleep=ctx.sleep,
            dry_run=dry_run,
        ),
        system=ctx.system,
        logger=ctx.logger,
        dpinger_pid_template=settings.dpinger_pid_template,
        sleep=ctx.sleep,
        dry_run=dry_run,
    )


def run_carp_event(event: FailoverEvent, ctx: RunContext, *, config_path: Path | None = None) -> int:
    """Handle one CARP role change end to end and return the process exit code."""
    log = ctx.logger
    if not event.recognized:
        log.debug("event_ignored", type=event.raw, subsystem=event.subsystem)
        return EXIT_OK

    path = config_path or Path(ctx.settings.config_path)
    try:
        ha_config = load_ha_config(path, strict_permissions=ctx.settings.config_require_strict_permissions)
    except ConfigurationError as exc:
        log.critical("config_validation_failed", path=str(path), error=str(exc))
        return EXIT_FAILURE

    with LockManager(Path(ctx.settings.lock_path), log) as lock:
        if not lock.held:
            return EXIT_FAILURE
        try:
            machine = build_state_machine(ctx, ha_config, dry_run=event.dry_run)
            return machine.handle(event)
        except Exception as exc:  # noqa: BLE001 - every failure must still map to exit 1 with a trail
            log.critical("critical_error", error=str(exc), error_type=type(exc).__name__)
            return EXIT_FAILURE
