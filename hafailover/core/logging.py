from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import logging.handlers
import os
import sys
from typing import Any, Callable

from hafailover.core.config import Settings


NOTICE = 25
logging.addLevelName(NOTICE, "NOTICE")

RUN_LOGGER_NAME = "hafailover.run"
DRY_RUN_FORMAT = "DRY RUN [%(levelname)s]: %(message)s"


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class StructuredLogger:
    """Emit discrete JSON events ``{timestamp, event, pid, context}``.

    Every component receives an instance at construction time instead of
    reaching for a process-wide destination, so dry-runs and tests can route
    the same event trail to a different sink.
    """

    def __init__(
        self,
        logger: logging.Logger,
        *,
        pid: int | None = None,
        now: Callable[[], str] | None = None,
    ) -> None:
        self._logger = logger
        self._pid = pid if pid is not None else os.getpid()
        self._now = now or _iso_now

    def event(self, name: str, context: dict[str, Any] | None = None, level: int = logging.INFO) -> dict[str, Any]:
        record = {
            "timestamp": self._now(),
            "event": name,
            "pid": self._pid,
            "context": context or {},
        }
        self._logger.log(level, json.dumps(record, default=str, sort_keys=True))
        return record

    def debug(self, name: str, **context: Any) -> dict[str, Any]:
        return self.event(name, context, logging.DEBUG)

    def info(self, name: str, **context: Any) -> dict[str, Any]:
        return self.event(name, context, logging.INFO)

    def notice(self, name: str, **context: Any) -> dict[str, Any]:
        return self.event(name, context, NOTICE)

    def warning(self, name: str, **context: Any) -> dict[str, Any]:
        return self.event(name, context, logging.WARNING)

    def error(self, name: str, **context: Any) -> dict[str, Any]:
        return self.event(name, context, logging.ERROR)

    def critical(self, name: str, **context: Any) -> dict[str, Any]:
        return self.event(name, context, logging.CRITICAL)


def _syslog_handler(settings: Settings) -> logging.Handler:
    facility = logging.handlers.SysLogHandler.facility_names.get(
        settings.syslog_facility.lower(),
        logging.handlers.SysLogHandler.LOG_LOCAL4,
    )
    address: str | tuple[str, int] = settings.syslog_address
    if not os.path.exists(settings.syslog_address):
        # Fall back to the Linux socket, then UDP, when the BSD socket is absent.
        address = "/dev/log" if os.path.exists("/dev/log") else ("localhost", 514)
    handler = logging.handlers.SysLogHandler(address=address, facility=facility)
    handler.ident = f"{settings.log_ident}[{os.getpid()}]: "
    handler.priority_map = {**logging.handlers.SysLogHandler.priority_map, "NOTICE": "notice"}
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def configure_logging(
    settings: Settings,
    *,
    dry_run: bool = False,
    handler: logging.Handler | None = None,
) -> StructuredLogger:
    # Build the per-run logger; dry-runs print locally, real runs go to syslog.
    logger = logging.getLogger(RUN_LOGGER_NAME)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    if handler is None:
        if dry_run:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter(DRY_RUN_FORMAT))
        else:
            handler = _syslog_handler(settings)
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if dry_run else settings.log_level.upper())
    return StructuredLogger(logger)
