from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import re
import shutil
import time
from typing import Callable, Mapping

from hafailover.core.errors import CommandError, ConfigurationError, ErrorKind
from hafailover.core.logging import StructuredLogger
from hafailover.services.system import SystemGateway
from hafailover.services.system_config import ConfigHandle


DEFAULT_MAX_ATTEMPTS = 5
BACKOFF_BASE_S = 2
BACKOFF_CAP_S = 30

BACKUP_RETENTION = 5
_BACKUP_PATTERN = re.compile(r"^config_backup_(\d+)\.xml$")


def backoff_delay(attempt: int) -> int:
    # Exponential backoff between apply attempts, capped: 2, 4, 8, 16, 30.
    return min(BACKOFF_BASE_S * 2 ** (attempt - 1), BACKOFF_CAP_S)


@dataclass(frozen=True)
class ApplyResult:
    ok: bool
    attempts: int = 1
    error_kind: ErrorKind | None = None
    message: str = ""

    @classmethod
    def success(cls, attempts: int = 1) -> ApplyResult:
        return cls(True, attempts)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, attempts: int = 1) -> ApplyResult:
        return cls(False, attempts, kind, message)


class ConfigApplyPipeline:
    """Persist a mutated interface section and reconfigure the interfaces.

    Write failures are configuration errors and are returned immediately;
    reconfiguration failures are network errors and are retried with
    exponential backoff by ``apply_with_retry``.
    """

    def __init__(
        self,
        config: ConfigHandle,
        system: SystemGateway,
        logger: StructuredLogger,
        *,
        sleep: Callable[[float], None] = time.sleep,
        dry_run: bool = False,
    ) -> None:
        self._config = config
        self._system = system
        self._log = logger
        self._sleep = sleep
        self._dry_run = dry_run

    def apply(self, description: str, interfaces: Mapping[str, Mapping[str, str]]) -> ApplyResult:
        try:
            with self._config.locked():
                self._config.write(description, interfaces)
        except ConfigurationError as exc:
            last_error = self._config.last_error or "unknown error"
            return ApplyResult.failure(ErrorKind.CONFIGURATION, f"failed to write config: {exc} ({last_error})")
        try:
            self._system.reconfigure_interfaces()
        except CommandError as exc:
            return ApplyResult.failure(ErrorKind.NETWORK, f"error during interface reconfigure: {exc}")
        return ApplyResult.success()

    def apply_with_retry(
        self,
        description: str,
        interfaces: Mapping[str, Mapping[str, str]],
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> ApplyResult:
        if self._dry_run:
            self._log.info("config_apply_planned", description=description, interfaces=dict(interfaces))
            return ApplyResult.success(attempts=0)

        result = ApplyResult.failure(ErrorKind.NETWORK, "no attempts made", attempts=0)
        for attempt in range(1, max_attempts + 1):
            self._log.info("config_apply_attempt", attempt=attempt, max_attempts=max_attempts, description=description)
            result = self.apply(description, interfaces)
            if result.ok:
                return ApplyResult.success(attempts=attempt)
            if result.error_kind is ErrorKind.CONFIGURATION:
                # Retrying a rejected write cannot succeed.
                self._log.error("config_apply_rejected", attempt=attempt, error=result.message)
                return ApplyResult.failure(result.error_kind, result.message, attempts=attempt)
            self._log.warning("network_error_retry", attempt=attempt, error=result.message)
            if attempt < max_attempts:
                delay = backoff_delay(attempt)
                self._log.info("config_apply_retry", attempt=attempt, delay=delay)
                self._sleep(delay)
        self._log.error("config_apply_failed_all_retries", max_retries=max_attempts)
        return ApplyResult.failure(ErrorKind.NETWORK, result.message, attempts=max_attempts)


class ConfigBackups:
    """Timestamped snapshots of the gateway configuration taken before MASTER changes."""

    def __init__(
        self,
        backup_dir: Path,
        logger: StructuredLogger,
        *,
        clock: Callable[[], float] = time.time,
        dry_run: bool = False,
    ) -> None:
        self._dir = backup_dir
        self._log = logger
        self._clock = clock
        self._dry_run = dry_run

    def existing(self) -> list[tuple[int, Path]]:
        # Order by the embedded epoch, not lexically, so digit-count changes cannot misorder.
        found = []
        for path in self._dir.glob("config_backup_*.xml"):
            match = _BACKUP_PATTERN.match(path.name)
            if match:
                found.append((int(match.group(1)), path))
        return sorted(found)

    def rotate(self, keep: int = BACKUP_RETENTION) -> list[Path]:
        backups = self.existing()
        if len(backups) <= keep:
            return []
        stale = [path for _, path in backups[: len(backups) - keep]]
        for path in stale:
            if not self._dry_run:
                path.unlink(missing_ok=True)
            self._log.debug("old_backup_cleaned", file=path.name)
        return stale

    def snapshot(self, source: Path) -> Path:
        backup_path = self._dir / f"config_backup_{int(self._clock())}.xml"
        if not self._dry_run:
            shutil.copy2(source, backup_path)
        self._log.info("config_backup_created", path=str(backup_path))
        return backup_path
