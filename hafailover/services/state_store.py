from __future__ import annotations

import json
import os
from pathlib import Path
import re
import tempfile
import time
from typing import Callable

from hafailover.core.logging import StructuredLogger
from hafailover.domain.models import FailureState, PersistedState, Role


_STATE_PATTERN = re.compile(r"^(MASTER|BACKUP):(\d+)$")


def _atomic_write(path: Path, payload: str) -> None:
    # Readers only ever see the old record or the new one, never a torn write.
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}-", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class StateStore:
    """Durable per-node records: last known role and the MASTER failure counter."""

    def __init__(
        self,
        state_path: Path,
        failure_path: Path,
        logger: StructuredLogger,
        *,
        observe_role: Callable[[], Role],
        clock: Callable[[], float] = time.time,
        dry_run: bool = False,
    ) -> None:
        self._state_path = state_path
        self._failure_path = failure_path
        self._log = logger
        self._observe_role = observe_role
        self._clock = clock
        self._dry_run = dry_run

    def now(self) -> int:
        return int(self._clock())

    def read_role(self) -> PersistedState:
        try:
            content = self._state_path.read_text(encoding="utf-8").strip()
        except OSError:
            content = ""
        match = _STATE_PATTERN.match(content)
        if match is None:
            return self._initialize_role()
        return PersistedState(Role(match.group(1)), int(match.group(2)))

    def _initialize_role(self) -> PersistedState:
        # Missing or corrupt record: trust what the kernel currently reports.
        observed = self._observe_role()
        self._log.info("state_file_init", initial_status=observed.value)
        self.write_role(observed)
        return PersistedState(observed, self.now())

    def write_role(self, role: Role) -> None:
        if self._dry_run:
            return
        _atomic_write(self._state_path, f"{role.value}:{self.now()}")

    def read_failure(self) -> FailureState:
        try:
            data = json.loads(self._failure_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return FailureState()
        if not isinstance(data, dict):
            return FailureState()
        try:
            return FailureState(max(int(data.get("count", 0)), 0), int(data.get("timestamp", 0)))
        except (TypeError, ValueError):
            return FailureState()

    def write_failure(self, count: int, timestamp: int) -> None:
        if self._dry_run:
            return
        _atomic_write(self._failure_path, json.dumps({"count": count, "timestamp": timestamp}))

    def record_failure(self) -> FailureState:
        current = self.read_failure()
        updated = FailureState(current.count + 1, self.now())
        self.write_failure(updated.count, updated.timestamp)
        self._log.warning("failover_failure_recorded", new_count=updated.count)
        return updated

    def clear_failure(self) -> None:
        if not self._failure_path.exists():
            return
        self._log.info("failover_failure_reset")
        if not self._dry_run:
            self._failure_path.unlink(missing_ok=True)
