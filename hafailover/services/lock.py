from __future__ import annotations

import atexit
import fcntl
import os
from pathlib import Path

from hafailover.core.logging import StructuredLogger


_MAX_ACQUIRE_ATTEMPTS = 3


class LockManager:
    """Non-blocking, exclusive, per-node run lock.

    ``acquire`` never waits: a held lock means another CARP event is already
    being handled and this run should yield. ``release`` is idempotent and is
    also registered with ``atexit`` so an abnormal exit still frees the lock.
    """

    def __init__(self, path: Path, logger: StructuredLogger) -> None:
        self._path = path
        self._log = logger
        self._fd: int | None = None
        self._atexit_registered = False

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> bool:
        if self._fd is not None:
            return True
        for _ in range(_MAX_ACQUIRE_ATTEMPTS):
            try:
                fd = os.open(self._path, os.O_RDWR | os.O_CREAT, 0o644)
            except OSError as exc:
                self._log.error("lock_acquire_failed", reason="cannot_open_file", path=str(self._path), error=str(exc))
                return False
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                os.close(fd)
                holder = self._holder_pid()
                self._log.warning("lock_acquire_failed", reason="already_locked", holder_pid=holder)
                return False
            if self._same_file(fd):
                self._fd = fd
                break
            # A previous holder unlinked the path between our open and flock; retry on the new file.
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
        else:
            self._log.error("lock_acquire_failed", reason="lock_file_replaced", path=str(self._path))
            return False

        os.ftruncate(self._fd, 0)
        os.write(self._fd, str(os.getpid()).encode("ascii"))
        os.fsync(self._fd)
        if not self._atexit_registered:
            atexit.register(self.release)
            self._atexit_registered = True
        self._log.debug("lock_acquired", path=str(self._path))
        return True

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        # Unlink while still holding the lock so no waiter can grab a path we are about to remove.
        try:
            self._path.unlink(missing_ok=True)
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
        self._log.debug("lock_released", path=str(self._path))

    def _same_file(self, fd: int) -> bool:
        try:
            on_disk = os.stat(self._path)
        except FileNotFoundError:
            return False
        opened = os.fstat(fd)
        return (on_disk.st_dev, on_disk.st_ino) == (opened.st_dev, opened.st_ino)

    def _holder_pid(self) -> int | None:
        try:
            raw = self._path.read_text(encoding="ascii").strip()
        except OSError:
            return None
        return int(raw) if raw.isdigit() else None

    def __enter__(self) -> LockManager:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
