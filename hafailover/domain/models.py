from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


DRY_RUN_MARKER = "dry-run"


class Role(str, Enum):
    """CARP-derived operational role of this node."""

    MASTER = "MASTER"
    BACKUP = "BACKUP"

    @classmethod
    def parse(cls, token: str | None) -> Role | None:
        # Only the exact CARP tokens count; anything else is an ignorable event.
        try:
            return cls(token)
        except ValueError:
            return None


@dataclass(frozen=True)
class FailoverEvent:
    # One CARP notification; lives only for the duration of a run.
    raw: str
    role: Role | None
    dry_run: bool = False
    subsystem: str = ""

    @classmethod
    def from_args(cls, subsystem: str, token: str, mode: str | None = None) -> FailoverEvent:
        return cls(
            raw=token,
            role=Role.parse(token),
            dry_run=mode == DRY_RUN_MARKER,
            subsystem=subsystem,
        )

    @property
    def recognized(self) -> bool:
        return self.role is not None


@dataclass(frozen=True)
class PersistedState:
    role: Role
    timestamp: int


@dataclass(frozen=True)
class FailureState:
    count: int = 0
    timestamp: int = 0
