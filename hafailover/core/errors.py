from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    # Tag failures so call sites decide retry-vs-abort without isinstance ladders.
    CONFIGURATION = "configuration"
    NETWORK = "network"
    SERVICE = "service"
    SYSTEM = "system"


class HAFailoverError(Exception):
    """Base error for the failover orchestrator."""

    kind: ErrorKind = ErrorKind.SYSTEM

    def __init__(self, message: str, *, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ConfigurationError(HAFailoverError):
    """Malformed settings or a rejected configuration write; never retried."""

    kind = ErrorKind.CONFIGURATION


class NetworkError(HAFailoverError):
    """Interface reconfiguration failure; transient and retried with backoff."""

    kind = ErrorKind.NETWORK


class ServiceControlError(HAFailoverError):
    """Service start/stop/restart command failure."""

    kind = ErrorKind.SERVICE


class CommandError(HAFailoverError):
    """External command exited non-zero, timed out or was not found."""

    def __init__(self, message: str, *, returncode: int | None = None, output: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.output = output
