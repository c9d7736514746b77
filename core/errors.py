"""Error taxonomy shared by the orchestration layers.

Every error carries a ``context`` dict (service name, kind, pid, ...) so that
callers and progress consumers can report failures without parsing messages.
"""

from __future__ import annotations

from typing import Any


class ChainlabError(RuntimeError):
    """Base class for orchestration failures.

    Attributes:
        context: Structured details about the failing operation
    """

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = context


class ConfigurationError(ChainlabError, ValueError):
    """Topology or request is invalid. Never retried."""


class ConflictError(ChainlabError):
    """Persisted state belongs to an incompatible configuration."""


class BusyError(ConflictError):
    """Resources needed by a service are held by another process."""


class CannotStartError(ChainlabError):
    """Service lacks the configuration (or locality) needed to start."""


class CannotStopError(ChainlabError):
    """Service cannot be stopped from this machine."""


class AlreadyRunningOperationError(ChainlabError):
    """A start or stop is already in flight on the same instance."""


class CancelledOperationError(ChainlabError):
    """The abort signal was raised while waiting."""


class NotReadyError(ChainlabError):
    """Readiness was not reached within the polling ceiling."""


class ProcessKilledError(NotReadyError):
    """The process vanished while waiting for readiness."""


class StopTimeoutError(ChainlabError):
    """The process was still alive after the stop polling ceiling."""


class ProcessTableError(ChainlabError):
    """The process table is ambiguous for an identity that must be unique."""


class RemoteOperationError(ChainlabError):
    """A remote install/start/stop could not be performed."""


class OrchestrationError(ChainlabError):
    """Misuse of the runner (re-entrant or repeated whole-topology calls)."""


class InstallError(ChainlabError):
    """A service directory could not be created or initialised."""
