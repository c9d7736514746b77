"""Controller contracts for lifecycle states, progress events and results.

Progress events are the only channel through which the runner (and a remote
machine, via ``--json-progress``) reports what happens to each service, so
they round-trip through plain dictionaries.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from services.lifecycle import Service

LifecycleState = Literal[
    "unknown",
    "starting",
    "started",
    "readying",
    "ready",
    "failed",
    "stopping",
    "stopped",
    "killed",
]

LIFECYCLE_STATES: tuple[LifecycleState, ...] = (
    "unknown",
    "starting",
    "started",
    "readying",
    "ready",
    "failed",
    "stopping",
    "stopped",
    "killed",
)

TERMINAL_STATES: frozenset[LifecycleState] = frozenset({"ready", "failed", "stopped", "killed"})


@dataclass(frozen=True)
class ProgressValue:
    """Payload of a progress event.

    Attributes:
        state: Lifecycle state reached by the service
        kind: Service kind tag
        name: Service config name, when known
        pid: Process id, when known
        succeeded: Outcome for terminal states, None otherwise
        error: Error message when ``succeeded`` is False
        context: Caller supplied context echoed back

    Raises:
        ValueError: If state is unknown or kind is empty
    """

    state: LifecycleState
    kind: str
    name: str | None = None
    pid: int | None = None
    succeeded: bool | None = None
    error: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate ProgressValue configuration."""
        if self.state not in LIFECYCLE_STATES:
            raise ValueError(f"Unknown lifecycle state '{self.state}'")
        if not self.kind:
            raise ValueError("kind must not be empty")

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "kind": self.kind,
            "name": self.name,
            "pid": self.pid,
            "succeeded": self.succeeded,
            "error": self.error,
            "context": dict(self.context),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProgressValue:
        return cls(
            state=data["state"],
            kind=data["kind"],
            name=data.get("name"),
            pid=data.get("pid"),
            succeeded=data.get("succeeded"),
            error=data.get("error"),
            context=dict(data.get("context") or {}),
        )


@dataclass(frozen=True)
class ProgressEvent:
    """One step of a multi-service operation.

    Attributes:
        count: Services completed so far within the operation
        total: Services involved in the operation
        value: What happened to one service

    Raises:
        ValueError: If count is negative or exceeds a positive total
    """

    count: int
    total: int
    value: ProgressValue

    def __post_init__(self) -> None:
        """Validate ProgressEvent configuration."""
        if self.count < 0:
            raise ValueError(f"count must be >= 0, got {self.count}")
        if self.total < 0:
            raise ValueError(f"total must be >= 0, got {self.total}")
        if self.total and self.count > self.total:
            raise ValueError(f"count ({self.count}) must be <= total ({self.total})")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary.

        Returns:
            Dictionary representation of ProgressEvent
        """
        return {"count": self.count, "total": self.total, "value": self.value.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProgressEvent:
        """Deserialize from dictionary.

        Args:
            data: Dictionary with progress event data

        Returns:
            ProgressEvent instance
        """
        return cls(
            count=data["count"],
            total=data["total"],
            value=ProgressValue.from_dict(data["value"]),
        )


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass(frozen=True)
class StartResult:
    """Outcome of a service start.

    Attributes:
        name: Service config name
        kind: Service kind tag
        pid: Process id of the running (or pre-existing) process, None for
            attached services that are only checked
        already_started: True if a matching process was already alive
        context: Caller supplied context
    """

    name: str
    kind: str
    pid: int | None
    already_started: bool = False
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.pid is not None and self.pid <= 0:
            raise ValueError(f"pid must be > 0, got {self.pid}")


@dataclass(frozen=True)
class StopResult:
    """Outcome of a service stop.

    ``pid`` is None when no process was running.
    """

    name: str
    kind: str
    pid: int | None
    killed: bool = False
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def was_running(self) -> bool:
        return self.pid is not None


@dataclass(frozen=True)
class RunningProcess:
    """A process found in the process table.

    Attributes:
        pid: Process id
        kind: Service kind whose signature matched
        marker: Topology root that launched the process, if readable
        service: Reconstructed service, None when the environment was unreadable
    """

    pid: int
    kind: str
    marker: str | None = None
    service: Service | None = None

    @property
    def name(self) -> str | None:
        if self.service is None:
            return None
        return self.service.name

    def to_dict(self) -> dict[str, Any]:
        return {"pid": self.pid, "kind": self.kind, "marker": self.marker, "name": self.name}
