"""Controller package: topology inventory, dependency resolution and orchestration."""

from controller.contracts import (
    LifecycleState,
    ProgressEvent,
    ProgressValue,
    RunningProcess,
    StartResult,
    StopResult,
)
from controller.metadata import PHASES, SERVICE_KINDS, ServiceKind

__all__ = [
    "PHASES",
    "SERVICE_KINDS",
    "LifecycleState",
    "ProgressEvent",
    "ProgressValue",
    "RunningProcess",
    "ServiceKind",
    "StartResult",
    "StopResult",
]
