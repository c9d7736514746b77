"""Static service-kind metadata: phases, requirements and data ownership."""

from __future__ import annotations

from typing import Literal

ServiceKind = Literal[
    "ganache",
    "ipfs",
    "docker",
    "mongo",
    "redis",
    "market",
    "sms",
    "resultproxy",
    "blockchainadapter",
    "core",
    "worker",
]

# Phases run strictly in sequence; kinds inside one phase start concurrently.
PHASES: tuple[tuple[ServiceKind, ...], ...] = (
    ("ganache", "ipfs", "docker", "mongo", "redis"),
    ("market",),
    ("sms", "resultproxy", "blockchainadapter"),
    ("core",),
    ("worker",),
)

SERVICE_KINDS: tuple[ServiceKind, ...] = tuple(kind for phase in PHASES for kind in phase)

# Kinds a service of the given kind may directly require.
KIND_REQUIRES: dict[ServiceKind, frozenset[ServiceKind]] = {
    "ganache": frozenset(),
    "ipfs": frozenset(),
    "docker": frozenset(),
    "mongo": frozenset(),
    "redis": frozenset(),
    "market": frozenset({"ganache", "mongo", "redis"}),
    "sms": frozenset({"ipfs", "ganache"}),
    "resultproxy": frozenset({"ipfs", "ganache", "mongo"}),
    "blockchainadapter": frozenset({"ganache", "market", "mongo"}),
    "core": frozenset({"docker", "ganache", "ipfs", "mongo", "sms", "resultproxy", "blockchainadapter"}),
    "worker": frozenset({"docker", "core"}),
}

# Kinds owning a resettable stateful directory.
DB_SERVICE_KINDS: tuple[ServiceKind, ...] = ("ganache", "ipfs", "mongo", "redis", "sms")

# Kinds bound to a single hub alias.
HUB_SERVICE_KINDS: tuple[ServiceKind, ...] = ("sms", "resultproxy", "blockchainadapter", "core", "worker")

# Kinds managed outside of this tool: checked, never stopped or killed.
ATTACHED_KINDS: tuple[ServiceKind, ...] = ("docker",)

# Kinds an SDK client needs for one hub.
SDK_KINDS: tuple[ServiceKind, ...] = ("docker", "ipfs", "market", "resultproxy", "sms")


def phase_of(kind: ServiceKind) -> int:
    """Return the phase index of ``kind``.

    Raises:
        KeyError: If kind is unknown
    """
    for index, phase in enumerate(PHASES):
        if kind in phase:
            return index
    raise KeyError(f"Unknown service kind '{kind}'")


def is_service_kind(value: str) -> bool:
    return value in SERVICE_KINDS


def dependent_kinds(kind: ServiceKind) -> frozenset[ServiceKind]:
    """Return every kind that directly or transitively requires ``kind``."""
    found: set[ServiceKind] = set()
    frontier: list[ServiceKind] = [kind]
    while frontier:
        current = frontier.pop()
        for candidate, requires in KIND_REQUIRES.items():
            if current in requires and candidate not in found:
                found.add(candidate)
                frontier.append(candidate)
    return frozenset(found)


def stop_plan(kind: ServiceKind | Literal["all"]) -> list[tuple[ServiceKind, ...]]:
    """Kinds to stop for ``stop_any(kind)``, grouped by phase, last phase first.

    ``kind`` itself and every kind depending on it are included; attached
    kinds are never part of the plan.
    """
    if kind == "all":
        selected = set(SERVICE_KINDS)
    else:
        selected = {kind, *dependent_kinds(kind)}
    plan: list[tuple[ServiceKind, ...]] = []
    for phase in reversed(PHASES):
        group = tuple(k for k in phase if k in selected and k not in ATTACHED_KINDS)
        if group:
            plan.append(group)
    return plan


def _check_requirements() -> None:
    for kind, requires in KIND_REQUIRES.items():
        for required in requires:
            if phase_of(required) >= phase_of(kind):
                raise RuntimeError(f"{kind} requires {required} from a later or equal phase")


_check_requirements()
