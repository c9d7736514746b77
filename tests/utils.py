from __future__ import annotations

import asyncio
import contextlib
import signal
from collections.abc import Iterator
from pathlib import Path
from typing import Any, ClassVar, Literal
from unittest.mock import patch

from controller.contracts import ProgressValue, StartResult, StopResult
from controller.registry import Inventory
from core.config import ServiceCfgBase, TopologyCfg, topology_from_config
from core.errors import NotReadyError
from services.discovery import ENV_PREFIX, ProcessEntry
from services.lifecycle import LaunchCommand, Service

HUB = "1337.standard"


def build_topology_dict(**overrides: Any) -> dict[str, Any]:
    """One chain, one hub, every kind on the master machine."""
    topo: dict[str, Any] = {
        "machines": [{"name": "master"}],
        "chains": {"dev": {"hub": HUB}},
        "default_chain": "dev",
        "services": [
            {
                "kind": "ganache",
                "name": "ganache.1337",
                "port": 8545,
                "chain_id": 1337,
                "directory": "shared/db/ganache.1337",
                "hubs": [{"name": "standard"}],
            },
            {"kind": "ipfs", "name": "ipfs", "port": 5001, "gateway_port": 8080, "directory": "shared/db/ipfs"},
            {"kind": "docker", "name": "docker", "port": 2375},
            {"kind": "mongo", "name": "mongo", "port": 27017, "directory": "shared/db/mongo"},
            {"kind": "redis", "name": "redis", "port": 6379, "directory": "shared/db/redis"},
            {
                "kind": "market",
                "name": "market",
                "port": 3000,
                "repository": "src/market",
                "mongo_host": "localhost:27017",
                "redis_host": "localhost:6379",
                "chains": [HUB],
            },
            {
                "kind": "sms",
                "name": f"sms.{HUB}",
                "port": 13300,
                "repository": "src/sms",
                "hub": HUB,
                "directory": f"shared/db/sms.{HUB}",
            },
            {
                "kind": "resultproxy",
                "name": f"resultproxy.{HUB}",
                "port": 13200,
                "repository": "src/result-proxy",
                "hub": HUB,
                "mongo_host": "localhost:27017",
                "mongo_db_name": "resultproxy",
                "ipfs_host": "localhost:5001",
            },
            {
                "kind": "blockchainadapter",
                "name": f"blockchainadapter.{HUB}",
                "port": 13010,
                "repository": "src/blockchain-adapter",
                "hub": HUB,
                "mongo_host": "localhost:27017",
                "mongo_db_name": "blockchainadapter",
                "market_api_url": "http://localhost:3000",
            },
            {
                "kind": "core",
                "name": f"core.{HUB}",
                "port": 13000,
                "repository": "src/core",
                "hub": HUB,
                "mongo_host": "localhost:27017",
                "mongo_db_name": "core",
                "ipfs_host": "localhost:5001",
                "sms_url": "http://localhost:13300",
                "result_proxy_url": "http://localhost:13200",
                "blockchain_adapter_url": "http://localhost:13010",
            },
        ],
        "workers": {"directory": "shared/workers", "repository": "src/worker", "count": 2},
    }
    topo.update(overrides)
    return topo


def service_dict(topo: dict[str, Any], name: str) -> dict[str, Any]:
    return next(svc for svc in topo["services"] if svc["name"] == name)


def build_inventory(root: Path, topo: dict[str, Any] | None = None) -> Inventory:
    cfg = TopologyCfg.model_validate(topo if topo is not None else build_topology_dict())
    return Inventory(topology_from_config(cfg, root / "chainlab.yaml"))


class RecordingService:
    """Stands in for a kind strategy and records calls in a shared journal."""

    def __init__(
        self,
        config: ServiceCfgBase,
        journal: list[tuple[str, str]],
        *,
        fail: bool = False,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.config = config
        self.name = config.name
        self.kind: str = getattr(config, "kind")
        self.journal = journal
        self.fail = fail
        self.gate = gate

    async def start(self, *, on_state: Any = None, context: Any = None, abort: Any = None) -> StartResult:
        self.journal.append(("start", self.name))
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        if self.fail:
            if on_state is not None:
                on_state(ProgressValue(state="failed", kind=self.kind, name=self.name, succeeded=False, error="boom"))
            raise NotReadyError(f"{self.name} is not ready", name=self.name)
        if on_state is not None:
            on_state(ProgressValue(state="ready", kind=self.kind, name=self.name, pid=100, succeeded=True))
        return StartResult(name=self.name, kind=self.kind, pid=100)

    async def stop(
        self, *, kill: bool = False, reset: bool = False, on_state: Any = None, abort: Any = None
    ) -> StopResult:
        self.journal.append(("kill" if kill else "stop", self.name))
        await asyncio.sleep(0)
        if on_state is not None:
            on_state(ProgressValue(state="stopped", kind=self.kind, name=self.name, succeeded=True))
        return StopResult(name=self.name, kind=self.kind, pid=None, killed=kill)

    def remove_stale_files(self) -> None:
        self.journal.append(("remove_stale", self.name))

    async def reset_db(self) -> None:
        self.journal.append(("reset", self.name))


@contextlib.contextmanager
def recording_services(
    journal: list[tuple[str, str]],
    *,
    failing: frozenset[str] = frozenset(),
    gate: asyncio.Event | None = None,
) -> Iterator[None]:
    """Route every ``Inventory.service_for`` call to a RecordingService."""

    def _factory(config: ServiceCfgBase, *, local: bool = True, marker: str | None = None) -> RecordingService:
        return RecordingService(config, journal, fail=config.name in failing, gate=gate)

    with patch("controller.registry.new_service", side_effect=_factory), patch(
        "controller.runner.sign_databases"
    ):
        yield


class FakeCfg(ServiceCfgBase):
    kind: Literal["fake"] = "fake"
    flavor: str = "plain"


class FakeService(Service):
    """Minimal kind: ``fake-daemon --port N`` with scripted readiness."""

    kind: ClassVar[str] = "fake"
    config_type = FakeCfg

    spawn_wait_before = 0.0
    spawn_poll_interval = 0.0
    ready_poll_interval = 0.0
    ready_max_polls = 5
    stop_poll_interval = 0.0
    stop_max_polls = 3
    log_failure_patterns = (("FATAL", "shutting down"),)

    def __init__(self, config: ServiceCfgBase, **kwargs: Any) -> None:
        super().__init__(config, **kwargs)
        self.ready_after = 1
        self.ready_calls = 0
        self.gate: asyncio.Event | None = None

    @classmethod
    def matches(cls, cmdline: tuple[str, ...]) -> bool:
        return bool(cmdline) and cmdline[0] == "fake-daemon"

    def build_argv(self) -> tuple[str, ...]:
        return ("fake-daemon", "--port", str(self.port))

    async def is_ready(self) -> bool:
        self.ready_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        return self.ready_calls >= self.ready_after


class FakePopen:
    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.returncode: int | None = None

    def poll(self) -> int | None:
        return self.returncode


class FakeProcessTable:
    """In-memory process table patched over the psutil backed helpers."""

    def __init__(self) -> None:
        self.entries: dict[int, ProcessEntry] = {}
        self.signals: list[tuple[int, signal.Signals]] = []
        self.ignore_term: set[int] = set()
        self.spawned: list[LaunchCommand] = []
        self._next_pid = 4000

    def add(self, command: LaunchCommand) -> int:
        pid = self._next_pid
        self._next_pid += 1
        environ = {key: value for key, value in command.env.items() if key.startswith(ENV_PREFIX)}
        self.entries[pid] = ProcessEntry(pid=pid, cmdline=command.argv, environ=environ)
        return pid

    def spawn(self, command: LaunchCommand) -> FakePopen:
        self.spawned.append(command)
        return FakePopen(self.add(command))

    def scan(self, match: Any) -> list[ProcessEntry]:
        return [entry for entry in self.entries.values() if match(entry.cmdline)]

    def entry(self, pid: int) -> ProcessEntry | None:
        return self.entries.get(pid)

    def alive(self, pid: int) -> bool:
        return pid in self.entries

    def signal(self, pid: int, sig: signal.Signals) -> None:
        self.signals.append((pid, sig))
        if sig == signal.SIGKILL or pid not in self.ignore_term:
            self.entries.pop(pid, None)

    @contextlib.contextmanager
    def patched(self) -> Iterator[FakeProcessTable]:
        table = self

        def _spawn(service: Service, command: LaunchCommand) -> FakePopen:
            return table.spawn(command)

        with patch("services.lifecycle.scan_processes", self.scan), patch(
            "services.lifecycle.process_entry", self.entry
        ), patch("services.lifecycle.pid_alive", self.alive), patch(
            "services.discovery.pid_alive", self.alive
        ), patch("services.lifecycle.send_signal", self.signal), patch.object(Service, "_spawn", _spawn):
            yield self
