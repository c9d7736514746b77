"""Tests for the remote machine bridge."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from controller.contracts import ProgressEvent, ProgressValue
from controller.registry import Inventory
from controller.remote import RemoteBridge, SshExecutor, decode_progress_line, encode_progress_event
from controller.runner import Runner
from core.config import MachineCfg
from core.errors import RemoteOperationError
from scripts.chainlab_ctl import build_parser
from services.dbdir import DBSIG_BASENAME, DBUUID_BASENAME, DBDirectory
from tests.utils import HUB, build_inventory, build_topology_dict, recording_services, service_dict

SMS = f"sms.{HUB}"


class FakeExecutor:
    """Records remote calls and replays scripted output lines."""

    def __init__(self, lines: Sequence[str] = (), returncode: int = 0) -> None:
        self.lines = list(lines)
        self.returncode = returncode
        self.calls: list[tuple[str, list[str]]] = []
        self.files: set[str] = set()
        self.copied: list[tuple[Path, str]] = []
        self.dirs: list[str] = []

    async def exists(self, machine: MachineCfg, path: str) -> bool:
        return path in self.files

    async def mkdir_p(self, machine: MachineCfg, path: str) -> None:
        self.dirs.append(path)

    async def copy_file(self, machine: MachineCfg, local_path: Path, remote_path: str) -> None:
        self.copied.append((local_path, remote_path))
        self.files.add(remote_path)

    async def run(self, machine: MachineCfg, args: Sequence[str], on_line: Any) -> int:
        self.calls.append((machine.name, list(args)))
        for line in self.lines:
            on_line(line)
        return self.returncode


def _event(state: str, pid: int | None = None) -> ProgressEvent:
    return ProgressEvent(
        count=1 if state == "ready" else 0,
        total=1,
        value=ProgressValue(state=state, kind="sms", name=SMS, pid=pid),  # type: ignore[arg-type]
    )


def _two_machine_inventory(tmp_path: Path, local_machine: str = "master") -> Inventory:
    topo = build_topology_dict(
        local_machine=local_machine,
        machines=[
            {"name": "master"},
            {"name": "box", "ssh_host": "10.0.0.2", "ssh_user": "lab", "workspace_dir": "/srv/lab"},
        ],
    )
    service_dict(topo, SMS)["machine"] = "box"
    return build_inventory(tmp_path, topo)


class TestRemoteBridge:
    """Tests for RemoteBridge."""

    @pytest.mark.asyncio
    async def test_only_master_may_forward(self, tmp_path: Path) -> None:
        inventory = _two_machine_inventory(tmp_path, local_machine="box")
        executor = FakeExecutor()

        with pytest.raises(RemoteOperationError, match=r"from machine 'box' \(not master\)"):
            await RemoteBridge(inventory, executor).stop("mongo")
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_start_relays_progress_and_copies_chain_state(self, tmp_path: Path) -> None:
        inventory = _two_machine_inventory(tmp_path)
        DBDirectory.install("ganache", inventory.ganache_for_hub(HUB).directory)
        lines = [
            "2026-01-01 INFO starting",
            encode_progress_event(_event("starting")),
            encode_progress_event(_event("ready", pid=900)),
        ]
        executor = FakeExecutor(lines)
        relayed: list[ProgressEvent] = []

        events = await RemoteBridge(inventory, executor).start(SMS, relayed.append)

        assert executor.calls == [("box", ["--json-progress", "start", "--name", SMS, "--no-dependencies"])]
        assert [event.value.state for event in relayed] == ["starting", "ready"]
        assert events[-1].value.pid == 900
        remote_dir = "/srv/lab/shared/db/ganache.1337"
        assert sorted(remote for _, remote in executor.copied) == [
            f"{remote_dir}/{DBSIG_BASENAME}",
            f"{remote_dir}/{DBUUID_BASENAME}",
        ]

    @pytest.mark.asyncio
    async def test_chain_state_copied_once(self, tmp_path: Path) -> None:
        inventory = _two_machine_inventory(tmp_path)
        DBDirectory.install("ganache", inventory.ganache_for_hub(HUB).directory)
        executor = FakeExecutor()
        bridge = RemoteBridge(inventory, executor)

        await bridge.start(SMS)
        await bridge.start(SMS)

        assert len(executor.copied) == 2
        assert len(executor.calls) == 2

    @pytest.mark.asyncio
    async def test_remote_failure_raises(self, tmp_path: Path) -> None:
        inventory = _two_machine_inventory(tmp_path)
        executor = FakeExecutor(returncode=3)

        with pytest.raises(RemoteOperationError, match="exit code 3") as exc_info:
            await RemoteBridge(inventory, executor).stop(SMS, reset=True)

        assert exc_info.value.context["returncode"] == 3
        assert executor.calls == [("box", ["--json-progress", "stop", "--name", SMS, "--reset"])]

    @pytest.mark.asyncio
    async def test_local_machine_is_not_remote(self, tmp_path: Path) -> None:
        inventory = _two_machine_inventory(tmp_path)

        with pytest.raises(RemoteOperationError, match="is local"):
            await RemoteBridge(inventory, FakeExecutor()).start("mongo")

    @pytest.mark.asyncio
    async def test_worker_commands(self, tmp_path: Path) -> None:
        inventory = _two_machine_inventory(tmp_path)
        executor = FakeExecutor()
        bridge = RemoteBridge(inventory, executor)

        await bridge.stop_worker("box", HUB, 2, kill=True)

        assert executor.calls == [
            ("box", ["--json-progress", "stop-worker", "--machine", "box", "--hub", HUB, "--index", "2", "--kill"])
        ]

    @pytest.mark.asyncio
    async def test_forwarded_commands_parse_with_the_cli(self, tmp_path: Path) -> None:
        inventory = _two_machine_inventory(tmp_path)
        executor = FakeExecutor()
        bridge = RemoteBridge(inventory, executor)

        await bridge.install(SMS)
        await bridge.start(SMS)
        await bridge.stop(SMS, reset=True)
        await bridge.stop(SMS, kill=True)
        await bridge.install_worker("box", HUB, 1)
        await bridge.start_worker("box", HUB, 1)
        await bridge.stop_worker("box", HUB, 1, kill=True)

        commands = []
        for _, argv in executor.calls:
            args = build_parser().parse_args(argv)
            assert args.json_progress is True
            commands.append(args.command)
        assert commands == [
            "install",
            "start",
            "stop",
            "kill",
            "install-worker",
            "start-worker",
            "stop-worker",
        ]

    @pytest.mark.asyncio
    async def test_runner_forwards_remote_services(self, tmp_path: Path) -> None:
        """Test local dependencies start here and the remote one through the bridge."""
        inventory = _two_machine_inventory(tmp_path)
        executor = FakeExecutor([encode_progress_event(_event("ready", pid=901))])
        journal: list[tuple[str, str]] = []
        progress: list[ProgressEvent] = []

        with recording_services(journal):
            runner = Runner(inventory, remote=RemoteBridge(inventory, executor), progress_cb=progress.append)
            results = await runner.start(SMS)

        assert sorted(name for _, name in journal) == ["ganache.1337", "ipfs"]
        assert executor.calls[0][1][:4] == ["--json-progress", "start", "--name", SMS]
        assert results[-1].pid == 901
        assert progress[-1].count == progress[-1].total == 3


class TestProgressLines:
    """Tests for the JSON progress line codec."""

    def test_decode_ignores_prefix_and_garbage(self) -> None:
        event = _event("ready", pid=5)

        assert decode_progress_line("remote> " + encode_progress_event(event)) == event
        assert decode_progress_line("plain log line") is None
        assert decode_progress_line("{not json}") is None


def test_ssh_command_line() -> None:
    machine = MachineCfg(name="box", ssh_host="10.0.0.2", ssh_user="lab", ssh_port=2222, workspace_dir="/srv/lab")

    argv = SshExecutor()._ssh(machine, "true")

    assert argv[0] == "ssh"
    assert "BatchMode=yes" in argv
    assert argv[-3:] == ["2222", "lab@10.0.0.2", "true"]
