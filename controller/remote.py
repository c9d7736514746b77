"""Remote machine bridge.

Only the master machine forwards work: a remote install/start/stop runs the
``chainlab-ctl`` CLI inside the machine's workspace with ``--json-progress``
and relays the JSON progress lines it prints back to the local caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shlex
import shutil
import sys
from collections.abc import Callable, Sequence
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Protocol, cast

from controller.contracts import ProgressCallback, ProgressEvent
from core.config import GanacheCfg, MachineCfg, ServiceCfgBase
from core.errors import ConfigurationError, RemoteOperationError
from services.dbdir import DBSIG_BASENAME, DBUUID_BASENAME

if TYPE_CHECKING:
    from controller.registry import Inventory

logger = logging.getLogger(__name__)

SSH_OPTS = ["-o", "BatchMode=yes", "-o", "IdentitiesOnly=yes", "-o", "ConnectTimeout=10"]
REMOTE_COMMAND = "chainlab-ctl"

LineCallback = Callable[[str], None]


def decode_progress_line(line: str) -> ProgressEvent | None:
    """Parse the JSON object embedded in one output line, None if there is none."""
    start, end = line.find("{"), line.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        return ProgressEvent.from_dict(json.loads(line[start : end + 1]))
    except (ValueError, KeyError, TypeError) as exc:
        logger.debug("remote.undecodable_line", extra={"line": line, "error": str(exc)})
        return None


def encode_progress_event(event: ProgressEvent) -> str:
    return json.dumps(event.to_dict(), sort_keys=True)


class RemoteExecutor(Protocol):
    """Transport used to reach another machine."""

    async def exists(self, machine: MachineCfg, path: str) -> bool: ...

    async def mkdir_p(self, machine: MachineCfg, path: str) -> None: ...

    async def copy_file(self, machine: MachineCfg, local_path: Path, remote_path: str) -> None: ...

    async def run(self, machine: MachineCfg, args: Sequence[str], on_line: LineCallback) -> int: ...


async def _stream(argv: Sequence[str], on_line: LineCallback | None = None, cwd: Path | None = None) -> tuple[int, str]:
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    if process.stdout is None or process.stderr is None:
        raise RemoteOperationError(f"No output pipes for '{argv[0]}'", argv=list(argv))
    stderr_task = asyncio.create_task(process.stderr.read())
    async for raw in process.stdout:
        if on_line is not None:
            on_line(raw.decode("utf-8", errors="replace").rstrip("\n"))
    returncode = await process.wait()
    stderr = (await stderr_task).decode("utf-8", errors="replace")
    return returncode, stderr


class SshExecutor:
    """ssh/scp subprocesses against ``machine.ssh_target``."""

    def __init__(self, remote_command: str = REMOTE_COMMAND) -> None:
        self.remote_command = remote_command

    def _opts(self, machine: MachineCfg) -> list[str]:
        opts = list(SSH_OPTS)
        if machine.ssh_key_file is not None:
            opts += ["-i", str(machine.ssh_key_file)]
        return opts

    def _ssh(self, machine: MachineCfg, command: str) -> list[str]:
        return ["ssh", *self._opts(machine), "-p", str(machine.ssh_port), machine.ssh_target, command]

    async def exists(self, machine: MachineCfg, path: str) -> bool:
        returncode, _ = await _stream(self._ssh(machine, f"test -e {shlex.quote(path)}"))
        return returncode == 0

    async def mkdir_p(self, machine: MachineCfg, path: str) -> None:
        returncode, stderr = await _stream(self._ssh(machine, f"mkdir -p {shlex.quote(path)}"))
        if returncode != 0:
            raise RemoteOperationError(
                f"mkdir -p {path} failed on '{machine.name}': {stderr.strip()}", machine=machine.name
            )

    async def copy_file(self, machine: MachineCfg, local_path: Path, remote_path: str) -> None:
        argv = ["scp", *self._opts(machine), "-P", str(machine.ssh_port), str(local_path), f"{machine.ssh_target}:{remote_path}"]
        returncode, stderr = await _stream(argv)
        if returncode != 0:
            raise RemoteOperationError(
                f"scp {local_path} to '{machine.name}' failed: {stderr.strip()}", machine=machine.name
            )

    async def run(self, machine: MachineCfg, args: Sequence[str], on_line: LineCallback) -> int:
        if machine.workspace_dir is None:
            raise ConfigurationError(f"Machine '{machine.name}' has no workspace_dir", machine=machine.name)
        command = f"cd {shlex.quote(machine.workspace_dir)} && {self.remote_command} {shlex.join(args)}"
        returncode, stderr = await _stream(self._ssh(machine, command), on_line)
        if returncode != 0:
            logger.error(
                "remote.command_failed",
                extra={"machine": machine.name, "argv": list(args), "stderr": stderr.strip()},
            )
        return returncode


class LocalExecutor:
    """Loopback transport: the machine workspace is a local directory.

    Used to drive a second topology on the same host (and by tests).
    """

    def __init__(self, command: Sequence[str] | None = None) -> None:
        self.command = list(command) if command is not None else [sys.executable, "-m", "scripts.chainlab_ctl"]

    def _workspace(self, machine: MachineCfg) -> Path:
        if machine.workspace_dir is None:
            raise ConfigurationError(f"Machine '{machine.name}' has no workspace_dir", machine=machine.name)
        return Path(machine.workspace_dir)

    async def exists(self, machine: MachineCfg, path: str) -> bool:
        return Path(path).exists()

    async def mkdir_p(self, machine: MachineCfg, path: str) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)

    async def copy_file(self, machine: MachineCfg, local_path: Path, remote_path: str) -> None:
        shutil.copy2(local_path, remote_path)

    async def run(self, machine: MachineCfg, args: Sequence[str], on_line: LineCallback) -> int:
        returncode, _ = await _stream([*self.command, *args], on_line, cwd=self._workspace(machine))
        return returncode


class RemoteBridge:
    """Forwards install/start/stop requests for services of remote machines."""

    def __init__(self, inventory: Inventory, executor: RemoteExecutor | None = None) -> None:
        self.inventory = inventory
        self.executor: RemoteExecutor = executor if executor is not None else SshExecutor()

    def _require_master(self) -> None:
        local = self.inventory.local_machine
        if not local.is_master:
            raise RemoteOperationError(
                f"Cannot perform any remote operation from machine '{local.name}' (not master)",
                machine=local.name,
            )

    def _remote_machine(self, machine_name: str) -> MachineCfg:
        machine = self.inventory.machine(machine_name)
        if self.inventory.is_local_machine(machine.name):
            raise RemoteOperationError(f"Machine '{machine.name}' is local", machine=machine.name)
        if machine.workspace_dir is None:
            raise ConfigurationError(f"Machine '{machine.name}' has no workspace_dir", machine=machine.name)
        return machine

    def _remote_path(self, machine: MachineCfg, unsolved: Path, resolved: Path) -> str:
        """Place a topology path inside the remote workspace."""
        if unsolved.is_absolute() or "${" in str(unsolved):
            try:
                relative = resolved.relative_to(self.inventory.root_dir)
            except ValueError:
                return str(resolved)
        else:
            relative = unsolved
        return str(PurePosixPath(machine.workspace_dir or ".") / relative.as_posix())

    async def copy_chain_state(self, machine: MachineCfg, hubs: Sequence[str]) -> None:
        """Copy the DBUUID and signature files of the chain nodes serving ``hubs``.

        Files already present on the remote machine are left alone.
        """
        seen: set[str] = set()
        for hub in hubs:
            ganache = self.inventory.ganache_for_hub(hub)
            if ganache.name in seen:
                continue
            seen.add(ganache.name)
            unsolved = cast(GanacheCfg, self.inventory.get_unsolved(ganache.name))
            remote_dir = self._remote_path(machine, unsolved.directory, ganache.directory)
            await self.executor.mkdir_p(machine, remote_dir)
            for basename in (DBUUID_BASENAME, DBSIG_BASENAME):
                local_file = ganache.directory / basename
                remote_file = f"{remote_dir}/{basename}"
                if not local_file.is_file() or await self.executor.exists(machine, remote_file):
                    continue
                await self.executor.copy_file(machine, local_file, remote_file)
                logger.info(
                    "remote.state_copied",
                    extra={"machine": machine.name, "file": str(local_file), "remote": remote_file},
                )

    async def invoke(
        self,
        machine: MachineCfg,
        args: Sequence[str],
        progress_cb: ProgressCallback | None = None,
    ) -> list[ProgressEvent]:
        """Run the remote CLI and relay its progress events.

        Raises:
            RemoteOperationError: If the local machine is not master or the
                remote command exits with a non-zero status
        """
        self._require_master()
        events: list[ProgressEvent] = []

        def _on_line(line: str) -> None:
            event = decode_progress_line(line)
            if event is None:
                return
            events.append(event)
            if progress_cb is not None:
                progress_cb(event)

        full_args = ["--json-progress", *args]
        logger.info("remote.invoke", extra={"machine": machine.name, "argv": full_args})
        returncode = await self.executor.run(machine, full_args, _on_line)
        if returncode != 0:
            raise RemoteOperationError(
                f"'{' '.join(args)}' failed on machine '{machine.name}' (exit code {returncode})",
                machine=machine.name,
                returncode=returncode,
            )
        return events

    def _hubs_of(self, config: ServiceCfgBase) -> list[str]:
        hub = getattr(config, "hub", None)
        if hub is not None:
            return [hub]
        return list(getattr(config, "chains", []))

    async def install(self, name: str, progress_cb: ProgressCallback | None = None) -> list[ProgressEvent]:
        self._require_master()
        config = self.inventory.get_config(name)
        machine = self._remote_machine(self.inventory.machine_of(name).name)
        await self.copy_chain_state(machine, self._hubs_of(config))
        return await self.invoke(machine, ["install", "--name", name], progress_cb)

    async def start(self, name: str, progress_cb: ProgressCallback | None = None) -> list[ProgressEvent]:
        self._require_master()
        config = self.inventory.get_config(name)
        machine = self._remote_machine(self.inventory.machine_of(name).name)
        await self.copy_chain_state(machine, self._hubs_of(config))
        return await self.invoke(machine, ["start", "--name", name, "--no-dependencies"], progress_cb)

    async def stop(
        self,
        name: str,
        *,
        reset: bool = False,
        kill: bool = False,
        progress_cb: ProgressCallback | None = None,
    ) -> list[ProgressEvent]:
        self._require_master()
        machine = self._remote_machine(self.inventory.machine_of(name).name)
        args = ["kill" if kill else "stop", "--name", name]
        if reset:
            args.append("--reset")
        return await self.invoke(machine, args, progress_cb)

    async def install_worker(
        self, machine_name: str, hub: str, index: int, progress_cb: ProgressCallback | None = None
    ) -> list[ProgressEvent]:
        self._require_master()
        machine = self._remote_machine(machine_name)
        return await self.invoke(machine, _worker_args("install-worker", machine_name, hub, index), progress_cb)

    async def start_worker(
        self, machine_name: str, hub: str, index: int, progress_cb: ProgressCallback | None = None
    ) -> list[ProgressEvent]:
        self._require_master()
        machine = self._remote_machine(machine_name)
        await self.copy_chain_state(machine, [hub])
        args = [*_worker_args("start-worker", machine_name, hub, index), "--no-dependencies"]
        return await self.invoke(machine, args, progress_cb)

    async def stop_worker(
        self,
        machine_name: str,
        hub: str,
        index: int,
        *,
        kill: bool = False,
        progress_cb: ProgressCallback | None = None,
    ) -> list[ProgressEvent]:
        self._require_master()
        machine = self._remote_machine(machine_name)
        args = _worker_args("stop-worker", machine_name, hub, index)
        if kill:
            args.append("--kill")
        return await self.invoke(machine, args, progress_cb)


def _worker_args(command: str, machine: str, hub: str, index: int) -> list[str]:
    return [command, "--machine", machine, "--hub", hub, "--index", str(index)]
