"""Service lifecycle state machine.

A :class:`Service` binds one resolved config to the strategy of its kind. It
keeps no process handle between calls: the pid is re-discovered from the
process table on every start and stop.

States::

    unknown -> starting -> started -> readying -> ready
                                              \\-> failed
    ready/started -> stopping -> stopped | killed
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar

from pydantic import ValidationError

from controller.contracts import (
    LifecycleState,
    ProgressValue,
    RunningProcess,
    StartResult,
    StopResult,
)
from core.config import ServiceCfgBase
from core.errors import (
    AlreadyRunningOperationError,
    CancelledOperationError,
    CannotStartError,
    CannotStopError,
    ChainlabError,
    ConflictError,
    NotReadyError,
    ProcessKilledError,
    ProcessTableError,
    StopTimeoutError,
)
from core.polling import describe_failure, repeat_call_until
from services.discovery import (
    CONFIG_VAR,
    HOST_VAR,
    KIND_VAR,
    MARKER_VAR,
    NAME_VAR,
    ProcessEntry,
    pid_alive,
    process_entry,
    scan_processes,
    send_signal,
    wait_until_gone,
)

logger = logging.getLogger(__name__)

StateCallback = Callable[[ProgressValue], None]

# Only the tail of large log files is scanned for failure patterns.
_LOG_SCAN_BYTES = 256 * 1024


@dataclass(frozen=True)
class LaunchCommand:
    """Everything needed to spawn a service process.

    Attributes:
        argv: Argument vector, executable first
        env: Variables added on top of the orchestrator environment
        cwd: Working directory, None for the current one
    """

    argv: tuple[str, ...]
    env: dict[str, str] = field(default_factory=dict)
    cwd: Path | None = None


class Service(ABC):
    """Lifecycle of one service instance.

    Subclasses provide the kind specific pieces: argv signature, launch
    command, readiness probe and, optionally, graceful shutdown, busy checks
    and install/reset of the owned directory.

    Attributes:
        config: Resolved configuration
        local: True if the service runs on the machine executing this code
        marker: Topology root recorded in the launched process environment
        pid: Last known process id
    """

    kind: ClassVar[str]
    config_type: ClassVar[type[ServiceCfgBase]]
    owns_directory: ClassVar[bool] = False

    spawn_wait_before: ClassVar[float] = 0.1
    spawn_poll_interval: ClassVar[float] = 0.5
    spawn_max_polls: ClassVar[int] = 60
    ready_poll_interval: ClassVar[float] = 1.0
    ready_max_polls: ClassVar[int] = 120
    stop_poll_interval: ClassVar[float] = 1.0
    stop_max_polls: ClassVar[int] = 20
    # OR of AND groups: any group whose substrings all occur in the log fails the start.
    log_failure_patterns: ClassVar[tuple[tuple[str, ...], ...]] = ()

    def __init__(self, config: ServiceCfgBase, *, local: bool = True, marker: str | None = None) -> None:
        if not isinstance(config, self.config_type):
            raise TypeError(
                f"{type(self).__name__} expects {self.config_type.__name__}, got {type(config).__name__}"
            )
        self.config = config
        self.local = local
        self.marker = marker
        self.pid: int | None = None
        self._starting = False
        self._stopping = False

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, host={self.host!r}, pid={self.pid})"

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def hostname(self) -> str:
        return self.config.hostname

    @property
    def port(self) -> int:
        return self.config.port

    @property
    def host(self) -> str:
        return self.config.host

    @property
    def log_file(self) -> Path | None:
        return self.config.log_file

    @property
    def pid_file(self) -> Path | None:
        return self.config.pid_file

    def missing_start_config(self) -> list[str]:
        """Names of settings required to launch that are not available."""
        return []

    @property
    def can_start(self) -> bool:
        return self.local and not self.missing_start_config()

    @property
    def can_stop(self) -> bool:
        return self.local

    # ------------------------------------------------------------------ launch

    @abstractmethod
    def build_argv(self) -> tuple[str, ...]:
        """Argument vector launching this service."""

    def kind_env(self) -> dict[str, str]:
        """Variables read by the service binary itself."""
        return {}

    def working_dir(self) -> Path | None:
        return None

    def launch_command(self) -> LaunchCommand:
        """Build the launch command; discovery relies on the private variables set here."""
        env = dict(self.kind_env())
        env.update(
            {
                KIND_VAR: self.kind,
                NAME_VAR: self.name,
                HOST_VAR: self.host,
                CONFIG_VAR: self.config.model_dump_json(),
            }
        )
        if self.marker is not None:
            env[MARKER_VAR] = self.marker
        return LaunchCommand(argv=self.build_argv(), env=env, cwd=self.working_dir())

    # --------------------------------------------------------------- discovery

    @classmethod
    @abstractmethod
    def matches(cls, cmdline: tuple[str, ...]) -> bool:
        """True if ``cmdline`` carries the argv signature of this kind."""

    @classmethod
    def config_from_process(cls, entry: ProcessEntry) -> ServiceCfgBase:
        """Rebuild the launching config from the process environment.

        Raises:
            KeyError: If a private variable is missing
            ValueError: If the variables are inconsistent
        """
        if entry.env(KIND_VAR) != cls.kind:
            raise ValueError(f"process {entry.pid} is not a {cls.kind} service")
        raw = entry.env(CONFIG_VAR)
        if raw is None:
            raise KeyError(CONFIG_VAR)
        config = cls.config_type.model_validate_json(raw)
        if config.host != entry.env(HOST_VAR) or config.name != entry.env(NAME_VAR):
            raise ValueError(f"process {entry.pid} has inconsistent {cls.kind} variables")
        return config

    @classmethod
    def from_process(cls, entry: ProcessEntry) -> Service | None:
        """Reconstruct a service from a process snapshot; None if not possible."""
        if entry.environ is None:
            return None
        try:
            config = cls.config_from_process(entry)
        except (KeyError, ValueError, ValidationError) as exc:
            logger.debug(
                "lifecycle.unparsable_process",
                extra={"kind": cls.kind, "pid": entry.pid, "reason": str(exc)},
            )
            return None
        service = cls(config, local=True, marker=entry.marker)
        service.pid = entry.pid
        return service

    @classmethod
    def scan(cls) -> list[ProcessEntry]:
        return scan_processes(cls.matches)

    @classmethod
    async def running(cls, filters: Mapping[str, Any] | None = None) -> list[RunningProcess]:
        """Processes of this kind, optionally filtered on config fields or ``marker``.

        Degraded entries (unreadable environment) are only returned unfiltered.
        """
        found: list[RunningProcess] = []
        for entry in cls.scan():
            service = cls.from_process(entry)
            if filters and not _matches_filters(entry, service, filters):
                continue
            found.append(RunningProcess(pid=entry.pid, kind=cls.kind, marker=entry.marker, service=service))
        return found

    @classmethod
    async def from_pid(cls, pid: int) -> Service | None:
        entry = process_entry(pid)
        if entry is None or not cls.matches(entry.cmdline):
            return None
        return cls.from_process(entry)

    @classmethod
    async def stop_all(
        cls,
        filters: Mapping[str, Any] | None = None,
        *,
        kill: bool = False,
        reset: bool = False,
    ) -> list[StopResult]:
        """Stop every matching process of this kind concurrently."""
        procs = await cls.running(filters)
        return list(await asyncio.gather(*(stop_running(proc, kill=kill, reset=reset) for proc in procs)))

    @classmethod
    async def kill_all(cls, filters: Mapping[str, Any] | None = None) -> list[StopResult]:
        return await cls.stop_all(filters, kill=True)

    def discovery_fields(self) -> dict[str, Any]:
        return self.config.model_dump(mode="json")

    def _is_mine(self, entry: ProcessEntry) -> bool:
        return entry.env(KIND_VAR) == self.kind and entry.env(HOST_VAR) == self.host

    async def get_pid(self) -> int | None:
        """Pid of the process serving this config's host, None if not running.

        Raises:
            ProcessTableError: If more than one process claims the host
        """
        pids = [entry.pid for entry in self.scan() if self._is_mine(entry)]
        if len(pids) > 1:
            raise ProcessTableError(
                f"{self.kind} '{self.name}': {len(pids)} processes listen on {self.host}",
                name=self.name,
                pids=pids,
            )
        return pids[0] if pids else None

    # --------------------------------------------------------------- readiness

    @abstractmethod
    async def is_ready(self) -> bool:
        """One readiness probe. Exceptions count as not ready."""

    async def is_busy(self) -> None:
        """Raise BusyError if resources needed by this service are held."""

    def scan_log_failure(self) -> str | None:
        """Return the first failure pattern group found in the log file."""
        if not self.log_failure_patterns or self.log_file is None or not self.log_file.is_file():
            return None
        with self.log_file.open("rb") as handle:
            size = handle.seek(0, os.SEEK_END)
            handle.seek(max(0, size - _LOG_SCAN_BYTES))
            text = handle.read().decode("utf-8", errors="replace")
        for group in self.log_failure_patterns:
            if all(pattern in text for pattern in group):
                return " && ".join(group)
        return None

    async def wait_until_ready(
        self,
        pid: int,
        *,
        on_state: StateCallback | None = None,
        context: dict[str, Any] | None = None,
        abort: asyncio.Event | None = None,
    ) -> None:
        """Poll readiness at most ``ready_max_polls`` times.

        Raises:
            ProcessKilledError: If the process disappears while waiting
            NotReadyError: If a log failure pattern shows up or polling is exhausted
        """
        self._emit(on_state, "readying", context, pid=pid)
        outcome: dict[str, str] = {}

        async def _probe() -> bool:
            if not pid_alive(pid):
                outcome["killed"] = "process exited"
                return True
            failure = self.scan_log_failure()
            if failure is not None:
                outcome["log"] = failure
                return True
            return await self.is_ready()

        result = await repeat_call_until(
            _probe,
            max_calls=self.ready_max_polls,
            interval=self.ready_poll_interval,
            abort=abort,
        )
        if "killed" in outcome:
            raise ProcessKilledError(
                f"{self.kind} '{self.name}' exited before becoming ready", name=self.name, pid=pid
            )
        if "log" in outcome:
            raise NotReadyError(
                f"{self.kind} '{self.name}' log reports a failure ({outcome['log']})",
                name=self.name,
                pid=pid,
            )
        if not result.ok:
            raise NotReadyError(
                f"{self.kind} '{self.name}' is not ready ({describe_failure(result)})",
                name=self.name,
                pid=pid,
                polls=result.calls,
            )
        self._emit(on_state, "ready", context, pid=pid, succeeded=True)

    # ------------------------------------------------------------------- start

    async def start(
        self,
        *,
        on_state: StateCallback | None = None,
        context: dict[str, Any] | None = None,
        abort: asyncio.Event | None = None,
        create_dir: bool = True,
    ) -> StartResult:
        """Start the service, or adopt an already running identical instance.

        Raises:
            AlreadyRunningOperationError: If a start or stop is in flight
            CannotStartError: If the service cannot be launched from here
            ConflictError: If a different config already serves the host
            BusyError: If the owned resources are held by another process
            NotReadyError: If readiness is not reached
        """
        if self._starting:
            raise AlreadyRunningOperationError(f"{self.kind} '{self.name}' is already starting")
        if self._stopping:
            raise AlreadyRunningOperationError(f"{self.kind} '{self.name}' is stopping")
        self._starting = True
        try:
            return await self._start(on_state=on_state, context=context or {}, abort=abort, create_dir=create_dir)
        finally:
            self._starting = False

    async def _start(
        self,
        *,
        on_state: StateCallback | None,
        context: dict[str, Any],
        abort: asyncio.Event | None,
        create_dir: bool,
    ) -> StartResult:
        if not self.can_start:
            raise CannotStartError(
                f"{self.kind} '{self.name}' cannot be started",
                name=self.name,
                local=self.local,
                missing=self.missing_start_config(),
            )
        _check_abort(abort)

        pid = await self.get_pid()
        if pid is not None:
            await self._check_running_config(pid)
            self.pid = pid
            self._emit(on_state, "started", context, pid=pid)
            await self._ready_or_fail(pid, on_state=on_state, context=context, abort=abort)
            logger.info("lifecycle.already_started", extra={"service": self.name, "pid": pid})
            return StartResult(name=self.name, kind=self.kind, pid=pid, already_started=True, context=context)

        await self.prepare()
        await self.is_busy()
        self._prepare_files(create_dir)
        command = self.launch_command()

        self._emit(on_state, "starting", context)
        process = self._spawn(command)
        pid = await self._wait_for_pid(process, abort)
        self._write_pid_file(pid)
        self.pid = pid
        logger.info("lifecycle.started", extra={"service": self.name, "kind": self.kind, "pid": pid})
        self._emit(on_state, "started", context, pid=pid)

        await self._ready_or_fail(pid, on_state=on_state, context=context, abort=abort)
        return StartResult(name=self.name, kind=self.kind, pid=pid, context=context)

    async def _ready_or_fail(
        self,
        pid: int,
        *,
        on_state: StateCallback | None,
        context: dict[str, Any],
        abort: asyncio.Event | None,
    ) -> None:
        try:
            await self.wait_until_ready(pid, on_state=on_state, context=context, abort=abort)
        except ChainlabError as exc:
            logger.error("lifecycle.start_failed", extra={"service": self.name, "pid": pid, "error": str(exc)})
            self._emit(on_state, "failed", context, pid=pid, succeeded=False, error=str(exc))
            await self.on_start_failed(pid)
            raise

    async def on_start_failed(self, pid: int) -> None:
        """Hook run after a failed readiness wait. The process is left running."""

    async def _check_running_config(self, pid: int) -> None:
        entry = process_entry(pid)
        running = type(self).from_process(entry) if entry is not None else None
        if running is None:
            return
        ours = self.discovery_fields()
        theirs = running.discovery_fields()
        diff = sorted(key for key in set(ours) | set(theirs) if ours.get(key) != theirs.get(key))
        if diff:
            raise ConflictError(
                f"{self.kind} '{self.name}' is already running on {self.host} with different settings",
                name=self.name,
                pid=pid,
                fields=diff,
            )

    async def prepare(self) -> None:
        """Hook run right before spawning (e.g. lazily install the owned directory)."""

    def _prepare_files(self, create_dir: bool) -> None:
        for path in (self.log_file, self.pid_file):
            if path is None:
                continue
            if not path.parent.is_dir():
                if not create_dir:
                    raise CannotStartError(
                        f"{self.kind} '{self.name}': directory '{path.parent}' does not exist",
                        name=self.name,
                    )
                path.parent.mkdir(parents=True, exist_ok=True)
            path.unlink(missing_ok=True)

    def _spawn(self, command: LaunchCommand) -> subprocess.Popen[bytes]:
        env = os.environ.copy()
        env.update(command.env)
        log_handle = self.log_file.open("ab") if self.log_file is not None else None
        try:
            return subprocess.Popen(
                list(command.argv),
                stdin=subprocess.DEVNULL,
                stdout=log_handle if log_handle is not None else subprocess.DEVNULL,
                stderr=subprocess.STDOUT,
                cwd=command.cwd,
                env=env,
                start_new_session=True,  # Detach from parent process group
            )
        except OSError as exc:
            raise CannotStartError(
                f"{self.kind} '{self.name}': cannot execute {command.argv[0]}: {exc}",
                name=self.name,
            ) from exc
        finally:
            if log_handle is not None:
                log_handle.close()

    async def _wait_for_pid(self, process: subprocess.Popen[bytes], abort: asyncio.Event | None) -> int:
        exited: dict[str, int] = {}

        async def _probe() -> int | None:
            code = process.poll()
            if code is not None:
                exited["code"] = code
                return -1
            return await self.get_pid()

        result = await repeat_call_until(
            _probe,
            max_calls=self.spawn_max_polls,
            interval=self.spawn_poll_interval,
            wait_before_first_call=self.spawn_wait_before,
            abort=abort,
        )
        if "code" in exited:
            raise ProcessKilledError(
                f"{self.kind} '{self.name}' exited with code {exited['code']} right after launch",
                name=self.name,
                log_file=str(self.log_file) if self.log_file else None,
            )
        if not result.ok or result.result is None:
            raise NotReadyError(
                f"{self.kind} '{self.name}' did not show up in the process table",
                name=self.name,
                spawned_pid=process.pid,
            )
        return int(result.result)

    def _write_pid_file(self, pid: int) -> None:
        if self.pid_file is not None and not self.pid_file.exists():
            self.pid_file.write_text(f"{pid}\n", encoding="utf-8")

    def remove_stale_files(self) -> None:
        """Delete the pid and log files of a service that is not running."""
        for path in (self.pid_file, self.log_file):
            if path is not None:
                path.unlink(missing_ok=True)

    # -------------------------------------------------------------------- stop

    async def stop(
        self,
        *,
        kill: bool = False,
        reset: bool = False,
        on_state: StateCallback | None = None,
        context: dict[str, Any] | None = None,
        abort: asyncio.Event | None = None,
    ) -> StopResult:
        """Stop the service gracefully, or with SIGKILL when ``kill`` is set.

        A service that is not running stops successfully without action.

        Raises:
            AlreadyRunningOperationError: If a start or stop is in flight
            CannotStopError: If the service cannot be stopped from here
            StopTimeoutError: If the process survives the polling ceiling
        """
        if self._stopping:
            raise AlreadyRunningOperationError(f"{self.kind} '{self.name}' is already stopping")
        if self._starting:
            raise AlreadyRunningOperationError(f"{self.kind} '{self.name}' is starting")
        self._stopping = True
        try:
            return await self._stop(kill=kill, reset=reset, on_state=on_state, context=context or {}, abort=abort)
        finally:
            self._stopping = False

    async def _stop(
        self,
        *,
        kill: bool,
        reset: bool,
        on_state: StateCallback | None,
        context: dict[str, Any],
        abort: asyncio.Event | None,
    ) -> StopResult:
        if not self.can_stop:
            raise CannotStopError(f"{self.kind} '{self.name}' cannot be stopped", name=self.name)

        pid = await self.get_pid()
        if pid is None:
            if reset:
                await self.on_stopped(None, reset=True)
            self._emit(on_state, "stopped", context, succeeded=True)
            return StopResult(name=self.name, kind=self.kind, pid=None, context=context)

        self._emit(on_state, "stopping", context, pid=pid)
        final_state: LifecycleState = "killed" if kill else "stopped"
        try:
            if kill:
                await self.kill_process(pid, abort=abort)
            else:
                await self.stop_process(pid, abort=abort)
        except ChainlabError as exc:
            logger.error("lifecycle.stop_failed", extra={"service": self.name, "pid": pid, "error": str(exc)})
            self._emit(on_state, final_state, context, pid=pid, succeeded=False, error=str(exc))
            raise

        self.pid = None
        if self.pid_file is not None:
            self.pid_file.unlink(missing_ok=True)
        await self.on_stopped(pid, reset=reset)
        logger.info("lifecycle.stopped", extra={"service": self.name, "pid": pid, "killed": kill})
        self._emit(on_state, final_state, context, pid=pid, succeeded=True)
        return StopResult(name=self.name, kind=self.kind, pid=pid, killed=kill, context=context)

    async def stop_process(self, pid: int, *, abort: asyncio.Event | None = None) -> None:
        """Graceful shutdown: SIGTERM, then wait for the pid to disappear."""
        send_signal(pid, signal.SIGTERM)
        await self._wait_gone(pid, abort=abort)

    async def kill_process(self, pid: int, *, abort: asyncio.Event | None = None) -> None:
        send_signal(pid, signal.SIGKILL)
        await self._wait_gone(pid, abort=abort)

    async def _wait_gone(self, pid: int, *, abort: asyncio.Event | None = None) -> None:
        gone = await wait_until_gone(
            pid, interval=self.stop_poll_interval, max_polls=self.stop_max_polls, abort=abort
        )
        if not gone:
            raise StopTimeoutError(
                f"{self.kind} '{self.name}' (pid {pid}) still running after {self.stop_max_polls} checks",
                name=self.name,
                pid=pid,
            )

    async def on_stopped(self, pid: int | None, *, reset: bool = False) -> None:
        if reset and self.owns_directory:
            await self.reset_db()

    # ----------------------------------------------------------------- install

    async def install(self) -> None:
        """Create what the service needs on disk before its first start."""
        for path in (self.log_file, self.pid_file):
            if path is not None:
                path.parent.mkdir(parents=True, exist_ok=True)

    async def reset_db(self) -> None:
        """Wipe and reinitialise the owned directory."""
        if self.owns_directory:
            raise NotImplementedError(f"{type(self).__name__} must implement reset_db")

    # ----------------------------------------------------------------- helpers

    def _emit(
        self,
        on_state: StateCallback | None,
        state: LifecycleState,
        context: dict[str, Any] | None,
        **fields: Any,
    ) -> None:
        if on_state is None:
            return
        on_state(ProgressValue(state=state, kind=self.kind, name=self.name, context=dict(context or {}), **fields))


def _check_abort(abort: asyncio.Event | None) -> None:
    if abort is not None and abort.is_set():
        raise CancelledOperationError("operation aborted")


def _matches_filters(entry: ProcessEntry, service: Service | None, filters: Mapping[str, Any]) -> bool:
    for key, expected in filters.items():
        if key == "marker":
            if entry.marker != expected:
                return False
            continue
        if service is None:
            return False
        if getattr(service.config, key, None) != expected:
            return False
    return True


async def stop_running(proc: RunningProcess, *, kill: bool = False, reset: bool = False) -> StopResult:
    """Stop a discovered process; degraded entries get a plain signal."""
    if proc.service is not None:
        return await proc.service.stop(kill=kill, reset=reset)

    sig = signal.SIGKILL if kill else signal.SIGTERM
    send_signal(proc.pid, sig)
    if not await wait_until_gone(proc.pid, interval=1.0, max_polls=20):
        raise StopTimeoutError(f"{proc.kind} process {proc.pid} still running", pid=proc.pid)
    return StopResult(name=f"{proc.kind}@{proc.pid}", kind=proc.kind, pid=proc.pid, killed=kill)
