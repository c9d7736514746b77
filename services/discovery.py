"""Process table access.

The process table is the only record of what is running: every process we
launch carries ``CHAINLAB_*`` variables in its environment, from which the
launching configuration is rebuilt.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

import psutil

from core.polling import repeat_call_until

logger = logging.getLogger(__name__)

ENV_PREFIX = "CHAINLAB_"


def env_var(name: str) -> str:
    """Return the private environment variable name for ``name``."""
    return f"{ENV_PREFIX}{name.upper()}"


MARKER_VAR = env_var("MARKER")
KIND_VAR = env_var("KIND")
NAME_VAR = env_var("NAME")
HOST_VAR = env_var("HOST")
CONFIG_VAR = env_var("CONFIG")


@dataclass(frozen=True)
class ProcessEntry:
    """A snapshot of one process.

    Attributes:
        pid: Process id
        cmdline: Argument vector as reported by the OS
        environ: ``CHAINLAB_*`` variables, None when unreadable
    """

    pid: int
    cmdline: tuple[str, ...]
    environ: dict[str, str] | None = None

    def env(self, name: str) -> str | None:
        if self.environ is None:
            return None
        return self.environ.get(name)

    @property
    def marker(self) -> str | None:
        return self.env(MARKER_VAR)


def executable_name(cmdline: Sequence[str], index: int = 0) -> str:
    """Basename of the ``index``-th argument (first word only, for rewritten titles)."""
    words = cmdline[index].split() if len(cmdline) > index else []
    return Path(words[0]).name if words else ""


def _private_environ(proc: psutil.Process) -> dict[str, str] | None:
    try:
        environ = proc.environ()
    except (psutil.AccessDenied, psutil.NoSuchProcess, psutil.ZombieProcess):
        return None
    return {key: value for key, value in environ.items() if key.startswith(ENV_PREFIX)}


def scan_processes(match: Callable[[tuple[str, ...]], bool]) -> list[ProcessEntry]:
    """Return every live process whose argv satisfies ``match``.

    Processes that vanish between the scan and the environment read are kept
    with ``environ=None``.
    """
    entries: list[ProcessEntry] = []
    own_pid = os.getpid()
    for proc in psutil.process_iter(["pid", "cmdline", "status"]):
        info = proc.info
        if info.get("status") == psutil.STATUS_ZOMBIE or info["pid"] == own_pid:
            continue
        cmdline = tuple(info.get("cmdline") or ())
        if not cmdline or not match(cmdline):
            continue
        entries.append(ProcessEntry(pid=info["pid"], cmdline=cmdline, environ=_private_environ(proc)))
    return entries


def process_entry(pid: int) -> ProcessEntry | None:
    """Snapshot a single process, None if it does not exist."""
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return None
        cmdline = tuple(proc.cmdline())
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return None
    except psutil.AccessDenied:
        return ProcessEntry(pid=pid, cmdline=())
    return ProcessEntry(pid=pid, cmdline=cmdline, environ=_private_environ(proc))


def pid_alive(pid: int) -> bool:
    """True if ``pid`` exists and is not a zombie."""
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def send_signal(pid: int, sig: signal.Signals) -> None:
    """Deliver ``sig`` to ``pid``; a process that is already gone is ignored."""
    with contextlib.suppress(ProcessLookupError):
        os.kill(pid, sig)
    logger.debug("discovery.signal_sent", extra={"pid": pid, "signal": sig.name})


async def wait_until_gone(
    pid: int,
    *,
    interval: float,
    max_polls: int,
    abort: asyncio.Event | None = None,
) -> bool:
    """Poll until ``pid`` disappears; False if still alive after ``max_polls``."""

    async def _gone() -> bool:
        return not pid_alive(pid)

    result = await repeat_call_until(_gone, max_calls=max_polls, interval=interval, abort=abort)
    return result.ok

