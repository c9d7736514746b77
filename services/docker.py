"""Container daemon: attached, never launched or stopped by us."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any, ClassVar

from controller.contracts import RunningProcess, StartResult, StopResult
from core.config import DockerCfg
from core.errors import CannotStartError, NotReadyError
from core.polling import describe_failure, repeat_call_until
from services.discovery import executable_name
from services.lifecycle import Service, StateCallback
from services.probes import http_text, http_url

logger = logging.getLogger(__name__)


class DockerService(Service):
    """The daemon must already be running; start only checks that it answers."""

    kind: ClassVar[str] = "docker"
    config_type = DockerCfg

    ready_poll_interval = 1.0
    ready_max_polls = 30

    @classmethod
    def matches(cls, cmdline: tuple[str, ...]) -> bool:
        return executable_name(cmdline) == "dockerd"

    @classmethod
    async def running(cls, filters: Mapping[str, Any] | None = None) -> list[RunningProcess]:
        return []

    def build_argv(self) -> tuple[str, ...]:
        raise CannotStartError("docker daemon is not managed by chainlab", name=self.name)

    async def get_pid(self) -> int | None:
        return None

    async def is_ready(self) -> bool:
        body = await http_text(http_url(self.hostname, self.port, "/_ping"))
        return body is not None and body.strip() == "OK"

    async def start(
        self,
        *,
        on_state: StateCallback | None = None,
        context: dict[str, Any] | None = None,
        abort: asyncio.Event | None = None,
        create_dir: bool = True,
    ) -> StartResult:
        """Wait for the daemon to answer ``/_ping``.

        Raises:
            NotReadyError: If the daemon does not answer within the polling ceiling
        """
        context = context or {}
        self._emit(on_state, "readying", context)
        result = await repeat_call_until(
            self.is_ready,
            max_calls=self.ready_max_polls,
            interval=self.ready_poll_interval,
            abort=abort,
        )
        if not result.ok:
            error = f"docker daemon at {self.host} is not running ({describe_failure(result)})"
            self._emit(on_state, "failed", context, succeeded=False, error=error)
            raise NotReadyError(error, name=self.name)
        self._emit(on_state, "ready", context, succeeded=True)
        return StartResult(name=self.name, kind=self.kind, pid=None, already_started=True, context=context)

    async def stop(
        self,
        *,
        kill: bool = False,
        reset: bool = False,
        on_state: StateCallback | None = None,
        context: dict[str, Any] | None = None,
        abort: asyncio.Event | None = None,
    ) -> StopResult:
        logger.debug("docker.stop_skipped", extra={"service": self.name})
        self._emit(on_state, "stopped", context, succeeded=True)
        return StopResult(name=self.name, kind=self.kind, pid=None, context=context or {})
