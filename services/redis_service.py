"""Cache store (redis-server) service."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import ClassVar

from redis.asyncio import Redis
from redis.exceptions import RedisError

from core.config import RedisCfg
from services.discovery import executable_name, send_signal
from services.probes import host_ip
from services.stores import DBService

logger = logging.getLogger(__name__)


class RedisService(DBService):
    """redis-server with append-only persistence in the DB data directory.

    Redis rewrites its process title to ``redis-server <ip>:<port>``, so the
    argv signature only looks at the first word of the first argument.
    """

    kind: ClassVar[str] = "redis"
    config_type = RedisCfg

    ready_poll_interval = 0.4
    ready_max_polls = 100
    stop_poll_interval = 0.2
    stop_max_polls = 100

    @classmethod
    def matches(cls, cmdline: tuple[str, ...]) -> bool:
        return executable_name(cmdline) == "redis-server"

    def build_argv(self) -> tuple[str, ...]:
        argv = [
            "redis-server",
            "--bind",
            host_ip(self.hostname),
            "--port",
            str(self.port),
            "--dir",
            str(self.data_dir),
            "--appendonly",
            "yes",
            "--daemonize",
            "no",
        ]
        if self.pid_file is not None:
            argv += ["--pidfile", str(self.pid_file)]
        return tuple(argv)

    def _client(self) -> Redis:
        return Redis(host=self.hostname, port=self.port, socket_timeout=2.0)

    async def is_ready(self) -> bool:
        client = self._client()
        try:
            return bool(await client.ping())
        finally:
            await client.aclose()

    async def stop_process(self, pid: int, *, abort: asyncio.Event | None = None) -> None:
        """SHUTDOWN through the protocol; SIGTERM if the command is refused."""
        client = self._client()
        try:
            await client.shutdown()
        except RedisError as exc:
            logger.warning("redis.shutdown_failed", extra={"service": self.name, "pid": pid, "error": str(exc)})
            send_signal(pid, signal.SIGTERM)
        finally:
            await client.aclose()
        await self._wait_gone(pid, abort=abort)
