"""Document store (mongod) service."""

from __future__ import annotations

from typing import ClassVar

from motor.motor_asyncio import AsyncIOMotorClient

from core.config import MongoCfg
from core.errors import BusyError
from services.discovery import executable_name, pid_alive
from services.probes import host_ip
from services.stores import DBService


class MongoService(DBService):
    kind: ClassVar[str] = "mongo"
    config_type = MongoCfg

    ready_poll_interval = 0.5
    ready_max_polls = 120
    stop_max_polls = 30

    @classmethod
    def matches(cls, cmdline: tuple[str, ...]) -> bool:
        return executable_name(cmdline) == "mongod"

    def build_argv(self) -> tuple[str, ...]:
        return (
            "mongod",
            "--bind_ip",
            host_ip(self.hostname),
            "--port",
            str(self.port),
            "--dbpath",
            str(self.data_dir),
        )

    @property
    def url(self) -> str:
        return f"mongodb://{self.hostname}:{self.port}"

    async def is_ready(self) -> bool:
        client: AsyncIOMotorClient = AsyncIOMotorClient(self.url, serverSelectionTimeoutMS=1000)
        try:
            await client.admin.command("ping")
        finally:
            client.close()
        return True

    async def is_busy(self) -> None:
        await super().is_busy()
        lock_file = self.data_dir / "mongod.lock"
        if not lock_file.is_file():
            return
        content = lock_file.read_text(encoding="utf-8").strip()
        if content.isdigit() and pid_alive(int(content)):
            raise BusyError(
                f"mongo directory '{self.directory}' is locked by pid {content}",
                name=self.name,
                pid=int(content),
            )
