"""Object storage gateway (ipfs daemon) service."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from typing import ClassVar, cast

from core.config import IpfsCfg
from core.errors import InstallError
from services.discovery import executable_name
from services.probes import host_ip, http_ok, http_url
from services.stores import DBService

logger = logging.getLogger(__name__)


class IpfsService(DBService):
    """``ipfs daemon`` running on the repository at ``directory`` (IPFS_PATH)."""

    kind: ClassVar[str] = "ipfs"
    config_type = IpfsCfg

    ready_poll_interval = 0.5
    ready_max_polls = 120

    @property
    def cfg(self) -> IpfsCfg:
        return cast(IpfsCfg, self.config)

    @property
    def installed(self) -> bool:
        return (self.directory / "config").is_file()

    @classmethod
    def matches(cls, cmdline: tuple[str, ...]) -> bool:
        return executable_name(cmdline) == "ipfs" and "daemon" in cmdline

    def build_argv(self) -> tuple[str, ...]:
        return ("ipfs", "daemon")

    def kind_env(self) -> dict[str, str]:
        return {"IPFS_PATH": str(self.directory)}

    async def _ipfs(self, *args: str) -> None:
        env = os.environ.copy()
        env.update(self.kind_env())
        process = await asyncio.create_subprocess_exec(
            "ipfs",
            *args,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        output, _ = await process.communicate()
        if process.returncode != 0:
            raise InstallError(
                f"ipfs {' '.join(args)} failed: {output.decode(errors='replace').strip()}",
                name=self.name,
                returncode=process.returncode,
            )

    async def install(self) -> None:
        if self.installed:
            return
        self.directory.mkdir(parents=True, exist_ok=True)
        ip = host_ip(self.hostname)
        await self._ipfs("init", "--profile=test")
        await self._ipfs("config", "Addresses.API", f"/ip4/{ip}/tcp/{self.port}")
        await self._ipfs("config", "Addresses.Gateway", f"/ip4/{ip}/tcp/{self.cfg.gateway_port}")
        logger.info("ipfs.installed", extra={"service": self.name, "directory": str(self.directory)})

    async def prepare(self) -> None:
        if not self.installed:
            await self.install()

    async def reset_db(self) -> None:
        if self.directory.exists():
            shutil.rmtree(self.directory)
        await self.install()

    async def is_ready(self) -> bool:
        return await http_ok(http_url(self.hostname, self.port, "/api/v0/version"), method="POST")
