"""Market API service (node application)."""

from __future__ import annotations

from pathlib import Path
from typing import ClassVar, cast

from core.config import MarketCfg
from services.lifecycle import Service
from services.probes import http_ok, http_url

PROCESS_TITLE = "chainlab.market"


class MarketService(Service):
    """Order book API; needs the chain nodes of its chains, mongo and redis.

    Node rewrites its process title from ``--title``, so the signature is a
    substring match on the title.
    """

    kind: ClassVar[str] = "market"
    config_type = MarketCfg

    ready_poll_interval = 1.0
    ready_max_polls = 120

    @property
    def cfg(self) -> MarketCfg:
        return cast(MarketCfg, self.config)

    @classmethod
    def matches(cls, cmdline: tuple[str, ...]) -> bool:
        return any(PROCESS_TITLE in arg for arg in cmdline)

    def missing_start_config(self) -> list[str]:
        if not self.cfg.repository.is_dir():
            return ["repository"]
        return []

    def build_argv(self) -> tuple[str, ...]:
        return ("node", f"--title={PROCESS_TITLE}", str(self.cfg.repository / "src" / "server.js"))

    def working_dir(self) -> Path | None:
        return self.cfg.repository

    def kind_env(self) -> dict[str, str]:
        cfg = self.cfg
        return {
            "API_HOST": cfg.hostname,
            "API_PORT": str(cfg.port),
            "MONGO_HOST": cfg.mongo_host,
            "REDIS_HOST": cfg.redis_host,
            "CHAINS": ",".join(cfg.chains),
        }

    async def is_ready(self) -> bool:
        return await http_ok(http_url(self.hostname, self.port, "/version"))
