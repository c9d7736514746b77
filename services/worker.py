"""Worker service: one spring process per (machine, hub, index)."""

from __future__ import annotations

from typing import ClassVar, cast

from core.config import WorkerCfg
from services.spring import SpringService


def worker_name(hub: str, index: int) -> str:
    """``worker.<index>.<hub alias>``."""
    if index < 0:
        raise ValueError(f"index must be >= 0, got {index}")
    return f"worker.{index}.{hub}"


def parse_worker_name(name: str) -> tuple[int, str]:
    """Inverse of :func:`worker_name`: ``(index, hub alias)``.

    Raises:
        ValueError: If name is not a worker name
    """
    prefix, _, rest = name.partition(".")
    index, _, hub = rest.partition(".")
    if prefix != "worker" or not index.isdigit() or not hub:
        raise ValueError(f"'{name}' is not a worker name")
    return int(index), hub


class WorkerService(SpringService):
    kind: ClassVar[str] = "worker"
    config_type = WorkerCfg

    @property
    def cfg(self) -> WorkerCfg:
        return cast(WorkerCfg, self.config)

    def spring_env(self) -> dict[str, str]:
        cfg = self.cfg
        return {
            "IEXEC_WORKER_NAME": cfg.name,
            "IEXEC_WORKER_BASE_DIR": str(cfg.directory),
            "IEXEC_CORE_URL": cfg.core_url,
            "DOCKER_HOST": f"tcp://{cfg.docker_host}",
            "IEXEC_WALLET_INDEX": str(cfg.wallet_index),
        }

    async def install(self) -> None:
        await super().install()
        self.cfg.directory.mkdir(parents=True, exist_ok=True)

    async def prepare(self) -> None:
        self.cfg.directory.mkdir(parents=True, exist_ok=True)
