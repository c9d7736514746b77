"""Chain node (ganache) service."""

from __future__ import annotations

from typing import ClassVar, cast

from core.config import GanacheCfg
from services.discovery import executable_name
from services.probes import http_url, json_rpc
from services.stores import DBService

_EXECUTABLES = frozenset({"ganache", "ganache-cli"})


class GanacheService(DBService):
    """Local JSON-RPC chain node; one DB directory per chain id."""

    kind: ClassVar[str] = "ganache"
    config_type = GanacheCfg

    ready_poll_interval = 0.5
    ready_max_polls = 60

    @property
    def cfg(self) -> GanacheCfg:
        return cast(GanacheCfg, self.config)

    @classmethod
    def matches(cls, cmdline: tuple[str, ...]) -> bool:
        # ganache is a node script: argv[0] may be the node binary
        names = {executable_name(cmdline, 0), executable_name(cmdline, 1)}
        return bool(names & _EXECUTABLES) and "--chain.chainId" in cmdline

    def build_argv(self) -> tuple[str, ...]:
        cfg = self.cfg
        argv = [
            "ganache",
            "--server.host",
            cfg.hostname,
            "--server.port",
            str(cfg.port),
            "--chain.chainId",
            str(cfg.chain_id),
            "--chain.networkId",
            str(cfg.chain_id),
            "--database.dbPath",
            str(self.data_dir),
        ]
        if cfg.mnemonic:
            argv += ["--wallet.mnemonic", cfg.mnemonic]
        return tuple(argv)

    async def is_ready(self) -> bool:
        result = await json_rpc(http_url(self.hostname, self.port), "eth_chainId")
        return isinstance(result, str) and int(result, 16) == self.cfg.chain_id
