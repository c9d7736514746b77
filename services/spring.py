"""Java (spring boot) hub services: sms, result proxy, blockchain adapter, core."""

from __future__ import annotations

from pathlib import Path
from typing import ClassVar, cast

from core.config import (
    BlockchainAdapterCfg,
    CoreCfg,
    HubServiceCfgBase,
    ResultProxyCfg,
    SmsCfg,
    split_hub_alias,
)
from core.errors import CannotStartError
from services.discovery import executable_name
from services.lifecycle import Service
from services.probes import host_ip, http_ok, http_url
from services.stores import DBService


def find_jar(repository: Path) -> Path | None:
    """Newest executable jar of a gradle build (``-plain`` jars excluded)."""
    candidates = [
        path
        for folder in (repository / "build" / "libs", repository)
        if folder.is_dir()
        for path in folder.glob("*.jar")
        if not path.name.endswith("-plain.jar")
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda path: (path.stat().st_mtime, path.name))


def mongo_url(mongo_host: str, db_name: str) -> str:
    return f"mongodb://{mongo_host}/{db_name}"


class SpringService(Service):
    """``java -Dchainlab.kind=<kind> -jar <repository jar>``.

    The ``-Dchainlab.kind`` property is the argv signature: every spring
    service runs the same executable.
    """

    ready_poll_interval = 2.0
    ready_max_polls = 150
    stop_max_polls = 30
    log_failure_patterns = (("Task :bootRun FAILED",), ("APPLICATION FAILED TO START",))

    @property
    def hub_cfg(self) -> HubServiceCfgBase:
        return cast(HubServiceCfgBase, self.config)

    @property
    def chain_id(self) -> int:
        return split_hub_alias(self.hub_cfg.hub)[0]

    @classmethod
    def kind_property(cls) -> str:
        return f"-Dchainlab.kind={cls.kind}"

    @classmethod
    def matches(cls, cmdline: tuple[str, ...]) -> bool:
        return executable_name(cmdline) == "java" and cls.kind_property() in cmdline

    def jar_file(self) -> Path | None:
        return find_jar(self.hub_cfg.repository)

    def missing_start_config(self) -> list[str]:
        if self.jar_file() is None:
            return ["jar"]
        return []

    def build_argv(self) -> tuple[str, ...]:
        jar = self.jar_file()
        if jar is None:
            raise CannotStartError(
                f"{self.kind} '{self.name}': no jar found in {self.hub_cfg.repository}",
                name=self.name,
            )
        return (
            "java",
            self.kind_property(),
            f"-Dserver.address={host_ip(self.hostname)}",
            f"-Dserver.port={self.port}",
            "-jar",
            str(jar),
        )

    def working_dir(self) -> Path | None:
        return self.hub_cfg.repository

    def spring_env(self) -> dict[str, str]:
        return {}

    def kind_env(self) -> dict[str, str]:
        env = {"IEXEC_CHAIN_ID": str(self.chain_id), "IEXEC_HUB_ALIAS": self.hub_cfg.hub}
        env.update(self.spring_env())
        return env

    async def is_ready(self) -> bool:
        return await http_ok(http_url(self.hostname, self.port, "/version"))


class SmsService(SpringService, DBService):
    """Secret management service; keeps its database in an owned DB directory."""

    kind: ClassVar[str] = "sms"
    config_type = SmsCfg

    def spring_env(self) -> dict[str, str]:
        return {"IEXEC_SMS_STORAGE_DIR": str(self.data_dir)}


class ResultProxyService(SpringService):
    kind: ClassVar[str] = "resultproxy"
    config_type = ResultProxyCfg

    def spring_env(self) -> dict[str, str]:
        cfg = cast(ResultProxyCfg, self.config)
        return {
            "IEXEC_MONGO_URL": mongo_url(cfg.mongo_host, cfg.mongo_db_name),
            "IEXEC_IPFS_URL": f"http://{cfg.ipfs_host}",
        }


class BlockchainAdapterService(SpringService):
    kind: ClassVar[str] = "blockchainadapter"
    config_type = BlockchainAdapterCfg

    def spring_env(self) -> dict[str, str]:
        cfg = cast(BlockchainAdapterCfg, self.config)
        return {
            "IEXEC_MONGO_URL": mongo_url(cfg.mongo_host, cfg.mongo_db_name),
            "IEXEC_MARKET_API_URL": cfg.market_api_url,
            "IEXEC_WALLET_INDEX": str(cfg.wallet_index),
        }


class CoreService(SpringService):
    """Scheduler; the last non-worker phase."""

    kind: ClassVar[str] = "core"
    config_type = CoreCfg

    def spring_env(self) -> dict[str, str]:
        cfg = cast(CoreCfg, self.config)
        return {
            "IEXEC_MONGO_URL": mongo_url(cfg.mongo_host, cfg.mongo_db_name),
            "IEXEC_IPFS_URL": f"http://{cfg.ipfs_host}",
            "IEXEC_SMS_URL": cfg.sms_url,
            "IEXEC_RESULT_PROXY_URL": cfg.result_proxy_url,
            "IEXEC_BLOCKCHAIN_ADAPTER_URL": cfg.blockchain_adapter_url,
            "IEXEC_WALLET_INDEX": str(cfg.wallet_index),
        }
