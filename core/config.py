from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, ClassVar, Literal, Union, cast

from pydantic import BaseModel, Field, ValidationError

from core.errors import ConfigurationError

TOPOLOGY_BASENAME = "chainlab.yaml"
MASTER_MACHINE = "master"

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_FROZEN: dict[str, Any] = {"extra": "forbid", "frozen": True}


class HubDeployCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = _FROZEN

    name: str
    asset: Literal["RLC", "ETH"] = "RLC"
    kyc: bool = False


class ServiceCfgBase(BaseModel):
    """Fields shared by every service kind."""

    model_config: ClassVar[dict[str, Any]] = _FROZEN

    name: str
    hostname: str = "localhost"
    port: int = Field(gt=0, lt=65536)
    log_file: Path | None = None
    pid_file: Path | None = None
    machine: str | None = None

    @property
    def host(self) -> str:
        return f"{self.hostname}:{self.port}"

    def ports(self) -> list[int]:
        return [self.port]


class GanacheCfg(ServiceCfgBase):
    kind: Literal["ganache"] = "ganache"
    chain_id: int
    directory: Path
    hubs: list[HubDeployCfg] = Field(default_factory=list)
    mnemonic: str | None = None

    def hub_aliases(self) -> list[str]:
        return [f"{self.chain_id}.{hub.name}" for hub in self.hubs]

    def hub_deploy(self, alias: str) -> HubDeployCfg | None:
        for hub in self.hubs:
            if f"{self.chain_id}.{hub.name}" == alias:
                return hub
        return None


class IpfsCfg(ServiceCfgBase):
    kind: Literal["ipfs"] = "ipfs"
    directory: Path
    gateway_port: int = Field(gt=0, lt=65536)

    def ports(self) -> list[int]:
        return [self.port, self.gateway_port]


class DockerCfg(ServiceCfgBase):
    kind: Literal["docker"] = "docker"
    port: int = 2375


class MongoCfg(ServiceCfgBase):
    kind: Literal["mongo"] = "mongo"
    directory: Path


class RedisCfg(ServiceCfgBase):
    kind: Literal["redis"] = "redis"
    directory: Path


class MarketCfg(ServiceCfgBase):
    kind: Literal["market"] = "market"
    repository: Path
    mongo_host: str
    redis_host: str
    chains: list[str]


class HubServiceCfgBase(ServiceCfgBase):
    repository: Path
    hub: str


class SmsCfg(HubServiceCfgBase):
    kind: Literal["sms"] = "sms"
    directory: Path


class ResultProxyCfg(HubServiceCfgBase):
    kind: Literal["resultproxy"] = "resultproxy"
    mongo_host: str
    mongo_db_name: str
    ipfs_host: str


class BlockchainAdapterCfg(HubServiceCfgBase):
    kind: Literal["blockchainadapter"] = "blockchainadapter"
    mongo_host: str
    mongo_db_name: str
    market_api_url: str
    wallet_index: int = 0


class CoreCfg(HubServiceCfgBase):
    kind: Literal["core"] = "core"
    mongo_host: str
    mongo_db_name: str
    ipfs_host: str
    sms_url: str
    result_proxy_url: str
    blockchain_adapter_url: str
    wallet_index: int = 0


class WorkerCfg(HubServiceCfgBase):
    kind: Literal["worker"] = "worker"
    directory: Path
    core_url: str
    docker_host: str
    wallet_index: int


ServiceCfg = Annotated[
    Union[
        GanacheCfg,
        IpfsCfg,
        DockerCfg,
        MongoCfg,
        RedisCfg,
        MarketCfg,
        SmsCfg,
        ResultProxyCfg,
        BlockchainAdapterCfg,
        CoreCfg,
        WorkerCfg,
    ],
    Field(discriminator="kind"),
]


class MachineCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = _FROZEN

    name: str
    ssh_host: str | None = None
    ssh_user: str | None = None
    ssh_port: int = 22
    ssh_key_file: Path | None = None
    workspace_dir: str | None = None

    @property
    def is_master(self) -> bool:
        return self.name == MASTER_MACHINE

    @property
    def ssh_target(self) -> str:
        if self.ssh_host is None:
            raise ConfigurationError(f"Machine '{self.name}' has no ssh_host", machine=self.name)
        if self.ssh_user:
            return f"{self.ssh_user}@{self.ssh_host}"
        return self.ssh_host


class ChainCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = _FROZEN

    hub: str


class WorkersCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = _FROZEN

    directory: Path
    repository: Path
    port_base: int = 13100
    wallet_index_base: int = 10
    count: int = 0
    machine: str | None = None
    hub: str | None = None


class TopologyCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = _FROZEN

    root_dir: Path | None = None
    local_machine: str = MASTER_MACHINE
    default_machine: str = MASTER_MACHINE
    vars: dict[str, str] = Field(default_factory=dict)
    machines: list[MachineCfg] = Field(
        default_factory=lambda: [MachineCfg(name=MASTER_MACHINE)]
    )
    chains: dict[str, ChainCfg] = Field(default_factory=dict)
    default_chain: str | None = None
    services: list[ServiceCfg] = Field(default_factory=list)
    workers: WorkersCfg | None = None


@dataclass(frozen=True)
class Topology:
    """A loaded topology file in both its authored and resolved forms.

    Attributes:
        path: Topology file the configuration was read from
        root_dir: Absolute directory relative paths are resolved against
        unsolved: Configuration as authored (placeholders, relative paths)
        resolved: Configuration with placeholders substituted and absolute paths
    """

    path: Path
    root_dir: Path
    unsolved: TopologyCfg
    resolved: TopologyCfg


def split_hub_alias(alias: str) -> tuple[int, str]:
    """Split a ``"<chain_id>.<deploy name>"`` hub alias."""
    chain_id, sep, deploy = alias.partition(".")
    if not sep or not deploy or not chain_id.isdigit():
        raise ConfigurationError(f"Invalid hub alias '{alias}'", hub=alias)
    return int(chain_id), deploy


def _substitute(text: str, variables: dict[str, str]) -> str:
    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in variables:
            raise ConfigurationError(f"Unknown placeholder '${{{key}}}' in '{text}'", placeholder=key)
        return variables[key]

    return _PLACEHOLDER.sub(_replace, text)


def _resolve_value(value: Any, variables: dict[str, str], root_dir: Path) -> Any:
    if isinstance(value, Path):
        path = Path(_substitute(str(value), variables)).expanduser()
        if not path.is_absolute():
            path = root_dir / path
        return Path(os.path.normpath(path))
    if isinstance(value, str):
        return _substitute(value, variables)
    if isinstance(value, list):
        return [_resolve_value(item, variables, root_dir) for item in value]
    if isinstance(value, dict):
        return {key: _resolve_value(item, variables, root_dir) for key, item in value.items()}
    if isinstance(value, BaseModel):
        return _resolve_model(value, variables, root_dir)
    return value


def _resolve_model(model: BaseModel, variables: dict[str, str], root_dir: Path) -> Any:
    updates = {
        name: _resolve_value(getattr(model, name), variables, root_dir)
        for name in type(model).model_fields
    }
    return model.model_copy(update=updates)


def _build_variables(cfg: TopologyCfg, root_dir: Path) -> dict[str, str]:
    variables = {"rootDir": str(root_dir), "localMachine": cfg.local_machine}
    for key, raw in cfg.vars.items():
        variables[key] = _substitute(raw, variables)
    return variables


def resolve_topology(cfg: TopologyCfg, root_dir: Path) -> TopologyCfg:
    """Substitute placeholders, make paths absolute and assign default machines."""

    variables = _build_variables(cfg, root_dir)
    resolved = cast(TopologyCfg, _resolve_model(cfg.model_copy(update={"vars": {}}), variables, root_dir))
    services = [
        svc if svc.machine is not None else svc.model_copy(update={"machine": resolved.default_machine})
        for svc in resolved.services
    ]
    return resolved.model_copy(update={"root_dir": root_dir, "vars": variables, "services": services})


def validate_topology(cfg: TopologyCfg) -> None:
    """Check cross-service invariants of a resolved topology.

    Raises:
        ConfigurationError: On duplicate names, unknown machines or a
            ``hostname:port`` pair reused on one machine
    """
    machines = {machine.name for machine in cfg.machines}
    if len(machines) != len(cfg.machines):
        raise ConfigurationError("Duplicate machine names in topology")
    for required in (cfg.local_machine, cfg.default_machine):
        if required not in machines:
            raise ConfigurationError(f"Machine '{required}' is not declared", machine=required)

    names: set[str] = set()
    endpoints: dict[tuple[str, str, int], str] = {}
    for svc in cfg.services:
        if svc.name in names:
            raise ConfigurationError(f"Duplicate service name '{svc.name}'", name=svc.name)
        names.add(svc.name)
        machine = svc.machine or cfg.default_machine
        if machine not in machines:
            raise ConfigurationError(
                f"Service '{svc.name}' refers to unknown machine '{machine}'", name=svc.name
            )
        hostname = "localhost" if svc.hostname in ("127.0.0.1", "localhost") else svc.hostname
        for port in svc.ports():
            key = (machine, hostname, port)
            if key in endpoints:
                raise ConfigurationError(
                    f"Services '{endpoints[key]}' and '{svc.name}' share {hostname}:{port} "
                    f"on machine '{machine}'",
                    name=svc.name,
                    port=port,
                )
            endpoints[key] = svc.name

    if cfg.workers is not None and cfg.workers.machine is not None:
        if cfg.workers.machine not in machines:
            raise ConfigurationError(f"Workers refer to unknown machine '{cfg.workers.machine}'")
    if cfg.default_chain is not None and cfg.default_chain not in cfg.chains:
        raise ConfigurationError(f"Unknown default chain '{cfg.default_chain}'")


def _read_yaml(path: Path) -> dict[str, Any]:
    """Safe YAML read; returns {} if file missing/empty."""
    import yaml  # lazy import

    if not path.exists():
        return {}
    text = path.read_text(encoding="utf-8")
    data = yaml.safe_load(text)
    return data or {}


def load_topology(path: str | Path) -> Topology:
    """Load ``chainlab.yaml`` (or a directory containing it).

    Raises:
        FileNotFoundError: If the topology file is missing or empty
        ConfigurationError: If the file fails validation
    """

    topo_path = Path(path)
    if topo_path.is_dir():
        topo_path = topo_path / TOPOLOGY_BASENAME
    data = _read_yaml(topo_path)
    if not data:
        msg = f"Missing or empty topology file: {topo_path}"
        raise FileNotFoundError(msg)

    try:
        unsolved = TopologyCfg.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid topology file {topo_path}: {exc}") from exc

    return topology_from_config(unsolved, topo_path)


def topology_from_config(unsolved: TopologyCfg, path: Path) -> Topology:
    """Build a :class:`Topology` from an in-memory configuration."""

    base = path.parent.resolve()
    if unsolved.root_dir is None:
        root_dir = base
    elif unsolved.root_dir.is_absolute():
        root_dir = unsolved.root_dir
    else:
        root_dir = Path(os.path.normpath(base / unsolved.root_dir))

    resolved = resolve_topology(unsolved, root_dir)
    validate_topology(resolved)
    return Topology(path=path, root_dir=root_dir, unsolved=unsolved, resolved=resolved)
