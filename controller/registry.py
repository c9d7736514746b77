"""Inventory of the configured services of one topology."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, cast
from urllib.parse import urlsplit

from controller.dependencies import Dependencies, DependencyResolver
from controller.metadata import PHASES, ServiceKind
from core.config import (
    CoreCfg,
    DockerCfg,
    GanacheCfg,
    MachineCfg,
    ServiceCfgBase,
    Topology,
    WorkerCfg,
    WorkersCfg,
    load_topology,
)
from core.errors import ConfigurationError
from services import new_service
from services.dbdir import DBSignature, read_dbuuid
from services.worker import worker_name

if TYPE_CHECKING:
    from services.lifecycle import Service

# Consumers of shared stores and the config fields naming those stores.
SHARED_STORE_FIELDS: dict[str, tuple[str, ...]] = {
    "market": ("mongo_host", "redis_host"),
    "resultproxy": ("mongo_host",),
    "blockchainadapter": ("mongo_host",),
    "core": ("mongo_host",),
}

# Dataset name the market uses in every store it writes to.
MARKET_SIGNAME = "market"


def _canonical_host(hostname: str) -> str:
    return "localhost" if hostname in ("localhost", "127.0.0.1") else hostname.lower()


def host_key(host_or_url: str) -> str:
    """Normalise ``host:port`` or ``scheme://host:port/...`` to ``host:port``."""
    text = host_or_url if "://" in host_or_url else f"//{host_or_url}"
    parts = urlsplit(text)
    if parts.hostname is None or parts.port is None:
        raise ConfigurationError(f"Cannot extract host:port from '{host_or_url}'", host=host_or_url)
    return f"{_canonical_host(parts.hostname)}:{parts.port}"


class Inventory:
    """Resolved service configs of a topology, indexed for dependency lookups.

    Attributes:
        topology: Loaded topology (unsolved and resolved forms)
    """

    def __init__(self, topology: Topology) -> None:
        self.topology = topology
        cfg = topology.resolved
        self._configs: dict[str, ServiceCfgBase] = {}
        for svc in cfg.services:
            if svc.kind == "worker":
                raise ConfigurationError(
                    f"Workers are generated from the workers section, not declared ('{svc.name}')",
                    name=svc.name,
                )
            self._configs[svc.name] = svc
        self._unsolved: dict[str, ServiceCfgBase] = {svc.name: svc for svc in topology.unsolved.services}
        self._machines: dict[str, MachineCfg] = {machine.name: machine for machine in cfg.machines}
        self._host_index: dict[tuple[str, str], str] = {}
        for svc in self._configs.values():
            self._host_index[(svc.machine or cfg.default_machine, host_key(svc.host))] = svc.name

    @classmethod
    def from_file(cls, path: str | Path) -> Inventory:
        return cls(load_topology(path))

    # ---------------------------------------------------------------- machines

    @property
    def root_dir(self) -> Path:
        return self.topology.root_dir

    @property
    def marker(self) -> str:
        return str(self.topology.root_dir)

    @property
    def local_machine(self) -> MachineCfg:
        return self._machines[self.topology.resolved.local_machine]

    def machine(self, name: str) -> MachineCfg:
        try:
            return self._machines[name]
        except KeyError:
            raise ConfigurationError(f"Unknown machine '{name}'", machine=name) from None

    def machine_of(self, name: str) -> MachineCfg:
        return self.machine(self.get_config(name).machine or self.topology.resolved.default_machine)

    def is_local_machine(self, machine_name: str) -> bool:
        return machine_name == self.local_machine.name

    def is_local(self, name: str) -> bool:
        return self.is_local_machine(self.machine_of(name).name)

    # ----------------------------------------------------------------- configs

    def __contains__(self, name: object) -> bool:
        return name in self._configs

    def __len__(self) -> int:
        return len(self._configs)

    @property
    def size(self) -> int:
        return len(self._configs)

    def names(self) -> list[str]:
        return list(self._configs)

    def get_config(self, name: str) -> ServiceCfgBase:
        """Resolved config of ``name``.

        Raises:
            ConfigurationError: If name is not configured
        """
        try:
            return self._configs[name]
        except KeyError:
            raise ConfigurationError(f"Service '{name}' not found in inventory", name=name) from None

    def get_unsolved(self, name: str) -> ServiceCfgBase:
        self.get_config(name)
        return self._unsolved[name]

    def configs_of_kind(self, kind: ServiceKind | str) -> list[ServiceCfgBase]:
        return [cfg for cfg in self._configs.values() if getattr(cfg, "kind", None) == kind]

    def configs_by_phase(self) -> list[list[ServiceCfgBase]]:
        """Every configured service grouped by phase, first phase first."""
        return [
            [cfg for kind in phase for cfg in self.configs_of_kind(kind)]
            for phase in PHASES
        ]

    def config_name_from_host(self, host_or_url: str, machine: str | None = None) -> str:
        """Name of the service listening on ``host_or_url``.

        Raises:
            ConfigurationError: If no configured service matches
        """
        key = host_key(host_or_url)
        machine_name = machine or self.topology.resolved.default_machine
        name = self._host_index.get((machine_name, key))
        if name is None:
            matches = [n for (_, k), n in self._host_index.items() if k == key]
            if len(matches) == 1:
                name = matches[0]
        if name is None:
            raise ConfigurationError(f"No configured service listens on '{host_or_url}'", host=host_or_url)
        return name

    # -------------------------------------------------------------------- hubs

    def hubs(self) -> list[str]:
        return [alias for cfg in self.configs_of_kind("ganache") for alias in cast(GanacheCfg, cfg).hub_aliases()]

    def ganache_for_hub(self, hub: str) -> GanacheCfg:
        """Chain node config deploying ``hub``.

        Raises:
            ConfigurationError: If no chain node deploys the hub
        """
        for cfg in self.configs_of_kind("ganache"):
            ganache = cast(GanacheCfg, cfg)
            if hub in ganache.hub_aliases():
                return ganache
        raise ConfigurationError(f"Unknown hub '{hub}'", hub=hub)

    def hub_of_chain(self, chain: str) -> str:
        chains = self.topology.resolved.chains
        if chain not in chains:
            raise ConfigurationError(f"Unknown chain '{chain}'", chain=chain)
        return chains[chain].hub

    def default_hub(self) -> str:
        resolved = self.topology.resolved
        if resolved.workers is not None and resolved.workers.hub is not None:
            return resolved.workers.hub
        if resolved.default_chain is not None:
            return self.hub_of_chain(resolved.default_chain)
        hubs = self.hubs()
        if len(hubs) != 1:
            raise ConfigurationError("No default hub: declare default_chain or pass a hub")
        return hubs[0]

    def config_for_hub(self, kind: ServiceKind | str, hub: str) -> ServiceCfgBase:
        """The single config of ``kind`` bound to ``hub``.

        Raises:
            ConfigurationError: If the hub is unknown or zero/several configs match
        """
        self.ganache_for_hub(hub)
        found = [cfg for cfg in self.configs_of_kind(kind) if getattr(cfg, "hub", None) == hub]
        if len(found) != 1:
            raise ConfigurationError(
                f"Expected one {kind} for hub '{hub}', found {len(found)}", kind=kind, hub=hub
            )
        return found[0]

    def single_of_kind(self, kind: ServiceKind | str, machine: str | None = None) -> ServiceCfgBase:
        found = self.configs_of_kind(kind)
        if machine is not None and len(found) > 1:
            found = [cfg for cfg in found if cfg.machine == machine] or found
        if not found:
            raise ConfigurationError(f"No {kind} service is configured", kind=kind)
        return found[0]

    # ----------------------------------------------------------------- workers

    @property
    def workers_cfg(self) -> WorkersCfg:
        workers = self.topology.resolved.workers
        if workers is None:
            raise ConfigurationError("Topology has no workers section")
        return workers

    def worker_config(self, machine: str | None, hub: str | None, index: int) -> WorkerCfg:
        """Generate the config of worker ``index`` of ``hub`` on ``machine``.

        Raises:
            ConfigurationError: If the machine, hub, core or docker are missing
        """
        workers = self.workers_cfg
        if index < 0:
            raise ConfigurationError(f"Worker index must be >= 0, got {index}", index=index)
        machine_name = machine or workers.machine or self.topology.resolved.default_machine
        self.machine(machine_name)
        hub = hub or self.default_hub()
        core = cast(CoreCfg, self.config_for_hub("core", hub))
        docker = cast(DockerCfg, self.single_of_kind("docker", machine_name))
        name = worker_name(hub, index)
        return WorkerCfg(
            name=name,
            hostname="localhost",
            port=workers.port_base + index,
            machine=machine_name,
            repository=workers.repository,
            hub=hub,
            directory=workers.directory / name,
            core_url=f"http://{core.hostname}:{core.port}",
            docker_host=docker.host,
            wallet_index=workers.wallet_index_base + index,
        )

    # ---------------------------------------------------------------- services

    def new_service(self, name: str) -> Service:
        return self.service_for(self.get_config(name))

    def service_for(self, config: ServiceCfgBase) -> Service:
        machine = config.machine or self.topology.resolved.default_machine
        return new_service(config, local=self.is_local_machine(machine), marker=self.marker)

    def db_signatures(self, name: str) -> list[tuple[ServiceCfgBase, DBSignature]]:
        """Signatures ``name`` requires from the shared stores it uses.

        Signatures are named after the dataset (``mongo_db_name``, or
        ``market``) so every consumer of one database is checked against
        the same record.

        Returns:
            ``(store config, signature)`` pairs, one per store
        """
        cfg = self.get_config(name)
        kind = getattr(cfg, "kind", "")
        fields = SHARED_STORE_FIELDS.get(kind)
        if not fields:
            return []

        sig_fields: dict[str, object] = {}
        hub = getattr(cfg, "hub", None)
        if hub is not None:
            ganache = self.ganache_for_hub(hub)
            deploy = ganache.hub_deploy(hub)
            sig_fields.update(
                {
                    "chain_id": ganache.chain_id,
                    "hub": hub,
                    "asset": deploy.asset if deploy else None,
                    "kyc": deploy.kyc if deploy else None,
                    "upstream": read_dbuuid(ganache.directory),
                }
            )
        else:
            chains = sorted(getattr(cfg, "chains", []))
            sig_fields["chains"] = chains
            sig_fields["upstream"] = {
                hub_alias: read_dbuuid(self.ganache_for_hub(hub_alias).directory) for hub_alias in chains
            }
        db_name = getattr(cfg, "mongo_db_name", None)
        if db_name is not None:
            sig_fields["db_name"] = db_name
        # Keyed by dataset: two consumers of one database must agree.
        signame = db_name if db_name is not None else MARKET_SIGNAME

        pairs: list[tuple[ServiceCfgBase, DBSignature]] = []
        for field_name in fields:
            store = self.get_config(self.config_name_from_host(getattr(cfg, field_name), cfg.machine))
            pairs.append((store, DBSignature(name=signame, service_kind=kind, fields=dict(sig_fields))))
        return pairs

    def dependencies(self, name: str) -> Dependencies:
        return DependencyResolver(self).dependencies(name)

    def worker_dependencies(self, machine: str | None, hub: str | None, index: int) -> Dependencies:
        return DependencyResolver(self).worker_dependencies(machine, hub, index)
