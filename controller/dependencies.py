"""Dependency resolution over the inventory.

Dependencies are derived from configs only: hosts and URLs a service points
at are mapped back to config names. A dependency must be of a kind the
dependent may require (see ``KIND_REQUIRES``), which also guarantees it lives
in a strictly earlier phase, so the graph is acyclic by construction.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, cast

from controller.metadata import KIND_REQUIRES, PHASES, SDK_KINDS, ServiceKind, phase_of
from core.config import (
    BlockchainAdapterCfg,
    CoreCfg,
    MarketCfg,
    ResultProxyCfg,
    ServiceCfgBase,
    SmsCfg,
    WorkerCfg,
)
from core.errors import ConfigurationError

if TYPE_CHECKING:
    from controller.registry import Inventory


def _kind(config: ServiceCfgBase) -> ServiceKind:
    return cast(ServiceKind, getattr(config, "kind"))


@dataclass
class Dependencies:
    """Services required by an operation, grouped by kind.

    Attributes:
        by_kind: kind -> ordered ``{name: config}``
        workers: worker name -> generated worker config
    """

    by_kind: dict[ServiceKind, dict[str, ServiceCfgBase]] = field(default_factory=dict)
    workers: dict[str, WorkerCfg] = field(default_factory=dict)

    def add(self, config: ServiceCfgBase) -> None:
        if isinstance(config, WorkerCfg):
            self.workers[config.name] = config
            return
        self.by_kind.setdefault(_kind(config), {})[config.name] = config

    def names(self, kind: ServiceKind) -> list[str]:
        if kind == "worker":
            return list(self.workers)
        return list(self.by_kind.get(kind, {}))

    def __contains__(self, name: object) -> bool:
        return name in self.workers or any(name in group for group in self.by_kind.values())

    def __len__(self) -> int:
        return self.size

    @property
    def size(self) -> int:
        return len(self.workers) + sum(len(group) for group in self.by_kind.values())

    def __iter__(self) -> Iterator[ServiceCfgBase]:
        for group in self.phases():
            yield from group

    def phases(self) -> list[list[ServiceCfgBase]]:
        """Non-empty groups of configs in phase order (workers last)."""
        groups: list[list[ServiceCfgBase]] = []
        for phase in PHASES:
            group: list[ServiceCfgBase] = []
            for kind in phase:
                if kind == "worker":
                    group.extend(self.workers.values())
                else:
                    group.extend(self.by_kind.get(kind, {}).values())
            if group:
                groups.append(group)
        return groups

    def without(self, name: str) -> Dependencies:
        """Copy with ``name`` removed."""
        copy = Dependencies()
        for config in self:
            if config.name != name:
                copy.add(config)
        return copy

    def non_workers(self) -> Dependencies:
        copy = Dependencies()
        for config in self:
            if not isinstance(config, WorkerCfg):
                copy.add(config)
        return copy

    @classmethod
    def of(cls, *configs: ServiceCfgBase) -> Dependencies:
        deps = cls()
        for config in configs:
            deps.add(config)
        return deps


class DependencyResolver:
    """Computes transitive requirements of named services and workers."""

    def __init__(self, inventory: Inventory) -> None:
        self.inventory = inventory

    def _host(self, config: ServiceCfgBase, host_or_url: str) -> str:
        return self.inventory.config_name_from_host(host_or_url, config.machine)

    def direct_requirements(self, config: ServiceCfgBase) -> list[str]:
        """Names of the services ``config`` points at directly.

        Raises:
            ConfigurationError: If a host, URL or hub cannot be resolved
        """
        inv = self.inventory
        if isinstance(config, MarketCfg):
            names = [inv.ganache_for_hub(hub).name for hub in config.chains]
            return [*names, self._host(config, config.mongo_host), self._host(config, config.redis_host)]
        if isinstance(config, SmsCfg):
            return [inv.single_of_kind("ipfs", config.machine).name, inv.ganache_for_hub(config.hub).name]
        if isinstance(config, ResultProxyCfg):
            return [
                self._host(config, config.ipfs_host),
                inv.ganache_for_hub(config.hub).name,
                self._host(config, config.mongo_host),
            ]
        if isinstance(config, BlockchainAdapterCfg):
            return [
                inv.ganache_for_hub(config.hub).name,
                self._host(config, config.market_api_url),
                self._host(config, config.mongo_host),
            ]
        if isinstance(config, CoreCfg):
            return [
                inv.single_of_kind("docker", config.machine).name,
                inv.ganache_for_hub(config.hub).name,
                self._host(config, config.ipfs_host),
                self._host(config, config.mongo_host),
                self._host(config, config.sms_url),
                self._host(config, config.result_proxy_url),
                self._host(config, config.blockchain_adapter_url),
            ]
        if isinstance(config, WorkerCfg):
            return [self._host(config, config.docker_host), self._host(config, config.core_url)]
        return []

    def _check_edge(self, config: ServiceCfgBase, dependency: ServiceCfgBase) -> None:
        kind, dep_kind = _kind(config), _kind(dependency)
        if dep_kind not in KIND_REQUIRES[kind] or phase_of(dep_kind) >= phase_of(kind):
            raise ConfigurationError(
                f"{kind} '{config.name}' cannot depend on {dep_kind} '{dependency.name}'",
                name=config.name,
                dependency=dependency.name,
            )

    def _collect(self, config: ServiceCfgBase, deps: Dependencies) -> None:
        if config.name in deps:
            return
        deps.add(config)
        for dep_name in self.direct_requirements(config):
            dependency = self.inventory.get_config(dep_name)
            self._check_edge(config, dependency)
            self._collect(dependency, deps)

    def dependencies(self, name: str) -> Dependencies:
        """Transitive requirements of ``name``, the service itself included.

        Raises:
            ConfigurationError: On unknown names, hubs, hosts or invalid edges
        """
        deps = Dependencies()
        self._collect(self.inventory.get_config(name), deps)
        return deps

    def worker_dependencies(self, machine: str | None, hub: str | None, index: int) -> Dependencies:
        """Requirements of one worker plus the worker itself."""
        worker = self.inventory.worker_config(machine, hub, index)
        deps = Dependencies()
        self._collect(worker, deps)
        return deps

    def sdk_dependencies(self, hub: str) -> Dependencies:
        """Everything a client SDK needs to talk to ``hub``."""
        inv = self.inventory
        deps = Dependencies()
        for kind in SDK_KINDS:
            if kind in ("sms", "resultproxy"):
                config = inv.config_for_hub(kind, hub)
            elif kind == "market":
                markets = [cfg for cfg in inv.configs_of_kind("market") if hub in cast(MarketCfg, cfg).chains]
                if not markets:
                    raise ConfigurationError(f"No market serves hub '{hub}'", hub=hub)
                config = markets[0]
            else:
                config = inv.single_of_kind(kind)
            self._collect(config, deps)
        return deps
