"""Install step: create directories and DB signatures before the first start."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from controller.contracts import ProgressCallback
from controller.registry import Inventory
from controller.remote import RemoteBridge
from services.dbdir import DBDirectory

logger = logging.getLogger(__name__)

InstallCallback = Callable[[str, str, int, int], None]


def sign_databases(inventory: Inventory, name: str) -> None:
    """Record the signatures ``name`` requires in the local shared stores it uses.

    Stores on other machines are skipped.

    Raises:
        ConflictError: If a store already records an incompatible signature
    """
    for store, signature in inventory.db_signatures(name):
        if not inventory.is_local(store.name):
            continue
        directory: Path = getattr(store, "directory")
        DBDirectory.load_or_install(getattr(store, "kind"), directory, signature)


class Installer:
    """Installs configured services locally or through the remote bridge."""

    def __init__(self, inventory: Inventory, remote: RemoteBridge | None = None) -> None:
        self.inventory = inventory
        self._remote = remote

    @property
    def remote(self) -> RemoteBridge:
        if self._remote is None:
            self._remote = RemoteBridge(self.inventory)
        return self._remote

    async def install(self, name: str, progress_cb: ProgressCallback | None = None) -> None:
        """Install one configured service.

        Raises:
            ConfigurationError: If name is unknown
            ConflictError: If a shared store records an incompatible signature
            RemoteOperationError: If the service lives on another machine and
                the remote install fails
        """
        if not self.inventory.is_local(name):
            await self.remote.install(name, progress_cb)
            return
        service = self.inventory.new_service(name)
        await service.install()
        sign_databases(self.inventory, name)
        logger.info("install.done", extra={"service": name, "kind": service.kind})

    async def install_worker(self, machine: str | None, hub: str | None, index: int) -> None:
        config = self.inventory.worker_config(machine, hub, index)
        machine_name = config.machine or self.inventory.local_machine.name
        if not self.inventory.is_local_machine(machine_name):
            await self.remote.install_worker(machine_name, config.hub, index)
            return
        await self.inventory.service_for(config).install()

    async def install_workers(self) -> int:
        """Install the ``workers.count`` configured workers; returns how many."""
        if self.inventory.topology.resolved.workers is None:
            return 0
        workers = self.inventory.workers_cfg
        for index in range(workers.count):
            await self.install_worker(workers.machine, workers.hub, index)
        return workers.count

    async def install_all(self, callback: InstallCallback | None = None) -> None:
        """Install every service sequentially in phase order, then the workers."""
        configs = [cfg for group in self.inventory.configs_by_phase() for cfg in group]
        total = len(configs)
        for index, config in enumerate(configs):
            if callback is not None:
                callback(config.name, getattr(config, "kind"), index, total)
            await self.install(config.name)
        await self.install_workers()
