"""Phased orchestration runner.

Services start phase by phase (infrastructure, market, hub services, core,
workers); services of one phase start concurrently and a phase begins only
once every service of the previous one is ready. Stops run the phases in
reverse order.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Sequence
from typing import Literal, TypeVar

from controller.contracts import (
    TERMINAL_STATES,
    ProgressCallback,
    ProgressEvent,
    ProgressValue,
    RunningProcess,
    StartResult,
    StopResult,
)
from controller.dependencies import Dependencies, DependencyResolver
from controller.install import sign_databases
from controller.metadata import (
    DB_SERVICE_KINDS,
    HUB_SERVICE_KINDS,
    SERVICE_KINDS,
    ServiceKind,
    is_service_kind,
    stop_plan,
)
from controller.registry import Inventory
from controller.remote import RemoteBridge
from core.config import ServiceCfgBase, WorkerCfg
from core.errors import ConfigurationError, OrchestrationError
from services import service_type
from services.lifecycle import stop_running
from services.worker import WorkerService, parse_worker_name

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Progress:
    """Shared ``{count, total}`` counter of one runner operation."""

    def __init__(self, total: int, callback: ProgressCallback | None) -> None:
        self.total = total
        self.count = 0
        self._callback = callback

    def __call__(self, value: ProgressValue) -> None:
        if value.state in TERMINAL_STATES and self.count < self.total:
            self.count += 1
        if self._callback is not None:
            self._callback(ProgressEvent(count=self.count, total=self.total, value=value))

    def relay(self, event: ProgressEvent) -> None:
        self(event.value)


async def _gather_phase(awaitables: Sequence[Awaitable[T]]) -> list[T]:
    """Run one phase; every sibling finishes before the first failure is raised."""
    outcomes = await asyncio.gather(*awaitables, return_exceptions=True)
    errors = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
    if errors:
        for error in errors[1:]:
            logger.error("runner.sibling_failed", extra={"error": str(error)})
        raise errors[0]
    return [outcome for outcome in outcomes if not isinstance(outcome, BaseException)]


class Runner:
    """One orchestration session over an inventory.

    A session runs one operation at a time and ``start_all`` at most once.

    Attributes:
        inventory: Services of the topology
        progress_cb: Receives a ProgressEvent for every state change
        abort: Optional event cancelling every wait once set
    """

    def __init__(
        self,
        inventory: Inventory,
        *,
        remote: RemoteBridge | None = None,
        progress_cb: ProgressCallback | None = None,
        abort: asyncio.Event | None = None,
    ) -> None:
        self.inventory = inventory
        self.resolver = DependencyResolver(inventory)
        self.progress_cb = progress_cb
        self.abort = abort
        self._remote = remote
        self._active: str | None = None
        self._start_all_called = False

    @property
    def remote(self) -> RemoteBridge:
        if self._remote is None:
            self._remote = RemoteBridge(self.inventory)
        return self._remote

    @contextlib.asynccontextmanager
    async def _operation(self, name: str) -> AsyncIterator[None]:
        if self._active is not None:
            raise OrchestrationError(
                f"Cannot run '{name}' while '{self._active}' is in progress", operation=name
            )
        self._active = name
        try:
            yield
        finally:
            self._active = None

    def _is_local(self, config: ServiceCfgBase) -> bool:
        machine = config.machine or self.inventory.topology.resolved.default_machine
        return self.inventory.is_local_machine(machine)

    # ------------------------------------------------------------------- start

    def _start_target(
        self,
        name: str | None,
        kind: str | None,
        hub: str | None,
        chain: str | None,
    ) -> tuple[str | None, Dependencies]:
        inv = self.inventory
        if name is not None:
            return name, self.resolver.dependencies(name)
        if chain is not None:
            chain_hub = inv.hub_of_chain(chain)
            if hub is not None and hub != chain_hub:
                raise ConfigurationError(f"Hub '{hub}' does not match chain '{chain}'", hub=hub, chain=chain)
            hub = chain_hub
        if kind == "sdk":
            if hub is None:
                raise ConfigurationError("Starting the sdk services requires a hub or a chain")
            return None, self.resolver.sdk_dependencies(hub)
        if kind is not None:
            if not is_service_kind(kind) or kind == "worker":
                raise ConfigurationError(f"Cannot start services of kind '{kind}' this way", kind=kind)
            if kind in HUB_SERVICE_KINDS:
                config = inv.config_for_hub(kind, hub or inv.default_hub())
            else:
                config = inv.single_of_kind(kind)
            return config.name, self.resolver.dependencies(config.name)
        if hub is not None:
            config = inv.config_for_hub("core", hub)
            return config.name, self.resolver.dependencies(config.name)
        raise ConfigurationError("Nothing to start: pass a name, a kind or a chain")

    async def start(
        self,
        name: str | None = None,
        *,
        kind: str | None = None,
        hub: str | None = None,
        chain: str | None = None,
        only_dependencies: bool = False,
        no_dependencies: bool = False,
    ) -> list[StartResult]:
        """Start a service (by name, kind + hub, or chain) with its dependencies.

        Args:
            name: Config name of the service
            kind: Kind to start, ``"sdk"`` for the client SDK set
            hub: Hub alias selecting hub-bound services
            chain: Chain alias, resolved to its hub
            only_dependencies: Start the dependencies, not the service itself
            no_dependencies: Start the service alone

        Returns:
            One StartResult per started (or already running) service

        Raises:
            ConfigurationError: On conflicting options or unknown names
        """
        if only_dependencies and no_dependencies:
            raise ConfigurationError("Conflicting options: only_dependencies and no_dependencies")
        async with self._operation("start"):
            target, deps = self._start_target(name, kind, hub, chain)
            if target is not None:
                config = self.inventory.get_config(target)
                if no_dependencies:
                    deps = Dependencies.of(config)
                elif only_dependencies:
                    deps = deps.without(target)
                    if self._is_local(config):
                        self.inventory.service_for(config).remove_stale_files()
            elif no_dependencies or only_dependencies:
                raise ConfigurationError("Dependency options require a single target service")
            return await self._start_deps(deps)

    async def start_all(self) -> list[StartResult]:
        """Start every configured service, then the configured workers.

        Raises:
            OrchestrationError: If called twice on the same runner
        """
        if self._start_all_called:
            raise OrchestrationError("start_all can only be called once per runner session")
        self._start_all_called = True
        async with self._operation("start_all"):
            deps = Dependencies.of(*(cfg for group in self.inventory.configs_by_phase() for cfg in group))
            workers = self.inventory.topology.resolved.workers
            if workers is not None:
                for index in range(workers.count):
                    deps.add(self.inventory.worker_config(workers.machine, workers.hub, index))
            return await self._start_deps(deps)

    async def start_worker(
        self,
        machine: str | None = None,
        hub: str | None = None,
        index: int = 0,
        *,
        only_dependencies: bool = False,
        no_dependencies: bool = False,
    ) -> list[StartResult]:
        if only_dependencies and no_dependencies:
            raise ConfigurationError("Conflicting options: only_dependencies and no_dependencies")
        async with self._operation("start_worker"):
            worker = self.inventory.worker_config(machine, hub, index)
            if no_dependencies:
                deps = Dependencies.of(worker)
            else:
                deps = self.resolver.worker_dependencies(machine, hub, index)
                if only_dependencies:
                    deps = deps.without(worker.name)
                    if self._is_local(worker):
                        self.inventory.service_for(worker).remove_stale_files()
            return await self._start_deps(deps)

    async def _start_deps(self, deps: Dependencies) -> list[StartResult]:
        progress = _Progress(deps.size, self.progress_cb)
        results: list[StartResult] = []
        for phase, group in enumerate(deps.phases()):
            logger.info(
                "runner.phase_start",
                extra={"phase": phase, "services": [cfg.name for cfg in group]},
            )
            results.extend(await _gather_phase([self._start_config(cfg, progress) for cfg in group]))
        return results

    async def _start_config(self, config: ServiceCfgBase, progress: _Progress) -> StartResult:
        kind = getattr(config, "kind")
        if not self._is_local(config):
            if isinstance(config, WorkerCfg):
                index, hub = parse_worker_name(config.name)
                events = await self.remote.start_worker(config.machine or "", hub, index, progress.relay)
            else:
                events = await self.remote.start(config.name, progress.relay)
            pid = next((event.value.pid for event in reversed(events) if event.value.pid), None)
            return StartResult(name=config.name, kind=kind, pid=pid, context={"machine": config.machine})

        if config.name in self.inventory:
            sign_databases(self.inventory, config.name)
        service = self.inventory.service_for(config)
        return await service.start(on_state=progress, abort=self.abort)

    # -------------------------------------------------------------------- stop

    async def stop(
        self,
        name: str | None = None,
        *,
        with_dependencies: bool = False,
        reset: bool = False,
        kill: bool = False,
    ) -> list[StopResult]:
        """Stop one service, optionally with its dependencies, or everything.

        ``name=None`` stops every running worker, then every configured
        service, last phase first.
        """
        async with self._operation("stop"):
            results: list[StopResult] = []
            if name is None:
                results.extend(await self._stop_workers(None, reset=reset, kill=kill))
                deps = Dependencies.of(*(cfg for group in self.inventory.configs_by_phase() for cfg in group))
            elif with_dependencies:
                deps = self.resolver.dependencies(name)
            else:
                deps = Dependencies.of(self.inventory.get_config(name))
            results.extend(await self._stop_deps(deps, reset=reset, kill=kill))
            return results

    async def _stop_deps(self, deps: Dependencies, *, reset: bool, kill: bool) -> list[StopResult]:
        progress = _Progress(deps.size, self.progress_cb)
        results: list[StopResult] = []
        for group in reversed(deps.phases()):
            results.extend(
                await _gather_phase([self._stop_config(cfg, progress, reset=reset, kill=kill) for cfg in group])
            )
        return results

    async def _stop_config(
        self,
        config: ServiceCfgBase,
        progress: _Progress,
        *,
        reset: bool,
        kill: bool,
    ) -> StopResult:
        kind = getattr(config, "kind")
        if not self._is_local(config):
            if isinstance(config, WorkerCfg):
                index, hub = parse_worker_name(config.name)
                events = await self.remote.stop_worker(
                    config.machine or "", hub, index, kill=kill, progress_cb=progress.relay
                )
            else:
                events = await self.remote.stop(config.name, reset=reset, kill=kill, progress_cb=progress.relay)
            pid = next((event.value.pid for event in reversed(events) if event.value.pid), None)
            return StopResult(name=config.name, kind=kind, pid=pid, killed=kill, context={"machine": config.machine})
        service = self.inventory.service_for(config)
        return await service.stop(kill=kill, reset=reset, on_state=progress, abort=self.abort)

    async def stop_any(
        self,
        kind: ServiceKind | Literal["all"] = "all",
        *,
        reset: bool = False,
    ) -> list[StopResult]:
        """Stop every running process of ``kind`` and of the kinds depending on it.

        Works from the process table only, so processes started by other
        topologies (or left over) are stopped too. The container daemon is
        never stopped.
        """
        async with self._operation("stop_any"):
            return await self._stop_any(kind, reset=reset, kill=False)

    async def kill_any(self) -> list[StopResult]:
        """SIGKILL every running service process of any kind, last phase first."""
        async with self._operation("kill_any"):
            return await self._stop_any("all", reset=False, kill=True)

    async def _stop_any(
        self,
        kind: ServiceKind | Literal["all"],
        *,
        reset: bool,
        kill: bool,
    ) -> list[StopResult]:
        if kind != "all" and not is_service_kind(kind):
            raise ConfigurationError(f"Unknown service kind '{kind}'", kind=kind)
        plan = stop_plan(kind)
        running: dict[str, list[RunningProcess]] = {}
        for group in plan:
            for group_kind in group:
                running[group_kind] = await service_type(group_kind).running()
        progress = _Progress(sum(len(procs) for procs in running.values()), self.progress_cb)

        results: list[StopResult] = []
        for group in plan:
            procs = [proc for group_kind in group for proc in running[group_kind]]
            if procs:
                results.extend(
                    await _gather_phase([self._stop_process(proc, progress, reset=reset, kill=kill) for proc in procs])
                )
        logger.info("runner.stop_any_done", extra={"kind": kind, "stopped": len(results), "kill": kill})
        return results

    async def _stop_process(
        self,
        proc: RunningProcess,
        progress: _Progress,
        *,
        reset: bool,
        kill: bool,
    ) -> StopResult:
        if proc.service is not None:
            return await proc.service.stop(kill=kill, reset=reset, on_state=progress, abort=self.abort)
        result = await stop_running(proc, kill=kill)
        progress(
            ProgressValue(
                state="killed" if kill else "stopped",
                kind=proc.kind,
                pid=proc.pid,
                succeeded=True,
            )
        )
        return result

    async def stop_all_workers(
        self,
        hub: str | None = None,
        *,
        reset: bool = False,
        kill: bool = False,
    ) -> list[StopResult]:
        """Stop every running worker process, optionally only those of ``hub``."""
        async with self._operation("stop_all_workers"):
            return await self._stop_workers(hub, reset=reset, kill=kill)

    async def _stop_workers(self, hub: str | None, *, reset: bool, kill: bool) -> list[StopResult]:
        procs = await WorkerService.running({"hub": hub} if hub is not None else None)
        progress = _Progress(len(procs), self.progress_cb)
        if not procs:
            return []
        return await _gather_phase([self._stop_process(proc, progress, reset=reset, kill=kill) for proc in procs])

    async def stop_worker(
        self,
        machine: str | None = None,
        hub: str | None = None,
        index: int = 0,
        *,
        kill: bool = False,
    ) -> StopResult:
        async with self._operation("stop_worker"):
            worker = self.inventory.worker_config(machine, hub, index)
            progress = _Progress(1, self.progress_cb)
            return await self._stop_config(worker, progress, reset=False, kill=kill)

    # ------------------------------------------------------------------- reset

    async def reset_all(self) -> list[str]:
        """Stop everything, then wipe every local data-owning directory.

        Returns:
            Names of the services whose data was reset
        """
        async with self._operation("reset_all"):
            await self._stop_any("all", reset=False, kill=False)
            reset: list[str] = []
            for kind in DB_SERVICE_KINDS:
                for config in self.inventory.configs_of_kind(kind):
                    if not self._is_local(config):
                        logger.warning("runner.reset_skipped_remote", extra={"service": config.name})
                        continue
                    await self.inventory.service_for(config).reset_db()
                    reset.append(config.name)
            return reset

    # -------------------------------------------------------------------- show

    async def show(self) -> dict[str, list[RunningProcess]]:
        """Running processes of every kind, from the process table."""
        return {kind: await service_type(kind).running() for kind in SERVICE_KINDS}
