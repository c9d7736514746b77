"""Service kinds and the strategy registry used by the controller."""

from __future__ import annotations

from core.config import ServiceCfgBase
from core.errors import ConfigurationError
from services.docker import DockerService
from services.ganache import GanacheService
from services.ipfs import IpfsService
from services.lifecycle import LaunchCommand, Service
from services.market import MarketService
from services.mongo_service import MongoService
from services.redis_service import RedisService
from services.spring import BlockchainAdapterService, CoreService, ResultProxyService, SmsService
from services.worker import WorkerService

SERVICE_TYPES: dict[str, type[Service]] = {
    cls.kind: cls
    for cls in (
        GanacheService,
        IpfsService,
        DockerService,
        MongoService,
        RedisService,
        MarketService,
        SmsService,
        ResultProxyService,
        BlockchainAdapterService,
        CoreService,
        WorkerService,
    )
}


def service_type(kind: str) -> type[Service]:
    """Strategy class of ``kind``.

    Raises:
        ConfigurationError: If kind is unknown
    """
    try:
        return SERVICE_TYPES[kind]
    except KeyError:
        raise ConfigurationError(f"Unknown service kind '{kind}'", kind=kind) from None


def new_service(config: ServiceCfgBase, *, local: bool = True, marker: str | None = None) -> Service:
    kind = getattr(config, "kind", None)
    if kind is None:
        raise ConfigurationError(f"Config '{config.name}' has no kind", name=config.name)
    return service_type(kind)(config, local=local, marker=marker)


__all__ = [
    "SERVICE_TYPES",
    "LaunchCommand",
    "Service",
    "new_service",
    "service_type",
]
