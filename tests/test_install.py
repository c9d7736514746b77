"""Tests for the install step and DB signature recording."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from controller.install import Installer, sign_databases
from controller.registry import Inventory
from core.errors import ConflictError
from services.dbdir import DBDirectory, DBSignature, read_dbuuid
from tests.utils import HUB, build_inventory, build_topology_dict, service_dict


@pytest.fixture
def inventory(tmp_path: Path) -> Inventory:
    return build_inventory(tmp_path)


def _directory(inventory: Inventory, name: str) -> Path:
    directory: Path = getattr(inventory.get_config(name), "directory")
    return directory


class TestInstaller:
    """Tests for Installer."""

    @pytest.mark.asyncio
    async def test_install_store_creates_db_directory(self, inventory: Inventory) -> None:
        await Installer(inventory).install("redis")

        assert read_dbuuid(_directory(inventory, "redis")) is not None

    @pytest.mark.asyncio
    async def test_install_consumer_signs_its_stores(self, inventory: Inventory) -> None:
        await Installer(inventory).install("market")

        mongo = DBDirectory.load("mongo", _directory(inventory, "mongo"))
        redis = DBDirectory.load("redis", _directory(inventory, "redis"))
        assert mongo.get_sig("market") is not None
        assert redis.used_by_kind("market")

    @pytest.mark.asyncio
    async def test_install_refuses_incompatible_store(self, inventory: Inventory) -> None:
        """Test a store recorded for chain 1338 cannot be reused for chain 1337."""
        stale = DBSignature(
            name="core",
            service_kind="core",
            fields={"chain_id": 1338, "hub": HUB, "asset": "RLC", "kyc": False, "upstream": None, "db_name": "core"},
        )
        mongo_dir = _directory(inventory, "mongo")
        DBDirectory.install("mongo", mongo_dir, stale)
        before = (mongo_dir / "chainlab-dbsig.json").read_bytes()

        with pytest.raises(ConflictError, match="chain_id"):
            await Installer(inventory).install(f"core.{HUB}")

        assert (mongo_dir / "chainlab-dbsig.json").read_bytes() == before

    @pytest.mark.asyncio
    async def test_install_all_runs_in_phase_order(self, inventory: Inventory) -> None:
        installed: list[str] = []
        seen: list[tuple[str, int, int]] = []

        def _factory(config: Any, *, local: bool = True, marker: str | None = None) -> MagicMock:
            service = MagicMock()
            service.kind = getattr(config, "kind")

            async def _install() -> None:
                installed.append(config.name)

            service.install = _install
            return service

        with patch("controller.registry.new_service", side_effect=_factory), patch(
            "controller.install.sign_databases"
        ) as sign:
            await Installer(inventory).install_all(lambda name, kind, i, total: seen.append((name, i, total)))

        assert installed[:5] == ["ganache.1337", "ipfs", "docker", "mongo", "redis"]
        assert installed[9] == f"core.{HUB}"
        assert installed[10:] == [f"worker.0.{HUB}", f"worker.1.{HUB}"]
        assert seen[0] == ("ganache.1337", 0, 10)
        assert sign.call_count == 10

    @pytest.mark.asyncio
    async def test_remote_service_installs_through_bridge(self, tmp_path: Path) -> None:
        topo = build_topology_dict(
            machines=[{"name": "master"}, {"name": "box", "ssh_host": "10.0.0.2", "workspace_dir": "/srv/lab"}]
        )
        service_dict(topo, "redis")["machine"] = "box"
        inventory = build_inventory(tmp_path, topo)
        remote = MagicMock()
        remote.install = AsyncMock(return_value=[])

        await Installer(inventory, remote=remote).install("redis")

        remote.install.assert_awaited_once_with("redis", None)
        assert not _directory(inventory, "redis").exists()


def test_consumers_sharing_a_database_must_agree(tmp_path: Path) -> None:
    """Test two hubs writing the same mongo database name are refused."""
    topo = build_topology_dict()
    service_dict(topo, "ganache.1337")["hubs"].append({"name": "enterprise", "asset": "ETH", "kyc": True})
    enterprise = dict(service_dict(topo, f"core.{HUB}"), name="core.1337.enterprise", port=13001, hub="1337.enterprise")
    topo["services"].append(enterprise)
    inventory = build_inventory(tmp_path, topo)

    sign_databases(inventory, f"core.{HUB}")
    mongo_dir = _directory(inventory, "mongo")
    before = (mongo_dir / "chainlab-dbsig.json").read_bytes()

    with pytest.raises(ConflictError, match="hub"):
        sign_databases(inventory, "core.1337.enterprise")

    assert (mongo_dir / "chainlab-dbsig.json").read_bytes() == before
    assert DBDirectory.load("mongo", mongo_dir).get_sig("core").fields["hub"] == HUB  # type: ignore[union-attr]


def test_consumers_of_distinct_databases_coexist(inventory: Inventory) -> None:
    sign_databases(inventory, f"core.{HUB}")
    sign_databases(inventory, f"resultproxy.{HUB}")
    sign_databases(inventory, "market")

    sigs = DBDirectory.load("mongo", _directory(inventory, "mongo")).signatures()
    assert sorted(sigs) == ["core", "market", "resultproxy"]


def test_sign_databases_skips_remote_stores(tmp_path: Path) -> None:
    topo = build_topology_dict(
        machines=[{"name": "master"}, {"name": "box", "ssh_host": "10.0.0.2", "workspace_dir": "/srv/lab"}]
    )
    service_dict(topo, "redis")["machine"] = "box"
    inventory = build_inventory(tmp_path, topo)

    sign_databases(inventory, "market")

    assert DBDirectory.load("mongo", _directory(inventory, "mongo")).get_sig("market") is not None
    assert not _directory(inventory, "redis").exists()
