"""Tests for the service inventory."""

from __future__ import annotations

from pathlib import Path

import pytest

from controller.registry import Inventory, host_key
from core.config import WorkerCfg
from core.errors import ConfigurationError
from services.dbdir import DBDirectory
from services.redis_service import RedisService
from tests.utils import HUB, build_inventory, build_topology_dict


class TestInventory:
    """Tests for Inventory."""

    @pytest.fixture
    def inventory(self, tmp_path: Path) -> Inventory:
        return build_inventory(tmp_path)

    def test_lookup_by_name(self, inventory: Inventory) -> None:
        assert inventory.get_config("redis").port == 6379
        assert "redis" in inventory
        assert len(inventory) == 10
        with pytest.raises(ConfigurationError, match="Service 'nope' not found in inventory"):
            inventory.get_config("nope")

    def test_lookup_by_host(self, inventory: Inventory) -> None:
        assert inventory.config_name_from_host("http://127.0.0.1:3000/version") == "market"
        assert inventory.config_name_from_host("localhost:27017") == "mongo"
        with pytest.raises(ConfigurationError):
            inventory.config_name_from_host("localhost:1")

    def test_hubs(self, inventory: Inventory) -> None:
        assert inventory.hubs() == [HUB]
        assert inventory.default_hub() == HUB
        assert inventory.hub_of_chain("dev") == HUB
        assert inventory.config_for_hub("core", HUB).name == f"core.{HUB}"
        assert inventory.ganache_for_hub(HUB).chain_id == 1337

    def test_configs_by_phase(self, inventory: Inventory) -> None:
        phases = inventory.configs_by_phase()

        assert [len(group) for group in phases] == [5, 1, 3, 1, 0]

    def test_worker_config(self, inventory: Inventory, tmp_path: Path) -> None:
        worker = inventory.worker_config(None, None, 3)

        assert isinstance(worker, WorkerCfg)
        assert worker.name == f"worker.3.{HUB}"
        assert worker.port == 13103
        assert worker.wallet_index == 13
        assert worker.core_url == "http://localhost:13000"
        assert worker.docker_host == "localhost:2375"
        assert worker.machine == "master"
        assert worker.directory == tmp_path.resolve() / "shared" / "workers" / worker.name

    def test_declared_worker_rejected(self, tmp_path: Path) -> None:
        topo = build_topology_dict()
        topo["services"].append(
            {
                "kind": "worker",
                "name": "worker.0",
                "port": 13100,
                "repository": "src/worker",
                "hub": HUB,
                "directory": "workers/0",
                "core_url": "http://localhost:13000",
                "docker_host": "localhost:2375",
                "wallet_index": 10,
            }
        )

        with pytest.raises(ConfigurationError, match="workers section"):
            build_inventory(tmp_path, topo)

    def test_service_for_uses_kind_strategy(self, inventory: Inventory) -> None:
        service = inventory.new_service("redis")

        assert isinstance(service, RedisService)
        assert service.local is True
        assert service.marker == str(inventory.root_dir)

    def test_db_signatures_of_core(self, inventory: Inventory) -> None:
        ganache = inventory.ganache_for_hub(HUB)
        dbuuid = DBDirectory.install("ganache", ganache.directory).dbuuid

        pairs = inventory.db_signatures(f"core.{HUB}")

        assert [store.name for store, _ in pairs] == ["mongo"]
        signature = pairs[0][1]
        assert signature.name == f"core.{HUB}"
        assert signature.fields == {
            "chain_id": 1337,
            "hub": HUB,
            "asset": "RLC",
            "kyc": False,
            "upstream": dbuuid,
            "db_name": "core",
        }

    def test_db_signatures_of_market(self, inventory: Inventory) -> None:
        pairs = inventory.db_signatures("market")

        assert [store.name for store, _ in pairs] == ["mongo", "redis"]
        assert pairs[0][1].fields == {"chains": [HUB], "upstream": {HUB: None}}

    def test_remote_machine_services(self, tmp_path: Path) -> None:
        topo = build_topology_dict(
            machines=[{"name": "master"}, {"name": "box", "ssh_host": "10.0.0.2", "workspace_dir": "/srv/lab"}]
        )
        next(svc for svc in topo["services"] if svc["name"] == "redis")["machine"] = "box"
        inventory = build_inventory(tmp_path, topo)

        assert not inventory.is_local("redis")
        assert inventory.is_local("mongo")
        assert inventory.new_service("redis").local is False


def test_host_key_normalises_loopback() -> None:
    assert host_key("127.0.0.1:80") == "localhost:80"
    assert host_key("http://LOCALHOST:8080/path") == "localhost:8080"
    with pytest.raises(ConfigurationError):
        host_key("localhost")
