from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml  # type: ignore[import-untyped]

from core.config import (
    GanacheCfg,
    MarketCfg,
    TopologyCfg,
    load_topology,
    split_hub_alias,
    topology_from_config,
)
from core.errors import ConfigurationError
from tests.utils import build_topology_dict, service_dict


def repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def _write(tmp_path: Path, topo: dict[str, Any]) -> Path:
    path = tmp_path / "chainlab.yaml"
    path.write_text(yaml.safe_dump(topo), encoding="utf-8")
    return path


def test_load_topology_from_repo() -> None:
    topology = load_topology(repo_root() / "config")

    assert topology.root_dir == repo_root()
    names = [svc.name for svc in topology.resolved.services]
    assert names[0] == "ganache.1337"
    assert "core.1337.standard" in names
    ganache = topology.resolved.services[0]
    assert isinstance(ganache, GanacheCfg)
    assert ganache.directory == repo_root() / "var" / "db" / "ganache.1337"
    assert ganache.hub_aliases() == ["1337.standard"]
    assert topology.resolved.workers is not None
    assert topology.resolved.workers.count == 2


def test_relative_paths_resolve_against_root(tmp_path: Path) -> None:
    topology = load_topology(_write(tmp_path, build_topology_dict()))

    market = next(svc for svc in topology.resolved.services if svc.name == "market")
    assert isinstance(market, MarketCfg)
    assert market.repository == tmp_path.resolve() / "src" / "market"
    assert market.machine == "master"
    unsolved = next(svc for svc in topology.unsolved.services if svc.name == "market")
    assert isinstance(unsolved, MarketCfg)
    assert unsolved.repository == Path("src/market")
    assert unsolved.machine is None


def test_placeholders_substituted(tmp_path: Path) -> None:
    topo = build_topology_dict(vars={"dataDir": "${rootDir}/data"})
    service_dict(topo, "mongo")["directory"] = "${dataDir}/mongo"

    topology = load_topology(_write(tmp_path, topo))

    mongo = next(svc for svc in topology.resolved.services if svc.name == "mongo")
    assert getattr(mongo, "directory") == tmp_path.resolve() / "data" / "mongo"
    assert topology.resolved.vars["dataDir"] == f"{tmp_path.resolve()}/data"


def test_unknown_placeholder_rejected(tmp_path: Path) -> None:
    topo = build_topology_dict()
    service_dict(topo, "mongo")["directory"] = "${nowhere}/mongo"

    with pytest.raises(ConfigurationError, match="nowhere"):
        load_topology(_write(tmp_path, topo))


def test_duplicate_service_name_rejected(tmp_path: Path) -> None:
    topo = build_topology_dict()
    clone = dict(service_dict(topo, "redis"), port=6380)
    topo["services"].append(clone)

    with pytest.raises(ConfigurationError, match="Duplicate service name 'redis'"):
        topology_from_config(TopologyCfg.model_validate(topo), tmp_path / "chainlab.yaml")


def test_port_clash_on_same_machine_rejected(tmp_path: Path) -> None:
    """Test localhost and 127.0.0.1 count as the same interface."""
    topo = build_topology_dict()
    topo["services"].append(
        {"kind": "redis", "name": "redis2", "hostname": "127.0.0.1", "port": 6379, "directory": "db/redis2"}
    )

    with pytest.raises(ConfigurationError, match="share localhost:6379"):
        topology_from_config(TopologyCfg.model_validate(topo), tmp_path / "chainlab.yaml")


def test_same_port_on_other_machine_allowed(tmp_path: Path) -> None:
    topo = build_topology_dict(machines=[{"name": "master"}, {"name": "box", "ssh_host": "10.0.0.2"}])
    topo["services"].append(
        {"kind": "redis", "name": "redis2", "port": 6379, "directory": "db/redis2", "machine": "box"}
    )

    topology = topology_from_config(TopologyCfg.model_validate(topo), tmp_path / "chainlab.yaml")

    assert len(topology.resolved.services) == len(topo["services"])


def test_unknown_machine_rejected(tmp_path: Path) -> None:
    topo = build_topology_dict()
    service_dict(topo, "redis")["machine"] = "ghost"

    with pytest.raises(ConfigurationError, match="unknown machine 'ghost'"):
        topology_from_config(TopologyCfg.model_validate(topo), tmp_path / "chainlab.yaml")


def test_unknown_field_rejected(tmp_path: Path) -> None:
    topo = build_topology_dict()
    service_dict(topo, "redis")["maxmemory"] = "1gb"

    with pytest.raises(ConfigurationError, match="Invalid topology file"):
        load_topology(_write(tmp_path, topo))


def test_missing_topology_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_topology(tmp_path)


def test_split_hub_alias() -> None:
    assert split_hub_alias("1337.standard") == (1337, "standard")
    with pytest.raises(ConfigurationError):
        split_hub_alias("standard")
