from __future__ import annotations

import logging
from pathlib import Path

import pytest

from boltpy._logging import configure_logging, setup_logging
from boltpy.config import Boltdir, Config, load_config
from boltpy.inventory import Inventory
from boltpy.models import ConfigError, FileError
from boltpy.request import parse_request


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content.strip() + "\n", encoding="utf-8")


def test_boltdir_find_walks_up_to_project_dir(tmp_path: Path) -> None:
    (tmp_path / "project" / "Boltdir").mkdir(parents=True)
    nested = tmp_path / "project" / "src" / "deep"
    nested.mkdir(parents=True)
    assert Boltdir.find(nested).path == (tmp_path / "project" / "Boltdir").resolve()

    _write(tmp_path / "other" / "bolt.yaml", "concurrency: 3")
    assert Boltdir.find(tmp_path / "other").path == (tmp_path / "other").resolve()


def test_config_defaults_follow_boltdir(tmp_path: Path) -> None:
    config = Config.from_boltdir(Boltdir(tmp_path))
    assert config.concurrency == 100
    assert config.format == "human"
    assert config.modulepath == [tmp_path / "modules", tmp_path / "site"]
    assert config.rerunfile == tmp_path / ".rerun.json"
    assert config.puppetfile == tmp_path / "Puppetfile"
    assert config.save_rerun is True


def test_config_file_values_and_cli_overrides(tmp_path: Path) -> None:
    _write(
        tmp_path / "bolt.yaml",
        """
concurrency: 5
format: json
color: false
save-rerun: false
modulepath: [mods]
transport: local
ssh:
  user: deploy
log:
  console:
    level: info
  bolt.log:
    level: debug
""",
    )
    request = parse_request(
        ["command", "run", "id", "-n", "a", "--boltdir", str(tmp_path), "-c", "9", "--format", "human"]
    )
    config = load_config(request)
    assert config.concurrency == 9
    assert config.format == "human"
    assert config.color is False
    assert config.save_rerun is False
    assert config.modulepath == [(tmp_path / "mods").resolve()]
    assert config.transport == "local"
    assert config.transports == {"ssh": {"user": "deploy"}}
    assert str((tmp_path / "bolt.log").resolve()) in config.log


def test_configfile_must_exist(tmp_path: Path) -> None:
    request = parse_request(["task", "show", "--configfile", str(tmp_path / "missing.yaml")])
    with pytest.raises(FileError, match="Could not read config file"):
        load_config(request)


def test_configfile_sets_project_directory(tmp_path: Path) -> None:
    _write(tmp_path / "conf" / "custom.yaml", "concurrency: 2")
    request = parse_request(["task", "show", "--configfile", str(tmp_path / "conf" / "custom.yaml")])
    config = load_config(request)
    assert config.concurrency == 2
    assert config.boltdir.path == (tmp_path / "conf").resolve()


def test_unknown_config_keys_are_rejected(tmp_path: Path) -> None:
    _write(tmp_path / "bolt.yaml", "concurency: 5")
    with pytest.raises(ConfigError, match="Unknown config keys: concurency"):
        Config.from_boltdir(Boltdir(tmp_path))


def test_bad_config_values_are_rejected(tmp_path: Path) -> None:
    _write(tmp_path / "bolt.yaml", "format: xml")
    with pytest.raises(ConfigError, match="format"):
        Config.from_boltdir(Boltdir(tmp_path))


def test_inventory_groups_inherit_config(tmp_path: Path) -> None:
    _write(
        tmp_path / "inventory.yaml",
        """
nodes: [bastion]
config:
  ssh:
    user: root
groups:
  - name: web
    nodes:
      - web1
      - name: web2
        config:
          ssh:
            port: 2222
    config:
      ssh:
        user: www
  - name: local_boxes
    nodes: ["local://box1"]
""",
    )
    inventory = Inventory.from_config(Config.from_boltdir(Boltdir(tmp_path)))
    assert inventory.group_names() == {"all", "web", "local_boxes"}
    assert inventory.node_names() == {"bastion", "web1", "web2", "local://box1"}

    bastion, web1, web2 = inventory.get_targets(["bastion", "web"])
    assert bastion.user == "root"
    assert web1.user == "www"
    assert (web2.user, web2.port) == ("www", 2222)

    (box,) = inventory.get_targets(["local_boxes"])
    assert box.transport == "local"
    assert box.host == "box1"


def test_inventory_globs_and_uris() -> None:
    inventory = Inventory({"nodes": ["web1", "web2", "db1"]})
    assert [t.name for t in inventory.get_targets(["web*"])] == ["web1", "web2"]
    (target,) = inventory.get_targets(["ops@10.0.0.5:2200"])
    assert (target.user, target.host, target.port, target.transport) == ("ops", "10.0.0.5", 2200, "ssh")
    with pytest.raises(ConfigError, match="No targets matched"):
        inventory.get_targets(["cache*"])


def test_inventory_rejects_duplicate_groups() -> None:
    with pytest.raises(ConfigError, match="Tried to redefine group web"):
        Inventory({"groups": [{"name": "web"}, {"name": "web"}]})


def test_setup_logging_respects_environment(monkeypatch, tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "bolt.log"
    monkeypatch.setenv("BOLT_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("BOLT_LOG_FILE", str(log_file))
    setup_logging()
    logging.getLogger("bolt.test").info("file_only_record")
    root = logging.getLogger("bolt")
    for handler in root.handlers:
        handler.flush()
    assert "msg=file_only_record" in log_file.read_text(encoding="utf-8")

    monkeypatch.delenv("BOLT_LOG_FILE")
    monkeypatch.delenv("BOLT_LOG_LEVEL")
    setup_logging()
    assert not any(isinstance(handler, logging.FileHandler) for handler in root.handlers)


def test_configure_logging_debug_wins(monkeypatch) -> None:
    monkeypatch.delenv("BOLT_LOG_FILE", raising=False)
    configure_logging({"console": {"level": "error"}}, debug=True)
    assert logging.getLogger("bolt").level == logging.DEBUG
    configure_logging({"console": {"level": "error"}})
    assert logging.getLogger("bolt").level == logging.ERROR
    setup_logging(level=logging.WARNING)
