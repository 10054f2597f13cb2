from __future__ import annotations

import fnmatch
import logging
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence
from urllib.parse import urlsplit

import yaml

from boltpy.config import Config
from boltpy.models import ConfigError, FileError, Target

_log = logging.getLogger("bolt.inventory")

_GLOB_CHARS = set("*?[")
_TRANSPORTS = ("ssh", "local")


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    merged = deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged


@dataclass
class _Group:
    name: str
    nodes: list[str] = field(default_factory=list)
    children: list[str] = field(default_factory=list)
    config: dict[str, Any] = field(default_factory=dict)


class Inventory:
    def __init__(
        self,
        data: Mapping[str, Any] | None = None,
        *,
        default_transport: str = "ssh",
        transport_config: Mapping[str, Mapping[str, Any]] | None = None,
    ):
        data = dict(data or {})
        self._default_transport = default_transport
        self._base_config: dict[str, Any] = {"transport": default_transport}
        for name, settings in (transport_config or {}).items():
            self._base_config[name] = dict(settings)
        self._base_config = deep_merge(self._base_config, self._mapping(data.get("config"), "config"))

        self._groups: dict[str, _Group] = {}
        self._node_order: list[str] = []
        self._node_config: dict[str, dict[str, Any]] = {}
        self._load_group(
            {"name": "all", "nodes": data.get("nodes"), "groups": data.get("groups")},
            inherited=self._base_config,
            root=True,
        )

    @staticmethod
    def _mapping(value: Any, label: str) -> dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            raise ConfigError(f"Inventory {label} must be a mapping")
        return {str(k): v for k, v in value.items()}

    def _load_group(self, raw: Any, *, inherited: dict[str, Any], root: bool = False) -> str:
        if not isinstance(raw, Mapping):
            raise ConfigError("Inventory groups must be mappings with a 'name'")
        name = raw.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ConfigError("Inventory group is missing a 'name'")
        if name in self._groups or (name == "all" and not root):
            raise ConfigError(f"Tried to redefine group {name}")

        group = _Group(name=name)
        self._groups[name] = group
        group_config = inherited if root else deep_merge(
            inherited, self._mapping(raw.get("config"), f"group {name} config")
        )
        group.config = group_config

        nodes = raw.get("nodes") or []
        if not isinstance(nodes, list):
            raise ConfigError(f"Nodes of group {name} must be a list")
        for entry in nodes:
            if isinstance(entry, str):
                node_name, node_config = entry, {}
            elif isinstance(entry, Mapping) and isinstance(entry.get("name"), str):
                node_name = entry["name"]
                node_config = self._mapping(entry.get("config"), f"node {node_name} config")
            else:
                raise ConfigError(f"Invalid node entry in group {name}: {entry!r}")
            group.nodes.append(node_name)
            if node_name not in self._node_config:
                self._node_order.append(node_name)
                self._node_config[node_name] = deep_merge(group_config, node_config)
            else:
                self._node_config[node_name] = deep_merge(
                    self._node_config[node_name], deep_merge(group_config, node_config)
                )

        children = raw.get("groups") or []
        if not isinstance(children, list):
            raise ConfigError(f"Groups of group {name} must be a list")
        for child in children:
            group.children.append(self._load_group(child, inherited=group_config))
        return name

    @classmethod
    def from_config(cls, config: Config) -> "Inventory":
        path = Path(config.inventoryfile) if config.inventoryfile else None
        data: dict[str, Any] = {}
        if path is not None and path.exists():
            try:
                loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError) as exc:
                raise FileError(f"Could not read inventory {path}: {exc}", path) from exc
            except yaml.YAMLError as exc:
                raise ConfigError(f"Could not parse inventory {path}: {exc}") from exc
            if loaded is not None and not isinstance(loaded, dict):
                raise ConfigError(f"Inventory {path} must be a mapping")
            data = loaded or {}
            _log.debug("inventory_loaded path=%s", path)
        return cls(
            data,
            default_transport=config.transport,
            transport_config=config.transports,
        )

    def node_names(self) -> set[str]:
        return set(self._node_order)

    def group_names(self) -> set[str]:
        return set(self._groups)

    def _group_nodes(self, name: str) -> list[str]:
        group = self._groups[name]
        if name == "all":
            return list(self._node_order)
        out = list(group.nodes)
        for child in group.children:
            out.extend(self._group_nodes(child))
        return out

    def _expand(self, identifier: str) -> list[str]:
        if identifier in self._groups:
            return self._group_nodes(identifier)
        if _GLOB_CHARS & set(identifier):
            matches = [name for name in self._node_order if fnmatch.fnmatchcase(name, identifier)]
            if not matches:
                raise ConfigError(f"No targets matched the pattern '{identifier}'")
            return matches
        return [identifier]

    def get_targets(self, identifiers: Sequence[str]) -> list[Target]:
        names: list[str] = []
        for identifier in identifiers:
            for item in str(identifier).split(","):
                item = item.strip()
                if not item:
                    continue
                for name in self._expand(item):
                    if name not in names:
                        names.append(name)
        return [self._build_target(name) for name in names]

    def _build_target(self, name: str) -> Target:
        config = self._node_config.get(name, self._base_config)
        uri = name if "://" in name else f"//{name}"
        parts = urlsplit(uri)
        transport = parts.scheme or str(config.get("transport") or self._default_transport)
        if transport not in _TRANSPORTS:
            raise ConfigError(f"Unknown transport '{transport}' for target {name}")
        options = dict(config.get(transport) or {})
        try:
            port = parts.port or options.get("port")
        except ValueError as exc:
            raise ConfigError(f"Invalid port in target {name}: {exc}") from exc
        return Target(
            name=name,
            uri=name,
            transport=transport,
            host=parts.hostname or options.get("host") or name,
            port=int(port) if port is not None else None,
            user=parts.username or options.get("user"),
            options=options,
        )
