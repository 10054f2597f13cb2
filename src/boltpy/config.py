from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from boltpy.models import ConfigError, ExecutionRequest, FileError

DEFAULT_BOLTDIR = Path("~/.puppetlabs/bolt")
DEFAULT_CONCURRENCY = 100
CONFIG_ALLOWED_KEYS = {
    "concurrency",
    "format",
    "color",
    "trace",
    "modulepath",
    "inventoryfile",
    "rerunfile",
    "save-rerun",
    "puppetfile",
    "log",
    "transport",
    "ssh",
    "local",
    "puppetdb",
}
_ALLOWED_FORMATS = {"human", "json"}
_ALLOWED_TRANSPORTS = {"ssh", "local"}


@dataclass(frozen=True)
class Boltdir:
    path: Path

    @property
    def config_file(self) -> Path:
        return self.path / "bolt.yaml"

    @property
    def inventory_file(self) -> Path:
        return self.path / "inventory.yaml"

    @property
    def rerun_file(self) -> Path:
        return self.path / ".rerun.json"

    @property
    def puppetfile(self) -> Path:
        return self.path / "Puppetfile"

    @property
    def modulepath(self) -> list[Path]:
        return [self.path / "modules", self.path / "site"]

    @classmethod
    def default(cls) -> "Boltdir":
        return cls(DEFAULT_BOLTDIR.expanduser())

    @classmethod
    def find(cls, start: str | Path) -> "Boltdir":
        """Walk up from *start* looking for a ``Boltdir`` dir or ``bolt.yaml``."""
        current = Path(start).expanduser().resolve()
        for directory in (current, *current.parents):
            if (directory / "Boltdir").is_dir():
                return cls(directory / "Boltdir")
            if (directory / "bolt.yaml").is_file():
                return cls(directory)
        return cls.default()


def _require_mapping(value: Any, *, label: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"{label} must be a mapping")
    return {str(k): v for k, v in value.items()}


def _coerce_optional_bool(value: Any, *, label: str) -> bool | None:
    if value is None:
        return None
    if not isinstance(value, bool):
        raise ConfigError(f"{label} must be a boolean")
    return value


def _coerce_positive_int(value: Any, *, label: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{label} must be an integer")
    if value <= 0:
        raise ConfigError(f"{label} must be positive")
    return int(value)


def _coerce_choice(value: Any, *, label: str, allowed: set[str]) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str) or value not in allowed:
        raise ConfigError(f"{label} must be one of {', '.join(sorted(allowed))}")
    return value


def _coerce_path(value: Any, *, label: str, base: Path) -> Path | None:
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label} must be a path string")
    path = Path(value.strip()).expanduser()
    return path if path.is_absolute() else (base / path).resolve()


def _coerce_path_list(value: Any, *, label: str, base: Path) -> list[Path] | None:
    if value is None:
        return None
    if isinstance(value, str):
        items: list[Any] = value.split(":")
    elif isinstance(value, list):
        items = value
    else:
        raise ConfigError(f"{label} must be a list of paths or a ':'-separated string")
    out: list[Path] = []
    for item in items:
        path = _coerce_path(item, label=label, base=base)
        if path is not None:
            out.append(path)
    return out


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        raise FileError(f"Could not read config file {path}: {exc}", path) from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Could not parse config file {path}: {exc}") from exc
    if raw is None:
        return {}
    return _require_mapping(raw, label=str(path))


@dataclass
class Config:
    boltdir: Boltdir
    concurrency: int = DEFAULT_CONCURRENCY
    format: str = "human"
    color: bool = True
    trace: bool = False
    modulepath: list[Path] = field(default_factory=list)
    inventoryfile: Path | None = None
    rerunfile: Path | None = None
    save_rerun: bool = True
    puppetfile: Path | None = None
    log: dict[str, Any] = field(default_factory=dict)
    transport: str = "ssh"
    transports: dict[str, dict[str, Any]] = field(default_factory=dict)
    puppetdb: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.modulepath:
            self.modulepath = list(self.boltdir.modulepath)
        if self.inventoryfile is None:
            self.inventoryfile = self.boltdir.inventory_file
        if self.rerunfile is None:
            self.rerunfile = self.boltdir.rerun_file
        if self.puppetfile is None:
            self.puppetfile = self.boltdir.puppetfile

    @classmethod
    def from_boltdir(
        cls, boltdir: Boltdir, request: ExecutionRequest | None = None
    ) -> "Config":
        data: dict[str, Any] = {}
        if boltdir.config_file.exists():
            data = _load_yaml(boltdir.config_file)
        config = cls._from_data(boltdir, data, base=boltdir.path)
        if request is not None:
            config.apply_overrides(request)
        return config

    @classmethod
    def from_file(cls, path: str | Path, request: ExecutionRequest | None = None) -> "Config":
        config_path = Path(path).expanduser().resolve()
        if not config_path.is_file():
            raise FileError(f"Could not read config file {config_path}", config_path)
        data = _load_yaml(config_path)
        config = cls._from_data(Boltdir(config_path.parent), data, base=config_path.parent)
        if request is not None:
            config.apply_overrides(request)
        return config

    @classmethod
    def _from_data(cls, boltdir: Boltdir, data: dict[str, Any], *, base: Path) -> "Config":
        unknown = sorted(set(data) - CONFIG_ALLOWED_KEYS)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

        transports: dict[str, dict[str, Any]] = {}
        for name in sorted(_ALLOWED_TRANSPORTS):
            if name in data:
                transports[name] = _require_mapping(data[name], label=name)

        log = _require_mapping(data.get("log") or {}, label="log")
        resolved_log: dict[str, Any] = {}
        for key, value in log.items():
            if key == "console":
                resolved_log[key] = _require_mapping(value or {}, label="log.console")
                continue
            log_path = _coerce_path(key, label="log file", base=base)
            resolved_log[str(log_path)] = _require_mapping(value or {}, label=f"log.{key}")

        config = cls(
            boltdir=boltdir,
            concurrency=_coerce_positive_int(data.get("concurrency"), label="concurrency")
            or DEFAULT_CONCURRENCY,
            format=_coerce_choice(data.get("format"), label="format", allowed=_ALLOWED_FORMATS)
            or "human",
            trace=bool(_coerce_optional_bool(data.get("trace"), label="trace")),
            modulepath=_coerce_path_list(data.get("modulepath"), label="modulepath", base=base)
            or [],
            inventoryfile=_coerce_path(data.get("inventoryfile"), label="inventoryfile", base=base),
            rerunfile=_coerce_path(data.get("rerunfile"), label="rerunfile", base=base),
            puppetfile=_coerce_path(data.get("puppetfile"), label="puppetfile", base=base),
            log=resolved_log,
            transport=_coerce_choice(
                data.get("transport"), label="transport", allowed=_ALLOWED_TRANSPORTS
            )
            or "ssh",
            transports=transports,
            puppetdb=_require_mapping(data.get("puppetdb") or {}, label="puppetdb"),
        )
        color = _coerce_optional_bool(data.get("color"), label="color")
        if color is not None:
            config.color = color
        save_rerun = _coerce_optional_bool(data.get("save-rerun"), label="save-rerun")
        if save_rerun is not None:
            config.save_rerun = save_rerun
        return config

    def apply_overrides(self, request: ExecutionRequest) -> None:
        if request.concurrency is not None:
            self.concurrency = (
                _coerce_positive_int(request.concurrency, label="--concurrency")
                or self.concurrency
            )
        if request.format is not None:
            self.format = request.format
        if request.color is not None:
            self.color = request.color
        if request.trace:
            self.trace = True
        if request.save_rerun is not None:
            self.save_rerun = request.save_rerun
        if request.modulepath:
            self.modulepath = [Path(item).expanduser().resolve() for item in request.modulepath]
        if request.inventoryfile:
            self.inventoryfile = Path(request.inventoryfile).expanduser().resolve()


def load_config(request: ExecutionRequest, *, cwd: str | Path = ".") -> Config:
    if request.configfile:
        return Config.from_file(request.configfile, request)
    if request.boltdir:
        boltdir = Boltdir(Path(request.boltdir).expanduser().resolve())
    else:
        boltdir = Boltdir.find(cwd)
    return Config.from_boltdir(boltdir, request)
