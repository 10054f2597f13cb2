"""Centralized logging configuration for bolt."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping

_STREAM_HANDLER_ID = "bolt_stream"
_FILE_HANDLER_ID = "bolt_file"
_FORMAT = "ts=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)s"


def _resolve_level(level: int | None) -> int:
    if level is not None:
        return level
    env_level = os.environ.get("BOLT_LOG_LEVEL", "").strip().upper()
    resolved = getattr(logging, env_level, None) if env_level else None
    if resolved is None:
        return logging.WARNING
    return int(resolved)


def _mark_handler(handler: logging.Handler, handler_id: str) -> None:
    setattr(handler, "_bolt_handler_id", handler_id)


def _get_handler(root: logging.Logger, handler_id: str) -> logging.Handler | None:
    for handler in root.handlers:
        if getattr(handler, "_bolt_handler_id", None) == handler_id:
            return handler
    return None


def _level_from_name(name: object, *, default: int) -> int:
    if not isinstance(name, str) or not name.strip():
        return default
    resolved = getattr(logging, name.strip().upper(), None)
    if not isinstance(resolved, int):
        return default
    return resolved


def setup_logging(*, level: int | None = None, log_file: str | Path | None = None) -> None:
    """Configure the root ``bolt`` logger.

    The console level can be set via the *level* parameter or the
    ``BOLT_LOG_LEVEL`` environment variable (DEBUG, INFO, WARNING, ERROR).
    A file handler is attached when *log_file* or ``BOLT_LOG_FILE`` is set;
    it logs at least INFO-level lifecycle events.
    """
    stream_level = _resolve_level(level)

    root = logging.getLogger("bolt")
    stream_handler = _get_handler(root, _STREAM_HANDLER_ID)
    if stream_handler is None:
        stream_handler = logging.StreamHandler()
        _mark_handler(stream_handler, _STREAM_HANDLER_ID)
        root.addHandler(stream_handler)
    stream_handler.setFormatter(logging.Formatter(_FORMAT))
    stream_handler.setLevel(stream_level)

    file_path_raw = str(log_file) if log_file else os.environ.get("BOLT_LOG_FILE", "").strip()
    file_level: int | None = None
    file_handler = _get_handler(root, _FILE_HANDLER_ID)
    if file_path_raw:
        file_path = Path(file_path_raw).expanduser().resolve()
        file_path.parent.mkdir(parents=True, exist_ok=True)
        if (
            file_handler is None
            or not isinstance(file_handler, logging.FileHandler)
            or Path(file_handler.baseFilename).resolve() != file_path
        ):
            if file_handler is not None:
                root.removeHandler(file_handler)
                file_handler.close()
            file_handler = logging.FileHandler(file_path, encoding="utf-8")
            _mark_handler(file_handler, _FILE_HANDLER_ID)
            root.addHandler(file_handler)
        file_level = min(stream_level, logging.INFO)
        file_handler.setFormatter(logging.Formatter(_FORMAT))
        file_handler.setLevel(file_level)
    elif file_handler is not None:
        root.removeHandler(file_handler)
        file_handler.close()

    effective_level = stream_level
    if file_level is not None:
        effective_level = min(effective_level, file_level)
    root.setLevel(effective_level)


def configure_logging(
    log_config: Mapping[str, Any],
    *,
    verbose: bool = False,
    debug: bool = False,
) -> None:
    """Apply the ``log`` section of ``bolt.yaml``.

    ``console.level`` sets the stream level; any other key is a log file path
    whose ``level`` applies to that file. ``--debug`` wins over the file
    config, ``--verbose`` raises the console to INFO.
    """
    console = log_config.get("console")
    console_level: int | None = None
    if isinstance(console, Mapping) and "level" in console:
        console_level = _level_from_name(console.get("level"), default=logging.WARNING)
    if verbose:
        console_level = min(console_level or logging.INFO, logging.INFO)
    if debug:
        console_level = logging.DEBUG

    log_file: str | None = None
    file_level: int | None = None
    for key, value in log_config.items():
        if key == "console":
            continue
        log_file = str(key)
        if isinstance(value, Mapping):
            file_level = _level_from_name(value.get("level"), default=logging.INFO)
        break

    setup_logging(level=console_level, log_file=log_file)
    if file_level is not None:
        root = logging.getLogger("bolt")
        handler = _get_handler(root, _FILE_HANDLER_ID)
        if handler is not None:
            handler.setLevel(file_level)
            root.setLevel(min(root.level, file_level))
