from __future__ import annotations

import datetime as dt
import sys
from pathlib import Path
from typing import Iterable


def utc_now_iso() -> str:
    return (
        dt.datetime.now(dt.timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp.write_text(content, encoding="utf-8")
        tmp.replace(path)
    except Exception:
        # Never leave a partial rerun file behind.
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            pass
        raise


def read_arg_source(value: str) -> str:
    """Expand ``@path`` and ``-`` (stdin) flag values into their text."""
    if value == "-":
        return sys.stdin.read()
    if value.startswith("@"):
        path = Path(value[1:]).expanduser()
        return path.read_text(encoding="utf-8")
    return value


def split_identifiers(values: Iterable[str]) -> list[str]:
    out: list[str] = []
    for value in values:
        for item in value.split(","):
            item = item.strip()
            if item and item not in out:
                out.append(item)
    return out


def format_duration(seconds: float) -> str:
    return f"{seconds:.2f} sec"
