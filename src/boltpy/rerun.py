from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from boltpy.models import FileError, PlanResult, ResultSet, UsageError
from boltpy.utils import atomic_write_text

_log = logging.getLogger("bolt.rerun")

RERUN_STATUS_FILTERS = ("all", "failure", "success")


class RerunStore:
    """Persists the per-target outcome of the last run for ``--rerun``."""

    def __init__(self, path: str | Path, *, save: bool = True):
        self.path = Path(path)
        self.save = save
        self._data: list[dict[str, Any]] | None = None

    def _read(self) -> list[dict[str, Any]]:
        if self._data is not None:
            return self._data
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise FileError(
                f"Could not read rerun data from {self.path}. Use --save-rerun "
                f"for the initial run and make sure the file exists: {exc}",
                self.path,
            ) from exc
        if not isinstance(data, list):
            raise FileError(
                f"Could not read rerun data from {self.path}: expected a list of results",
                self.path,
            )
        self._data = [item for item in data if isinstance(item, dict)]
        return self._data

    def get_targets(self, filter: str) -> list[str]:
        if filter not in RERUN_STATUS_FILTERS:
            raise UsageError(f"Unexpected option {filter} for '--rerun'")
        records = self._read()
        if filter != "all":
            records = [item for item in records if item.get("status") == filter]
        return [str(item["target"]) for item in records if "target" in item]

    def update(self, result: ResultSet | PlanResult | None) -> None:
        if not self.save:
            _log.debug("rerun_skip path=%s reason=save_disabled", self.path)
            return

        result_set: ResultSet | None
        if isinstance(result, PlanResult):
            result_set = result.result_set
            if result_set is None and isinstance(result.value, ResultSet):
                result_set = result.value
        else:
            result_set = result

        if result_set is None:
            if self.path.exists():
                _log.warning(
                    "Run result did not contain target results; removing stale rerun file %s",
                    self.path,
                )
                self.path.unlink()
            return

        records = [
            {"target": item.target.name, "status": item.status} for item in result_set
        ]
        atomic_write_text(self.path, json.dumps(records, indent=2) + "\n")
        self._data = records
        _log.debug("rerun_write path=%s num_targets=%d", self.path, len(records))
