from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from boltpy.models import Target, TargetResult
from boltpy.utils import utc_now_iso

EVENT_SCHEMA_VERSION = 1

_COMMON_REQUIRED_FIELDS: tuple[str, ...] = ("schema_version", "type", "time")

_EVENT_REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "node_start": ("target", "action"),
    "node_result": ("target", "result"),
    "plan_start": ("plan",),
    "plan_finish": ("plan", "status"),
    "step_start": ("plan", "step", "num_targets"),
    "message": ("message",),
}


def build_event(event_type: str, **fields: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "schema_version": EVENT_SCHEMA_VERSION,
        "type": event_type,
        "time": utc_now_iso(),
    }
    payload.update(fields)
    return validate_event(payload)


def validate_event(event: Mapping[str, Any]) -> dict[str, Any]:
    payload = dict(event)
    event_type = payload.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise ValueError("Executor event is missing a non-empty 'type' field")

    required_fields = _EVENT_REQUIRED_FIELDS.get(event_type)
    if required_fields is None:
        raise ValueError(f"Unsupported executor event '{event_type}'")

    schema_version = payload.get("schema_version")
    if schema_version != EVENT_SCHEMA_VERSION:
        raise ValueError(
            f"Executor event '{event_type}' must use schema_version="
            f"{EVENT_SCHEMA_VERSION}, got {schema_version!r}"
        )

    missing = [field for field in _COMMON_REQUIRED_FIELDS if field not in payload]
    missing.extend(field for field in required_fields if field not in payload)
    if missing:
        raise ValueError(
            f"Executor event '{event_type}' is missing required fields: {sorted(missing)}"
        )

    if event_type in ("node_start", "node_result") and not isinstance(
        payload.get("target"), Target
    ):
        raise ValueError(f"Executor event '{event_type}' requires a Target 'target'")
    if event_type == "node_result" and not isinstance(payload.get("result"), TargetResult):
        raise ValueError("Executor event 'node_result' requires a TargetResult 'result'")
    return payload
