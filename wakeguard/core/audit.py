from __future__ import annotations

import dataclasses
import enum
import json
import logging
from pathlib import Path
from typing import Any, Mapping


MAX_TEXT = 4000
MAX_LISTED_DEVICES = 50


def _plain(value: Any) -> Any:
    """JSON-friendly copy of a payload value (paths, flags, records, flag sets)."""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _plain(dataclasses.asdict(value))
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted(_plain(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, str) and len(value) > MAX_TEXT:
        return value[:MAX_TEXT] + f"... [truncated {len(value) - MAX_TEXT} chars]"
    return value


def _capped(ids: list[str]) -> list[str]:
    if len(ids) <= MAX_LISTED_DEVICES:
        return ids
    return ids[:MAX_LISTED_DEVICES] + [f"... {len(ids) - MAX_LISTED_DEVICES} more"]


def _group_devices(devices: list[Any]) -> dict[str, list[str]]:
    # Apply rows say "fixed", removal rows say "removed"
    ok: list[str] = []
    failed: list[str] = []
    for d in devices:
        if not isinstance(d, Mapping):
            continue
        iid = str(d.get("instance_id", ""))
        (ok if d.get("fixed", d.get("removed")) else failed).append(iid)
    return {"devices_ok": _capped(ok), "devices_failed": _capped(failed)}


def audit_record(action: str, payload: Mapping[str, Any]) -> dict[str, Any]:
    """Fields of one audit line.

    Per-device rows shrink to instance ids grouped by outcome, so a batch over
    every USB device still fits on one line.
    """
    record: dict[str, Any] = {"event": "audit", "action": action}
    for key, value in payload.items():
        if key == "devices" and isinstance(value, list):
            record.update(_group_devices(value))
        else:
            record[str(key)] = _plain(value)
    return record


def log_audit_event(logger: logging.Logger, action: str, payload: Mapping[str, Any]) -> None:
    try:
        logger.info("audit %s", json.dumps(audit_record(action, payload), sort_keys=True, default=str))
    except Exception as exc:
        logger.warning("audit log failed action=%s error=%s", action, exc)
