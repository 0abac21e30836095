from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal

from wakeguard.core.errors import ConfigIOError


PersistenceMode = Literal["Audio", "All"]

CONFIG_VERSION = 2
PERSISTENCE_MODES: tuple[PersistenceMode, ...] = ("Audio", "All")
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("wakeguard.worker.config")


@dataclass(frozen=True)
class BlacklistEntry:
    friendly_name: str
    instance_id: str
    device_class: str
    date_added: str


@dataclass
class Configuration:
    reset_power_options: bool = False
    blacklisted_devices: list[BlacklistEntry] = field(default_factory=list)
    persistence_mode: PersistenceMode = "Audio"
    version: int = CONFIG_VERSION

    @property
    def persistence_category(self) -> str:
        """Classifier category token for the boot-time run."""
        return self.persistence_mode.lower()


# Settable from the CLI: field name on disk -> attribute name
SETTABLE_FIELDS = {
    "resetPowerOptions": "reset_power_options",
    "persistenceMode": "persistence_mode",
}


def _entry_from_raw(raw: Any) -> BlacklistEntry | None:
    if not isinstance(raw, dict):
        return None
    instance_id = str(raw.get("instanceId") or raw.get("InstanceId") or "").strip()
    if not instance_id:
        return None
    return BlacklistEntry(
        friendly_name=str(raw.get("friendlyName") or raw.get("FriendlyName") or ""),
        instance_id=instance_id,
        device_class=str(raw.get("deviceClass") or raw.get("Class") or ""),
        date_added=str(raw.get("dateAdded") or raw.get("DateAdded") or ""),
    )


def _normalize_mode(raw: Any) -> PersistenceMode:
    s = str(raw or "").strip().lower()
    for mode in PERSISTENCE_MODES:
        if mode.lower() == s:
            return mode
    return "Audio"


def _strict_bool(raw: Any, name: str) -> bool:
    if isinstance(raw, bool):
        return raw
    logger.warning("config field %s is not a boolean (%r); using false", name, raw)
    return False


def _migrate_v1(data: dict[str, Any]) -> dict[str, Any]:
    """Version 1 files (or files without a version) used PascalCase keys and
    could omit any field."""
    out = dict(data)
    for old, new in (
        ("ResetPowerOptions", "resetPowerOptions"),
        ("BlacklistedDevices", "blacklistedDevices"),
        ("PersistenceMode", "persistenceMode"),
    ):
        if new not in out and old in out:
            out[new] = out.pop(old)
    out["version"] = 2
    return out


_MIGRATIONS = {
    1: _migrate_v1,
}


def parse_config(data: Any) -> Configuration:
    if not isinstance(data, dict):
        raise ValueError("config must be a JSON object")

    try:
        version = int(data.get("version", 1))
    except (TypeError, ValueError):
        version = 1
    version = max(version, 1)
    if version > CONFIG_VERSION:
        logger.warning("config version %s is newer than supported %s; reading known fields", version, CONFIG_VERSION)
    while version < CONFIG_VERSION:
        data = _MIGRATIONS[version](data)
        version = int(data["version"])

    entries: list[BlacklistEntry] = []
    seen: set[str] = set()
    raw_list = data.get("blacklistedDevices", [])
    if not isinstance(raw_list, list):
        raw_list = []
    for raw in raw_list:
        entry = _entry_from_raw(raw)
        if entry is None or entry.instance_id.upper() in seen:
            continue
        seen.add(entry.instance_id.upper())
        entries.append(entry)

    return Configuration(
        reset_power_options=_strict_bool(data.get("resetPowerOptions", False), "resetPowerOptions"),
        blacklisted_devices=entries,
        persistence_mode=_normalize_mode(data.get("persistenceMode")),
        version=CONFIG_VERSION,
    )


def config_to_dict(cfg: Configuration) -> dict[str, Any]:
    return {
        "version": CONFIG_VERSION,
        "resetPowerOptions": cfg.reset_power_options,
        "persistenceMode": cfg.persistence_mode,
        "blacklistedDevices": [
            {
                "friendlyName": e.friendly_name,
                "instanceId": e.instance_id,
                "deviceClass": e.device_class,
                "dateAdded": e.date_added,
            }
            for e in cfg.blacklisted_devices
        ],
    }


def load_config(path: str | Path) -> Configuration:
    """Load settings; anything missing or unreadable falls back to defaults.

    The file is not rewritten here, a migrated config reaches disk on the next save.
    """
    p = Path(path)
    if not p.exists():
        return Configuration()
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
        return parse_config(data)
    except (OSError, ValueError) as e:
        logger.warning("config load failed path=%s error=%s; using defaults", p, e)
        return Configuration()


def save_config(path: str | Path, cfg: Configuration) -> None:
    p = Path(path)
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(config_to_dict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    except OSError as e:
        raise ConfigIOError(f"Failed to save configuration to {p}: {e}") from e


def set_field(cfg: Configuration, name: str, value: str) -> Configuration:
    attr = SETTABLE_FIELDS.get(name)
    if attr is None:
        raise ValueError(f"Unknown or read-only setting: {name}")

    if attr == "reset_power_options":
        v = value.strip().lower()
        if v in ("1", "true", "yes", "on"):
            return replace(cfg, reset_power_options=True)
        if v in ("0", "false", "no", "off"):
            return replace(cfg, reset_power_options=False)
        raise ValueError(f"Not a boolean: {value!r}")

    s = value.strip().lower()
    for mode in PERSISTENCE_MODES:
        if mode.lower() == s:
            return replace(cfg, persistence_mode=mode)
    raise ValueError(f"persistenceMode must be one of {', '.join(PERSISTENCE_MODES)}")


def is_blacklisted(cfg: Configuration, instance_id: str) -> bool:
    key = instance_id.upper()
    return any(e.instance_id.upper() == key for e in cfg.blacklisted_devices)


def add_blacklist_entry(
    cfg: Configuration,
    *,
    instance_id: str,
    friendly_name: str = "",
    device_class: str = "",
) -> tuple[Configuration, bool]:
    """Return (new config, added). Adding an already listed instance is a no-op."""
    if is_blacklisted(cfg, instance_id):
        return cfg, False
    entry = BlacklistEntry(
        friendly_name=friendly_name,
        instance_id=instance_id,
        device_class=device_class,
        date_added=time.strftime(DATE_FORMAT),
    )
    return replace(cfg, blacklisted_devices=[*cfg.blacklisted_devices, entry]), True


def remove_blacklist_entry(cfg: Configuration, instance_id: str) -> tuple[Configuration, bool]:
    key = instance_id.upper()
    kept = [e for e in cfg.blacklisted_devices if e.instance_id.upper() != key]
    return replace(cfg, blacklisted_devices=kept), len(kept) != len(cfg.blacklisted_devices)
