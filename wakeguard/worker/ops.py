from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

from wakeguard.core.config import Configuration
from wakeguard.core.history import HistoryBatch, clear_history, read_history
from wakeguard.platform.devices import Device, enumerate_devices
from wakeguard.platform.powercfg import (
    OverrideFlag,
    OverrideRequest,
    list_overrides,
    reset_power_schemes,
    submit_override,
)
from wakeguard.platform.scheduler import TaskDefinition, register_task, task_exists, unregister_task


logger = logging.getLogger("wakeguard.worker.ops")


# ============================================================================
# Blacklist filter
# ============================================================================

def is_excluded(device: Device, cfg: Configuration) -> bool:
    """Either the instance id or the friendly name matching an entry excludes."""
    iid = device.instance_id.upper()
    name = device.friendly_name
    for e in cfg.blacklisted_devices:
        if e.instance_id.upper() == iid:
            return True
        if name and e.friendly_name and e.friendly_name == name:
            return True
    return False


def filter_blacklisted(devices: Iterable[Device], cfg: Configuration) -> tuple[list[Device], int]:
    included: list[Device] = []
    excluded = 0
    for d in devices:
        if is_excluded(d, cfg):
            logger.info("blacklisted skip name=%r id=%s", d.friendly_name, d.instance_id)
            excluded += 1
        else:
            included.append(d)
    return included, excluded


# ============================================================================
# Variant generation
# ============================================================================

FLAG_VARIANTS: tuple[frozenset[OverrideFlag], ...] = (
    frozenset({OverrideFlag.DISPLAY, OverrideFlag.SYSTEM, OverrideFlag.AWAYMODE}),
    frozenset({OverrideFlag.SYSTEM}),
    frozenset({OverrideFlag.DISPLAY, OverrideFlag.SYSTEM, OverrideFlag.AWAYMODE, OverrideFlag.EXECUTION}),
)


def identifier_variants(friendly_name: str, instance_id: str) -> list[str]:
    """Name alone, "name (instance)", instance alone; duplicates and blanks dropped."""
    name = friendly_name.strip()
    iid = instance_id.strip()
    candidates = []
    if name:
        candidates.append(name)
        if iid:
            candidates.append(f"{name} ({iid})")
    if iid:
        candidates.append(iid)

    out: list[str] = []
    for c in candidates:
        if c not in out:
            out.append(c)
    return out


def override_variants(friendly_name: str, instance_id: str) -> list[OverrideRequest]:
    return [
        OverrideRequest(identifier=ident, flags=flags)
        for ident in identifier_variants(friendly_name, instance_id)
        for flags in FLAG_VARIANTS
    ]


def removal_variants(friendly_name: str, instance_id: str, *, blank_flag: bool = True) -> list[OverrideRequest]:
    out = [OverrideRequest(identifier=ident) for ident in identifier_variants(friendly_name, instance_id)]
    if blank_flag and instance_id.strip():
        out.append(OverrideRequest(identifier=instance_id.strip(), blank_flag=True))
    return out


# ============================================================================
# Override application engine
# ============================================================================

SCHEME_RESET_SETTLE_SECONDS = 3


@dataclass(frozen=True)
class DeviceOutcome:
    device_name: str
    instance_id: str
    attempted: int
    succeeded: int

    @property
    def fixed(self) -> bool:
        return self.succeeded > 0


@dataclass
class BatchResult:
    category: str
    candidates: int = 0
    excluded: int = 0
    power_reset: bool | None = None  # None: not requested
    outcomes: list[DeviceOutcome] = field(default_factory=list)
    verified: int | None = None

    @property
    def fixed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.fixed)

    @property
    def status(self) -> str:
        if not self.outcomes:
            return "empty"
        fixed = self.fixed_count
        if fixed == len(self.outcomes):
            return "fixed"
        if fixed:
            return "partial"
        return "failed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "status": self.status,
            "candidates": self.candidates,
            "excluded": self.excluded,
            "fixed": self.fixed_count,
            "power_reset": self.power_reset,
            "verified": self.verified,
            "devices": [
                {
                    "name": o.device_name,
                    "instance_id": o.instance_id,
                    "fixed": o.fixed,
                    "variants_ok": o.succeeded,
                    "variants_tried": o.attempted,
                }
                for o in self.outcomes
            ],
        }


def _submit_all(requests: list[OverrideRequest]) -> int:
    """Submit every variant, no short-circuit; return how many were accepted."""
    ok = 0
    for req in requests:
        try:
            accepted = submit_override(req)
        except Exception as e:
            logger.warning("override variant error id=%r error=%s", req.identifier, e)
            accepted = False
        if accepted:
            ok += 1
    return ok


def apply_device(device: Device) -> DeviceOutcome:
    variants = override_variants(device.friendly_name, device.instance_id)
    ok = _submit_all(variants)
    logger.info(
        "apply device name=%r id=%s variants_ok=%d/%d",
        device.friendly_name,
        device.instance_id,
        ok,
        len(variants),
    )
    return DeviceOutcome(
        device_name=device.friendly_name,
        instance_id=device.instance_id,
        attempted=len(variants),
        succeeded=ok,
    )


def verify_overrides(outcomes: Iterable[DeviceOutcome]) -> int:
    """Count fixed devices visible in the DRIVER override listing (observability only)."""
    names = {o.name.upper() for o in list_overrides()}
    count = 0
    for o in outcomes:
        if not o.fixed:
            continue
        idents = identifier_variants(o.device_name, o.instance_id)
        if any(i.upper() in names for i in idents):
            count += 1
    return count


def apply_overrides(
    candidates: list[Device],
    cfg: Configuration,
    history_path: str | Path,
    *,
    category: str,
    excluded: int = 0,
    verify: bool = True,
) -> BatchResult:
    """Override every candidate and record the fixed ones as the new history.

    One device's failure never stops the batch.
    """
    result = BatchResult(category=category, candidates=len(candidates) + excluded, excluded=excluded)
    if not candidates:
        logger.info("apply nothing to do category=%s excluded=%d", category, excluded)
        return result

    if cfg.reset_power_options:
        logger.info("resetting power schemes to defaults")
        result.power_reset = reset_power_schemes()
        time.sleep(SCHEME_RESET_SETTLE_SECONDS)

    batch = HistoryBatch(history_path)
    for device in candidates:
        outcome = apply_device(device)
        result.outcomes.append(outcome)
        if outcome.fixed:
            batch.append(device.friendly_name, device.instance_id)

    if verify:
        try:
            result.verified = verify_overrides(result.outcomes)
            logger.info("verify listed=%d fixed=%d", result.verified, result.fixed_count)
        except Exception as e:
            logger.warning("verify failed error=%s", e)

    logger.info(
        "apply done category=%s status=%s fixed=%d/%d",
        category,
        result.status,
        result.fixed_count,
        len(result.outcomes),
    )
    return result


# ============================================================================
# Removal engine
# ============================================================================

@dataclass
class RemovalResult:
    mode: str
    outcomes: list[DeviceOutcome] = field(default_factory=list)
    history_cleared: bool = False

    @property
    def removed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.fixed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "attempted": len(self.outcomes),
            "removed": self.removed_count,
            "history_cleared": self.history_cleared,
            "devices": [
                {
                    "name": o.device_name,
                    "instance_id": o.instance_id,
                    "removed": o.fixed,
                    "variants_ok": o.succeeded,
                    "variants_tried": o.attempted,
                }
                for o in self.outcomes
            ],
        }


def remove_device(friendly_name: str, instance_id: str) -> DeviceOutcome:
    variants = removal_variants(friendly_name, instance_id)
    ok = _submit_all(variants)
    logger.info("remove device name=%r id=%s variants_ok=%d/%d", friendly_name, instance_id, ok, len(variants))
    return DeviceOutcome(device_name=friendly_name, instance_id=instance_id, attempted=len(variants), succeeded=ok)


def remove_recorded(history_path: str | Path) -> RemovalResult:
    """Safe undo: clear overrides for every history record, then forget them all."""
    result = RemovalResult(mode="safe")
    for rec in read_history(history_path):
        result.outcomes.append(remove_device(rec.device_name, rec.instance_id))
    clear_history(history_path)
    result.history_cleared = True
    return result


def remove_all_usb(devices: Iterable[Device], history_path: str | Path) -> RemovalResult:
    """Nuclear undo: clear overrides for every present USB device, recorded or not."""
    result = RemovalResult(mode="nuclear")
    for d in devices:
        if not d.is_usb:
            continue
        result.outcomes.append(remove_device(d.friendly_name, d.instance_id))
    clear_history(history_path)
    result.history_cleared = True
    return result


# ============================================================================
# Device readiness
# ============================================================================

AUTO_START_DELAY_SECONDS = 30
POLL_INTERVAL_SECONDS = 5
POLL_TIMEOUT_SECONDS = 120


def wait_fixed(seconds: float = AUTO_START_DELAY_SECONDS) -> None:
    logger.info("waiting %ss for device drivers", seconds)
    time.sleep(seconds)


def wait_until_stable(
    enumerate_fn: Callable[[], list[Device]] = enumerate_devices,
    *,
    interval: float = POLL_INTERVAL_SECONDS,
    timeout: float = POLL_TIMEOUT_SECONDS,
) -> bool:
    """Poll until two consecutive samples show the same set of USB devices.

    Returns False when the timeout elapses first; the caller proceeds anyway.
    """
    deadline = time.monotonic() + timeout
    previous: frozenset[str] | None = None
    while True:
        try:
            current = frozenset(d.instance_id for d in enumerate_fn() if d.is_usb and d.is_ok)
        except Exception as e:
            logger.warning("readiness poll enumeration failed error=%s", e)
            current = None
        if current is not None and current == previous:
            logger.info("devices stable count=%d", len(current))
            return True
        previous = current
        if time.monotonic() >= deadline:
            logger.warning("readiness poll timed out after %ss", timeout)
            return False
        time.sleep(interval)


# ============================================================================
# Persistence controller
# ============================================================================

PERSISTENCE_TASK_NAME = "WakeGuard USB Power Request Fix"
PERSISTENCE_STARTUP_DELAY_MINUTES = 2


def persistence_task(*, executable: str | None = None) -> TaskDefinition:
    """The boot task runs `apply --auto`, which reads persistenceMode from config at run time."""
    return TaskDefinition(
        name=PERSISTENCE_TASK_NAME,
        executable=executable or sys.executable,
        arguments=["-m", "wakeguard.worker.cli", "apply", "--auto"],
        startup_delay_minutes=PERSISTENCE_STARTUP_DELAY_MINUTES,
        run_as="SYSTEM",
        allow_on_batteries=True,
        require_network=False,
        description="Re-applies USB power request overrides after boot.",
    )


def persistence_status() -> str:
    return "registered" if task_exists(PERSISTENCE_TASK_NAME) else "unregistered"


def persistence_enable(cfg: Configuration) -> dict[str, Any]:
    if task_exists(PERSISTENCE_TASK_NAME):
        return {"state": "registered", "changed": False, "message": "Persistence is already enabled"}
    task = persistence_task()
    register_task(task)
    return {
        "state": "registered",
        "changed": True,
        "message": f"Scheduled {task.name!r} at startup (+{task.startup_delay_minutes} min, currently {cfg.persistence_mode})",
    }


def persistence_disable() -> dict[str, Any]:
    if not task_exists(PERSISTENCE_TASK_NAME):
        return {"state": "unregistered", "changed": False, "message": "Persistence is not enabled"}
    unregister_task(PERSISTENCE_TASK_NAME)
    return {"state": "unregistered", "changed": True, "message": f"Removed {PERSISTENCE_TASK_NAME!r}"}
