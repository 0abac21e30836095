from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from wakeguard.categories import CATEGORIES, classify_devices, eligible, get_category
from wakeguard.core.audit import log_audit_event
from wakeguard.core.config import (
    SETTABLE_FIELDS,
    Configuration,
    add_blacklist_entry,
    config_to_dict,
    load_config,
    remove_blacklist_entry,
    save_config,
    set_field,
)
from wakeguard.core.errors import PrivilegeError, WakeGuardError
from wakeguard.core.history import read_history
from wakeguard.core.paths import Paths, default_paths, user_log_dir
from wakeguard.platform.detect import dump_detect, is_elevated
from wakeguard.platform.devices import enumerate_devices
from wakeguard.platform.powercfg import active_driver_blockers, list_overrides
from wakeguard.worker.ops import (
    apply_overrides,
    filter_blacklisted,
    is_excluded,
    persistence_disable,
    persistence_enable,
    persistence_status,
    remove_all_usb,
    remove_recorded,
    wait_fixed,
    wait_until_stable,
)


_LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def _paths(args: argparse.Namespace) -> Paths:
    state_dir = getattr(args, "state_dir", None)
    if state_dir:
        return Paths(state_dir=state_dir)
    return default_paths()


def _file_handler(path: Path) -> logging.FileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    return logging.FileHandler(os.path.abspath(path), encoding="utf-8")


def _setup_worker_logging(paths: Paths) -> logging.Logger:
    logger = logging.getLogger("wakeguard")
    key = os.path.abspath(paths.worker_log)
    for h in list(logger.handlers):
        # A new state dir (tests, --state-dir) replaces the old worker log
        marker = getattr(h, "_wakeguard_worker", None)
        if marker and marker != key:
            logger.removeHandler(h)
            h.close()

    shared_error: OSError | None = None
    if not any(getattr(h, "_wakeguard_worker", None) for h in logger.handlers):
        try:
            handler = _file_handler(paths.worker_log)
        except OSError as e:
            shared_error = e
            handler = _file_handler(user_log_dir() / "worker.log")
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._wakeguard_worker = key  # type: ignore[attr-defined]
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

    worker = logging.getLogger("wakeguard.worker")
    if shared_error is not None:
        worker.warning("shared log not writable path=%s error=%s; logging per user", key, shared_error)
    worker.info("start elevated=%s argv=%s", is_elevated(), " ".join(sys.argv))
    return worker


def _attach_operation_log(paths: Paths) -> logging.Handler:
    """Transcript of one unattended run; truncated every time."""
    paths.log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(paths.persistence_log, mode="w", encoding="utf-8")
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    logging.getLogger("wakeguard").addHandler(handler)
    return handler


def _log_audit_event(action: str, payload: dict[str, Any]) -> None:
    logger = logging.getLogger("wakeguard.worker")
    log_audit_event(logger, action, payload)


def _require_admin() -> None:
    if not is_elevated():
        raise PrivilegeError("This command must run as Administrator (elevated prompt).")


def _confirm(args: argparse.Namespace, prompt: str) -> bool:
    if getattr(args, "yes", False):
        return True
    if not sys.stdin or not sys.stdin.isatty():
        return False
    answer = input(f"{prompt} [y/N] ").strip().lower()
    return answer in ("y", "yes")


def _emit(payload: dict[str, Any]) -> None:
    print(json.dumps({"schema": 1, **payload}, indent=2))


def _device_dict(d: Any, cfg: Configuration | None = None) -> dict[str, Any]:
    out = {
        "name": d.friendly_name,
        "instance_id": d.instance_id,
        "class": d.device_class,
        "status": d.status,
        "driver_provider": d.driver_provider,
        "driver_date": d.driver_date,
    }
    if cfg is not None:
        out["blacklisted"] = is_excluded(d, cfg)
    return out


def cmd_detect(_: argparse.Namespace) -> int:
    print(json.dumps(dump_detect(), indent=2, sort_keys=True))
    return 0


def cmd_scan(args: argparse.Namespace) -> int:
    paths = _paths(args)
    cfg = load_config(paths.config_file)
    devices = enumerate_devices()
    if args.category:
        shown = classify_devices(devices, args.category)
    else:
        shown = [d for d in devices if eligible(d)]
    _emit({
        "category": args.category,
        "count": len(shown),
        "devices": [_device_dict(d, cfg) for d in shown],
    })
    return 0


def cmd_apply(args: argparse.Namespace) -> int:
    logger = logging.getLogger("wakeguard.worker")
    paths = _paths(args)
    op_handler = _attach_operation_log(paths) if args.auto else None
    try:
        _require_admin()
        cfg = load_config(paths.config_file)
        category = args.category or (cfg.persistence_category if args.auto else "audio")
        get_category(category)

        if args.auto:
            logger.info("unattended apply category=%s wait=%s", category, args.wait)
            if args.wait == "poll":
                wait_until_stable()
            else:
                wait_fixed()
        elif not _confirm(args, f"Apply power request overrides to {CATEGORIES[category].title}?"):
            _emit({"applied": False, "message": "Cancelled"})
            return 0

        classified = classify_devices(enumerate_devices(), category)
        candidates, excluded = filter_blacklisted(classified, cfg)
        result = apply_overrides(
            candidates,
            cfg,
            paths.history_file,
            category=category,
            excluded=excluded,
        )

        _log_audit_event("apply", {"auto": args.auto, "history": paths.history_file, **result.to_dict()})
        _emit({"applied": True, **result.to_dict()})
        return 1 if result.status == "failed" else 0
    finally:
        if op_handler is not None:
            logging.getLogger("wakeguard").removeHandler(op_handler)
            op_handler.close()


def cmd_status(args: argparse.Namespace) -> int:
    paths = _paths(args)
    cfg = load_config(paths.config_file)
    records = read_history(paths.history_file)
    _emit({
        "elevated": is_elevated(),
        "blockers": active_driver_blockers(),
        "overrides": [{"name": o.name, "flags": list(o.flags)} for o in list_overrides()],
        "history_count": len(records),
        "persistence": persistence_status(),
        "config": config_to_dict(cfg),
    })
    return 0


def cmd_list_overrides(_: argparse.Namespace) -> int:
    overrides = list_overrides()
    _emit({
        "count": len(overrides),
        "overrides": [{"name": o.name, "flags": list(o.flags)} for o in overrides],
    })
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    paths = _paths(args)
    records = read_history(paths.history_file)
    _emit({
        "count": len(records),
        "items": [
            {"timestamp": r.timestamp, "name": r.device_name, "instance_id": r.instance_id}
            for r in records
        ],
    })
    return 0


def cmd_undo(args: argparse.Namespace) -> int:
    paths = _paths(args)
    _require_admin()

    if args.mode == "nuclear":
        prompt = "Remove power request overrides from EVERY present USB device?"
    else:
        prompt = "Remove the power request overrides recorded by the last apply?"
    if not _confirm(args, prompt):
        _emit({"undone": False, "message": "Cancelled"})
        return 0

    recorded = len(read_history(paths.history_file))
    if args.mode == "nuclear":
        result = remove_all_usb(enumerate_devices(), paths.history_file)
    else:
        result = remove_recorded(paths.history_file)

    _log_audit_event("undo", {"history": paths.history_file, **result.to_dict()})
    _emit({"undone": True, **result.to_dict()})
    if result.outcomes and not result.removed_count and recorded:
        return 1
    return 0


def cmd_persistence(args: argparse.Namespace) -> int:
    paths = _paths(args)
    if args.action == "status":
        _emit({"state": persistence_status()})
        return 0

    _require_admin()
    cfg = load_config(paths.config_file)
    if not _confirm(args, f"{args.action.capitalize()} boot-time re-application?"):
        _emit({"changed": False, "message": "Cancelled"})
        return 0

    if args.action == "enable":
        result = persistence_enable(cfg)
    else:
        result = persistence_disable()
    _log_audit_event(f"persistence-{args.action}", {"mode": cfg.persistence_mode, **result})
    _emit(result)
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    paths = _paths(args)
    cfg = load_config(paths.config_file)

    if args.action == "get":
        data = config_to_dict(cfg)
        if args.field:
            if args.field not in data:
                raise SystemExit(f"Unknown setting: {args.field}")
            _emit({"field": args.field, "value": data[args.field]})
        else:
            _emit({"config": data})
        return 0

    _require_admin()
    if args.action == "reset":
        new_cfg = Configuration()
    else:
        if not args.field or args.value is None:
            raise SystemExit("config set needs FIELD and VALUE")
        try:
            new_cfg = set_field(cfg, args.field, args.value)
        except ValueError as e:
            raise SystemExit(str(e)) from e

    save_config(paths.config_file, new_cfg)
    _log_audit_event(f"config-{args.action}", {"field": args.field, "config": config_to_dict(new_cfg)})
    _emit({"config": config_to_dict(new_cfg)})
    return 0


def cmd_blacklist(args: argparse.Namespace) -> int:
    paths = _paths(args)
    cfg = load_config(paths.config_file)

    if args.action == "list":
        entries = config_to_dict(cfg)["blacklistedDevices"]
        _emit({"count": len(entries), "items": entries})
        return 0

    if not args.instance_id:
        raise SystemExit(f"blacklist {args.action} needs INSTANCE_ID")
    _require_admin()

    if args.action == "add":
        name = args.name
        device_class = args.device_class
        if name is None or device_class is None:
            # Fill in what the operator left out from the present device
            for d in enumerate_devices():
                if d.instance_id.upper() == args.instance_id.upper():
                    name = d.friendly_name if name is None else name
                    device_class = d.device_class if device_class is None else device_class
                    break
        new_cfg, changed = add_blacklist_entry(
            cfg,
            instance_id=args.instance_id,
            friendly_name=name or "",
            device_class=device_class or "",
        )
    else:
        new_cfg, changed = remove_blacklist_entry(cfg, args.instance_id)

    if changed:
        save_config(paths.config_file, new_cfg)
        _log_audit_event(f"blacklist-{args.action}", {"instance_id": args.instance_id})
    _emit({"changed": changed, "count": len(new_cfg.blacklisted_devices)})
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="wakeguard-worker")
    p.add_argument("--state-dir", default=os.environ.get("WAKEGUARD_STATE_DIR"))

    sub = p.add_subparsers(dest="cmd", required=True)

    sd = sub.add_parser("detect", help="Show platform and elevation info (read-only)")
    sd.set_defaults(func=cmd_detect)

    ss = sub.add_parser("scan", help="List eligible USB devices (read-only)")
    ss.add_argument("--category", choices=sorted(CATEGORIES))
    ss.set_defaults(func=cmd_scan)

    sa = sub.add_parser("apply", help="Apply power request overrides (requires Administrator)")
    sa.add_argument("--category", choices=sorted(CATEGORIES))
    sa.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    sa.add_argument("--auto", action="store_true", help="Unattended boot-time run (implies --yes)")
    sa.add_argument("--wait", choices=["fixed", "poll"], default="fixed", help="Device readiness wait for --auto")
    sa.set_defaults(func=cmd_apply)

    sst = sub.add_parser("status", help="Show blockers, overrides, history and persistence")
    sst.set_defaults(func=cmd_status)

    slo = sub.add_parser("list-overrides", help="List current DRIVER power request overrides")
    slo.set_defaults(func=cmd_list_overrides)

    sh = sub.add_parser("history", help="List overrides recorded by the last apply")
    sh.set_defaults(func=cmd_history)

    su = sub.add_parser("undo", help="Remove overrides (requires Administrator)")
    su.add_argument("--mode", choices=["safe", "nuclear"], default="safe")
    su.add_argument("--yes", action="store_true")
    su.set_defaults(func=cmd_undo)

    sp = sub.add_parser("persistence", help="Manage boot-time re-application")
    sp.add_argument("action", choices=["enable", "disable", "status"])
    sp.add_argument("--yes", action="store_true")
    sp.set_defaults(func=cmd_persistence)

    sc = sub.add_parser("config", help="Read or change settings")
    sc.add_argument("action", choices=["get", "set", "reset"])
    sc.add_argument("field", nargs="?", help=f"One of: {', '.join(SETTABLE_FIELDS)}")
    sc.add_argument("value", nargs="?")
    sc.set_defaults(func=cmd_config)

    sb = sub.add_parser("blacklist", help="Manage devices excluded from apply")
    sb.add_argument("action", choices=["list", "add", "remove"])
    sb.add_argument("instance_id", nargs="?")
    sb.add_argument("--name")
    sb.add_argument("--class", dest="device_class")
    sb.set_defaults(func=cmd_blacklist)

    args = p.parse_args(argv)
    logger = _setup_worker_logging(_paths(args))
    try:
        rc = int(args.func(args))
        logger.info("exit rc=%s", rc)
        return rc
    except WakeGuardError as e:
        logger.error("exit error=%s", e)
        raise SystemExit(str(e)) from e
    except SystemExit as e:
        logger.error("exit error=%s", e)
        raise
    except Exception:
        logger.exception("unhandled error")
        raise


if __name__ == "__main__":
    raise SystemExit(main())
