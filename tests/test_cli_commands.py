"""Tests for worker CLI commands: apply, undo, persistence, config, blacklist."""

import io
import json
import os
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from wakeguard.core.config import load_config
from wakeguard.core.history import read_history
from wakeguard.platform.devices import Device


DEVICES = [
    Device(instance_id="USB\\VID_0D8C&PID_0014\\A", friendly_name="USB Audio Device", device_class="MEDIA", status="OK"),
    Device(instance_id="USB\\VID_1532&PID_0520\\B", friendly_name="Razer Headset", device_class="MEDIA", status="OK"),
    Device(instance_id="USB\\VID_046D&PID_C077\\C", friendly_name="USB Mouse", device_class="HIDClass", status="OK"),
    Device(instance_id="PCI\\VEN_10EC\\D", friendly_name="Realtek Audio", device_class="MEDIA", status="OK"),
]


def _run(argv: list[str]) -> tuple[int, dict]:
    from wakeguard.worker.cli import main

    captured = io.StringIO()
    with patch.object(sys, "stdout", captured):
        rc = main(argv)
    return rc, json.loads(captured.getvalue())


@pytest.fixture
def windows(tmp_path: Path):
    """Elevated process with canned devices and an accepting powercfg."""
    with patch("wakeguard.worker.cli.is_elevated", return_value=True), \
            patch("wakeguard.worker.cli.enumerate_devices", return_value=list(DEVICES)), \
            patch("wakeguard.worker.ops.submit_override", return_value=True) as submit, \
            patch("wakeguard.worker.ops.list_overrides", return_value=[]), \
            patch("wakeguard.worker.ops.reset_power_schemes", return_value=True) as reset, \
            patch("wakeguard.worker.ops.time.sleep"):
        yield {"state": tmp_path, "submit": submit, "reset": reset}


def test_apply_then_safe_undo(windows) -> None:
    """Apply records the audio devices and safe undo clears them."""
    state = windows["state"]

    rc, out = _run(["--state-dir", str(state), "apply", "--category", "audio", "--yes"])

    assert rc == 0
    assert out["schema"] == 1
    assert out["status"] == "fixed"
    assert out["fixed"] == 2
    records = read_history(state / "applied_overrides.txt")
    assert [r.instance_id for r in records] == [DEVICES[0].instance_id, DEVICES[1].instance_id]
    windows["reset"].assert_not_called()

    rc, out = _run(["--state-dir", str(state), "undo", "--mode", "safe", "--yes"])

    assert rc == 0
    assert out["removed"] == 2
    assert out["history_cleared"] is True
    assert read_history(state / "applied_overrides.txt") == []


def test_apply_respects_blacklist_and_reset_flag(windows) -> None:
    """Blacklist and resetPowerOptions set from the CLI drive the next apply."""
    state = windows["state"]
    _run(["--state-dir", str(state), "blacklist", "add", DEVICES[1].instance_id])
    _run(["--state-dir", str(state), "config", "set", "resetPowerOptions", "true"])

    rc, out = _run(["--state-dir", str(state), "apply", "--category", "all", "--yes"])

    assert rc == 0
    assert out["excluded"] == 1
    ids = [r.instance_id for r in read_history(state / "applied_overrides.txt")]
    assert DEVICES[1].instance_id not in ids
    assert ids == [DEVICES[0].instance_id, DEVICES[2].instance_id]
    windows["reset"].assert_called_once()

    cfg = load_config(state / "config.json")
    assert [e.instance_id for e in cfg.blacklisted_devices] == [DEVICES[1].instance_id]
    assert cfg.blacklisted_devices[0].friendly_name == "Razer Headset"


def test_apply_all_failed_returns_nonzero(windows) -> None:
    """A batch where every device fails exits with 1."""
    windows["submit"].return_value = False

    rc, out = _run(["--state-dir", str(windows["state"]), "apply", "--category", "audio", "--yes"])

    assert rc == 1
    assert out["status"] == "failed"


def test_apply_without_confirmation_is_cancelled(windows) -> None:
    """Declining the prompt submits nothing."""
    with patch("wakeguard.worker.cli._confirm", return_value=False):
        rc, out = _run(["--state-dir", str(windows["state"]), "apply", "--category", "audio"])

    assert rc == 0
    assert out["applied"] is False
    windows["submit"].assert_not_called()


def test_auto_apply_uses_persistence_mode_and_writes_operation_log(windows) -> None:
    """An unattended run waits, uses persistenceMode and writes persistence.log."""
    state = windows["state"]
    _run(["--state-dir", str(state), "config", "set", "persistenceMode", "All"])

    with patch("wakeguard.worker.cli.wait_fixed") as wait:
        rc, out = _run(["--state-dir", str(state), "apply", "--auto"])

    assert rc == 0
    wait.assert_called_once()
    assert out["category"] == "all"
    assert out["fixed"] == 3
    log = (state / "logs" / "persistence.log").read_text(encoding="utf-8")
    assert "unattended apply category=all" in log


def test_apply_requires_admin(tmp_path: Path) -> None:
    """A standard user cannot apply overrides."""
    from wakeguard.worker.cli import main

    with patch("wakeguard.worker.cli.is_elevated", return_value=False):
        with pytest.raises(SystemExit) as exc:
            main(["--state-dir", str(tmp_path), "apply", "--category", "audio", "--yes"])

    assert "Administrator" in str(exc.value)


def test_persistence_disable_when_absent_is_noop(windows) -> None:
    """Disabling a task that is not registered changes nothing."""
    with patch("wakeguard.worker.ops.task_exists", return_value=False), \
            patch("wakeguard.worker.ops.unregister_task") as unreg:
        rc, out = _run(["--state-dir", str(windows["state"]), "persistence", "disable", "--yes"])

    assert rc == 0
    assert out["changed"] is False
    unreg.assert_not_called()


def test_history_and_config_get(windows) -> None:
    """History and config reads reflect the last apply and the defaults."""
    state = windows["state"]
    _run(["--state-dir", str(state), "apply", "--category", "audio", "--yes"])

    rc, out = _run(["--state-dir", str(state), "history"])
    assert rc == 0
    assert out["count"] == 2

    rc, out = _run(["--state-dir", str(state), "config", "get", "persistenceMode"])
    assert rc == 0
    assert out["value"] == "Audio"


def test_scan_marks_blacklisted(windows) -> None:
    """Scan lists candidates and flags the blacklisted one."""
    state = windows["state"]
    _run(["--state-dir", str(state), "blacklist", "add", DEVICES[0].instance_id])

    rc, out = _run(["--state-dir", str(state), "scan", "--category", "audio"])

    assert rc == 0
    assert out["count"] == 2
    assert [d["blacklisted"] for d in out["devices"]] == [True, False]


def test_unwritable_shared_log_falls_back_to_user_log(tmp_path: Path, monkeypatch) -> None:
    """A read-only command still runs when the shared worker log cannot be opened."""
    state = tmp_path / "state"
    # A directory where the log file should be cannot be opened for append, even as root
    (state / "logs" / "worker.log").mkdir(parents=True)
    monkeypatch.setenv("LOCALAPPDATA", str(tmp_path / "user"))

    with patch("wakeguard.worker.cli.is_elevated", return_value=False):
        rc, out = _run(["--state-dir", str(state), "history"])

    assert rc == 0
    assert out["count"] == 0
    user_log = tmp_path / "user" / "wakeguard" / "logs" / "worker.log"
    text = user_log.read_text(encoding="utf-8")
    assert "shared log not writable" in text
    assert "start elevated=False" in text


@pytest.mark.skipif(
    not hasattr(os, "geteuid") or os.geteuid() == 0,
    reason="needs POSIX permissions enforced for the current user",
)
def test_read_only_log_dir_falls_back_to_user_log(tmp_path: Path, monkeypatch) -> None:
    """A log dir owned by another account does not stop a standard user's command."""
    state = tmp_path / "state"
    log_dir = state / "logs"
    log_dir.mkdir(parents=True)
    log_dir.chmod(0o555)
    monkeypatch.setenv("LOCALAPPDATA", str(tmp_path / "user"))

    try:
        with patch("wakeguard.worker.cli.is_elevated", return_value=False):
            rc, _ = _run(["--state-dir", str(state), "history"])
    finally:
        log_dir.chmod(0o755)

    assert rc == 0
    assert (tmp_path / "user" / "wakeguard" / "logs" / "worker.log").exists()
    assert not (log_dir / "worker.log").exists()


def test_boot_run_follows_mode_changed_after_enable(windows) -> None:
    """Changing persistenceMode after enabling persistence changes what the boot run targets."""
    state = windows["state"]
    registered = {}

    with patch("wakeguard.worker.ops.task_exists", return_value=False), \
            patch("wakeguard.worker.ops.register_task", side_effect=lambda t: registered.setdefault("task", t)):
        _run(["--state-dir", str(state), "persistence", "enable", "--yes"])
    _run(["--state-dir", str(state), "config", "set", "persistenceMode", "All"])

    args = registered["task"].arguments
    assert args[-2:] == ["apply", "--auto"]
    with patch("wakeguard.worker.cli.wait_fixed"):
        rc, out = _run(["--state-dir", str(state), *args[2:]])

    assert rc == 0
    assert out["category"] == "all"
