"""Tests for override removal (safe and nuclear undo)."""

from pathlib import Path
from unittest.mock import patch

from wakeguard.core.history import HistoryBatch, read_history
from wakeguard.platform.devices import Device
from wakeguard.worker.ops import remove_all_usb, remove_recorded, removal_variants


def _write_history(path: Path, *entries: tuple[str, str]) -> None:
    batch = HistoryBatch(path)
    for name, iid in entries:
        batch.append(name, iid)


class TestRemovalVariants:
    """Tests for removal_variants()."""

    def test_clears_every_identifier_form(self) -> None:
        """Every identifier form is cleared, plus the blank-flag form."""
        variants = removal_variants("USB Audio", "USB\\A")

        assert [v.identifier for v in variants] == ["USB Audio", "USB Audio (USB\\A)", "USB\\A", "USB\\A"]
        assert all(v.is_clear for v in variants)
        assert variants[-1].blank_flag is True

    def test_blank_flag_variant_optional(self) -> None:
        """The blank-flag clear can be turned off."""
        variants = removal_variants("USB Audio", "USB\\A", blank_flag=False)

        assert len(variants) == 3
        assert not any(v.blank_flag for v in variants)


class TestSafeRemoval:
    """Tests for remove_recorded()."""

    def test_stale_records_attempted_and_history_cleared(self, tmp_path: Path) -> None:
        """Records for absent devices succeed or fail independently; history is cleared anyway."""
        h = tmp_path / "h.txt"
        _write_history(h, ("Old Headset", "USB\\GONE1"), ("Old Mic", "USB\\GONE2"))

        def submit(req):
            return "GONE1" in req.identifier

        with patch("wakeguard.worker.ops.submit_override", side_effect=submit) as s:
            result = remove_recorded(h)

        assert s.call_count == 8
        assert [o.fixed for o in result.outcomes] == [True, False]
        assert result.removed_count == 1
        assert result.history_cleared is True
        assert read_history(h) == []
        assert not h.exists()

    def test_total_failure_still_clears_history(self, tmp_path: Path) -> None:
        """History is cleared even when nothing was removed."""
        h = tmp_path / "h.txt"
        _write_history(h, ("Mic", "USB\\M"))

        with patch("wakeguard.worker.ops.submit_override", return_value=False):
            result = remove_recorded(h)

        assert result.removed_count == 0
        assert read_history(h) == []

    def test_name_with_separator_is_cleared_verbatim(self, tmp_path: Path) -> None:
        """The exact applied name, separator included, is what undo submits."""
        h = tmp_path / "h.txt"
        _write_history(h, ("Left|Right Speaker", "USB\\LR"))

        with patch("wakeguard.worker.ops.submit_override", return_value=True) as s:
            remove_recorded(h)

        submitted = [c.args[0].identifier for c in s.call_args_list]
        assert submitted[:2] == ["Left|Right Speaker", "Left|Right Speaker (USB\\LR)"]

    def test_empty_history(self, tmp_path: Path) -> None:
        """No records means no powercfg calls."""
        with patch("wakeguard.worker.ops.submit_override") as s:
            result = remove_recorded(tmp_path / "h.txt")

        s.assert_not_called()
        assert result.outcomes == []


class TestNuclearRemoval:
    """Tests for remove_all_usb()."""

    def test_targets_every_usb_device(self, tmp_path: Path) -> None:
        """Nuclear undo covers every USB device regardless of class or status."""
        h = tmp_path / "h.txt"
        _write_history(h, ("Mic", "USB\\M"))
        devices = [
            Device(instance_id="USB\\VID_1\\A", friendly_name="Thumb Drive", device_class="DiskDrive", status="OK"),
            Device(instance_id="PCI\\VEN_8086", friendly_name="Chipset", device_class="System", status="OK"),
            Device(instance_id="USB\\VID_2\\B", friendly_name="Mouse", device_class="HIDClass", status="Error"),
        ]

        with patch("wakeguard.worker.ops.submit_override", return_value=True):
            result = remove_all_usb(devices, h)

        assert [o.instance_id for o in result.outcomes] == ["USB\\VID_1\\A", "USB\\VID_2\\B"]
        assert result.mode == "nuclear"
        assert not h.exists()
