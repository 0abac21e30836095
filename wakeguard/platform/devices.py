from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from wakeguard.core.errors import EnumerationError
from wakeguard.core.runner import run_powershell


logger = logging.getLogger("wakeguard.platform.devices")


@dataclass(frozen=True)
class Device:
    instance_id: str
    friendly_name: str
    device_class: str
    status: str
    # Display only
    driver_provider: str | None = None
    driver_date: str | None = None

    @property
    def is_ok(self) -> bool:
        return self.status.upper() == "OK"

    @property
    def is_usb(self) -> bool:
        # USB\VID_..., USBSTOR\..., USBPRINT\...
        return self.instance_id.upper().startswith("USB")


# Present devices joined with signed-driver info, emitted as compact JSON.
_ENUM_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
$drivers = @{}
Get-CimInstance Win32_PnPSignedDriver | ForEach-Object {
    if ($_.DeviceID) { $drivers[$_.DeviceID] = $_ }
}
Get-PnpDevice -PresentOnly | ForEach-Object {
    $d = $drivers[$_.InstanceId]
    [pscustomobject]@{
        InstanceId     = $_.InstanceId
        FriendlyName   = $_.FriendlyName
        Class          = $_.Class
        Status         = [string]$_.Status
        DriverProvider = if ($d) { $d.DriverProviderName } else { $null }
        DriverDate     = if ($d -and $d.DriverDate) { $d.DriverDate.ToString('yyyy-MM-dd') } else { $null }
    }
} | ConvertTo-Json -Compress -Depth 2
"""


def _opt_str(raw: Any) -> str | None:
    if raw is None:
        return None
    s = str(raw).strip()
    return s or None


def parse_devices(payload: str) -> list[Device]:
    """Parse ConvertTo-Json output (an object for one device, a list otherwise)."""
    text = payload.strip()
    if not text:
        return []
    data = json.loads(text)
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ValueError("device listing must be a JSON list or object")

    out: list[Device] = []
    for raw in data:
        if not isinstance(raw, dict):
            continue
        instance_id = str(raw.get("InstanceId") or "").strip()
        if not instance_id:
            continue
        out.append(
            Device(
                instance_id=instance_id,
                friendly_name=str(raw.get("FriendlyName") or "").strip(),
                device_class=str(raw.get("Class") or "").strip(),
                status=str(raw.get("Status") or "").strip(),
                driver_provider=_opt_str(raw.get("DriverProvider")),
                driver_date=_opt_str(raw.get("DriverDate")),
            )
        )
    return out


def enumerate_devices() -> list[Device]:
    """Snapshot of present devices in enumeration order."""
    r = run_powershell(_ENUM_SCRIPT)
    if not r.ok:
        detail = r.stderr.strip() or r.stdout.strip() or f"exit code {r.returncode}"
        raise EnumerationError(f"Device enumeration failed: {detail}")
    try:
        devices = parse_devices(r.stdout)
    except ValueError as e:
        raise EnumerationError(f"Device enumeration returned unreadable output: {e}") from e
    logger.info("enumerated devices=%d", len(devices))
    return devices
