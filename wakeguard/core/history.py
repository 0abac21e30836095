from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote


TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
SEPARATOR = "|"

# "%" first so escapes of the others are not themselves escaped
_ESCAPES = (("%", "%25"), (SEPARATOR, "%7C"), ("\r", "%0D"), ("\n", "%0A"))


def _escape(field: str) -> str:
    for raw, escaped in _ESCAPES:
        field = field.replace(raw, escaped)
    return field


@dataclass(frozen=True)
class OverrideRecord:
    timestamp: str
    device_name: str
    instance_id: str

    def to_line(self) -> str:
        return SEPARATOR.join((self.timestamp, _escape(self.device_name), _escape(self.instance_id)))


def parse_line(line: str) -> OverrideRecord | None:
    parts = line.rstrip("\r\n").split(SEPARATOR)
    if len(parts) != 3:
        return None
    timestamp, name, instance_id = (unquote(p.strip()) for p in parts)
    if not instance_id:
        return None
    return OverrideRecord(timestamp=timestamp, device_name=name, instance_id=instance_id)


def read_history(path: str | Path) -> list[OverrideRecord]:
    """Records in file order; malformed lines are skipped."""
    p = Path(path)
    if not p.exists():
        return []
    out: list[OverrideRecord] = []
    for line in p.read_text(encoding="utf-8", errors="replace").split("\n"):
        if not line.strip():
            continue
        rec = parse_line(line)
        if rec is not None:
            out.append(rec)
    return out


def clear_history(path: str | Path) -> bool:
    p = Path(path)
    if p.exists():
        p.unlink()
        return True
    return False


class HistoryBatch:
    """Writer for one apply run.

    The previous contents survive until the first record of this batch is
    written; from then on the file holds only this batch.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.written = 0

    def append(self, device_name: str, instance_id: str) -> OverrideRecord:
        rec = OverrideRecord(
            timestamp=time.strftime(TIMESTAMP_FORMAT),
            device_name=device_name,
            instance_id=instance_id,
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        mode = "a" if self.written else "w"
        with self.path.open(mode, encoding="utf-8") as f:
            f.write(rec.to_line() + "\n")
        self.written += 1
        return rec
