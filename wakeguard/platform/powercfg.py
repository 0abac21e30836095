from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

from wakeguard.core.runner import RunResult, run


logger = logging.getLogger("wakeguard.platform.powercfg")


class OverrideFlag(str, enum.Enum):
    DISPLAY = "DISPLAY"
    SYSTEM = "SYSTEM"
    AWAYMODE = "AWAYMODE"
    EXECUTION = "EXECUTION"


# Canonical order for the command line
_FLAG_ORDER = (OverrideFlag.DISPLAY, OverrideFlag.SYSTEM, OverrideFlag.AWAYMODE, OverrideFlag.EXECUTION)
_FLAG_TOKENS = {f.value for f in OverrideFlag}


@dataclass(frozen=True)
class OverrideRequest:
    """One /requestsoverride call. No flags means "clear the override".

    `blank_flag` appends an explicit empty request-type token, a clear form
    some powercfg builds only accept for instance-path identifiers.
    """

    identifier: str
    flags: frozenset[OverrideFlag] = field(default_factory=frozenset)
    caller_type: str = "DRIVER"
    blank_flag: bool = False

    @property
    def is_clear(self) -> bool:
        return not self.flags

    def argv(self) -> list[str]:
        out = ["powercfg", "/requestsoverride", self.caller_type, self.identifier]
        out.extend(f.value for f in _FLAG_ORDER if f in self.flags)
        if self.blank_flag and not self.flags:
            out.append("")
        return out


@dataclass(frozen=True)
class DriverOverride:
    name: str
    flags: tuple[str, ...]


def submit_override(request: OverrideRequest) -> bool:
    """The single adapter through which every override is registered or cleared."""
    r = run(request.argv())
    if not r.ok:
        logger.debug(
            "override variant rejected id=%r flags=%s rc=%s err=%s",
            request.identifier,
            ",".join(sorted(f.value for f in request.flags)),
            r.returncode,
            (r.stderr or r.stdout).strip(),
        )
    return r.ok


def _split_trailing_flags(entry: str) -> tuple[str, tuple[str, ...]]:
    """Peel flag words off the end of a listing entry.

    powercfg prints flags in upper case, each at most once, so a repeated or
    mixed-case word such as the "System" in "Sound System SYSTEM" stays in the name.
    """
    name = entry
    flags: list[str] = []
    while True:
        parts = name.rsplit(None, 1)
        if len(parts) != 2 or parts[1] not in _FLAG_TOKENS or parts[1] in flags:
            break
        name = parts[0]
        flags.insert(0, parts[1])
    return name.strip(), tuple(flags)


def parse_override_listing(text: str) -> list[DriverOverride]:
    """Parse `powercfg /requestsoverride` output, keeping the [DRIVER] section.

    Each entry line is the caller name followed by its request types.
    """
    out: list[DriverOverride] = []
    section = ""
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith("[") and stripped.endswith("]"):
            section = stripped[1:-1].strip().upper()
            continue
        if section != "DRIVER":
            continue
        name, flags = _split_trailing_flags(stripped)
        if name:
            out.append(DriverOverride(name=name, flags=tuple(flags)))
    return out


def list_overrides() -> list[DriverOverride]:
    r = run(["powercfg", "/requestsoverride"])
    if not r.ok:
        logger.warning("override listing failed rc=%s err=%s", r.returncode, r.stderr.strip())
        return []
    return parse_override_listing(r.stdout)


def extract_driver_blockers(text: str, section: str = "SYSTEM") -> list[str]:
    """Entries tagged [DRIVER] under one category of `powercfg /requests`."""
    want = section.strip().rstrip(":").upper()
    blockers: list[str] = []
    current = ""
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.endswith(":") and not stripped.startswith("["):
            current = stripped[:-1].strip().upper()
            continue
        if current == want and stripped.upper().startswith("[DRIVER]"):
            entry = stripped[len("[DRIVER]"):].strip()
            if entry:
                blockers.append(entry)
    return blockers


def query_requests() -> RunResult:
    return run(["powercfg", "/requests"])


def active_driver_blockers() -> list[str]:
    r = query_requests()
    if not r.ok:
        logger.warning("power request query failed rc=%s err=%s", r.returncode, r.stderr.strip())
        return []
    return extract_driver_blockers(r.stdout)


def reset_power_schemes() -> bool:
    r = run(["powercfg", "-restoredefaultschemes"])
    if not r.ok:
        logger.warning("power scheme reset failed rc=%s err=%s", r.returncode, r.stderr.strip())
    return r.ok
