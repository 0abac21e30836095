from __future__ import annotations

import subprocess
from dataclasses import dataclass


@dataclass(frozen=True)
class RunResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run(argv: list[str], *, check: bool = False) -> RunResult:
    try:
        p = subprocess.run(argv, text=True, capture_output=True, errors="replace")
    except OSError as e:
        # Missing executable and friends behave like a failed command
        if check:
            raise RuntimeError(f"command could not start: {argv}\n{e}") from e
        return RunResult(argv=argv, returncode=127, stdout="", stderr=str(e))
    if check and p.returncode != 0:
        raise RuntimeError(f"command failed ({p.returncode}): {argv}\n{p.stderr}")
    return RunResult(argv=argv, returncode=p.returncode, stdout=p.stdout or "", stderr=p.stderr or "")


def ps_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted literal."""
    return "'" + str(value).replace("'", "''") + "'"


def run_powershell(script: str, *, check: bool = False) -> RunResult:
    return run(
        ["powershell.exe", "-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-Command", script],
        check=check,
    )
