from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Paths:
    # Privileged worker state root (config, history, logs)
    state_dir: str

    @property
    def config_file(self) -> Path:
        return Path(self.state_dir) / "config.json"

    @property
    def history_file(self) -> Path:
        return Path(self.state_dir) / "applied_overrides.txt"

    @property
    def log_dir(self) -> Path:
        return Path(self.state_dir) / "logs"

    @property
    def worker_log(self) -> Path:
        return self.log_dir / "worker.log"

    @property
    def persistence_log(self) -> Path:
        # Overwritten at the start of every unattended run
        return self.log_dir / "persistence.log"


def default_paths() -> Paths:
    """Resolve the state directory.

    Priority:
    1. WAKEGUARD_STATE_DIR env var (explicit override, also used by tests)
    2. %ProgramData%\\wakeguard (shared by interactive and scheduled runs)
    3. ~/.local/state/wakeguard
    """
    override = os.environ.get("WAKEGUARD_STATE_DIR")
    if override:
        return Paths(state_dir=override)

    program_data = os.environ.get("ProgramData") or os.environ.get("PROGRAMDATA")
    if program_data:
        return Paths(state_dir=os.path.join(program_data, "wakeguard"))

    return Paths(state_dir=os.path.join(os.path.expanduser("~"), ".local", "state", "wakeguard"))


def user_log_dir() -> Path:
    """Per-user log directory, used when the shared log is not writable.

    An elevated run creates the shared log first, after which a standard user
    may only read it.
    """
    local = os.environ.get("LOCALAPPDATA")
    if local:
        return Path(local) / "wakeguard" / "logs"
    return Path(os.path.expanduser("~")) / ".local" / "state" / "wakeguard" / "logs"
