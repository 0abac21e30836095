from __future__ import annotations

import ctypes
import os
import platform
import sys


def is_elevated() -> bool:
    """True when running as Administrator (or root off Windows)."""
    windll = getattr(ctypes, "windll", None)
    if windll is not None:
        try:
            return bool(windll.shell32.IsUserAnAdmin())
        except Exception:
            return False
    geteuid = getattr(os, "geteuid", None)
    return bool(geteuid and geteuid() == 0)


def dump_detect() -> dict:
    return {
        "platform": sys.platform,
        "windows": sys.platform == "win32",
        "release": platform.release(),
        "version": platform.version(),
        "python": sys.executable,
        "elevated": is_elevated(),
    }
