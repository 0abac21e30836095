from __future__ import annotations


class WakeGuardError(RuntimeError):
    """Base for errors that abort the current operation."""


class PrivilegeError(WakeGuardError):
    """Operation needs an elevated (Administrator) process."""


class EnumerationError(WakeGuardError):
    """The present-device listing could not be obtained."""


class ConfigIOError(WakeGuardError):
    """Configuration could not be read or written."""


class SchedulingError(WakeGuardError):
    """Scheduled task registration or removal failed."""
