"""Exception types shared across trident."""


class TridentError(Exception):
    """Base class for trident errors."""


class ConfigError(TridentError):
    """Raised for invalid naming rules or daemon settings."""


class InitError(TridentError):
    """Raised when a collector cannot acquire what it needs to run.

    Only this kind of failure is allowed to abort the daemon.
    """


class SinkWriteError(TridentError):
    """Raised when a record could not be handed to its sink."""


class ProcessGone(TridentError):
    """Raised when a process exits or becomes unreadable mid-read."""

    def __init__(self, pid: int, reason: str = "") -> None:
        self.pid = pid
        super().__init__(f"pid {pid}: {reason}" if reason else f"pid {pid}")
