"""Boot time detection for Linux.

Reads the btime line of /proc/stat, the same clock the kernel uses for
process start times.
"""

from pathlib import Path

from trident.procfs import USER_HZ


def get_boot_time(procfs: Path = Path("/proc")) -> int:
    """Return system boot time as Unix timestamp.

    Raises:
        RuntimeError: If /proc/stat has no btime line.
    """
    with open(procfs / "stat") as f:
        for line in f:
            if line.startswith("btime"):
                return int(line.split()[1])
    raise RuntimeError(f"No btime in {procfs / 'stat'}")


def ticks_to_epoch(start_ticks: int, boot_time: int, hz: int = USER_HZ) -> float:
    """Convert a start time in clock ticks since boot to a Unix timestamp."""
    return boot_time + start_ticks / hz
