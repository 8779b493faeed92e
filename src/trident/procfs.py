"""Low-level readers for Linux procfs and sysfs.

Plain file parsing, no caching. This module provides:
- /proc/<pid>/stat: state, parent, page faults, CPU ticks, start ticks
- /proc/<pid>/status and smaps_rollup: swap and proportional memory
- /proc/<pid>/wchan: kernel wait channel
- /proc/stat: per-CPU time counters and boot time
- /sys/devices/system/cpu/cpu*/cpufreq: current frequency
- /sys/class/thermal/thermal_zone*: temperatures

Per-process readers raise FileNotFoundError/ProcessLookupError when the
process is gone and PermissionError when it is not ours to read.
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path

# ─────────────────────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────────────────────

USER_HZ = os.sysconf("SC_CLK_TCK") if hasattr(os, "sysconf") else 100
PAGE_SIZE = os.sysconf("SC_PAGE_SIZE") if hasattr(os, "sysconf") else 4096

_CPU_DIR_RE = re.compile(r"^cpu(\d+)$")
_THERMAL_DIR_RE = re.compile(r"^thermal_zone(.+)$")


# ─────────────────────────────────────────────────────────────────────────────
# Structures
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ProcStat:
    """Fields of /proc/<pid>/stat used by the process collector."""

    pid: int
    comm: str
    state: str
    ppid: int
    minflt: int
    majflt: int
    utime: int  # clock ticks
    stime: int  # clock ticks
    starttime: int  # clock ticks since boot
    vsize: int  # bytes
    rss: int  # pages


@dataclass(frozen=True)
class CPUStat:
    """Cumulative CPU time in seconds for one CPU (or all of them)."""

    user: float = 0.0
    nice: float = 0.0
    system: float = 0.0
    idle: float = 0.0
    iowait: float = 0.0


@dataclass(frozen=True)
class KernelStat:
    """Parsed /proc/stat."""

    total: CPUStat
    cpus: dict[int, CPUStat]
    boot_time: int


@dataclass(frozen=True)
class ThermalZone:
    """One /sys/class/thermal/thermal_zone<name> entry."""

    name: str
    type: str
    temp: int  # millidegrees Celsius


# ─────────────────────────────────────────────────────────────────────────────
# Per-process
# ─────────────────────────────────────────────────────────────────────────────


def parse_proc_stat(text: str) -> ProcStat:
    """Parse the contents of /proc/<pid>/stat.

    comm is wrapped in parentheses and may itself contain spaces or ')',
    so the split happens at the last closing parenthesis.
    """
    lpar = text.index("(")
    rpar = text.rindex(")")
    pid = int(text[:lpar].strip())
    comm = text[lpar + 1 : rpar]
    rest = text[rpar + 2 :].split()
    # rest[0] is field 3 (state) of proc(5)
    return ProcStat(
        pid=pid,
        comm=comm,
        state=rest[0],
        ppid=int(rest[1]),
        minflt=int(rest[7]),
        majflt=int(rest[9]),
        utime=int(rest[11]),
        stime=int(rest[12]),
        starttime=int(rest[19]),
        vsize=int(rest[20]),
        rss=int(rest[21]),
    )


def read_proc_stat(procfs: Path, pid: int) -> ProcStat:
    """Read and parse /proc/<pid>/stat."""
    return parse_proc_stat((procfs / str(pid) / "stat").read_text())


def read_status_swap(procfs: Path, pid: int) -> int:
    """Return VmSwap from /proc/<pid>/status in bytes (0 for kernel threads)."""
    with open(procfs / str(pid) / "status") as f:
        for line in f:
            if line.startswith("VmSwap:"):
                return int(line.split()[1]) * 1024
    return 0


def read_smaps_rollup(procfs: Path, pid: int) -> tuple[int, int]:
    """Return (Pss, SwapPss) in bytes from /proc/<pid>/smaps_rollup."""
    pss = swap_pss = 0
    with open(procfs / str(pid) / "smaps_rollup") as f:
        for line in f:
            if line.startswith("Pss:"):
                pss = int(line.split()[1]) * 1024
            elif line.startswith("SwapPss:"):
                swap_pss = int(line.split()[1]) * 1024
    return pss, swap_pss


def read_wchan(procfs: Path, pid: int) -> str:
    """Return the kernel symbol the process sleeps in, or "" if running."""
    wchan = (procfs / str(pid) / "wchan").read_text().strip()
    return "" if wchan == "0" else wchan


# ─────────────────────────────────────────────────────────────────────────────
# System-wide
# ─────────────────────────────────────────────────────────────────────────────


def _parse_cpu_line(parts: list[str], hz: int) -> CPUStat:
    values = [int(v) / hz for v in parts[1:6]]
    values += [0.0] * (5 - len(values))
    user, nice, system, idle, iowait = values
    return CPUStat(user=user, nice=nice, system=system, idle=idle, iowait=iowait)


def parse_kernel_stat(text: str, hz: int = USER_HZ) -> KernelStat:
    """Parse /proc/stat into aggregate and per-CPU times."""
    total = CPUStat()
    cpus: dict[int, CPUStat] = {}
    boot_time = 0
    for line in text.splitlines():
        parts = line.split()
        if not parts:
            continue
        key = parts[0]
        if key == "cpu":
            total = _parse_cpu_line(parts, hz)
        elif key.startswith("cpu"):
            cpus[int(key[3:])] = _parse_cpu_line(parts, hz)
        elif key == "btime":
            boot_time = int(parts[1])
    return KernelStat(total=total, cpus=cpus, boot_time=boot_time)


def read_kernel_stat(procfs: Path) -> KernelStat:
    """Read and parse <procfs>/stat."""
    return parse_kernel_stat((procfs / "stat").read_text())


def read_cpufreq(sysfs: Path) -> dict[str, int]:
    """Return current frequency in kHz per CPU name ("0", "1", ...).

    Prefers scaling_cur_freq and falls back to cpuinfo_cur_freq. CPUs
    without a cpufreq directory (offline, no driver) are left out. Result
    is ordered by CPU number.
    """
    cpu_root = sysfs / "devices" / "system" / "cpu"
    found: list[tuple[int, int]] = []
    for entry in cpu_root.iterdir():
        m = _CPU_DIR_RE.match(entry.name)
        if not m:
            continue
        freq_dir = entry / "cpufreq"
        for attr in ("scaling_cur_freq", "cpuinfo_cur_freq"):
            try:
                khz = int((freq_dir / attr).read_text().strip())
            except (FileNotFoundError, PermissionError, ValueError):
                continue
            found.append((int(m.group(1)), khz))
            break
    found.sort()
    return {str(num): khz for num, khz in found}


def read_thermal_zones(sysfs: Path) -> list[ThermalZone]:
    """Return every readable thermal zone under <sysfs>/class/thermal."""
    zones: list[ThermalZone] = []
    thermal_root = sysfs / "class" / "thermal"
    for entry in sorted(thermal_root.iterdir()):
        m = _THERMAL_DIR_RE.match(entry.name)
        if not m:
            continue
        try:
            temp = int((entry / "temp").read_text().strip())
        except (OSError, ValueError):
            # Some zones report EAGAIN/ENODATA while their sensor is asleep
            continue
        try:
            zone_type = (entry / "type").read_text().strip()
        except OSError:
            zone_type = ""
        zones.append(ThermalZone(name=m.group(1), type=zone_type, temp=temp))
    return zones
