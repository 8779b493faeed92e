"""Pipe-delimited record formats written to syslog.

Formatting goes through str.format mini-language only, so output never
depends on the process locale: the decimal point is always ".".
"""

from collections.abc import Mapping, Sequence
from typing import NamedTuple

THERMAL_FIELDS = 7


class ProcinfoRecord(NamedTuple):
    group: str
    user_pct: float
    sys_pct: float
    total_pct: float
    resident_bytes: int
    virtual_bytes: int


class CPURecord(NamedTuple):
    name: str
    user_pct: float
    sys_pct: float
    idle_pct: float
    total_pct: float


def format_procinfo(
    group: str,
    user_pct: float,
    sys_pct: float,
    resident_bytes: int,
    virtual_bytes: int,
) -> str:
    """Format a process group record: group|u%|s%|total%|rss|vsz."""
    total = user_pct + sys_pct
    return f"{group}|{user_pct:.1f}|{sys_pct:.1f}|{total:.1f}|{resident_bytes:d}|{virtual_bytes:d}"


def parse_procinfo(record: str) -> ProcinfoRecord:
    """Parse a procinfo record. Group names may themselves contain '|'."""
    group, user, sys, total, rss, vsz = record.rsplit("|", 5)
    return ProcinfoRecord(group, float(user), float(sys), float(total), int(rss), int(vsz))


def format_cpu(name: str, user_pct: float, sys_pct: float, idle_pct: float) -> str:
    """Format a CPU record: name|u%|s%|idle%|(u+s)%."""
    total = user_pct + sys_pct
    return f"{name}|{user_pct:.1f}|{sys_pct:.1f}|{idle_pct:.1f}|{total:.1f}"


def parse_cpu(record: str) -> CPURecord:
    name, user, sys, idle, total = record.split("|")
    return CPURecord(name, float(user), float(sys), float(idle), float(total))


def format_cpufreq(freqs_hz: Mapping[str, int]) -> str:
    """Format CPU frequencies in Hz as name:hz tokens joined by '|'."""
    return "|".join(f"{name}:{hz:d}" for name, hz in freqs_hz.items())


def parse_cpufreq(record: str) -> dict[str, int]:
    result: dict[str, int] = {}
    for token in record.split("|"):
        name, hz = token.rsplit(":", 1)
        result[name] = int(hz)
    return result


def format_thermal(temps_celsius: Sequence[float]) -> str:
    """Format the first seven zone temperatures, one decimal each."""
    padded = list(temps_celsius[:THERMAL_FIELDS])
    padded += [0.0] * (THERMAL_FIELDS - len(padded))
    return "|".join(f"{t:.1f}" for t in padded)


def parse_thermal(record: str) -> list[float]:
    return [float(v) for v in record.split("|")]


def percent(delta: float, interval: float, cpus: int = 1) -> float:
    """Share of the interval spent, as a percentage of cpus full CPUs."""
    if interval <= 0 or cpus <= 0:
        return 0.0
    return 100.0 * delta / interval / cpus
