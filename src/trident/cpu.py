"""System CPU usage from <procfs>/stat, written under the "cpu" tag."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import structlog

from trident import procfs
from trident.collector import PeriodicCollector
from trident.formatting import format_cpu, percent
from trident.sink import RecordSink

log = structlog.get_logger()

# Idle time going backwards by this many seconds means the CPU was
# offlined and brought back; its counters restarted.
HOTPLUG_JUMP_SECONDS = 3.0

AGGREGATE = "cpu"


@dataclass(frozen=True)
class CPUTimes:
    """Cached cumulative (user, system, idle) seconds for one CPU."""

    user: float = 0.0
    system: float = 0.0
    idle: float = 0.0

    @classmethod
    def from_stat(cls, stat: procfs.CPUStat) -> CPUTimes:
        return cls(user=stat.user, system=stat.system, idle=stat.idle)


def is_hotplug(cached: CPUTimes, new: CPUTimes) -> bool:
    return cached.idle - new.idle >= HOTPLUG_JUMP_SECONDS


def advance(cached: CPUTimes | None, new: CPUTimes) -> tuple[CPUTimes, CPUTimes]:
    """Move a cache entry forward and return (entry, delta).

    Counters never go backwards: each component keeps the larger of the
    cached and new value. A large idle rollback resets the entry to the new
    values and yields a zero delta.
    """
    if cached is None or is_hotplug(cached, new):
        return new, CPUTimes()
    entry = CPUTimes(
        user=max(cached.user, new.user),
        system=max(cached.system, new.system),
        idle=max(cached.idle, new.idle),
    )
    delta = CPUTimes(
        user=entry.user - cached.user,
        system=entry.system - cached.system,
        idle=entry.idle - cached.idle,
    )
    return entry, delta


class CPUCollector(PeriodicCollector):
    """Aggregate and per-CPU user/system/idle percentages."""

    tag = "cpu"

    def __init__(
        self,
        procfs_root: Path | str,
        sink: RecordSink,
        interval: float = 3.0,
        write_scale: int = 5,
        heartbeat_cycles: int = 100,
    ) -> None:
        super().__init__(sink, interval, write_scale, heartbeat_cycles)
        self.procfs_root = Path(procfs_root)
        self._cache: dict[str, CPUTimes] = {}
        self._ticks = 0

    def collect(self) -> list[str]:
        try:
            stat = procfs.read_kernel_stat(self.procfs_root)
        except Exception:
            # Restart from a fresh baseline rather than span the missed tick
            self._cache.clear()
            raise
        had_baseline = bool(self._cache)

        deltas: dict[str, CPUTimes] = {}
        deltas[AGGREGATE] = self._advance(AGGREGATE, CPUTimes.from_stat(stat.total))
        for cpu_id in sorted(stat.cpus):
            name = f"cpu{cpu_id}"
            deltas[name] = self._advance(name, CPUTimes.from_stat(stat.cpus[cpu_id]))

        # CPUs that went offline leave the cache; they restart from a fresh
        # baseline if they come back.
        for name in [n for n in self._cache if n not in deltas]:
            del self._cache[name]

        self._ticks += 1
        if not had_baseline or self._ticks % self.write_scale != 0:
            return []

        online = max(len(stat.cpus), 1)
        records = [self._format(AGGREGATE, deltas[AGGREGATE], online)]
        for cpu_id in sorted(stat.cpus):
            name = f"cpu{cpu_id}"
            records.append(self._format(name, deltas[name], 1))
        return records

    def _advance(self, name: str, new: CPUTimes) -> CPUTimes:
        cached = self._cache.get(name)
        if cached is not None and is_hotplug(cached, new):
            log.info("hotplug_reset", cpu=name, cached_idle=cached.idle, idle=new.idle)
        entry, delta = advance(cached, new)
        self._cache[name] = entry
        return delta

    def _format(self, name: str, delta: CPUTimes, cpus: int) -> str:
        return format_cpu(
            name,
            percent(delta.user, self.interval, cpus),
            percent(delta.system, self.interval, cpus),
            percent(delta.idle, self.interval, cpus),
        )
