"""Shared data types for the process grouping engine."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields

# Kernel state letters (field 3 of /proc/<pid>/stat)
_STATE_FIELDS = {
    "R": "running",
    "S": "sleeping",
    "D": "waiting",
    "Z": "zombie",
}


@dataclass(frozen=True)
class Counts:
    """Monotonic per-process counters.

    CPU times are seconds; everything else is a plain event or byte count.
    """

    cpu_user_time: float = 0.0
    cpu_system_time: float = 0.0
    read_bytes: int = 0
    write_bytes: int = 0
    major_page_faults: int = 0
    minor_page_faults: int = 0
    ctx_switch_voluntary: int = 0
    ctx_switch_nonvoluntary: int = 0

    def __add__(self, other: Counts) -> Counts:
        return Counts(
            *(getattr(self, f.name) + getattr(other, f.name) for f in fields(Counts))
        )

    @classmethod
    def delta(cls, new: Counts, old: Counts) -> Counts:
        """Componentwise new - old, clamped at zero.

        A counter that went backwards (PID reuse the start time did not catch,
        a kernel anomaly) contributes nothing for this cycle.
        """
        return cls(
            *(max(getattr(new, f.name) - getattr(old, f.name), 0) for f in fields(cls))
        )


@dataclass(frozen=True)
class Memory:
    """Point-in-time memory usage in bytes."""

    resident_bytes: int = 0
    virtual_bytes: int = 0
    swap_bytes: int = 0
    proportional_bytes: int = 0
    proportional_swap_bytes: int = 0

    def __add__(self, other: Memory) -> Memory:
        return Memory(
            *(getattr(self, f.name) + getattr(other, f.name) for f in fields(Memory))
        )


@dataclass(frozen=True)
class States:
    """Number of processes in each kernel scheduling state."""

    running: int = 0
    sleeping: int = 0
    waiting: int = 0
    zombie: int = 0
    other: int = 0

    def __add__(self, other: States) -> States:
        return States(
            *(getattr(self, f.name) + getattr(other, f.name) for f in fields(States))
        )

    @classmethod
    def from_code(cls, code: str) -> States:
        """One-hot States for a single kernel state letter."""
        return cls(**{_STATE_FIELDS.get(code, "other"): 1})


@dataclass(frozen=True)
class Filedesc:
    """Open file descriptors and the soft RLIMIT_NOFILE.

    open is -1 and limit 0 when the values could not be read.
    """

    open: int = -1
    limit: int = 0

    @property
    def ratio(self) -> float:
        if self.open < 0 or self.limit <= 0:
            return 0.0
        return self.open / self.limit


@dataclass(frozen=True)
class ProcId:
    """Identity of a process across scrapes.

    The pid alone is reused by the kernel; the start time in clock ticks
    since boot tells two holders of the same pid apart.
    """

    pid: int
    start_time_ticks: int


@dataclass
class ProcAttributes:
    """What the namer gets to see about a process."""

    name: str
    cmdline: tuple[str, ...] = ()
    exe: str = ""
    username: str = ""
    pid: int = 0
    start_time: float = 0.0
    load_environ: Callable[[], Mapping[str, str]] | None = field(default=None, repr=False)
    _environ: Mapping[str, str] | None = field(default=None, init=False, repr=False)

    def environ(self) -> Mapping[str, str]:
        """Environment of the process, read on first use."""
        if self._environ is None:
            self._environ = self.load_environ() if self.load_environ else {}
        return self._environ


@dataclass(frozen=True)
class ProcMetrics:
    """Everything sampled from a process in one scrape."""

    counts: Counts
    memory: Memory
    states: States
    filedesc: Filedesc = Filedesc()
    wchan: str = ""


@dataclass
class Tracked:
    """Tracker's record of one live process."""

    proc_id: ProcId
    group_name: str
    start_time: float
    counts: Counts
    memory: Memory = Memory()
    states: States = States()
    filedesc: Filedesc = Filedesc()
    wchan: str = ""


@dataclass(frozen=True)
class Update:
    """One live tracked process as reported for a single cycle."""

    group_name: str
    delta: Counts
    memory: Memory
    states: States
    wchans: Mapping[str, int]
    filedesc: Filedesc
    start_time: float


@dataclass
class Group:
    """Aggregated metrics for every live process sharing a group name."""

    counts: Counts = Counts()
    states: States = States()
    wchans: dict[str, int] = field(default_factory=dict)
    procs: int = 0
    memory: Memory = Memory()
    oldest_start_time: float = 0.0
    open_fds: int = 0
    worst_fd_ratio: float = 0.0


GroupByName = dict[str, Group]


@dataclass
class CollectErrors:
    """Per-cycle tally of process read failures.

    read: process vanished or could not be read at all, skipped this cycle.
    partial: an optional metric was unreadable, process still counted.
    """

    read: int = 0
    partial: int = 0

    def __bool__(self) -> bool:
        return bool(self.read or self.partial)
