"""Shared test fixtures for trident."""

import tempfile
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from trident.errors import ProcessGone
from trident.models import (
    Counts,
    Filedesc,
    Memory,
    ProcAttributes,
    ProcId,
    ProcMetrics,
    States,
)
from trident.storage import init_database


@pytest.fixture
def tmp_db(tmp_path: Path) -> Path:
    """Create a temporary database path."""
    return tmp_path / "test.db"


@pytest.fixture
def initialized_db(tmp_db: Path) -> Path:
    """Create an initialized database with schema."""
    init_database(tmp_db)
    return tmp_db


@pytest.fixture
def short_tmp_path() -> Iterator[Path]:
    """Short temporary directory for Unix sockets (108-char path limit)."""
    with tempfile.TemporaryDirectory(dir="/tmp", prefix="tri_") as tmpdir:
        yield Path(tmpdir)


@dataclass
class FakeProc:
    """In-memory process satisfying the tracker's Proc protocol."""

    pid: int
    name: str = "proc"
    ppid: int = 1
    start_ticks: int = 1000
    user: float = 0.0
    system: float = 0.0
    rss: int = 0
    vsz: int = 0
    state: str = "S"
    cmdline: tuple[str, ...] = ()
    exe: str = ""
    username: str = "root"
    open_fds: int = -1
    fd_limit: int = 0
    wchan: str = ""
    environ: dict[str, str] = field(default_factory=dict)
    gone: bool = False
    soft_errors: int = 0
    metrics_reads: int = 0

    def proc_id(self) -> ProcId:
        if self.gone:
            raise ProcessGone(self.pid, "exited")
        return ProcId(self.pid, self.start_ticks)

    def parent_pid(self) -> int:
        if self.gone:
            raise ProcessGone(self.pid, "exited")
        return self.ppid

    def attributes(self) -> ProcAttributes:
        if self.gone:
            raise ProcessGone(self.pid, "exited")
        env = dict(self.environ)
        return ProcAttributes(
            name=self.name,
            cmdline=self.cmdline,
            exe=self.exe,
            username=self.username,
            pid=self.pid,
            start_time=float(self.start_ticks),
            load_environ=lambda: env,
        )

    def metrics(self) -> tuple[ProcMetrics, int]:
        if self.gone:
            raise ProcessGone(self.pid, "exited")
        self.metrics_reads += 1
        return (
            ProcMetrics(
                counts=Counts(cpu_user_time=self.user, cpu_system_time=self.system),
                memory=Memory(resident_bytes=self.rss, virtual_bytes=self.vsz),
                states=States.from_code(self.state),
                filedesc=Filedesc(open=self.open_fds, limit=self.fd_limit),
                wchan=self.wchan,
            ),
            self.soft_errors,
        )


def make_proc(pid: int, name: str = "proc", **kwargs) -> FakeProc:
    """Create a FakeProc with sensible defaults."""
    return FakeProc(pid=pid, name=name, **kwargs)


class FakeSource:
    """Process source replaying a scripted list of snapshots."""

    def __init__(self, snapshots: Iterable[list[FakeProc]]) -> None:
        self.snapshots = list(snapshots)
        self.calls = 0

    def all_procs(self) -> Iterator[FakeProc]:
        snapshot = self.snapshots[min(self.calls, len(self.snapshots) - 1)]
        self.calls += 1
        return iter(snapshot)


class ListSink:
    """Sink that keeps every record it is given."""

    def __init__(self) -> None:
        self.records: list[str] = []

    def write(self, record: str) -> None:
        self.records.append(record)


@pytest.fixture
def list_sink() -> ListSink:
    return ListSink()


def write_file(path: Path, content: str) -> Path:
    """Write content to path, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


def make_kernel_stat(
    cpus: dict[int, tuple[int, int, int]],
    total: tuple[int, int, int] | None = None,
    btime: int = 1_700_000_000,
) -> str:
    """Render /proc/stat text from (user, system, idle) jiffies per CPU."""
    if total is None:
        total = tuple(sum(v[i] for v in cpus.values()) for i in range(3))
    lines = [f"cpu  {total[0]} 0 {total[1]} {total[2]} 0 0 0 0 0 0"]
    for cpu_id, (user, system, idle) in sorted(cpus.items()):
        lines.append(f"cpu{cpu_id} {user} 0 {system} {idle} 0 0 0 0 0 0")
    lines.append("intr 0")
    lines.append(f"btime {btime}")
    return "\n".join(lines) + "\n"


def make_sysfs_cpufreq(sysfs: Path, khz: dict[int, int]) -> None:
    """Create cpu<N>/cpufreq/scaling_cur_freq files under a fake sysfs."""
    cpu_root = sysfs / "devices" / "system" / "cpu"
    cpu_root.mkdir(parents=True, exist_ok=True)
    for cpu_id, value in khz.items():
        write_file(cpu_root / f"cpu{cpu_id}" / "cpufreq" / "scaling_cur_freq", f"{value}\n")


def make_thermal_zone(sysfs: Path, name: str, millidegrees: int, zone_type: str = "soc") -> None:
    """Create one thermal_zone<name> directory under a fake sysfs."""
    zone = sysfs / "class" / "thermal" / f"thermal_zone{name}"
    write_file(zone / "temp", f"{millidegrees}\n")
    write_file(zone / "type", f"{zone_type}\n")
