"""Process table snapshots read from procfs.

Each scrape walks the pid list once and yields a lazy handle per process;
nothing is read from a process until the tracker asks for it, so processes
the tracker has rejected cost one stat read per cycle.
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path
from typing import Protocol

import psutil
import structlog

from trident import procfs
from trident.boottime import get_boot_time, ticks_to_epoch
from trident.errors import InitError, ProcessGone
from trident.models import (
    Counts,
    Filedesc,
    Memory,
    ProcAttributes,
    ProcId,
    ProcMetrics,
    States,
)

log = structlog.get_logger()


class Proc(Protocol):
    """What the tracker needs from one process in a snapshot.

    Every method may raise ProcessGone.
    """

    pid: int

    def proc_id(self) -> ProcId: ...

    def parent_pid(self) -> int: ...

    def attributes(self) -> ProcAttributes: ...

    def metrics(self) -> tuple[ProcMetrics, int]:
        """Return the sampled metrics and the number of soft read errors."""
        ...


class ProcfsProc:
    """A single process read from procfs, with psutil for the parts it covers."""

    def __init__(self, root: Path, pid: int, boot_time: int) -> None:
        self.root = root
        self.pid = pid
        self.boot_time = boot_time
        self._stat: procfs.ProcStat | None = None
        self._psutil: psutil.Process | None = None

    def _read_stat(self) -> procfs.ProcStat:
        if self._stat is None:
            try:
                self._stat = procfs.read_proc_stat(self.root, self.pid)
            except (FileNotFoundError, ProcessLookupError) as e:
                raise ProcessGone(self.pid, "exited") from e
            except (OSError, ValueError, IndexError) as e:
                raise ProcessGone(self.pid, f"unreadable stat: {e}") from e
        return self._stat

    def _process(self) -> psutil.Process:
        if self._psutil is None:
            try:
                self._psutil = psutil.Process(self.pid)
            except psutil.NoSuchProcess as e:
                raise ProcessGone(self.pid, "exited") from e
        return self._psutil

    def proc_id(self) -> ProcId:
        return ProcId(self.pid, self._read_stat().starttime)

    def parent_pid(self) -> int:
        return self._read_stat().ppid

    def attributes(self) -> ProcAttributes:
        stat = self._read_stat()
        proc = self._process()
        try:
            with proc.oneshot():
                cmdline = tuple(proc.cmdline())
                exe = proc.exe()
                username = proc.username()
        except psutil.ZombieProcess:
            cmdline, exe, username = (), "", ""
        except psutil.AccessDenied:
            # exe is root-only for other users' processes; cmdline is not
            cmdline, exe, username = self._cmdline_fallback(proc), "", ""
        except psutil.NoSuchProcess as e:
            raise ProcessGone(self.pid, "exited") from e

        return ProcAttributes(
            name=stat.comm,
            cmdline=cmdline,
            exe=exe,
            username=username,
            pid=self.pid,
            start_time=ticks_to_epoch(stat.starttime, self.boot_time),
            load_environ=self._environ,
        )

    def _cmdline_fallback(self, proc: psutil.Process) -> tuple[str, ...]:
        try:
            return tuple(proc.cmdline())
        except psutil.Error:
            return ()

    def _environ(self) -> dict[str, str]:
        try:
            return self._process().environ()
        except (psutil.Error, ProcessGone):
            return {}

    def metrics(self) -> tuple[ProcMetrics, int]:
        stat = self._read_stat()
        proc = self._process()
        soft_errors = 0

        read_bytes = write_bytes = 0
        ctx_vol = ctx_invol = 0
        open_fds, fd_limit = -1, 0
        try:
            with proc.oneshot():
                ctx = proc.num_ctx_switches()
                ctx_vol, ctx_invol = ctx.voluntary, ctx.involuntary
                try:
                    io = proc.io_counters()
                    read_bytes, write_bytes = io.read_bytes, io.write_bytes
                except psutil.AccessDenied:
                    soft_errors += 1
                try:
                    open_fds = proc.num_fds()
                    fd_limit = proc.rlimit(psutil.RLIMIT_NOFILE)[0]
                except psutil.AccessDenied:
                    soft_errors += 1
        except psutil.ZombieProcess:
            pass
        except psutil.NoSuchProcess as e:
            raise ProcessGone(self.pid, "exited") from e
        except psutil.AccessDenied:
            soft_errors += 1

        swap = pss = swap_pss = 0
        try:
            swap = procfs.read_status_swap(self.root, self.pid)
            pss, swap_pss = procfs.read_smaps_rollup(self.root, self.pid)
        except (FileNotFoundError, ProcessLookupError):
            # Kernel threads and zombies have no smaps_rollup
            pass
        except OSError:
            soft_errors += 1

        wchan = ""
        try:
            wchan = procfs.read_wchan(self.root, self.pid)
        except OSError:
            soft_errors += 1

        metrics = ProcMetrics(
            counts=Counts(
                cpu_user_time=stat.utime / procfs.USER_HZ,
                cpu_system_time=stat.stime / procfs.USER_HZ,
                read_bytes=read_bytes,
                write_bytes=write_bytes,
                major_page_faults=stat.majflt,
                minor_page_faults=stat.minflt,
                ctx_switch_voluntary=ctx_vol,
                ctx_switch_nonvoluntary=ctx_invol,
            ),
            memory=Memory(
                resident_bytes=stat.rss * procfs.PAGE_SIZE,
                virtual_bytes=stat.vsize,
                swap_bytes=swap,
                proportional_bytes=pss,
                proportional_swap_bytes=swap_pss,
            ),
            states=States.from_code(stat.state),
            filedesc=Filedesc(open=open_fds, limit=fd_limit),
            wchan=wchan,
        )
        return metrics, soft_errors


class ProcfsSource:
    """Snapshots the kernel process table under a procfs mount point."""

    def __init__(self, root: Path | str = "/proc") -> None:
        self.root = Path(root)
        try:
            self.boot_time = get_boot_time(self.root)
        except (OSError, RuntimeError, ValueError) as e:
            raise InitError(f"cannot read procfs at {self.root}: {e}") from e
        # psutil reads everything relative to this module-level root
        psutil.PROCFS_PATH = str(self.root)
        log.debug("procfs_source_ready", root=str(self.root), boot_time=self.boot_time)

    def all_procs(self) -> Iterator[ProcfsProc]:
        """Yield a handle for every pid currently in the process table."""
        for entry in os.scandir(self.root):
            if entry.name.isdigit():
                yield ProcfsProc(self.root, int(entry.name), self.boot_time)
