"""Current CPU frequencies from sysfs, written under the "cpufreq" tag and stored."""

from __future__ import annotations

import os
import socket
import sqlite3
import time
from pathlib import Path

import structlog

from trident import procfs
from trident.collector import PeriodicCollector
from trident.errors import InitError
from trident.formatting import format_cpufreq
from trident.sink import RecordSink
from trident.storage import CPUFREQ_COLUMNS, CPUFreqRow, insert_cpufreq

log = structlog.get_logger()


def host_identity() -> tuple[str, str]:
    """Return (hostname, first address the hostname resolves to).

    The address is "" when the hostname does not resolve.
    """
    hostname = socket.gethostname()
    try:
        infos = socket.getaddrinfo(hostname, None)
    except (socket.gaierror, UnicodeError):
        return hostname, ""
    return hostname, str(infos[0][4][0]) if infos else ""


class CPUFreqCollector(PeriodicCollector):
    """Per-CPU frequency in Hz.

    A record goes out every write_scale cycles, and additionally whenever
    the frequencies differ from the previous cycle. A change-triggered
    record does not restart the write_scale count. Every cycle is stored.
    """

    tag = "cpufreq"

    def __init__(
        self,
        sysfs_root: Path | str,
        sink: RecordSink,
        conn: sqlite3.Connection | None = None,
        interval: float = 5.0,
        write_scale: int = 6,
        heartbeat_cycles: int = 100,
    ) -> None:
        super().__init__(sink, interval, write_scale, heartbeat_cycles)
        self.sysfs_root = Path(sysfs_root)
        cpu_root = self.sysfs_root / "devices" / "system" / "cpu"
        if not cpu_root.is_dir():
            raise InitError(f"cannot read sysfs cpu directory at {cpu_root}")
        self.conn = conn
        self.hostname, self.ip = host_identity()
        self.pid = os.getpid()
        self._ticks = 0
        self._last: dict[str, int] | None = None

    def collect(self) -> list[str]:
        freqs = {name: khz * 1000 for name, khz in procfs.read_cpufreq(self.sysfs_root).items()}

        self._ticks += 1
        due = self._ticks >= self.write_scale
        if due:
            self._ticks = 0
        changed = freqs != self._last
        self._last = freqs

        if self.conn is not None and freqs:
            self._store(freqs)

        if not freqs or not (due or changed):
            return []
        return [format_cpufreq(freqs)]

    def _store(self, freqs: dict[str, int]) -> None:
        if any(int(name) >= CPUFREQ_COLUMNS for name in freqs):
            log.debug("cpufreq_columns_exceeded", cpus=len(freqs), stored=CPUFREQ_COLUMNS)
        row = CPUFreqRow(
            ts=int(time.time() * 1000),
            hostname=self.hostname,
            ip=self.ip,
            pid=self.pid,
            freqs=tuple(freqs.get(str(i), 0) for i in range(CPUFREQ_COLUMNS)),
        )
        insert_cpufreq(self.conn, row)
