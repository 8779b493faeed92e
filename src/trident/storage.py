"""SQLite storage layer for trident (CPU frequency history)."""

import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Generator

import structlog

log = structlog.get_logger()

SCHEMA_VERSION = 1

# CPU columns in the cpufreq table; larger hosts need a schema revision
CPUFREQ_COLUMNS = 8


SCHEMA = """
CREATE TABLE IF NOT EXISTS daemon_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at REAL
);

CREATE TABLE IF NOT EXISTS cpufreq (
    ts INTEGER,
    hostname TEXT,
    ip TEXT,
    pid INTEGER,
    cpu0 INTEGER,
    cpu1 INTEGER,
    cpu2 INTEGER,
    cpu3 INTEGER,
    cpu4 INTEGER,
    cpu5 INTEGER,
    cpu6 INTEGER,
    cpu7 INTEGER,
    PRIMARY KEY (ts, hostname, ip, pid)
);
"""


@dataclass(frozen=True)
class CPUFreqRow:
    """One cycle of CPU frequencies (Hz) as stored."""

    ts: int  # Unix epoch milliseconds
    hostname: str
    ip: str
    pid: int
    freqs: tuple[int, ...]  # cpu0..cpu7, 0 where absent


def init_database(db_path: Path) -> None:
    """Initialize database with WAL mode and schema.

    If the database exists with a different schema version, it is deleted
    and recreated; history is disposable, so there are no migrations.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    # Version check first
    if db_path.exists():
        conn = sqlite3.connect(db_path)
        try:
            existing_version = _get_schema_version_raw(conn)
            if existing_version == SCHEMA_VERSION:
                conn.close()
                return
            log.info(
                "schema_mismatch",
                existing=existing_version,
                expected=SCHEMA_VERSION,
                action="recreate",
            )
        except sqlite3.DatabaseError:
            # Corrupted, foreign or pre-versioning DB - delete and recreate
            log.info("schema_unreadable", path=str(db_path), action="recreate")
        conn.close()
        _remove_database_files(db_path)

    conn = sqlite3.connect(db_path)
    try:
        # WAL so readers do not block the cpufreq writer
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA journal_size_limit=16777216")

        conn.executescript(SCHEMA)

        conn.execute(
            "INSERT OR REPLACE INTO daemon_state (key, value, updated_at) VALUES (?, ?, ?)",
            ("schema_version", str(SCHEMA_VERSION), time.time()),
        )
        conn.commit()
        log.info("database_initialized", path=str(db_path), version=SCHEMA_VERSION)
    finally:
        conn.close()


def _remove_database_files(db_path: Path) -> None:
    db_path.unlink()
    # Stale -wal/-shm files would be replayed into the new file
    for suffix in ("-wal", "-shm"):
        side = db_path.with_name(db_path.name + suffix)
        if side.exists():
            side.unlink()


def _get_schema_version_raw(conn: sqlite3.Connection) -> int:
    """Schema version; lets OperationalError through so init_database can react."""
    row = conn.execute("SELECT value FROM daemon_state WHERE key = 'schema_version'").fetchone()
    return int(row[0]) if row else 0


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Get a database connection usable from executor threads.

    The owning collector serializes access, so sharing the connection
    across the default executor's threads is safe.
    """
    return sqlite3.connect(db_path, check_same_thread=False)


@contextmanager
def open_database(db_path: Path) -> Generator[sqlite3.Connection, None, None]:
    """Initialize the schema and yield a connection closed on every exit path."""
    init_database(db_path)
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Schema version recorded in the database; 0 for a blank or foreign file."""
    try:
        row = conn.execute("SELECT value FROM daemon_state WHERE key = 'schema_version'").fetchone()
        return int(row[0]) if row else 0
    except sqlite3.OperationalError:
        return 0


def get_daemon_state(conn: sqlite3.Connection, key: str) -> str | None:
    """Read one daemon_state value, or None if the key was never set."""
    try:
        row = conn.execute("SELECT value FROM daemon_state WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None
    except sqlite3.OperationalError:
        return None


def set_daemon_state(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Upsert one daemon_state value."""
    conn.execute(
        "INSERT OR REPLACE INTO daemon_state (key, value, updated_at) VALUES (?, ?, ?)",
        (key, value, time.time()),
    )
    conn.commit()


def insert_cpufreq(conn: sqlite3.Connection, row: CPUFreqRow) -> None:
    """Insert one cpufreq row. Missing CPUs are stored as 0."""
    freqs = list(row.freqs[:CPUFREQ_COLUMNS])
    freqs += [0] * (CPUFREQ_COLUMNS - len(freqs))
    conn.execute(
        """INSERT INTO cpufreq
           (ts, hostname, ip, pid, cpu0, cpu1, cpu2, cpu3, cpu4, cpu5, cpu6, cpu7)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (row.ts, row.hostname, row.ip, row.pid, *freqs),
    )
    conn.commit()


def get_cpufreq_rows(conn: sqlite3.Connection, limit: int = 100) -> list[CPUFreqRow]:
    """Most recent cpufreq rows, newest first."""
    cursor = conn.execute(
        """SELECT ts, hostname, ip, pid, cpu0, cpu1, cpu2, cpu3, cpu4, cpu5, cpu6, cpu7
           FROM cpufreq ORDER BY ts DESC LIMIT ?""",
        (limit,),
    )
    return [
        CPUFreqRow(ts=r[0], hostname=r[1], ip=r[2], pid=r[3], freqs=tuple(r[4:]))
        for r in cursor.fetchall()
    ]


def prune_old_data(conn: sqlite3.Connection, retention_days: int = 90) -> int:
    """Delete cpufreq rows older than the retention window.

    Returns:
        Number of rows deleted

    Raises:
        ValueError: If retention days < 1
    """
    if retention_days < 1:
        raise ValueError("Retention days must be >= 1")

    cutoff_ms = int((time.time() - retention_days * 86400) * 1000)
    cursor = conn.execute("DELETE FROM cpufreq WHERE ts < ?", (cutoff_ms,))
    rows_deleted = cursor.rowcount
    conn.commit()

    log.info("prune_complete", rows_deleted=rows_deleted)
    return rows_deleted
