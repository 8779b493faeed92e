"""Tests for daemon core."""

import asyncio
import os
import socket
import sqlite3
from contextlib import ExitStack
from pathlib import Path
from typing import Iterator
from unittest.mock import patch

import psutil
import pytest

from tests.conftest import (
    make_kernel_stat,
    make_sysfs_cpufreq,
    make_thermal_zone,
    write_file,
)
from trident.config import Config, PathsConfig, SyslogConfig
from trident.cpu import CPUCollector
from trident.cpufreq import CPUFreqCollector
from trident.daemon import Daemon, DaemonOptions
from trident.errors import ConfigError, InitError
from trident.storage import get_cpufreq_rows, init_database
from trident.thermal import ThermalCollector

# === Test Fixtures ===


def _patch_config_paths(stack: ExitStack, base_path: Path) -> None:
    """Point every Config path property at base_path."""
    # fmt: off
    stack.enter_context(patch.object(
        Config, "data_dir",
        new_callable=lambda: property(lambda self: base_path)
    ))
    stack.enter_context(patch.object(
        Config, "db_path",
        new_callable=lambda: property(lambda self: base_path / "test.db")
    ))
    stack.enter_context(patch.object(
        Config, "pid_path",
        new_callable=lambda: property(lambda self: base_path / "daemon.pid")
    ))
    stack.enter_context(patch.object(
        Config, "state_dir",
        new_callable=lambda: property(lambda self: base_path / "state")
    ))
    # fmt: on


@pytest.fixture
def patched_config_paths(short_tmp_path: Path) -> Iterator[Path]:
    """Patch Config paths under a short directory so a syslog socket fits beside them."""
    with ExitStack() as stack:
        _patch_config_paths(stack, short_tmp_path)
        yield short_tmp_path


@pytest.fixture
def fake_log(patched_config_paths: Path) -> Iterator[socket.socket]:
    """Unix datagram socket standing in for /dev/log."""
    receiver = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    receiver.bind(str(patched_config_paths / "log"))
    receiver.setblocking(False)
    yield receiver
    receiver.close()


@pytest.fixture
def fake_system(patched_config_paths: Path, fake_log: socket.socket) -> Iterator[Config]:
    """Config over a fake procfs, a fake sysfs and the fake /dev/log."""
    base = patched_config_paths
    procfs = base / "proc"
    sysfs = base / "sys"
    write_file(procfs / "stat", make_kernel_stat({0: (100, 50, 1000), 1: (80, 40, 1000)}))
    make_sysfs_cpufreq(sysfs, {0: 1_800_000, 1: 600_000})
    make_thermal_zone(sysfs, "0", 45000)
    try:
        yield Config(
            paths=PathsConfig(procfs=str(procfs), sysfs=str(sysfs)),
            syslog=SyslogConfig(address=fake_log.getsockname()),
        )
    finally:
        psutil.PROCFS_PATH = "/proc"


# === Collector wiring ===


def test_init_collectors_builds_all_four(fake_system: Config):
    daemon = Daemon(fake_system)
    try:
        daemon._init_collectors()
        assert [c.tag for c in daemon.collectors] == ["procinfo", "cpu", "cpufreq", "thermal"]
        assert isinstance(daemon.collectors[1], CPUCollector)
        assert isinstance(daemon.collectors[2], CPUFreqCollector)
        assert isinstance(daemon.collectors[3], ThermalCollector)
    finally:
        daemon._resources.close()


def test_init_collectors_uses_collector_config(fake_system: Config):
    fake_system.cpu.interval = 1.5
    fake_system.cpufreq.write_scale = 2
    fake_system.system.heartbeat_cycles = 7
    daemon = Daemon(fake_system)
    try:
        daemon._init_collectors()
        by_tag = {c.tag: c for c in daemon.collectors}
        assert by_tag["cpu"].interval == 1.5
        assert by_tag["cpufreq"].write_scale == 2
        assert {c.heartbeat_cycles for c in daemon.collectors} == {7}
    finally:
        daemon._resources.close()


def test_init_collectors_creates_database(fake_system: Config):
    daemon = Daemon(fake_system)
    try:
        daemon._init_collectors()
        assert fake_system.db_path.exists()
        assert daemon._conn is not None
    finally:
        daemon._resources.close()


def test_missing_sysfs_is_init_error(fake_system: Config):
    fake_system.paths.sysfs = str(Path(fake_system.paths.sysfs) / "absent")
    with pytest.raises(InitError, match="sysfs"):
        Daemon(fake_system)._init_collectors()


def test_missing_procfs_is_init_error(fake_system: Config):
    fake_system.paths.procfs = str(Path(fake_system.paths.procfs) / "absent")
    with pytest.raises(InitError, match="procfs"):
        Daemon(fake_system)._init_collectors()


def test_missing_syslog_is_init_error(fake_system: Config):
    fake_system.syslog.address = str(Path(fake_system.syslog.address).with_name("nolog"))
    daemon = Daemon(fake_system)
    with pytest.raises(InitError, match="syslog"):
        daemon._init_collectors()
    daemon._resources.close()


def test_conflicting_selection_is_config_error(fake_system: Config, tmp_path: Path):
    rules = write_file(tmp_path / "rules.yml", "process_names:\n  - comm: [bash]\n")
    options = DaemonOptions(rules_path=rules, procnames="bash")
    with pytest.raises(ConfigError):
        Daemon(fake_system, options)._init_collectors()


# === PID file management ===


def test_write_pid_file(patched_config_paths: Path):
    """Daemon writes PID file with current process ID."""
    config = Config()
    daemon = Daemon(config)
    daemon._write_pid_file()

    assert config.pid_path.read_text() == str(os.getpid())


def test_remove_pid_file_nonexistent(patched_config_paths: Path):
    """Removing a missing PID file does not raise."""
    Daemon(Config())._remove_pid_file()


def test_check_already_running_no_pid_file(patched_config_paths: Path):
    assert Daemon(Config())._check_already_running() is False


def test_check_already_running_stale_pid(patched_config_paths: Path):
    """Returns False and cleans up stale PID file."""
    pid_file = patched_config_paths / "daemon.pid"
    pid_file.write_text("999999999")

    assert Daemon(Config())._check_already_running() is False
    assert not pid_file.exists()


def test_check_already_running_invalid_pid(patched_config_paths: Path):
    """Returns False and cleans up PID file with invalid content."""
    pid_file = patched_config_paths / "daemon.pid"
    pid_file.write_text("not-a-number")

    assert Daemon(Config())._check_already_running() is False
    assert not pid_file.exists()


def test_check_already_running_other_program(patched_config_paths: Path):
    """A live process that is not trident leaves a stale PID file."""
    pid_file = patched_config_paths / "daemon.pid"
    pid_file.write_text("4242")

    with patch("trident.daemon.psutil.Process") as mock_process:
        mock_process.return_value.cmdline.return_value = ["/usr/sbin/sshd", "-D"]
        mock_process.return_value.name.return_value = "sshd"
        assert Daemon(Config())._check_already_running() is False
    assert not pid_file.exists()


def test_check_already_running_other_trident(patched_config_paths: Path):
    pid_file = patched_config_paths / "daemon.pid"
    pid_file.write_text("4242")

    with patch("trident.daemon.psutil.Process") as mock_process:
        mock_process.return_value.cmdline.return_value = ["/usr/bin/python", "/usr/bin/trident"]
        assert Daemon(Config())._check_already_running() is True
    assert pid_file.exists()


def test_check_already_running_own_pid(patched_config_paths: Path):
    """A PID file left by this very process does not block startup."""
    pid_file = patched_config_paths / "daemon.pid"
    pid_file.write_text(str(os.getpid()))

    assert Daemon(Config())._check_already_running() is False


@pytest.mark.asyncio
async def test_daemon_start_rejects_duplicate(fake_system: Config):
    fake_system.pid_path.write_text("4242")
    daemon = Daemon(fake_system)

    with patch("trident.daemon.psutil.Process") as mock_process:
        mock_process.return_value.cmdline.return_value = ["trident"]
        with pytest.raises(InitError, match="already running"):
            await daemon.start()
    await daemon.stop()

    # Another instance's PID file is left alone
    assert fake_system.pid_path.read_text() == "4242"


# === Lifecycle ===


@pytest.mark.asyncio
async def test_start_and_stop_with_shutdown_set(fake_system: Config):
    """start() returns once every collector has seen the shutdown event."""
    daemon = Daemon(fake_system)
    daemon._shutdown_event.set()

    await daemon.start()
    assert fake_system.pid_path.read_text() == str(os.getpid())
    assert len(daemon.collectors) == 4

    await daemon.stop()
    assert not fake_system.pid_path.exists()
    assert daemon._conn is None


@pytest.mark.asyncio
async def test_running_daemon_writes_records(fake_system: Config, fake_log: socket.socket):
    loop = asyncio.get_running_loop()
    daemon = Daemon(fake_system)
    task = asyncio.create_task(daemon.start())
    try:
        first = await asyncio.wait_for(loop.sock_recv(fake_log, 4096), timeout=5.0)
        second = await asyncio.wait_for(loop.sock_recv(fake_log, 4096), timeout=5.0)
    finally:
        daemon._shutdown_event.set()
        await task
        await daemon.stop()

    # First cycle: cpufreq always reports, thermal reports every cycle
    assert sorted([first, second]) == [
        b"<14>cpufreq: 0:1800000000|1:600000000\n",
        b"<14>thermal: 45.0|0.0|0.0|0.0|0.0|0.0|0.0\n",
    ]
    conn = sqlite3.connect(fake_system.db_path)
    [row] = get_cpufreq_rows(conn)
    conn.close()
    assert row.freqs[:2] == (1_800_000_000, 600_000_000)


@pytest.mark.asyncio
async def test_stop_closes_sinks(fake_system: Config):
    daemon = Daemon(fake_system)
    daemon._init_collectors()
    sinks = [c.sink for c in daemon.collectors]

    await daemon.stop()

    assert all(s._handler.socket is None or s._handler.socket.fileno() == -1 for s in sinks)


@pytest.mark.asyncio
async def test_stop_without_start(patched_config_paths: Path):
    """stop() is safe before start() and leaves no PID file behind."""
    daemon = Daemon(Config())
    await daemon.stop()
    assert not (patched_config_paths / "daemon.pid").exists()


# === Auto-prune ===


@pytest.mark.asyncio
async def test_auto_prune_runs_on_timeout(patched_config_paths: Path):
    """Auto-prune runs prune_old_data with the configured retention."""
    config = Config()
    config.storage.retention_days = 7
    daemon = Daemon(config)

    init_database(config.db_path)
    daemon._conn = sqlite3.connect(config.db_path, check_same_thread=False)

    def fake_prune(conn, retention_days):
        daemon._shutdown_event.set()
        return 0

    call_count = 0

    async def mock_wait_for_impl(coro, timeout):
        nonlocal call_count
        coro.close()
        call_count += 1
        raise asyncio.TimeoutError()

    with patch("trident.daemon.prune_old_data", side_effect=fake_prune) as mock_prune:
        with patch("trident.daemon.asyncio.wait_for", side_effect=mock_wait_for_impl):
            await daemon._auto_prune()

    mock_prune.assert_called_once_with(daemon._conn, 7)
    assert call_count == 1
    daemon._conn.close()


@pytest.mark.asyncio
async def test_auto_prune_exits_on_shutdown(patched_config_paths: Path):
    daemon = Daemon(Config())
    daemon._shutdown_event.set()

    with patch("trident.daemon.prune_old_data") as mock_prune:
        await daemon._auto_prune()
        mock_prune.assert_not_called()


@pytest.mark.asyncio
async def test_auto_prune_skips_if_no_connection(patched_config_paths: Path):
    daemon = Daemon(Config())

    async def mock_wait_for_impl(coro, timeout):
        coro.close()
        daemon._shutdown_event.set()
        raise asyncio.TimeoutError()

    with patch("trident.daemon.prune_old_data") as mock_prune:
        with patch("trident.daemon.asyncio.wait_for", side_effect=mock_wait_for_impl):
            await daemon._auto_prune()
        mock_prune.assert_not_called()


@pytest.mark.asyncio
async def test_auto_prune_survives_database_error(patched_config_paths: Path):
    daemon = Daemon(Config())
    daemon._conn = sqlite3.connect(":memory:", check_same_thread=False)
    calls = 0

    def failing_prune(conn, retention_days):
        nonlocal calls
        calls += 1
        if calls == 2:
            daemon._shutdown_event.set()
        raise sqlite3.OperationalError("database is locked")

    async def mock_wait_for_impl(coro, timeout):
        coro.close()
        raise asyncio.TimeoutError()

    with patch("trident.daemon.prune_old_data", side_effect=failing_prune):
        with patch("trident.daemon.asyncio.wait_for", side_effect=mock_wait_for_impl):
            await daemon._auto_prune()

    assert calls == 2
    daemon._conn.close()
