"""Background daemon for trident."""

import asyncio
import logging
import logging.handlers
import os
import signal
import socket
import sqlite3
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path

import psutil
import structlog

from trident.collector import PeriodicCollector, ProcessCollector
from trident.config import Config
from trident.cpu import CPUCollector
from trident.cpufreq import CPUFreqCollector
from trident.errors import ConfigError, InitError
from trident.grouper import Grouper
from trident.namer import build_namer
from trident.sink import SyslogSink
from trident.source import ProcfsSource
from trident.storage import open_database, prune_old_data
from trident.thermal import ThermalCollector

log = structlog.get_logger()

# Seconds collectors get to finish their current cycle on shutdown
STOP_GRACE_SECONDS = 5.0


@dataclass
class DaemonOptions:
    """Process selection from the command line."""

    rules_path: Path | None = None
    procnames: str = ""
    namemapping: str = ""
    track_children: bool = True


class Daemon:
    """Main daemon class running one task per collector."""

    def __init__(self, config: Config, options: DaemonOptions | None = None):
        self.config = config
        self.options = options or DaemonOptions()
        self.collectors: list[PeriodicCollector] = []

        # Syslog handlers and the database connection live exactly as long
        # as the collector tasks. Released in stop().
        self._resources = ExitStack()
        self._conn: sqlite3.Connection | None = None

        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._auto_prune_task: asyncio.Task | None = None
        self._pid_file_written = False

    def _init_collectors(self) -> None:
        """Build every collector and acquire its sink.

        Extracted from start() so tests can build collectors without running them.

        Raises:
            ConfigError: If the process selection is invalid
            InitError: If procfs, sysfs, syslog or the database is unusable
        """
        opts = self.options
        paths = self.config.paths
        system = self.config.system

        namer = build_namer(opts.rules_path, opts.procnames, opts.namemapping)
        source = ProcfsSource(paths.procfs)
        if not Path(paths.sysfs).is_dir():
            raise InitError(f"cannot read sysfs at {paths.sysfs}")

        try:
            self._conn = self._resources.enter_context(open_database(self.config.db_path))
        except (OSError, sqlite3.Error) as e:
            raise InitError(f"cannot open database {self.config.db_path}: {e}") from e

        def sink(tag: str) -> SyslogSink:
            return self._resources.enter_context(SyslogSink(tag, self.config.syslog.address))

        procinfo, cpu, cpufreq, thermal = (
            self.config.procinfo,
            self.config.cpu,
            self.config.cpufreq,
            self.config.thermal,
        )
        self.collectors = [
            ProcessCollector(
                source,
                Grouper(namer, opts.track_children),
                sink(ProcessCollector.tag),
                interval=procinfo.interval,
                write_scale=procinfo.write_scale,
                heartbeat_cycles=system.heartbeat_cycles,
            ),
            CPUCollector(
                paths.procfs,
                sink(CPUCollector.tag),
                interval=cpu.interval,
                write_scale=cpu.write_scale,
                heartbeat_cycles=system.heartbeat_cycles,
            ),
            CPUFreqCollector(
                paths.sysfs,
                sink(CPUFreqCollector.tag),
                conn=self._conn,
                interval=cpufreq.interval,
                write_scale=cpufreq.write_scale,
                heartbeat_cycles=system.heartbeat_cycles,
            ),
            ThermalCollector(
                paths.sysfs,
                sink(ThermalCollector.tag),
                interval=thermal.interval,
                write_scale=thermal.write_scale,
                heartbeat_cycles=system.heartbeat_cycles,
            ),
        ]

    async def start(self) -> None:
        """Start the daemon and run until shutdown."""
        from importlib.metadata import version

        log.info("daemon_starting", version=version("trident"))
        log.info(
            "daemon_config",
            procfs=self.config.paths.procfs,
            sysfs=self.config.paths.sysfs,
            syslog=self.config.syslog.address,
            track_children=self.options.track_children,
            db_path=str(self.config.db_path),
        )

        # Setup signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        if self._check_already_running():
            log.error("daemon_already_running")
            raise InitError("Daemon is already running")

        self._write_pid_file()
        self._init_collectors()

        self._auto_prune_task = asyncio.create_task(self._auto_prune())
        self._tasks = [
            asyncio.create_task(c.run(self._shutdown_event), name=c.tag) for c in self.collectors
        ]
        log.info("daemon_started", collectors=[c.tag for c in self.collectors])

        await asyncio.gather(*self._tasks)

    async def stop(self) -> None:
        """Drain the collectors and release every resource start() acquired."""
        log.info("daemon_stopping")
        self._shutdown_event.set()

        # Let cycles already in the executor finish before their sinks close
        if self._tasks:
            _done, pending = await asyncio.wait(self._tasks, timeout=STOP_GRACE_SECONDS)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self._tasks = []

        # Cancel auto-prune task
        if self._auto_prune_task:
            self._auto_prune_task.cancel()
            try:
                await self._auto_prune_task
            except asyncio.CancelledError:
                pass
            self._auto_prune_task = None

        # Close syslog handlers and database
        self._resources.close()
        self._conn = None

        if self._pid_file_written:
            self._remove_pid_file()

        log.info("daemon_stopped")

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Request shutdown from SIGTERM or SIGINT."""
        log.info("signal_received", signal=sig.name)
        self._shutdown_event.set()

    def _write_pid_file(self) -> None:
        """Write PID file."""
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        self._pid_file_written = True
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        """Remove PID file."""
        if self.config.pid_path.exists():
            self.config.pid_path.unlink()
            log.debug("pid_file_removed")

    def _check_already_running(self) -> bool:
        """Tell whether another trident daemon owns the PID file.

        A PID file whose process is gone, or now belongs to some other
        program after a reboot, is removed and does not count.
        """
        pid_path = self.config.pid_path
        try:
            pid = int(pid_path.read_text().strip())
        except FileNotFoundError:
            return False
        except ValueError:
            log.warning("pid_file_invalid", path=str(pid_path))
            self._remove_pid_file()
            return False

        if pid == os.getpid():
            return False

        try:
            proc = psutil.Process(pid)
            cmdline = " ".join(proc.cmdline())
            if "trident" in cmdline.lower():
                log.info("daemon_instance_found", pid=pid, cmdline=cmdline[:120])
                return True
            log.warning("pid_file_stale", pid=pid, owner=proc.name())
        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", pid=pid, owner=None)
        except psutil.AccessDenied:
            # Unreadable cmdline: treat as ours rather than risk two daemons
            log.warning("pid_check_access_denied", pid=pid)
            return True

        self._remove_pid_file()
        return False

    async def _auto_prune(self) -> None:
        """Run automatic data pruning at the configured interval."""
        interval = self.config.system.auto_prune_interval_hours * 3600
        loop = asyncio.get_running_loop()
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                if self._conn is None:
                    continue
                log.info("auto_prune_starting")
                try:
                    rows_deleted = await loop.run_in_executor(
                        None,
                        prune_old_data,
                        self._conn,
                        self.config.storage.retention_days,
                    )
                except sqlite3.Error as e:
                    log.error("auto_prune_failed", error=str(e))
                    continue
                log.info("auto_prune_completed", rows_deleted=rows_deleted)


def _add_host(hostname: str) -> structlog.types.Processor:
    """Stamp every file log entry with the host it came from."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict.setdefault("host", hostname)
        return event_dict

    return processor


def _setup_logging(config: Config) -> None:
    """Send daemon logs to stderr for humans and to a rotated JSON Lines file.

    Collector records never pass through here; they go to syslog through
    their own handlers in trident.sink.
    """
    config.state_dir.mkdir(parents=True, exist_ok=True)

    # Runs for structlog events and, as foreign_pre_chain, for stdlib records
    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", key="ts"),
        _add_host(socket.gethostname()),
    ]

    json_file = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    json_file.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
        )
    )

    stderr = logging.StreamHandler()
    stderr.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.dev.ConsoleRenderer(timestamp_key="ts"),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers = [json_file, stderr]
    root.setLevel(logging.INFO)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *pre_chain,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


async def run_daemon(config: Config | None = None, options: DaemonOptions | None = None) -> None:
    """Set up logging, then run a Daemon until a signal stops it.

    Args:
        config: Settings; read from the default config path when omitted
        options: Process selection; every process grouped by comm if omitted
    """
    if config is None:
        config = Config.load()

    _setup_logging(config)

    daemon = Daemon(config, options)

    try:
        await daemon.start()
    except (ConfigError, InitError) as e:
        log.error("daemon_init_failed", error=str(e))
        raise
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
