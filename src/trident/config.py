"""Configuration system for trident."""

from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

from trident.errors import ConfigError


@dataclass
class PathsConfig:
    """Mount points of the kernel pseudo-filesystems."""

    procfs: str = "/proc"
    sysfs: str = "/sys"


@dataclass
class SyslogConfig:
    """Where collector records are sent."""

    address: str = "/dev/log"  # Unix socket path, or "host:port" for UDP


@dataclass
class CollectorConfig:
    """Cadence of one collector.

    The collector samples every `interval` seconds and emits a record every
    `write_scale` samples.
    """

    interval: float = 3.0
    write_scale: int = 5


@dataclass
class StorageConfig:
    """CPU frequency history database."""

    db_path: str = ""  # Empty means <data_dir>/data.db
    retention_days: int = 90


@dataclass
class SystemConfig:
    """Daemon housekeeping."""

    heartbeat_cycles: int = 100  # Log a heartbeat every N cycles per collector
    auto_prune_interval_hours: int = 24
    log_max_bytes: int = 5 * 1024 * 1024
    log_backup_count: int = 3  # Rotated files kept


def _procinfo_defaults() -> CollectorConfig:
    return CollectorConfig(interval=3.0, write_scale=5)


def _cpu_defaults() -> CollectorConfig:
    return CollectorConfig(interval=3.0, write_scale=5)


def _cpufreq_defaults() -> CollectorConfig:
    return CollectorConfig(interval=5.0, write_scale=6)


def _thermal_defaults() -> CollectorConfig:
    return CollectorConfig(interval=5.0, write_scale=1)


COLLECTOR_SECTIONS = ("procinfo", "cpu", "cpufreq", "thermal")


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Render a (possibly nested) settings dataclass as a TOML table."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Daemon settings, one section per concern."""

    paths: PathsConfig = field(default_factory=PathsConfig)
    syslog: SyslogConfig = field(default_factory=SyslogConfig)
    procinfo: CollectorConfig = field(default_factory=_procinfo_defaults)
    cpu: CollectorConfig = field(default_factory=_cpu_defaults)
    cpufreq: CollectorConfig = field(default_factory=_cpufreq_defaults)
    thermal: CollectorConfig = field(default_factory=_thermal_defaults)
    storage: StorageConfig = field(default_factory=StorageConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Directory holding config.toml."""
        return Path.home() / ".config" / "trident"

    @property
    def config_path(self) -> Path:
        """Default settings file."""
        return self.config_dir / "config.toml"

    @property
    def data_dir(self) -> Path:
        """Data directory."""
        return Path.home() / ".local" / "share" / "trident"

    @property
    def state_dir(self) -> Path:
        """XDG state directory; holds the daemon log."""
        return Path.home() / ".local" / "state" / "trident"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for the PID file, cleared on reboot."""
        return Path("/tmp/trident")

    @property
    def db_path(self) -> Path:
        """Database path."""
        if self.storage.db_path:
            return Path(self.storage.db_path).expanduser()
        return self.data_dir / "data.db"

    @property
    def log_path(self) -> Path:
        """Rotated JSON Lines log of the daemon itself."""
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.runtime_dir / "daemon.pid"

    def save(self, path: Path | None = None) -> None:
        """Write every section to a TOML file, creating its directory."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        sections = ["paths", "syslog", *COLLECTOR_SECTIONS, "storage", "system"]
        for name in sections:
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Read settings from a TOML file.

        Missing sections and keys fall back to the dataclass defaults, so a
        missing file yields exactly Config().

        Raises:
            ConfigError: If the file cannot be parsed or a value is out of range.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ConfigError(f"Failed to parse config file {path}: {e}") from e

        paths_data = _section(data, "paths")
        syslog_data = _section(data, "syslog")
        storage_data = _section(data, "storage")

        p = defaults.paths
        st = defaults.storage

        retention_days = _integer(storage_data, "storage", "retention_days", st.retention_days)
        if retention_days < 1:
            raise ConfigError(f"storage.retention_days must be >= 1, got {retention_days}")

        return cls(
            paths=PathsConfig(
                procfs=_string(paths_data, "paths", "procfs", p.procfs),
                sysfs=_string(paths_data, "paths", "sysfs", p.sysfs),
            ),
            syslog=SyslogConfig(
                address=_string(syslog_data, "syslog", "address", defaults.syslog.address),
            ),
            procinfo=_load_collector_config("procinfo", data, defaults.procinfo),
            cpu=_load_collector_config("cpu", data, defaults.cpu),
            cpufreq=_load_collector_config("cpufreq", data, defaults.cpufreq),
            thermal=_load_collector_config("thermal", data, defaults.thermal),
            storage=StorageConfig(
                db_path=_string(storage_data, "storage", "db_path", st.db_path),
                retention_days=retention_days,
            ),
            system=_load_system_config(_section(data, "system")),
        )


def _section(data: Mapping, name: str) -> Mapping:
    """Return a top-level table, or an empty one if absent."""
    section = data.get(name, {})
    if not isinstance(section, Mapping):
        raise ConfigError(f"[{name}] must be a table, got {section!r}")
    return section


def _number(section: Mapping, name: str, key: str, default: float) -> float:
    value = section.get(key, default)
    # bool is an int subclass but never a valid count or duration
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{name}.{key} must be a number, got {value!r}")
    return float(value)


def _integer(section: Mapping, name: str, key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name}.{key} must be an integer, got {value!r}")
    return int(value)


def _string(section: Mapping, name: str, key: str, default: str) -> str:
    value = section.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"{name}.{key} must be a string, got {value!r}")
    return str(value)


def _load_collector_config(name: str, data: Mapping, defaults: CollectorConfig) -> CollectorConfig:
    """Load one collector section, using the given defaults for missing fields."""
    section = _section(data, name)
    interval = _number(section, name, "interval", defaults.interval)
    write_scale = _integer(section, name, "write_scale", defaults.write_scale)

    if interval <= 0:
        raise ConfigError(f"{name}.interval must be > 0, got {interval}")
    if write_scale < 1:
        raise ConfigError(f"{name}.write_scale must be >= 1, got {write_scale}")

    return CollectorConfig(interval=interval, write_scale=write_scale)


def _load_system_config(data: Mapping) -> SystemConfig:
    """Load system config from TOML data."""
    d = SystemConfig()
    heartbeat_cycles = _integer(data, "system", "heartbeat_cycles", d.heartbeat_cycles)
    auto_prune_interval_hours = _integer(
        data, "system", "auto_prune_interval_hours", d.auto_prune_interval_hours
    )

    if heartbeat_cycles < 1:
        raise ConfigError(f"system.heartbeat_cycles must be >= 1, got {heartbeat_cycles}")
    if auto_prune_interval_hours < 1:
        raise ConfigError(
            f"system.auto_prune_interval_hours must be >= 1, got {auto_prune_interval_hours}"
        )

    return SystemConfig(
        heartbeat_cycles=heartbeat_cycles,
        auto_prune_interval_hours=auto_prune_interval_hours,
        log_max_bytes=_integer(data, "system", "log_max_bytes", d.log_max_bytes),
        log_backup_count=_integer(data, "system", "log_backup_count", d.log_backup_count),
    )
