"""Thermal zone temperatures from sysfs, written under the "thermal" tag."""

from __future__ import annotations

from pathlib import Path

import structlog

from trident import procfs
from trident.collector import PeriodicCollector
from trident.errors import InitError
from trident.formatting import format_thermal
from trident.sink import RecordSink

log = structlog.get_logger()

# Zones are placed by their numeric name into this many slots
MAX_ZONES = 10


class ThermalCollector(PeriodicCollector):
    """Temperatures in degrees Celsius for zones 0..6."""

    tag = "thermal"

    def __init__(
        self,
        sysfs_root: Path | str,
        sink: RecordSink,
        interval: float = 5.0,
        write_scale: int = 1,
        heartbeat_cycles: int = 100,
    ) -> None:
        super().__init__(sink, interval, write_scale, heartbeat_cycles)
        self.sysfs_root = Path(sysfs_root)
        thermal_root = self.sysfs_root / "class" / "thermal"
        if not thermal_root.is_dir():
            raise InitError(f"cannot read sysfs thermal directory at {thermal_root}")
        self._ticks = 0

    def collect(self) -> list[str]:
        zones = procfs.read_thermal_zones(self.sysfs_root)
        self._ticks += 1
        if not zones or self._ticks % self.write_scale != 0:
            return []

        temps = [0.0] * MAX_ZONES
        placed = 0
        for zone in zones:
            if not zone.name.isdigit() or int(zone.name) >= MAX_ZONES:
                log.debug("thermal_zone_skipped", zone=zone.name, type=zone.type)
                continue
            temps[int(zone.name)] = zone.temp / 1000.0
            placed += 1
        if not placed:
            return []
        return [format_thermal(temps)]
