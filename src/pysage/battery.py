"""Battery collector.

Power-source descriptors are untyped at the platform boundary (an ``ioreg``
plist on macOS, attribute files under ``/sys/class/power_supply`` on Linux,
``psutil.sensors_battery()`` elsewhere). They are decoded into
:class:`BatteryMetrics` here and nowhere else.
"""

import logging
import plistlib
import sys
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import psutil

from pysage.collector import Collector, first_result
from pysage.config import COLLECTION, CollectorConfig
from pysage.models import BatteryMetrics, BatteryState
from pysage.probes import ProbeRunner, ProbeUnavailableError, find_tool, run_probe

logger = logging.getLogger(__name__)

SYSFS_ROOT = Path("/sys/class/power_supply")

# ioreg reports 65535 minutes while the estimate is still being calculated.
IOREG_TIME_CALCULATING = 65535

_SYSFS_ATTRIBUTES = (
    "type",
    "status",
    "capacity",
    "cycle_count",
    "voltage_now",
    "current_now",
    "power_now",
    "charge_full",
    "charge_full_design",
    "energy_full",
    "energy_full_design",
    "temp",
    "time_to_empty_now",
    "time_to_full_now",
)

_SYSFS_STATES = {
    "charging": BatteryState.CHARGING,
    "discharging": BatteryState.DISCHARGING,
    "full": BatteryState.FULL,
    "not charging": BatteryState.FULL,
}


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _as_signed(value: Any) -> int | None:
    number = _as_int(value)
    if number is not None and number >= 2**63:
        # ioreg exposes negative amperage as an unsigned 64-bit value
        number -= 2**64
    return number


def _scaled(value: int | None, divisor: float) -> float | None:
    return None if value is None else value / divisor


def _health(full: int | None, design: int | None) -> float | None:
    if not full or not design:
        return None
    return full / design * 100.0


def _power(voltage: float | None, amperage: float | None) -> float:
    if voltage is None or amperage is None:
        return 0.0
    return abs(voltage * amperage)


def decode_ioreg(entry: Mapping[str, Any]) -> BatteryMetrics:
    """Decode one ``AppleSmartBattery`` registry entry."""
    current = _as_int(entry.get("CurrentCapacity"))
    maximum = _as_int(entry.get("MaxCapacity"))
    # Apple silicon reports MaxCapacity as a percentage; the raw value is mAh.
    full = _as_int(entry.get("AppleRawMaxCapacity")) or maximum
    design = _as_int(entry.get("DesignCapacity"))

    level = 0.0
    if current is not None and maximum:
        level = max(0.0, min(100.0, current / maximum * 100.0))

    voltage = _scaled(_as_int(entry.get("Voltage")), 1000.0)
    amperage = _scaled(_as_signed(entry.get("InstantAmperage", entry.get("Amperage"))), 1000.0)

    if entry.get("IsCharging"):
        state = BatteryState.CHARGING
    elif entry.get("FullyCharged") or (current is not None and maximum and current >= maximum):
        state = BatteryState.FULL
    elif current:
        state = BatteryState.DISCHARGING
    else:
        state = BatteryState.UNKNOWN

    if state is BatteryState.CHARGING:
        minutes = _as_int(entry.get("AvgTimeToFull"))
    else:
        minutes = _as_int(entry.get("AvgTimeToEmpty", entry.get("TimeRemaining")))
    if minutes is None or minutes < 0 or minutes >= IOREG_TIME_CALCULATING:
        minutes = None

    return BatteryMetrics(
        present=True,
        level=level,
        state=state,
        power_usage=_power(voltage, amperage),
        cycle_count=_as_int(entry.get("CycleCount")),
        design_capacity=design,
        max_capacity=full,
        health_percentage=_health(full, design),
        temperature=_scaled(_as_int(entry.get("Temperature")), 100.0),
        voltage=voltage,
        amperage=amperage,
        time_remaining_minutes=minutes,
    )


def decode_sysfs(attributes: Mapping[str, str]) -> BatteryMetrics:
    """Decode the attribute files of a ``/sys/class/power_supply/BAT*`` node."""
    status = attributes.get("status", "").strip().lower()
    state = _SYSFS_STATES.get(status, BatteryState.UNKNOWN)
    level = _as_int(attributes.get("capacity"))

    # sysfs uses micro-units: uV, uA, uW, uAh, uWh; temperature in 0.1 C
    voltage = _scaled(_as_int(attributes.get("voltage_now")), 1_000_000.0)
    current = _scaled(_as_int(attributes.get("current_now")), 1_000_000.0)
    amperage = None
    if current is not None:
        amperage = -abs(current) if state is BatteryState.DISCHARGING else abs(current)
    power = _power(voltage, amperage)
    if amperage is None and attributes.get("power_now") is not None:
        power = abs(_scaled(_as_int(attributes.get("power_now")), 1_000_000.0) or 0.0)

    full = _as_int(attributes.get("charge_full") or attributes.get("energy_full"))
    design = _as_int(attributes.get("charge_full_design") or attributes.get("energy_full_design"))

    seconds_key = "time_to_full_now" if state is BatteryState.CHARGING else "time_to_empty_now"
    seconds = _as_int(attributes.get(seconds_key))

    return BatteryMetrics(
        present=True,
        level=float(max(0, min(100, level))) if level is not None else 0.0,
        state=state,
        power_usage=power,
        cycle_count=_as_int(attributes.get("cycle_count")),
        design_capacity=design // 1000 if design else None,
        max_capacity=full // 1000 if full else None,
        health_percentage=_health(full, design),
        temperature=_scaled(_as_int(attributes.get("temp")), 10.0),
        voltage=voltage,
        amperage=amperage,
        time_remaining_minutes=seconds // 60 if seconds and seconds > 0 else None,
    )


def decode_psutil(battery: Any) -> BatteryMetrics:
    """Decode ``psutil.sensors_battery()``; it carries no power or health data."""
    level = float(battery.percent) if battery.percent is not None else 0.0
    if battery.power_plugged:
        state = BatteryState.FULL if level >= 100.0 else BatteryState.CHARGING
    elif battery.power_plugged is None:
        state = BatteryState.UNKNOWN
    else:
        state = BatteryState.DISCHARGING

    minutes = None
    secs = battery.secsleft
    if secs not in (psutil.POWER_TIME_UNKNOWN, psutil.POWER_TIME_UNLIMITED) and secs is not None and secs >= 0:
        minutes = int(secs // 60)

    return BatteryMetrics(
        present=True,
        level=level,
        state=state,
        power_usage=0.0,
        time_remaining_minutes=minutes,
    )


def _sensors_battery() -> Any:
    try:
        return psutil.sensors_battery()
    except (AttributeError, NotImplementedError):
        return None


class BatteryCollector(Collector[BatteryMetrics]):
    """Reads the internal battery descriptor; ``absent()`` on desktops."""

    name = "battery"

    def __init__(
        self,
        config: CollectorConfig = COLLECTION,
        runner: ProbeRunner = run_probe,
        tool_finder: Callable[[str], str | None] = find_tool,
        sysfs_root: Path = SYSFS_ROOT,
        sensors_source: Callable[[], Any] = _sensors_battery,
        platform: str = sys.platform,
    ) -> None:
        self._config = config
        self._runner = runner
        self._find_tool = tool_finder
        self._sysfs_root = sysfs_root
        self._sensors_source = sensors_source
        self._platform = platform

    def acquire(self) -> BatteryMetrics:
        tiers: list[tuple[str, Callable[[], BatteryMetrics | None]]] = []
        if self._platform == "darwin":
            tiers.append(("ioreg", self._from_ioreg))
        tiers.append(("sysfs", self._from_sysfs))
        tiers.append(("psutil", self._from_psutil))
        result = first_result(tiers)
        if result is None:
            return BatteryMetrics.absent()
        return result[1]

    def fallback(self) -> BatteryMetrics:
        return BatteryMetrics.absent()

    def _from_ioreg(self) -> BatteryMetrics | None:
        if self._find_tool("ioreg") is None:
            raise ProbeUnavailableError("ioreg", "not found on PATH")
        output = self._runner(["ioreg", "-rn", "AppleSmartBattery", "-a"], self._config.probe_timeout)
        entries = plistlib.loads(output.encode())
        if not entries:
            return None
        return decode_ioreg(entries[0])

    def _from_sysfs(self) -> BatteryMetrics | None:
        if not self._sysfs_root.is_dir():
            return None
        for node in sorted(self._sysfs_root.iterdir()):
            attributes = self._read_node(node)
            if attributes.get("type", "").lower() == "battery":
                return decode_sysfs(attributes)
        return None

    def _from_psutil(self) -> BatteryMetrics | None:
        battery = self._sensors_source()
        return decode_psutil(battery) if battery is not None else None

    @staticmethod
    def _read_node(node: Path) -> dict[str, str]:
        attributes: dict[str, str] = {}
        for name in _SYSFS_ATTRIBUTES:
            try:
                attributes[name] = (node / name).read_text(encoding="utf-8", errors="replace").strip()
            except OSError:
                continue
        return attributes
