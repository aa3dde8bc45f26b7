"""CPU collector: delta-based usage, per-core load, process ranking, thermals."""

import glob
import logging
import math
import re
import sys
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import psutil

from pysage.collector import Collector, first_result
from pysage.config import COLLECTION, CollectorConfig
from pysage.models import CPUMetrics, ProcessUsage, RunningApplication
from pysage.probes import (
    ProbeRunner,
    ProbeUnavailableError,
    clean_process_name,
    find_tool,
    parse_ps_cpu_output,
    parse_top_output,
    rank,
    run_probe,
)

logger = logging.getLogger(__name__)

MIN_TEMPERATURE = 30.0
MAX_TEMPERATURE = 95.0
THROTTLE_FREQUENCY_RATIO = 0.8

# psutil sensor groups that report the package/core temperature.
_PREFERRED_SENSORS = ("coretemp", "k10temp", "cpu_thermal", "cpu-thermal", "zenpower", "acpitz")

# Optional third-party utilities, tried in order when no sensor is exposed.
_TEMPERATURE_PROBES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("osx-cpu-temp", ("osx-cpu-temp",)),
    ("istats", ("istats", "cpu", "temp", "--value-only")),
)

_THROTTLE_GLOB = "/sys/devices/system/cpu/cpu*/thermal_throttle/*_throttle_count"
_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


@dataclass(slots=True, frozen=True)
class CPUTicks:
    """Cumulative CPU time counters."""

    user: float
    system: float
    idle: float
    nice: float

    @property
    def used(self) -> float:
        return self.user + self.system + self.nice

    @property
    def total(self) -> float:
        return self.user + self.system + self.idle + self.nice


def read_cpu_ticks() -> CPUTicks:
    """Read the aggregate tick counters from the kernel."""
    times = psutil.cpu_times()
    return CPUTicks(
        user=times.user,
        system=times.system,
        idle=times.idle,
        nice=getattr(times, "nice", 0.0),
    )


def compute_usage(previous: CPUTicks, current: CPUTicks, core_count: int) -> float:
    """
    Usage between two tick samples, scaled to ``100 * core_count``.

    Returns 0.0 when no time elapsed; the result is clamped to
    ``[0, 100 * core_count]``.
    """
    delta_total = current.total - previous.total
    if delta_total <= 0:
        return 0.0
    delta_used = current.used - previous.used
    usage = delta_used / delta_total * 100.0 * core_count
    return max(0.0, min(100.0 * core_count, usage))


def estimate_temperature(load_percent: float, uptime_seconds: float) -> float:
    """
    Heuristic package temperature when no sensor or probe is available.

    Scales with load and adds a small cyclical variation keyed off uptime so
    the estimate does not look frozen. Always within the plausible range.
    """
    load = max(0.0, min(100.0, load_percent))
    estimate = 38.0 + load * 0.45 + 4.0 * math.sin(uptime_seconds / 300.0)
    return max(MIN_TEMPERATURE, min(MAX_TEMPERATURE, estimate))


def _plausible(value: float | None) -> bool:
    return value is not None and 0.0 < value < 150.0


def _sensor_temperature() -> float | None:
    try:
        groups = psutil.sensors_temperatures()
    except (AttributeError, NotImplementedError):
        return None
    ordered = [name for name in _PREFERRED_SENSORS if name in groups]
    ordered += [name for name in groups if name not in ordered]
    for name in ordered:
        for entry in groups[name]:
            if _plausible(entry.current):
                return float(entry.current)
    return None


def _read_throttle_count() -> int | None:
    paths = glob.glob(_THROTTLE_GLOB)
    if not paths:
        return None
    total = 0
    for path in paths:
        try:
            total += int(Path(path).read_text().strip())
        except (OSError, ValueError):
            continue
    return total


def _uptime_seconds() -> float:
    return max(0.0, time.time() - psutil.boot_time())


class CPUCollector(Collector[CPUMetrics]):
    """
    Collects CPU usage, per-core load, top processes, temperature and throttling.

    Usage is computed from the delta between consecutive tick samples. The
    previous sample is private to this instance; the first call after
    construction returns 0.0 and only stores the baseline.
    """

    name = "cpu"

    def __init__(
        self,
        core_count: int | None = None,
        config: CollectorConfig = COLLECTION,
        tick_source: Callable[[], CPUTicks] = read_cpu_ticks,
        per_core_source: Callable[[], Sequence[float]] | None = None,
        app_source: Callable[[], Sequence[RunningApplication]] | None = None,
        runner: ProbeRunner = run_probe,
        tool_finder: Callable[[str], str | None] = find_tool,
        sensor_source: Callable[[], float | None] = _sensor_temperature,
        throttle_counter: Callable[[], int | None] = _read_throttle_count,
        frequency_source: Callable[[], Any] = psutil.cpu_freq,
        uptime_source: Callable[[], float] = _uptime_seconds,
        platform: str = sys.platform,
    ) -> None:
        self.core_count = core_count or psutil.cpu_count(logical=True) or 1
        self._config = config
        self._tick_source = tick_source
        self._per_core_source = per_core_source or (
            lambda: psutil.cpu_percent(interval=None, percpu=True)
        )
        self._app_source = app_source
        self._runner = runner
        self._find_tool = tool_finder
        self._sensor_source = sensor_source
        self._throttle_counter = throttle_counter
        self._frequency_source = frequency_source
        self._uptime_source = uptime_source
        self._platform = platform
        self._previous_ticks: CPUTicks | None = None
        self._previous_throttle_count: int | None = None

    def prime(self) -> None:
        """Store the initial baselines so the next sample has a delta."""
        self.sample_usage()
        try:
            self._per_core_source()
        except Exception:
            logger.debug("Per-core priming failed", exc_info=True)

    def sample_usage(self) -> float:
        """Aggregate usage since the previous sample (0.0 on cold start)."""
        current = self._tick_source()
        previous = self._previous_ticks
        self._previous_ticks = current
        if previous is None:
            return 0.0
        return compute_usage(previous, current, self.core_count)

    def per_core_usage(self) -> tuple[float, ...]:
        """Per-processor load; zero-filled when the query fails."""
        try:
            values = list(self._per_core_source())
        except Exception:
            logger.debug("Per-core query failed", exc_info=True)
            values = []
        if len(values) != self.core_count:
            return (0.0,) * self.core_count
        return tuple(float(value) for value in values)

    def top_processes(self) -> tuple[str, tuple[ProcessUsage, ...]]:
        """Ranked processes from the best available tier, with the tier name."""
        result = first_result(
            [
                ("top", self._processes_from_top),
                ("ps", self._processes_from_ps),
                ("applications", self._processes_from_applications),
            ]
        )
        if result is None:
            return "none", ()
        tier, processes = result
        return tier, tuple(processes)

    def temperature(self, load_percent: float) -> tuple[float, str]:
        """Temperature in Celsius and the source that produced it."""
        try:
            reading = self._sensor_source()
        except Exception:
            logger.debug("Temperature sensor query failed", exc_info=True)
            reading = None
        if _plausible(reading):
            return float(reading), "sensor"

        probed = first_result(
            (name, lambda argv=argv: self._probe_temperature(argv))
            for name, argv in _TEMPERATURE_PROBES
        )
        if probed is not None:
            return probed[1], "probe"

        try:
            uptime = self._uptime_source()
        except Exception:
            uptime = 0.0
        return estimate_temperature(load_percent, uptime), "estimate"

    def is_throttled(self) -> bool:
        """Throttle counter increase, else current frequency below 80% of max."""
        try:
            count = self._throttle_counter()
        except Exception:
            count = None
        if count is not None:
            previous = self._previous_throttle_count
            self._previous_throttle_count = count
            return previous is not None and count > previous

        try:
            freq = self._frequency_source()
        except Exception:
            logger.debug("Frequency query failed", exc_info=True)
            return False
        if not freq or not getattr(freq, "max", 0):
            return False
        return freq.current < THROTTLE_FREQUENCY_RATIO * freq.max

    def acquire(self) -> CPUMetrics:
        usage = self.sample_usage()
        tier, processes = self.top_processes()
        temperature, source = self.temperature(usage / self.core_count)
        return CPUMetrics(
            usage=usage,
            core_count=self.core_count,
            per_core=self.per_core_usage(),
            temperature=temperature,
            temperature_source=source,
            is_throttled=self.is_throttled(),
            processes=processes,
            process_source=tier,
        )

    def fallback(self) -> CPUMetrics:
        return CPUMetrics(
            usage=0.0,
            core_count=self.core_count,
            per_core=(0.0,) * self.core_count,
            temperature=MIN_TEMPERATURE,
            temperature_source="estimate",
            is_throttled=False,
            processes=(),
            process_source="none",
        )

    def _top_argv(self) -> list[str]:
        if self._platform == "darwin":
            return [
                "top", "-l", "2", "-o", "cpu",
                "-n", str(self._config.cpu_top_k),
                "-stats", "pid,cpu,command",
            ]
        return ["top", "-b", "-n", "2", "-d", "0.5"]

    def _run_tool(self, argv: Sequence[str]) -> str:
        if self._find_tool(argv[0]) is None:
            raise ProbeUnavailableError(argv[0], "not found on PATH")
        return self._runner(argv, self._config.probe_timeout)

    def _rank(self, rows: list[tuple[int, float, str]]) -> list[ProcessUsage]:
        usages = (
            ProcessUsage(pid=pid, name=clean_process_name(command), cpu_percent=cpu)
            for pid, cpu, command in rows
        )
        return rank(
            usages,
            key=lambda p: p.cpu_percent,
            limit=self._config.cpu_top_k,
            keep=lambda p: p.cpu_percent > 0.0,
        )

    def _processes_from_top(self) -> list[ProcessUsage]:
        return self._rank(parse_top_output(self._run_tool(self._top_argv())))

    def _processes_from_ps(self) -> list[ProcessUsage]:
        return self._rank(parse_ps_cpu_output(self._run_tool(["ps", "-Ao", "pid,%cpu,command"])))

    def _processes_from_applications(self) -> list[ProcessUsage]:
        if self._app_source is None:
            return []
        apps = sorted(self._app_source(), key=lambda app: not app.is_active)
        return [
            ProcessUsage(pid=app.pid, name=app.name, cpu_percent=0.0)
            for app in apps[: self._config.cpu_top_k]
        ]

    def _probe_temperature(self, argv: Sequence[str]) -> float | None:
        match = _NUMBER.search(self._run_tool(argv))
        if match is None:
            return None
        value = float(match.group())
        return value if _plausible(value) else None
