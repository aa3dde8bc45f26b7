"""Memory collector: page-counter breakdown, pressure tier, process ranking."""

import logging
import os
import re
import sys
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

import psutil

from pysage.collector import Collector, first_result
from pysage.config import COLLECTION, CollectorConfig
from pysage.models import MemoryMetrics, MemoryPressure, MemoryProcessUsage
from pysage.probes import (
    ProbeRunner,
    ProbeUnavailableError,
    clean_process_name,
    find_tool,
    parse_ps_memory_output,
    rank,
    run_probe,
)

logger = logging.getLogger(__name__)

CRITICAL_PERCENT = 95.0
WARNING_PERCENT = 85.0

PSI_PATH = Path("/proc/pressure/memory")
PSI_WARNING_SOME_AVG10 = 10.0
PSI_CRITICAL_FULL_AVG10 = 5.0

_VM_STAT_FIELDS = {
    "Pages free": "free",
    "Pages active": "active",
    "Pages inactive": "inactive",
    "Pages speculative": "speculative",
    "Pages wired down": "wired",
    "Pages occupied by compressor": "compressed",
    "Pages purgeable": "purgeable",
    "File-backed pages": "external",
}
_PAGE_SIZE = re.compile(r"page size of (\d+) bytes")
_PSI_AVG10 = re.compile(r"^(some|full)\s+avg10=([\d.]+)", re.MULTILINE)

# kern.memorystatus_vm_pressure_level values
_DARWIN_LEVELS = {
    1: MemoryPressure.NORMAL,
    2: MemoryPressure.WARNING,
    4: MemoryPressure.CRITICAL,
}


def system_page_size() -> int:
    try:
        return os.sysconf("SC_PAGE_SIZE")
    except (AttributeError, ValueError, OSError):
        return 4096


@dataclass(slots=True, frozen=True)
class VMPageCounters:
    """Virtual-memory page counters, in pages of ``page_size`` bytes."""

    page_size: int
    free: int = 0
    active: int = 0
    inactive: int = 0
    wired: int = 0
    speculative: int = 0
    compressed: int = 0
    purgeable: int = 0
    external: int = 0

    def bytes(self, pages: int) -> int:
        return pages * self.page_size

    @property
    def app_bytes(self) -> int:
        return self.bytes(self.active + self.inactive + self.speculative + self.external)

    @property
    def cached_bytes(self) -> int:
        # Approximation: purgeable pages plus half of the inactive list.
        return self.bytes(self.purgeable) + self.bytes(self.inactive) // 2


def parse_vm_stat(output: str) -> VMPageCounters:
    """Parse macOS ``vm_stat`` output. The page size comes from its header."""
    match = _PAGE_SIZE.search(output)
    page_size = int(match.group(1)) if match else system_page_size()
    values: dict[str, int] = {}
    for line in output.splitlines():
        label, sep, raw = line.partition(":")
        field = _VM_STAT_FIELDS.get(label.strip())
        if not sep or field is None:
            continue
        try:
            values[field] = int(raw.strip().rstrip("."))
        except ValueError:
            continue
    if not values:
        raise ValueError("vm_stat output has no page counters")
    return VMPageCounters(page_size=page_size, **values)


def counters_from_psutil(vm: object, page_size: int) -> VMPageCounters:
    """
    Map ``psutil.virtual_memory()`` onto page counters.

    ``free`` is the reclaimable-available figure and file-backed cache is
    reported as external pages; this is an approximation of the VM categories.
    """

    def pages(name: str) -> int:
        return int(getattr(vm, name, 0) or 0) // page_size

    return VMPageCounters(
        page_size=page_size,
        free=pages("available"),
        active=pages("active"),
        inactive=pages("inactive"),
        wired=pages("wired") or pages("slab"),
        external=pages("cached"),
    )


def pressure_from_percentage(percent: float) -> MemoryPressure:
    if percent > CRITICAL_PERCENT:
        return MemoryPressure.CRITICAL
    if percent > WARNING_PERCENT:
        return MemoryPressure.WARNING
    return MemoryPressure.NORMAL


def resolve_pressure(event: MemoryPressure | None, percent: float) -> MemoryPressure:
    """OS pressure event when one is raised, else the percentage thresholds."""
    if event is not None and event is not MemoryPressure.NORMAL:
        return event
    return pressure_from_percentage(percent)


def parse_psi(text: str) -> MemoryPressure:
    """Classify Linux PSI memory stall averages."""
    averages = {kind: float(value) for kind, value in _PSI_AVG10.findall(text)}
    if averages.get("full", 0.0) >= PSI_CRITICAL_FULL_AVG10:
        return MemoryPressure.CRITICAL
    if averages.get("some", 0.0) >= PSI_WARNING_SOME_AVG10:
        return MemoryPressure.WARNING
    return MemoryPressure.NORMAL


def read_psi_pressure() -> MemoryPressure | None:
    return parse_psi(PSI_PATH.read_text())


def read_darwin_pressure(runner: ProbeRunner = run_probe) -> MemoryPressure | None:
    output = runner(["sysctl", "-n", "kern.memorystatus_vm_pressure_level"], 2.0)
    return _DARWIN_LEVELS.get(int(output.strip()))


def default_pressure_reader(platform: str = sys.platform) -> Callable[[], MemoryPressure | None] | None:
    """Pick the OS pressure feed for this platform, if there is one."""
    if platform == "darwin" and find_tool("sysctl"):
        return read_darwin_pressure
    if PSI_PATH.exists():
        return read_psi_pressure
    return None


class MemoryPressureSource:
    """
    Holds the latest OS memory pressure event.

    Events arrive asynchronously, either from the background watcher thread
    polling the platform feed or through :meth:`signal`.
    """

    def __init__(
        self,
        reader: Callable[[], MemoryPressure | None] | None = None,
        poll_interval: float = 2.0,
    ) -> None:
        self._reader = reader
        self._poll_interval = poll_interval
        self._level: MemoryPressure | None = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def level(self) -> MemoryPressure | None:
        """Latest event level, or None when no event has been received."""
        with self._lock:
            return self._level

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def signal(self, level: MemoryPressure) -> None:
        with self._lock:
            changed = level is not self._level
            self._level = level
        if changed:
            logger.info("Memory pressure event: %s", level.value)

    def start(self) -> None:
        if self._reader is None or self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._watch,
            daemon=True,
            name="MemoryPressureWatcher",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _watch(self) -> None:
        while not self._stop_event.is_set():
            try:
                level = self._reader()
            except Exception:
                logger.debug("Memory pressure feed failed", exc_info=True)
                level = None
            if level is not None:
                self.signal(level)
            self._stop_event.wait(timeout=self._poll_interval)


def _total_memory() -> int:
    return int(psutil.virtual_memory().total)


def _swap_used() -> int:
    return int(psutil.swap_memory().used)


class MemoryCollector(Collector[MemoryMetrics]):
    """Collects the memory breakdown, pressure tier and top memory consumers."""

    name = "memory"

    def __init__(
        self,
        config: CollectorConfig = COLLECTION,
        pressure_source: MemoryPressureSource | None = None,
        counter_source: Callable[[], VMPageCounters] | None = None,
        total_source: Callable[[], int] = _total_memory,
        swap_source: Callable[[], int] = _swap_used,
        runner: ProbeRunner = run_probe,
        tool_finder: Callable[[str], str | None] = find_tool,
        process_source: Callable[[], Sequence[MemoryProcessUsage]] | None = None,
        platform: str = sys.platform,
    ) -> None:
        self._config = config
        self.pressure_source = pressure_source or MemoryPressureSource()
        self._counter_source = counter_source or self._read_counters
        self._total_source = total_source
        self._swap_source = swap_source
        self._runner = runner
        self._find_tool = tool_finder
        self._process_source = process_source or self._processes_from_psutil
        self._platform = platform

    def start(self) -> None:
        self.pressure_source.start()

    def stop(self) -> None:
        self.pressure_source.stop()

    def acquire(self) -> MemoryMetrics:
        total = self._total_source()
        counters = self._counter_source()
        free = min(counters.bytes(counters.free), total)
        used = total - free
        try:
            swap = self._swap_source()
        except Exception:
            logger.debug("Swap query failed", exc_info=True)
            swap = 0
        percent = used / total * 100.0 if total else 0.0
        return MemoryMetrics(
            total=total,
            used=used,
            free=free,
            app=counters.app_bytes,
            wired=counters.bytes(counters.wired),
            compressed=counters.bytes(counters.compressed),
            cached=counters.cached_bytes,
            swap_used=swap,
            pressure=resolve_pressure(self.pressure_source.level, percent),
            processes=self.top_processes(),
        )

    def fallback(self) -> MemoryMetrics:
        return MemoryMetrics(
            total=0,
            used=0,
            free=0,
            app=0,
            wired=0,
            compressed=0,
            cached=0,
            swap_used=0,
            pressure=self.pressure_source.level or MemoryPressure.NORMAL,
            processes=(),
        )

    def top_processes(self) -> tuple[MemoryProcessUsage, ...]:
        """Largest resident processes above the materiality floor."""
        result = first_result(
            [
                ("ps", self._processes_from_ps),
                ("psutil", lambda: self._rank(self._process_source())),
            ]
        )
        return tuple(result[1]) if result else ()

    def _read_counters(self) -> VMPageCounters:
        tiers = []
        if self._platform == "darwin":
            tiers.append(("vm_stat", self._counters_from_vm_stat))
        tiers.append(
            ("psutil", lambda: counters_from_psutil(psutil.virtual_memory(), system_page_size()))
        )
        result = first_result(tiers)
        if result is None:
            raise RuntimeError("no virtual memory statistics available")
        return result[1]

    def _counters_from_vm_stat(self) -> VMPageCounters:
        if self._find_tool("vm_stat") is None:
            raise ProbeUnavailableError("vm_stat", "not found on PATH")
        return parse_vm_stat(self._runner(["vm_stat"], self._config.probe_timeout))

    def _rank(self, processes: Sequence[MemoryProcessUsage]) -> list[MemoryProcessUsage]:
        return rank(
            processes,
            key=lambda p: p.memory_bytes,
            limit=self._config.memory_top_k,
            keep=lambda p: p.memory_bytes > self._config.memory_floor_bytes,
        )

    def _processes_from_ps(self) -> list[MemoryProcessUsage]:
        if self._find_tool("ps") is None:
            raise ProbeUnavailableError("ps", "not found on PATH")
        output = self._runner(["ps", "-Ao", "pid,rss,comm"], self._config.probe_timeout)
        return self._rank(
            [
                MemoryProcessUsage(pid=pid, name=clean_process_name(command), memory_bytes=rss)
                for pid, rss, command in parse_ps_memory_output(output)
            ]
        )

    def _processes_from_psutil(self) -> list[MemoryProcessUsage]:
        processes: list[MemoryProcessUsage] = []
        for proc in psutil.process_iter(attrs=["pid", "name", "memory_info"]):
            try:
                info = proc.info
                mem_info = info.get("memory_info")
                processes.append(
                    MemoryProcessUsage(
                        pid=info.get("pid", 0),
                        name=clean_process_name(info.get("name") or ""),
                        memory_bytes=mem_info.rss if mem_info else 0,
                    )
                )
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return processes
