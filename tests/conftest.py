"""Shared fixtures for pysage tests."""

import threading
from queue import Queue

import pytest

from pysage.collector import Collector
from pysage.models import (
    BatteryMetrics,
    BatteryState,
    CPUMetrics,
    MemoryMetrics,
    MemoryPressure,
    ProcessUsage,
    RunningApplication,
    Snapshot,
)
from pysage.monitor import CollectorSet, SystemMonitor

GIB = 1024**3


def build_snapshot(
    timestamp: float = 0.0,
    load: float = 10.0,
    core_count: int = 4,
    memory_percent: float = 30.0,
    total_memory: int = 16 * GIB,
    pressure: MemoryPressure = MemoryPressure.NORMAL,
    battery_present: bool = True,
    battery_level: float = 80.0,
    battery_state: BatteryState = BatteryState.DISCHARGING,
    power: float = 5.0,
    apps: tuple[str, ...] = (),
    processes: tuple[tuple[str, float], ...] = (),
    temperature: float = 50.0,
    throttled: bool = False,
) -> Snapshot:
    used = int(total_memory * memory_percent / 100)
    cpu = CPUMetrics(
        usage=load * core_count,
        core_count=core_count,
        per_core=(load,) * core_count,
        temperature=temperature,
        temperature_source="sensor",
        is_throttled=throttled,
        processes=tuple(
            ProcessUsage(pid=1000 + i, name=name, cpu_percent=cpu)
            for i, (name, cpu) in enumerate(processes)
        ),
        process_source="top",
    )
    memory = MemoryMetrics(
        total=total_memory,
        used=used,
        free=total_memory - used,
        app=used // 2,
        wired=used // 4,
        compressed=0,
        cached=0,
        swap_used=0,
        pressure=pressure,
        processes=(),
    )
    if battery_present:
        battery = BatteryMetrics(
            present=True,
            level=battery_level,
            state=battery_state,
            power_usage=power,
        )
    else:
        battery = BatteryMetrics.absent()
    applications = tuple(
        RunningApplication(name=name, bundle_id="", pid=2000 + i, is_active=i == 0, is_hidden=False)
        for i, name in enumerate(apps)
    )
    return Snapshot(
        timestamp=timestamp,
        wall_time=1_700_000_000.0 + timestamp,
        cpu=cpu,
        memory=memory,
        battery=battery,
        applications=applications,
    )


class StaticCollector(Collector):
    """Collector returning a fixed value, optionally slowly or by failing."""

    def __init__(self, value, fallback_value=None, delay: float = 0.0, error: Exception | None = None):
        self.name = "static"
        self.value = value
        self.fallback_value = value if fallback_value is None else fallback_value
        self.delay = delay
        self.error = error
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._count_lock = threading.Lock()
        self.primed = False
        self.started = False
        self.release = threading.Event()
        self.release.set()

    def prime(self) -> None:
        self.primed = True

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.started = False

    def acquire(self):
        with self._count_lock:
            self.calls += 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            self.release.wait(timeout=10.0)
            if self.delay:
                threading.Event().wait(self.delay)
            if self.error is not None:
                raise self.error
            return self.value
        finally:
            with self._count_lock:
                self.in_flight -= 1

    def fallback(self):
        return self.fallback_value


@pytest.fixture
def make_snapshot():
    """Factory for snapshots with sensible defaults."""
    return build_snapshot


@pytest.fixture
def make_collectors():
    """Factory for a CollectorSet of static collectors built from one snapshot."""

    def factory(snapshot: Snapshot | None = None, **overrides) -> CollectorSet:
        snapshot = snapshot or build_snapshot()
        collectors = {
            "cpu": StaticCollector(snapshot.cpu),
            "memory": StaticCollector(snapshot.memory),
            "battery": StaticCollector(snapshot.battery),
            "applications": StaticCollector(snapshot.applications),
        }
        collectors.update(overrides)
        return CollectorSet(**collectors)

    return factory


@pytest.fixture
def fake_monitor(make_collectors):
    """A SystemMonitor wired to static collectors, stopped at teardown."""
    queue: Queue = Queue()
    monitor = SystemMonitor(queue, poll_rate=0.1, collectors=make_collectors())
    yield monitor
    monitor.stop()
