"""Snapshot aggregator for pysage."""

import logging
import math
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from queue import Queue
from typing import Any

from pysage.apps import ApplicationCollector
from pysage.battery import BatteryCollector
from pysage.collector import Collector
from pysage.config import COLLECTION, DEFAULT_INTENSITY, BackgroundIntensity, CollectorConfig
from pysage.cpu import CPUCollector
from pysage.engine import IntelligenceEngine
from pysage.memory import MemoryCollector, MemoryPressureSource, default_pressure_reader
from pysage.models import (
    BatteryMetrics,
    CPUMetrics,
    IntelligenceReport,
    MemoryMetrics,
    RunningApplication,
    Snapshot,
)

logger = logging.getLogger(__name__)

MIN_POLL_RATE = 0.1


@dataclass(slots=True)
class CollectorSet:
    """The collectors that feed one snapshot."""

    cpu: Collector[CPUMetrics]
    memory: Collector[MemoryMetrics]
    battery: Collector[BatteryMetrics]
    applications: Collector[tuple[RunningApplication, ...]]

    def items(self) -> list[tuple[str, Collector[Any]]]:
        return [
            ("cpu", self.cpu),
            ("memory", self.memory),
            ("battery", self.battery),
            ("applications", self.applications),
        ]


def default_collectors(config: CollectorConfig = COLLECTION) -> CollectorSet:
    """Build the production collectors for this machine."""
    applications = ApplicationCollector(config)
    return CollectorSet(
        cpu=CPUCollector(config=config, app_source=applications.collect),
        memory=MemoryCollector(
            config,
            pressure_source=MemoryPressureSource(default_pressure_reader()),
        ),
        battery=BatteryCollector(config),
        applications=applications,
    )


class SystemMonitor:
    """
    Collects one snapshot per tick and publishes the resulting report.

    A daemon coordinator thread ticks at ``poll_rate``. Each tick hands a
    cycle to a background thread unless the previous cycle is still running,
    in which case the tick is skipped, not queued. A cycle runs every
    collector on a worker pool, waits (bounded) for all of them, builds an
    immutable :class:`Snapshot`, runs the engine, then publishes the
    :class:`IntelligenceReport` through ``latest`` and the update queue.
    """

    def __init__(
        self,
        update_queue: Queue[IntelligenceReport],
        intensity: BackgroundIntensity = DEFAULT_INTENSITY,
        poll_rate: float | None = None,
        collectors: CollectorSet | None = None,
        engine: IntelligenceEngine | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        config: CollectorConfig = COLLECTION,
    ) -> None:
        """
        Initialize the SystemMonitor.

        Args:
            update_queue: Thread-safe queue that receives every report.
            intensity: Collection cadence preset.
            poll_rate: Explicit seconds between ticks; overrides the preset.
            collectors: Collector set, ``default_collectors()`` when omitted.
            engine: Analysis engine, a fresh one when omitted.
            clock: Monotonic clock used for snapshot timestamps.
        """
        self._queue = update_queue
        self._intensity = intensity
        self._poll_rate = max(MIN_POLL_RATE, poll_rate or intensity.update_interval)
        self._collectors = collectors or default_collectors(config)
        self._engine = engine or IntelligenceEngine(interval=self._poll_rate)
        self._clock = clock
        self._wall_clock = wall_clock
        self._config = config
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._cycle_thread: threading.Thread | None = None
        self._cycle_lock = threading.Lock()
        self._latest: IntelligenceReport | None = None
        self._last_timestamp = -math.inf
        self._in_flight: dict[str, Future[Any]] = {}
        self.skipped_cycles = 0
        self.completed_cycles = 0
        # The first CPU sample after this only has a baseline to diff against.
        for _, collector in self._collectors.items():
            collector.prime()

    @property
    def poll_rate(self) -> float:
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        self._poll_rate = max(MIN_POLL_RATE, value)
        self._engine.set_interval(self._poll_rate)

    @property
    def intensity(self) -> BackgroundIntensity:
        return self._intensity

    @intensity.setter
    def intensity(self, value: BackgroundIntensity) -> None:
        self._intensity = value
        self.poll_rate = value.update_interval
        logger.info("Collection intensity set to %s (%.0fs)", value.value, self._poll_rate)

    @property
    def update_queue(self) -> Queue[IntelligenceReport]:
        return self._queue

    @property
    def engine(self) -> IntelligenceEngine:
        return self._engine

    @property
    def latest(self) -> IntelligenceReport | None:
        """Most recently published report, or None before the first cycle."""
        return self._latest

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_lock.locked()

    def start(self) -> None:
        """Start the coordinator thread and the collectors' background feeds."""
        if self.is_running:
            return

        for _, collector in self._collectors.items():
            collector.start()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="SystemMonitor",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the coordinator thread.

        Args:
            timeout: How long to wait for each thread to stop (seconds).
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        if self._cycle_thread is not None:
            self._cycle_thread.join(timeout=timeout)
            self._cycle_thread = None
        for _, collector in self._collectors.items():
            collector.stop()

    def run_cycle(self) -> IntelligenceReport | None:
        """
        Run one cycle on the calling thread.

        Returns None, without waiting, when another cycle is in progress or
        when the cycle failed.
        """
        if not self._cycle_lock.acquire(blocking=False):
            self._skip()
            return None
        try:
            return self._cycle()
        except Exception:
            logger.exception("Collection cycle failed")
            return None
        finally:
            self._cycle_lock.release()

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            self._dispatch()
            self._stop_event.wait(timeout=self._poll_rate)

    def _dispatch(self) -> bool:
        if not self._cycle_lock.acquire(blocking=False):
            self._skip()
            return False
        try:
            self._cycle_thread = threading.Thread(
                target=self._run_dispatched,
                daemon=True,
                name="SystemMonitorCycle",
            )
            self._cycle_thread.start()
        except Exception:
            self._cycle_lock.release()
            raise
        return True

    def _run_dispatched(self) -> None:
        try:
            self._cycle()
        except Exception:
            logger.exception("Collection cycle failed")
        finally:
            self._cycle_lock.release()

    def _skip(self) -> None:
        self.skipped_cycles += 1
        logger.debug("Previous cycle still running, skipping tick")

    def _cycle(self) -> IntelligenceReport:
        results = self._gather()
        snapshot = Snapshot(
            timestamp=self._next_timestamp(),
            wall_time=self._wall_clock(),
            cpu=results["cpu"],
            memory=results["memory"],
            battery=results["battery"],
            applications=tuple(results["applications"]),
        )
        report = self._engine.analyze(snapshot)
        self._latest = report
        self._queue.put(report)
        self.completed_cycles += 1
        return report

    def _gather(self) -> dict[str, Any]:
        """Run every collector concurrently; late or failed ones yield their fallback."""
        collectors = dict(self._collectors.items())
        pool = ThreadPoolExecutor(max_workers=len(collectors), thread_name_prefix="pysage-collect")
        try:
            results: dict[str, Any] = {}
            futures: dict[str, Future[Any]] = {}
            for name, collector in collectors.items():
                # A collector is never run by two cycles at once.
                pending = self._in_flight.get(name)
                if pending is not None and not pending.done():
                    logger.warning("Collector '%s' still busy from an earlier cycle, using fallback", name)
                    results[name] = collector.fallback()
                    continue
                futures[name] = self._in_flight[name] = pool.submit(collector.collect)
            done, _ = wait(futures.values(), timeout=self._config.collector_timeout)
            for name, future in futures.items():
                collector = collectors[name]
                if future not in done:
                    logger.warning("Collector '%s' did not finish in time, using fallback", name)
                    results[name] = collector.fallback()
                    continue
                try:
                    results[name] = future.result()
                except Exception:
                    logger.exception("Collector '%s' raised", name)
                    results[name] = collector.fallback()
            return results
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _next_timestamp(self) -> float:
        now = self._clock()
        if now <= self._last_timestamp:
            now = math.nextafter(self._last_timestamp, math.inf)
        self._last_timestamp = now
        return now
