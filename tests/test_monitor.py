"""Tests for the SystemMonitor class."""

import threading
import time
from queue import Queue

from conftest import StaticCollector, build_snapshot

from pysage.config import BackgroundIntensity, CollectorConfig
from pysage.engine import IntelligenceEngine
from pysage.models import BatteryMetrics, IntelligenceReport, Snapshot
from pysage.monitor import CollectorSet, SystemMonitor


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate() and time.monotonic() < deadline:
        time.sleep(0.01)
    return predicate()


class FailingEngine(IntelligenceEngine):
    """Engine whose analysis pass always raises."""

    def analyze(self, snapshot: Snapshot) -> IntelligenceReport:
        raise RuntimeError("analysis exploded")


class TestSystemMonitor:
    """Tests for SystemMonitor lifecycle."""

    def test_monitor_creation(self, make_collectors):
        """Test SystemMonitor defaults to the balanced cadence and primes collectors."""
        collectors = make_collectors()
        monitor = SystemMonitor(Queue(), collectors=collectors)

        assert monitor.poll_rate == 60.0
        assert monitor.intensity is BackgroundIntensity.BALANCED
        assert not monitor.is_running
        assert monitor.latest is None
        assert all(collector.primed for _, collector in collectors.items())

    def test_monitor_custom_poll_rate(self, make_collectors):
        """Test an explicit poll rate overrides the preset."""
        monitor = SystemMonitor(Queue(), poll_rate=1.0, collectors=make_collectors())
        assert monitor.poll_rate == 1.0

    def test_poll_rate_minimum(self, fake_monitor):
        """Test poll rate has a minimum value."""
        fake_monitor.poll_rate = 0.01
        assert fake_monitor.poll_rate >= 0.1

    def test_intensity_resizes_session(self, fake_monitor):
        """Test changing the cadence keeps one hour of session memory."""
        fake_monitor.intensity = BackgroundIntensity.COMPREHENSIVE
        assert fake_monitor.poll_rate == 15.0
        fake_monitor.run_cycle()
        assert fake_monitor.engine.session.capacity == 240

    def test_intensity_change_during_cycle(self, make_collectors):
        """Test a cadence change mid-cycle is applied by the following cycle."""
        cpu = StaticCollector(build_snapshot().cpu)
        monitor = SystemMonitor(Queue(), poll_rate=0.1, collectors=make_collectors(cpu=cpu))
        capacity = monitor.engine.session.capacity
        assert monitor.run_cycle() is not None

        cpu.release.clear()
        worker = threading.Thread(target=monitor.run_cycle)
        worker.start()
        try:
            assert wait_for(lambda: cpu.calls == 2 and monitor.cycle_in_progress)
            monitor.intensity = BackgroundIntensity.COMPREHENSIVE
            assert monitor.engine.session.capacity == capacity
        finally:
            cpu.release.set()
            worker.join(timeout=5.0)

        assert monitor.completed_cycles == 2
        assert len(monitor.engine.session) == 2
        assert monitor.engine.session.capacity == 240

    def test_monitor_start_stop(self, make_collectors):
        """Test SystemMonitor starts and stops its thread and collector feeds."""
        collectors = make_collectors()
        monitor = SystemMonitor(Queue(), poll_rate=0.1, collectors=collectors)

        monitor.start()
        assert monitor.is_running
        assert all(collector.started for _, collector in collectors.items())

        monitor.stop()
        assert not monitor.is_running
        assert not any(collector.started for _, collector in collectors.items())

    def test_monitor_start_idempotent(self, fake_monitor):
        """Test starting an already running monitor is safe."""
        fake_monitor.start()
        thread1 = fake_monitor._thread

        fake_monitor.start()
        thread2 = fake_monitor._thread

        assert thread1 is thread2

    def test_monitor_publishes_reports(self, fake_monitor):
        """Test reports reach both the queue and latest."""
        fake_monitor.start()

        report = fake_monitor.update_queue.get(timeout=5.0)
        assert isinstance(report, IntelligenceReport)
        assert report.snapshot.memory.total > 0
        assert wait_for(lambda: fake_monitor.latest is not None)

    def test_monitor_keeps_running(self, fake_monitor):
        """Test the loop keeps producing reports."""
        fake_monitor.start()

        first = fake_monitor.update_queue.get(timeout=5.0)
        second = fake_monitor.update_queue.get(timeout=5.0)
        assert second.snapshot.timestamp > first.snapshot.timestamp
        assert fake_monitor.is_running


class TestCycle:
    """Tests for a single collection cycle."""

    def test_run_cycle_assembles_snapshot(self, make_collectors):
        """Test a cycle combines every collector's output."""
        expected = build_snapshot(apps=("Safari",), processes=(("top", 2.0),))
        monitor = SystemMonitor(Queue(), poll_rate=0.1, collectors=make_collectors(expected))

        report = monitor.run_cycle()
        snapshot = report.snapshot
        assert snapshot.cpu == expected.cpu
        assert snapshot.memory == expected.memory
        assert snapshot.battery == expected.battery
        assert snapshot.applications == expected.applications
        assert monitor.latest is report
        assert monitor.completed_cycles == 1
        assert monitor.update_queue.get_nowait() is report

    def test_timestamps_strictly_increase(self, make_collectors):
        """Test snapshot timestamps increase even when the clock stalls."""
        monitor = SystemMonitor(
            Queue(), poll_rate=0.1, collectors=make_collectors(), clock=lambda: 5.0
        )
        first = monitor.run_cycle().snapshot.timestamp
        second = monitor.run_cycle().snapshot.timestamp
        third = monitor.run_cycle().snapshot.timestamp
        assert first == 5.0
        assert first < second < third

    def test_overlapping_cycle_is_skipped(self, make_collectors):
        """Test a tick arriving during a cycle is skipped rather than queued."""
        cpu = StaticCollector(build_snapshot().cpu)
        cpu.release.clear()
        monitor = SystemMonitor(Queue(), poll_rate=0.1, collectors=make_collectors(cpu=cpu))

        worker = threading.Thread(target=monitor.run_cycle)
        worker.start()
        try:
            assert wait_for(lambda: cpu.calls == 1 and monitor.cycle_in_progress)
            assert monitor.run_cycle() is None
            assert monitor.skipped_cycles == 1
        finally:
            cpu.release.set()
            worker.join(timeout=5.0)
        assert monitor.completed_cycles == 1
        assert monitor.update_queue.qsize() == 1

    def test_poll_loop_skips_while_cycle_runs(self, make_collectors):
        """Test the coordinator never stacks cycles behind a slow one."""
        cpu = StaticCollector(build_snapshot().cpu)
        cpu.release.clear()
        monitor = SystemMonitor(Queue(), poll_rate=0.1, collectors=make_collectors(cpu=cpu))

        monitor.start()
        try:
            assert wait_for(lambda: monitor.skipped_cycles >= 2)
            assert monitor.update_queue.empty()
            assert cpu.calls == 1
            cpu.release.set()
            assert isinstance(monitor.update_queue.get(timeout=5.0), IntelligenceReport)
        finally:
            cpu.release.set()
            monitor.stop()

    def test_slow_collector_uses_fallback(self, make_collectors):
        """Test a collector past the deadline is replaced by its fallback."""
        battery = StaticCollector(
            build_snapshot().battery,
            fallback_value=BatteryMetrics.absent(),
            delay=1.0,
        )
        monitor = SystemMonitor(
            Queue(),
            poll_rate=0.1,
            collectors=make_collectors(battery=battery),
            config=CollectorConfig(collector_timeout=0.2),
        )
        started = time.monotonic()
        report = monitor.run_cycle()
        assert time.monotonic() - started < 1.0
        assert not report.snapshot.battery.present

    def test_busy_collector_is_not_called_again(self, make_collectors):
        """Test a collector still running from an earlier cycle is not started twice."""
        cpu = StaticCollector(build_snapshot().cpu, delay=1.0)
        monitor = SystemMonitor(
            Queue(),
            poll_rate=0.1,
            collectors=make_collectors(cpu=cpu),
            config=CollectorConfig(collector_timeout=0.2),
        )
        reports = [monitor.run_cycle() for _ in range(3)]
        assert all(report is not None for report in reports)
        assert cpu.calls == 1
        assert cpu.max_in_flight == 1

        assert wait_for(lambda: cpu.in_flight == 0)
        assert monitor.run_cycle() is not None
        assert cpu.calls == 2
        assert cpu.max_in_flight == 1

    def test_failing_collector_uses_fallback(self, make_collectors):
        """Test a raising collector degrades to its fallback."""
        memory = StaticCollector(
            build_snapshot().memory,
            fallback_value=build_snapshot(total_memory=0).memory,
            error=OSError("vm stats unavailable"),
        )
        monitor = SystemMonitor(Queue(), poll_rate=0.1, collectors=make_collectors(memory=memory))
        report = monitor.run_cycle()
        assert report.snapshot.memory.total == 0
        assert report.score == 100.0

    def test_failed_analysis_is_contained(self, make_collectors):
        """Test a crashing analysis pass publishes nothing and does not raise."""
        monitor = SystemMonitor(
            Queue(), poll_rate=0.1, collectors=make_collectors(), engine=FailingEngine()
        )
        assert monitor.run_cycle() is None
        assert monitor.completed_cycles == 0
        assert monitor.update_queue.empty()
        assert not monitor.cycle_in_progress

    def test_collector_set_order(self, make_collectors):
        """Test collectors are listed in a fixed order."""
        collectors = make_collectors()
        assert isinstance(collectors, CollectorSet)
        assert [name for name, _ in collectors.items()] == ["cpu", "memory", "battery", "applications"]
