"""Tests for the memory collector."""

import time
from collections import namedtuple

import pytest

from pysage.memory import (
    MemoryCollector,
    MemoryPressureSource,
    VMPageCounters,
    counters_from_psutil,
    parse_psi,
    parse_vm_stat,
    pressure_from_percentage,
    resolve_pressure,
)
from pysage.models import MemoryPressure, MemoryProcessUsage

GIB = 1024**3

VM_STAT = """\
Mach Virtual Memory Statistics: (page size of 16384 bytes)
Pages free:                               10000.
Pages active:                            200000.
Pages inactive:                          180000.
Pages speculative:                         5000.
Pages throttled:                              0.
Pages wired down:                         90000.
Pages purgeable:                           3000.
"Translation faults":                 123456789.
Pages copy-on-write:                    1234567.
Pages occupied by compressor:             40000.
File-backed pages:                        60000.
"""

PS_MEMORY = """\
  PID    RSS COMM
  100  512000 /Applications/Safari.app/Contents/MacOS/Safari
  101    2048 /usr/sbin/tiny
  102  204800 /usr/bin/python3
"""

VirtualMemory = namedtuple("VirtualMemory", ["total", "available", "active", "inactive", "cached", "slab"])


def make_collector(counters: VMPageCounters, total: int = 16 * GIB, **kwargs) -> MemoryCollector:
    defaults = dict(
        counter_source=lambda: counters,
        total_source=lambda: total,
        swap_source=lambda: 1 * GIB,
        tool_finder=lambda name: None,
        process_source=lambda: [],
        platform="linux",
    )
    defaults.update(kwargs)
    return MemoryCollector(**defaults)


class TestVMStat:
    """Tests for vm_stat parsing and the derived categories."""

    def test_parse_page_size_from_header(self):
        """Test the page size comes from the vm_stat header."""
        counters = parse_vm_stat(VM_STAT)
        assert counters.page_size == 16384
        assert counters.free == 10000
        assert counters.wired == 90000
        assert counters.compressed == 40000
        assert counters.external == 60000

    def test_app_memory(self):
        """Test app memory is active + inactive + speculative + external."""
        counters = parse_vm_stat(VM_STAT)
        assert counters.app_bytes == (200000 + 180000 + 5000 + 60000) * 16384

    def test_cached_is_plausible(self):
        """Test the cached-files approximation lies between purgeable and purgeable + inactive."""
        counters = parse_vm_stat(VM_STAT)
        lower = counters.bytes(counters.purgeable)
        upper = lower + counters.bytes(counters.inactive)
        assert lower <= counters.cached_bytes <= upper

    def test_empty_output_rejected(self):
        """Test output without counters is an error."""
        with pytest.raises(ValueError):
            parse_vm_stat("nothing useful here")

    def test_counters_from_psutil_use_available_as_free(self):
        """Test the psutil mapping treats available memory as free."""
        vm = VirtualMemory(
            total=16 * GIB, available=6 * GIB, active=5 * GIB, inactive=2 * GIB, cached=3 * GIB, slab=GIB
        )
        counters = counters_from_psutil(vm, page_size=4096)
        assert counters.bytes(counters.free) == 6 * GIB
        assert counters.bytes(counters.wired) == GIB
        assert counters.bytes(counters.external) == 3 * GIB


class TestPressure:
    """Tests for pressure tiers."""

    @pytest.mark.parametrize(
        "percent,expected",
        [
            (50.0, MemoryPressure.NORMAL),
            (85.0, MemoryPressure.NORMAL),
            (85.1, MemoryPressure.WARNING),
            (95.0, MemoryPressure.WARNING),
            (95.5, MemoryPressure.CRITICAL),
        ],
    )
    def test_percentage_thresholds(self, percent, expected):
        """Test the percentage fallback thresholds."""
        assert pressure_from_percentage(percent) is expected

    def test_event_overrides_percentage(self):
        """Test an OS pressure event takes precedence."""
        assert resolve_pressure(MemoryPressure.CRITICAL, 20.0) is MemoryPressure.CRITICAL

    def test_normal_event_defers_to_percentage(self):
        """Test a normal or missing event falls back to the percentage."""
        assert resolve_pressure(MemoryPressure.NORMAL, 90.0) is MemoryPressure.WARNING
        assert resolve_pressure(None, 99.0) is MemoryPressure.CRITICAL

    def test_parse_psi(self):
        """Test PSI stall averages map to tiers."""
        calm = "some avg10=0.00 avg60=0.00 avg300=0.00 total=0\nfull avg10=0.00 avg60=0.00 avg300=0.00 total=0\n"
        busy = "some avg10=12.50 avg60=3.00 avg300=1.00 total=10\nfull avg10=1.00 avg60=0.00 avg300=0.00 total=5\n"
        stalled = "some avg10=40.00 avg60=9.00 avg300=2.00 total=10\nfull avg10=8.00 avg60=1.00 avg300=0.00 total=5\n"
        assert parse_psi(calm) is MemoryPressure.NORMAL
        assert parse_psi(busy) is MemoryPressure.WARNING
        assert parse_psi(stalled) is MemoryPressure.CRITICAL


class TestMemoryPressureSource:
    """Tests for the asynchronous pressure feed."""

    def test_signal_sets_level(self):
        """Test a directly signalled event is visible."""
        source = MemoryPressureSource()
        assert source.level is None
        source.signal(MemoryPressure.WARNING)
        assert source.level is MemoryPressure.WARNING

    def test_watcher_polls_reader(self):
        """Test the watcher thread publishes reader results."""
        source = MemoryPressureSource(reader=lambda: MemoryPressure.CRITICAL, poll_interval=0.05)
        source.start()
        try:
            deadline = time.time() + 2.0
            while source.level is None and time.time() < deadline:
                time.sleep(0.01)
            assert source.level is MemoryPressure.CRITICAL
            assert source.is_running
        finally:
            source.stop()
        assert not source.is_running

    def test_start_without_reader_is_noop(self):
        """Test there is no watcher when the platform has no feed."""
        source = MemoryPressureSource()
        source.start()
        assert not source.is_running


class TestMemoryCollector:
    """Tests for the assembled memory metrics."""

    def test_used_is_total_minus_free(self):
        """Test used memory is total minus free."""
        counters = VMPageCounters(page_size=4096, free=(4 * GIB) // 4096, active=100)
        metrics = make_collector(counters).collect()
        assert metrics.total == 16 * GIB
        assert metrics.free == 4 * GIB
        assert metrics.used == 12 * GIB
        assert metrics.swap_used == GIB
        assert metrics.pressure is MemoryPressure.NORMAL

    def test_percentage_pressure_without_event(self):
        """Test pressure falls back to the percentage of the same snapshot."""
        counters = VMPageCounters(page_size=4096, free=(GIB // 2) // 4096)
        metrics = make_collector(counters).collect()
        assert metrics.pressure is MemoryPressure.CRITICAL

    def test_event_drives_pressure(self):
        """Test an OS event sets the tier regardless of the percentage."""
        source = MemoryPressureSource()
        source.signal(MemoryPressure.WARNING)
        counters = VMPageCounters(page_size=4096, free=(8 * GIB) // 4096)
        metrics = make_collector(counters, pressure_source=source).collect()
        assert metrics.pressure is MemoryPressure.WARNING

    def test_process_ranking_from_ps(self):
        """Test ps output is normalized, floored at 10 MB and ranked."""
        counters = VMPageCounters(page_size=4096, free=1)
        collector = make_collector(
            counters,
            tool_finder=lambda name: f"/bin/{name}",
            runner=lambda argv, timeout: PS_MEMORY,
        )
        processes = collector.collect().processes
        assert [(p.pid, p.name) for p in processes] == [(100, "Safari"), (102, "python3")]

    def test_process_ranking_falls_back_to_psutil(self):
        """Test the psutil tier is used when ps is missing."""
        rows = [
            MemoryProcessUsage(pid=i, name=f"proc{i}", memory_bytes=(i + 1) * 20 * 1024 * 1024)
            for i in range(30)
        ]
        processes = make_collector(VMPageCounters(page_size=4096), process_source=lambda: rows).top_processes()
        assert len(processes) == 15
        assert processes[0].pid == 29

    def test_failure_yields_zeroed_fallback(self):
        """Test a failed acquisition publishes zeroed metrics."""

        def broken():
            raise OSError("vm stats unavailable")

        metrics = make_collector(VMPageCounters(page_size=4096), counter_source=broken).collect()
        assert metrics.total == 0
        assert metrics.used == 0
        assert metrics.pressure is MemoryPressure.NORMAL
        assert metrics.processes == ()
