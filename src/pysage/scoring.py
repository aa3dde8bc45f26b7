"""Weighted composite performance score."""

from pysage.anomalies import baseline_for
from pysage.models import MemoryPressure, PerformanceBreakdown, Snapshot, WorkloadType

CPU_WEIGHT = 0.3
MEMORY_WEIGHT = 0.3
BATTERY_WEIGHT = 0.2
RESPONSIVENESS_WEIGHT = 0.2

CPU_PENALTY = 2.0  # points per percentage point over baseline
MEMORY_PENALTY = 3.0  # points per percentage point over baseline
BATTERY_PENALTY = 5.0  # points per excess Watt
BUSY_CPU_PERCENT = 80.0

_RESPONSIVENESS = {
    MemoryPressure.NORMAL: 100.0,
    MemoryPressure.WARNING: 60.0,
    MemoryPressure.CRITICAL: 20.0,
}


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


def composite(cpu: float, memory: float, battery: float, responsiveness: float) -> float:
    """``100 - sum(weight * (100 - subscore))``, clamped to [0, 100]."""
    score = 100.0
    score -= CPU_WEIGHT * max(0.0, 100.0 - cpu)
    score -= MEMORY_WEIGHT * max(0.0, 100.0 - memory)
    score -= BATTERY_WEIGHT * max(0.0, 100.0 - battery)
    score -= RESPONSIVENESS_WEIGHT * max(0.0, 100.0 - responsiveness)
    return _clamp(score)


def linear_subscore(observed: float, threshold: float, penalty: float) -> float:
    """100 up to ``threshold``, then ``penalty`` points off per unit above it."""
    if observed <= threshold:
        return 100.0
    return _clamp(100.0 - (observed - threshold) * penalty)


def cpu_subscore(snapshot: Snapshot, workload: WorkloadType) -> float:
    return linear_subscore(snapshot.cpu.load_percent, baseline_for(workload).cpu, CPU_PENALTY)


def memory_subscore(snapshot: Snapshot, workload: WorkloadType) -> float:
    if snapshot.memory.total <= 0:
        return 100.0
    return linear_subscore(snapshot.memory.percent, baseline_for(workload).memory, MEMORY_PENALTY)


def battery_subscore(snapshot: Snapshot, workload: WorkloadType) -> float:
    battery = snapshot.battery
    if not battery.present or battery.is_charging:
        return 100.0
    return linear_subscore(battery.power_usage, baseline_for(workload).power, BATTERY_PENALTY)


def responsiveness_subscore(snapshot: Snapshot) -> float:
    pressure = snapshot.memory.pressure
    if pressure is MemoryPressure.NORMAL and snapshot.cpu.load_percent >= BUSY_CPU_PERCENT:
        return 80.0
    return _RESPONSIVENESS[pressure]


def performance_description(score: float) -> str:
    if score >= 90:
        return "excellent"
    if score >= 80:
        return "very good"
    if score >= 70:
        return "good"
    if score >= 60:
        return "acceptable"
    if score >= 50:
        return "below average"
    return "poor"


class PerformanceScorer:
    """Scores a snapshot against the baselines of the current workload."""

    def score(self, snapshot: Snapshot, workload: WorkloadType) -> PerformanceBreakdown:
        cpu = cpu_subscore(snapshot, workload)
        memory = memory_subscore(snapshot, workload)
        battery = battery_subscore(snapshot, workload)
        responsiveness = responsiveness_subscore(snapshot)
        return PerformanceBreakdown(
            score=composite(cpu, memory, battery, responsiveness),
            cpu=cpu,
            memory=memory,
            battery=battery,
            responsiveness=responsiveness,
        )
