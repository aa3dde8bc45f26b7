"""Baseline-driven anomaly detection with a time-windowed active set."""

import logging
from dataclasses import dataclass

from pysage.config import ANALYSIS, AnalysisConfig
from pysage.models import AnomalyType, Severity, Snapshot, SystemAnomaly, WorkloadType

logger = logging.getLogger(__name__)

CPU_CRITICAL_PERCENT = 90.0
MEMORY_CRITICAL_PERCENT = 95.0
POWER_ANOMALY_FACTOR = 1.5
POWER_CRITICAL_WATTS = 60.0
RUNAWAY_PROCESS_PERCENT = 80.0
THERMAL_CRITICAL_CELSIUS = 95.0

KNOWN_HIGH_CPU_PROCESSES = (
    "kernel_task",
    "Kernel Task",
    "Xcode",
    "Final Cut Pro",
    "Adobe Premiere",
    "Compressor",
    "HandBrake",
    "Cinema 4D",
    "Blender",
)


@dataclass(slots=True, frozen=True)
class Baseline:
    """What counts as normal for a workload."""

    cpu: float  # percent of the whole machine
    memory: float  # percent of physical memory
    power: float  # Watts


BASELINES = {
    WorkloadType.DEVELOPMENT: Baseline(cpu=60.0, memory=70.0, power=15.0),
    WorkloadType.DESIGN: Baseline(cpu=45.0, memory=65.0, power=12.0),
    WorkloadType.VIDEO_EDITING: Baseline(cpu=80.0, memory=80.0, power=25.0),
    WorkloadType.GAMING: Baseline(cpu=75.0, memory=60.0, power=30.0),
    WorkloadType.BROWSING: Baseline(cpu=25.0, memory=40.0, power=8.0),
    WorkloadType.OFFICE: Baseline(cpu=20.0, memory=35.0, power=6.0),
    WorkloadType.UNKNOWN: Baseline(cpu=40.0, memory=50.0, power=10.0),
}


def baseline_for(workload: WorkloadType) -> Baseline:
    return BASELINES[workload]


def is_known_high_cpu_process(display_name: str) -> bool:
    return any(known in display_name for known in KNOWN_HIGH_CPU_PROCESSES)


def detect_anomalies(snapshot: Snapshot, workload: WorkloadType) -> list[SystemAnomaly]:
    """Anomalies present in one snapshot, judged against the workload baseline."""
    baseline = baseline_for(workload)
    now = snapshot.timestamp
    found: list[SystemAnomaly] = []

    load = snapshot.cpu.load_percent
    if load > baseline.cpu:
        found.append(
            SystemAnomaly(
                type=AnomalyType.CPU_SPIKE,
                severity=Severity.CRITICAL if load > CPU_CRITICAL_PERCENT else Severity.WARNING,
                title="High CPU Usage",
                description=(
                    f"CPU usage ({int(load)}%) is higher than normal "
                    f"for {workload.display_name} workload"
                ),
                affected_component="CPU",
                suggested_action="Close unnecessary applications or check for runaway processes",
                timestamp=now,
            )
        )

    memory = snapshot.memory.percent
    if snapshot.memory.total > 0 and memory > baseline.memory:
        found.append(
            SystemAnomaly(
                type=AnomalyType.MEMORY_PRESSURE,
                severity=Severity.CRITICAL if memory > MEMORY_CRITICAL_PERCENT else Severity.WARNING,
                title="High Memory Usage",
                description=(
                    f"Memory usage ({int(memory)}%) is higher than normal "
                    f"for {workload.display_name} workload"
                ),
                affected_component="Memory",
                suggested_action="Close unused browser tabs or restart memory-intensive applications",
                timestamp=now,
            )
        )

    battery = snapshot.battery
    power = battery.power_usage
    if battery.present and not battery.is_charging and power > baseline.power * POWER_ANOMALY_FACTOR:
        found.append(
            SystemAnomaly(
                type=AnomalyType.UNUSUAL_POWER_DRAIN,
                severity=Severity.CRITICAL if power > POWER_CRITICAL_WATTS else Severity.WARNING,
                title="High Power Usage",
                description=(
                    f"Power usage ({power:.1f}W) is higher than normal "
                    f"for {workload.display_name} workload"
                ),
                affected_component="Battery",
                suggested_action="Reduce screen brightness or close power-intensive applications",
                timestamp=now,
            )
        )

    for process in snapshot.cpu.processes:
        name = process.display_name
        if process.cpu_percent > RUNAWAY_PROCESS_PERCENT and not is_known_high_cpu_process(name):
            found.append(
                SystemAnomaly(
                    type=AnomalyType.RUNAWAY_PROCESS,
                    severity=Severity.WARNING,
                    title="High CPU Process",
                    description=f"{name} is using {process.cpu_percent:.1f}% CPU",
                    affected_component=f"Process: {name}",
                    suggested_action=f"Consider restarting {name} if it continues to use high CPU",
                    timestamp=now,
                )
            )

    temperature = snapshot.cpu.temperature
    if snapshot.cpu.is_throttled:
        found.append(
            SystemAnomaly(
                type=AnomalyType.THERMAL_THROTTLING,
                severity=(
                    Severity.CRITICAL if temperature >= THERMAL_CRITICAL_CELSIUS else Severity.WARNING
                ),
                title="CPU Thermal Throttling",
                description=f"The processor is running below its rated frequency at {temperature:.0f}°C",
                affected_component="Thermal",
                suggested_action="Improve ventilation or reduce sustained load",
                timestamp=now,
            )
        )

    return found


class AnomalyDetector:
    """
    Maintains the active anomaly set.

    Each update drops anomalies older than the retention window and merges
    the newly detected ones. A new anomaly replaces an active one with the
    same type and affected component.
    """

    def __init__(self, config: AnalysisConfig = ANALYSIS) -> None:
        self._config = config
        self._active: dict[tuple[AnomalyType, str], SystemAnomaly] = {}

    @property
    def active(self) -> tuple[SystemAnomaly, ...]:
        return tuple(self._active.values())

    def expire(self, now: float) -> None:
        retention = self._config.anomaly_retention_seconds
        self._active = {
            key: anomaly
            for key, anomaly in self._active.items()
            if now - anomaly.timestamp < retention
        }

    def add(self, anomaly: SystemAnomaly) -> None:
        if anomaly.key not in self._active:
            logger.info("Anomaly detected: %s (%s)", anomaly.title, anomaly.severity.value)
        # Re-insert so the active set stays ordered by recency.
        self._active.pop(anomaly.key, None)
        self._active[anomaly.key] = anomaly

    def update(self, snapshot: Snapshot, workload: WorkloadType) -> tuple[SystemAnomaly, ...]:
        self.expire(snapshot.timestamp)
        for anomaly in detect_anomalies(snapshot, workload):
            self.add(anomaly)
        return self.active
