"""Configuration values and collection cadence for pysage."""

import math
from dataclasses import dataclass
from enum import Enum


class BackgroundIntensity(Enum):
    """Collection cadence shared with background monitoring."""

    MINIMAL = "minimal"
    MEDIUM = "medium"
    BALANCED = "balanced"
    COMPREHENSIVE = "comprehensive"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @property
    def update_interval(self) -> float:
        """Seconds between collection cycles."""
        return {
            BackgroundIntensity.MINIMAL: 300.0,
            BackgroundIntensity.MEDIUM: 120.0,
            BackgroundIntensity.BALANCED: 60.0,
            BackgroundIntensity.COMPREHENSIVE: 15.0,
        }[self]

    @property
    def description(self) -> str:
        return {
            BackgroundIntensity.MINIMAL: "Basic monitoring every 5 minutes",
            BackgroundIntensity.MEDIUM: "Moderate monitoring every 2 minutes",
            BackgroundIntensity.BALANCED: "Regular monitoring every minute",
            BackgroundIntensity.COMPREHENSIVE: "Detailed monitoring every 15 seconds",
        }[self]

    def next(self) -> "BackgroundIntensity":
        members = list(BackgroundIntensity)
        return members[(members.index(self) + 1) % len(members)]


@dataclass(frozen=True)
class CollectorConfig:
    """Limits for the data collectors."""

    cpu_top_k: int = 25
    memory_top_k: int = 15
    memory_floor_bytes: int = 10 * 1024 * 1024
    probe_timeout: float = 3.0  # seconds, per subprocess
    collector_timeout: float = 10.0  # seconds the coordinator waits per collector


@dataclass(frozen=True)
class AnalysisConfig:
    """Windows and thresholds for the analysis pass."""

    confidence_threshold: float = 0.7
    workload_history_seconds: float = 3600.0
    anomaly_retention_seconds: float = 300.0
    trailing_window_seconds: float = 600.0
    session_duration_seconds: float = 3600.0
    max_insights: int = 3
    max_anomalies: int = 3


def session_capacity(duration: float, interval: float) -> int:
    """Number of snapshots needed to cover ``duration`` at ``interval`` cadence."""
    if interval <= 0:
        raise ValueError("interval must be positive")
    return max(1, math.ceil(duration / interval))


APP_NAME = "pysage"
DEFAULT_INTENSITY = BackgroundIntensity.BALANCED
COLLECTION = CollectorConfig()
ANALYSIS = AnalysisConfig()
