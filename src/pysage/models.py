"""Data models for pysage."""

from dataclasses import dataclass, fields, is_dataclass
from enum import Enum
from typing import Any

_DISPLAY_NAMES = {
    "windowserver": "Window Server",
    "kernel_task": "Kernel Task",
    "mds": "Spotlight",
    "mds_stores": "Spotlight",
    "coreaudiod": "Core Audio",
    "backupd": "Time Machine",
    "hidd": "HID Server",
    "loginwindow": "Login Window",
}


def display_name_for(name: str) -> str:
    """Return a friendly name for well-known system processes."""
    if not name:
        return "Unknown Process"
    return _DISPLAY_NAMES.get(name.lower(), name)


class MemoryPressure(Enum):
    """Memory pressure tier."""

    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


class BatteryState(Enum):
    """Charge state of the internal battery."""

    CHARGING = "charging"
    DISCHARGING = "discharging"
    FULL = "full"
    UNKNOWN = "unknown"


class BatteryHealth(Enum):
    """Qualitative battery health band."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    UNKNOWN = "unknown"

    @classmethod
    def from_percentage(cls, percentage: float | None) -> "BatteryHealth":
        """Map max/design capacity percentage to a band."""
        if percentage is None:
            return cls.UNKNOWN
        if percentage >= 90:
            return cls.EXCELLENT
        if percentage >= 80:
            return cls.GOOD
        if percentage >= 70:
            return cls.FAIR
        return cls.POOR


class WorkloadType(Enum):
    """Inferred activity category."""

    DEVELOPMENT = "development"
    DESIGN = "design"
    VIDEO_EDITING = "video_editing"
    GAMING = "gaming"
    BROWSING = "browsing"
    OFFICE = "office"
    UNKNOWN = "unknown"

    @property
    def display_name(self) -> str:
        return {
            WorkloadType.DEVELOPMENT: "Development",
            WorkloadType.DESIGN: "Design",
            WorkloadType.VIDEO_EDITING: "Video Editing",
            WorkloadType.GAMING: "Gaming",
            WorkloadType.BROWSING: "Web Browsing",
            WorkloadType.OFFICE: "Office Work",
            WorkloadType.UNKNOWN: "Unknown",
        }[self]


class AnomalyType(Enum):
    """Kind of detected anomaly."""

    CPU_SPIKE = "cpu_spike"
    MEMORY_PRESSURE = "memory_pressure"
    UNUSUAL_POWER_DRAIN = "unusual_power_drain"
    RUNAWAY_PROCESS = "runaway_process"
    THERMAL_THROTTLING = "thermal_throttling"


class Severity(Enum):
    """Anomaly severity."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return {Severity.INFO: 0, Severity.WARNING: 1, Severity.CRITICAL: 2}[self]


class InsightType(Enum):
    """Category of a generated insight."""

    WORKLOAD_ANALYSIS = "workload_analysis"
    PERFORMANCE_OPTIMIZATION = "performance_optimization"
    BATTERY_HEALTH = "battery_health"
    SYSTEM_HEALTH = "system_health"
    SUSTAINED_LOAD = "sustained_load"


class Priority(Enum):
    """Insight priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(Priority).index(self)


class Impact(Enum):
    """Expected benefit of an optimization suggestion."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return list(Impact).index(self)


class Effort(Enum):
    """Effort needed to apply a suggestion."""

    EASY = "easy"
    MODERATE = "moderate"
    COMPLEX = "complex"


class SuggestionCategory(Enum):
    """Resource a suggestion targets."""

    CPU = "cpu"
    MEMORY = "memory"
    BATTERY = "battery"


@dataclass(slots=True, frozen=True)
class ProcessUsage:
    """A process ranked by CPU usage."""

    pid: int
    name: str
    cpu_percent: float  # 0.0 - 100.0 * core_count

    @property
    def display_name(self) -> str:
        return display_name_for(self.name)

    @property
    def priority_level(self) -> str:
        if self.cpu_percent < 2:
            return "Normal"
        if self.cpu_percent < 8:
            return "Elevated"
        if self.cpu_percent < 20:
            return "High"
        return "Critical"


@dataclass(slots=True, frozen=True)
class MemoryProcessUsage:
    """A process ranked by resident memory."""

    pid: int
    name: str
    memory_bytes: int

    @property
    def display_name(self) -> str:
        return display_name_for(self.name)


@dataclass(slots=True, frozen=True)
class CPUMetrics:
    """CPU portion of a snapshot."""

    usage: float  # 0.0 - 100.0 * core_count
    core_count: int
    per_core: tuple[float, ...]
    temperature: float
    temperature_source: str  # 'sensor', 'probe' or 'estimate'
    is_throttled: bool
    processes: tuple[ProcessUsage, ...]
    process_source: str  # tier that produced the process list

    @property
    def load_percent(self) -> float:
        """Usage normalized to the whole machine (0 - 100)."""
        if self.core_count <= 0:
            return 0.0
        return self.usage / self.core_count


@dataclass(slots=True, frozen=True)
class MemoryMetrics:
    """Memory portion of a snapshot. All sizes in bytes."""

    total: int
    used: int
    free: int
    app: int
    wired: int
    compressed: int
    cached: int
    swap_used: int
    pressure: MemoryPressure
    processes: tuple[MemoryProcessUsage, ...]

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.used / self.total * 100.0


@dataclass(slots=True, frozen=True)
class BatteryMetrics:
    """Battery portion of a snapshot."""

    present: bool
    level: float
    state: BatteryState
    power_usage: float  # Watts
    cycle_count: int | None = None
    design_capacity: int | None = None
    max_capacity: int | None = None
    health_percentage: float | None = None
    temperature: float | None = None  # Celsius
    voltage: float | None = None  # Volts
    amperage: float | None = None  # Amperes, negative while discharging
    time_remaining_minutes: int | None = None

    @classmethod
    def absent(cls) -> "BatteryMetrics":
        """Metrics for a machine without an internal battery."""
        return cls(present=False, level=0.0, state=BatteryState.UNKNOWN, power_usage=0.0)

    @property
    def is_charging(self) -> bool:
        return self.state is BatteryState.CHARGING

    @property
    def health(self) -> BatteryHealth:
        return BatteryHealth.from_percentage(self.health_percentage)

    @property
    def time_remaining_label(self) -> str:
        if self.time_remaining_minutes is None:
            return "Calculating..." if self.present else "Unknown"
        hours, minutes = divmod(self.time_remaining_minutes, 60)
        return f"{hours}:{minutes:02d}"


@dataclass(slots=True, frozen=True)
class RunningApplication:
    """A user-facing application."""

    name: str
    bundle_id: str
    pid: int
    is_active: bool
    is_hidden: bool


@dataclass(slots=True, frozen=True)
class Snapshot:
    """Immutable bundle of all telemetry from one collection cycle."""

    timestamp: float  # monotonic seconds
    wall_time: float  # epoch seconds, for display
    cpu: CPUMetrics
    memory: MemoryMetrics
    battery: BatteryMetrics
    applications: tuple[RunningApplication, ...]


@dataclass(slots=True, frozen=True)
class WorkloadDetection:
    timestamp: float
    workload: WorkloadType
    confidence: float  # 0.0 - 1.0


@dataclass(slots=True, frozen=True)
class SystemAnomaly:
    type: AnomalyType
    severity: Severity
    title: str
    description: str
    affected_component: str
    suggested_action: str
    timestamp: float

    @property
    def key(self) -> tuple[AnomalyType, str]:
        """Identity of the underlying condition."""
        return (self.type, self.affected_component)


@dataclass(slots=True, frozen=True)
class SystemInsight:
    type: InsightType
    title: str
    description: str
    priority: Priority
    actionable: bool


@dataclass(slots=True, frozen=True)
class OptimizationSuggestion:
    title: str
    description: str
    impact: Impact
    effort: Effort
    category: SuggestionCategory


@dataclass(slots=True, frozen=True)
class PerformanceBreakdown:
    """Composite score together with the subscores it was built from."""

    score: float
    cpu: float
    memory: float
    battery: float
    responsiveness: float


@dataclass(slots=True, frozen=True)
class IntelligenceReport:
    """Published, read-only state produced by one analysis pass."""

    snapshot: Snapshot
    workload: WorkloadType
    confidence: float
    performance: PerformanceBreakdown
    insights: tuple[SystemInsight, ...]
    anomalies: tuple[SystemAnomaly, ...]
    suggestions: tuple[OptimizationSuggestion, ...]

    @property
    def score(self) -> float:
        return self.performance.score

    def top_insights(self, n: int = 3) -> tuple[SystemInsight, ...]:
        ranked = sorted(self.insights, key=lambda i: i.priority.rank, reverse=True)
        return tuple(ranked[:n])

    def top_anomalies(self, n: int = 3) -> tuple[SystemAnomaly, ...]:
        ranked = sorted(
            self.anomalies, key=lambda a: (a.severity.rank, a.timestamp), reverse=True
        )
        return tuple(ranked[:n])

    def top_suggestions(self, n: int = 3) -> tuple[OptimizationSuggestion, ...]:
        ranked = sorted(self.suggestions, key=lambda s: s.impact.rank, reverse=True)
        return tuple(ranked[:n])


def as_dict(value: Any) -> Any:
    """Encode a published value field-for-field as plain data."""
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: as_dict(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, (list, tuple)):
        return [as_dict(item) for item in value]
    if isinstance(value, dict):
        return {key: as_dict(item) for key, item in value.items()}
    return value
