"""Human-readable insights and optimization suggestions.

Both are regenerated from scratch every analysis pass; nothing here keeps
state between cycles.
"""

from collections.abc import Sequence

from pysage.anomalies import POWER_ANOMALY_FACTOR, baseline_for
from pysage.config import ANALYSIS, AnalysisConfig
from pysage.models import (
    BatteryState,
    Effort,
    Impact,
    InsightType,
    OptimizationSuggestion,
    Priority,
    RunningApplication,
    Snapshot,
    SuggestionCategory,
    SystemAnomaly,
    SystemInsight,
    WorkloadType,
)
from pysage.scoring import performance_description
from pysage.session import SessionMemory

LOW_BATTERY_PERCENT = 20.0
POWER_SUGGESTION_FACTOR = 1.3

ENERGY_INTENSIVE_APPS = (
    "chrome",
    "firefox",
    "zoom",
    "teams",
    "photoshop",
    "final cut",
    "xcode",
    "spotify",
)


def format_duration(seconds: float) -> str:
    """``"1h 5m"`` or ``"5m"``."""
    seconds = max(0, int(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes = remainder // 60
    return f"{hours}h {minutes}m" if hours else f"{minutes}m"


def energy_intensive_apps(applications: Sequence[RunningApplication]) -> list[str]:
    """Names of running applications known to draw a lot of power."""
    found = []
    for app in applications:
        lowered = app.name.lower()
        if any(keyword in lowered for keyword in ENERGY_INTENSIVE_APPS):
            found.append(app.name)
    return found


def workload_insight(
    workload: WorkloadType,
    since: float | None,
    now: float,
    score: float,
) -> SystemInsight | None:
    if workload is WorkloadType.UNKNOWN or since is None:
        return None
    return SystemInsight(
        type=InsightType.WORKLOAD_ANALYSIS,
        title=f"Current Workload: {workload.display_name}",
        description=(
            f"You've been doing {workload.display_name.lower()} work for "
            f"{format_duration(now - since)}. System performance is "
            f"{performance_description(score)} for this type of work."
        ),
        priority=Priority.MEDIUM,
        actionable=False,
    )


def performance_insight(score: float) -> SystemInsight | None:
    if score < 70:
        return SystemInsight(
            type=InsightType.PERFORMANCE_OPTIMIZATION,
            title="Performance Below Optimal",
            description=f"System performance score is {int(score)}/100. Consider optimizing resource usage.",
            priority=Priority.HIGH,
            actionable=True,
        )
    if score < 85:
        return SystemInsight(
            type=InsightType.PERFORMANCE_OPTIMIZATION,
            title="Performance Could Be Improved",
            description=(
                f"System performance score is {int(score)}/100. "
                "Some optimization opportunities available."
            ),
            priority=Priority.MEDIUM,
            actionable=True,
        )
    return None


def battery_insight(snapshot: Snapshot, workload: WorkloadType) -> SystemInsight | None:
    battery = snapshot.battery
    if not battery.present:
        return None
    if battery.level < LOW_BATTERY_PERCENT and not battery.is_charging:
        return SystemInsight(
            type=InsightType.BATTERY_HEALTH,
            title="Low Battery Warning",
            description=f"Battery level is {int(battery.level)}%. Consider connecting to power soon.",
            priority=Priority.HIGH,
            actionable=True,
        )
    if battery.power_usage > baseline_for(workload).power * POWER_ANOMALY_FACTOR:
        return SystemInsight(
            type=InsightType.BATTERY_HEALTH,
            title="High Power Consumption",
            description=(
                f"Power usage ({battery.power_usage:.1f}W) is higher than normal "
                f"for {workload.display_name} workload."
            ),
            priority=Priority.MEDIUM,
            actionable=True,
        )
    return None


def system_health_insight(anomalies: Sequence[SystemAnomaly]) -> SystemInsight | None:
    count = len(anomalies)
    if count > 2:
        return SystemInsight(
            type=InsightType.SYSTEM_HEALTH,
            title="Multiple System Issues Detected",
            description=(
                f"{count} system anomalies are currently active. "
                "Review system performance recommendations."
            ),
            priority=Priority.CRITICAL,
            actionable=True,
        )
    if count > 0:
        return SystemInsight(
            type=InsightType.SYSTEM_HEALTH,
            title="System Issue Detected",
            description=f"{count} system anomaly detected. Monitor system performance.",
            priority=Priority.MEDIUM,
            actionable=True,
        )
    return None


def sustained_load_insight(
    session: SessionMemory,
    workload: WorkloadType,
    now: float,
    window: float,
) -> SystemInsight | None:
    """Average load over the trailing window is above the workload baseline."""
    if len(session.recent(now - window)) < 2:
        return None
    average = session.average_cpu(window=window, now=now)
    if average <= baseline_for(workload).cpu:
        return None
    return SystemInsight(
        type=InsightType.SUSTAINED_LOAD,
        title="Sustained High CPU Load",
        description=(
            f"CPU load has averaged {average:.0f}% over the last "
            f"{format_duration(window)}, above what is normal for "
            f"{workload.display_name.lower()} work."
        ),
        priority=Priority.MEDIUM,
        actionable=True,
    )


def generate_insights(
    snapshot: Snapshot,
    workload: WorkloadType,
    since: float | None,
    score: float,
    anomalies: Sequence[SystemAnomaly],
    session: SessionMemory,
    config: AnalysisConfig = ANALYSIS,
) -> list[SystemInsight]:
    """All insights for this pass, highest priority first."""
    now = snapshot.timestamp
    candidates = [
        workload_insight(workload, since, now, score),
        performance_insight(score),
        battery_insight(snapshot, workload),
        system_health_insight(anomalies),
        sustained_load_insight(session, workload, now, config.trailing_window_seconds),
    ]
    insights = [insight for insight in candidates if insight is not None]
    insights.sort(key=lambda insight: insight.priority.rank, reverse=True)
    return insights


def generate_suggestions(snapshot: Snapshot, workload: WorkloadType) -> list[OptimizationSuggestion]:
    """Optimization suggestions for this pass, highest impact first."""
    baseline = baseline_for(workload)
    suggestions = []

    load = snapshot.cpu.load_percent
    if load > baseline.cpu:
        suggestions.append(
            OptimizationSuggestion(
                title="High CPU Usage Detected",
                description=f"CPU usage is {load:.1f}% - consider closing resource-intensive applications",
                impact=Impact.HIGH,
                effort=Effort.EASY,
                category=SuggestionCategory.CPU,
            )
        )

    memory = snapshot.memory.percent
    if snapshot.memory.total > 0 and memory > baseline.memory:
        suggestions.append(
            OptimizationSuggestion(
                title="High Memory Usage",
                description=(
                    f"Memory usage is {memory:.1f}% - restart memory-intensive apps "
                    "or close browser tabs"
                ),
                impact=Impact.MEDIUM,
                effort=Effort.EASY,
                category=SuggestionCategory.MEMORY,
            )
        )

    battery = snapshot.battery
    if battery.power_usage > baseline.power * POWER_SUGGESTION_FACTOR:
        suggestions.append(
            OptimizationSuggestion(
                title="High Power Usage",
                description=(
                    f"Power consumption is {battery.power_usage:.1f}W - reduce screen "
                    "brightness or close power-hungry apps"
                ),
                impact=Impact.MEDIUM,
                effort=Effort.EASY,
                category=SuggestionCategory.BATTERY,
            )
        )

    if battery.present and battery.state is BatteryState.DISCHARGING:
        hungry = energy_intensive_apps(snapshot.applications)
        if hungry:
            suggestions.append(
                OptimizationSuggestion(
                    title="Energy-Intensive Apps Running",
                    description=f"Running on battery with {', '.join(hungry)} open",
                    impact=Impact.LOW,
                    effort=Effort.EASY,
                    category=SuggestionCategory.BATTERY,
                )
            )

    suggestions.sort(key=lambda suggestion: suggestion.impact.rank, reverse=True)
    return suggestions
