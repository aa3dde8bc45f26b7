"""Workload classification with confidence-gated publication."""

import logging
import re
from collections import deque
from collections.abc import Iterable

from pysage.config import ANALYSIS, AnalysisConfig
from pysage.models import Snapshot, WorkloadDetection, WorkloadType

logger = logging.getLogger(__name__)

BASE_CONFIDENCE = 0.5
UNKNOWN_CONFIDENCE = 0.1

DEVELOPMENT_APPS = ("xcode", "code", "pycharm", "intellij", "android studio")
DEVELOPMENT_PROCESSES = ("swift",)
DESIGN_APPS = ("figma", "sketch", "photoshop", "illustrator")
VIDEO_APPS = ("final cut", "premiere", "davinci")
GAMING_APPS = ("steam",)
BROWSER_APPS = ("safari", "chrome", "firefox")
OFFICE_APPS = ("word", "excel", "powerpoint", "keynote", "pages", "numbers")

GB = 1_000_000_000


def _contains_any(names: Iterable[str], keywords: tuple[str, ...]) -> bool:
    return any(keyword in name for name in names for keyword in keywords)


def _names_any(names: Iterable[str], keywords: tuple[str, ...]) -> bool:
    """
    Match keywords as whole words of an application name.

    "microsoft word" and "final cut pro" match, "1password" does not.
    """
    pattern = re.compile(r"(?<![a-z0-9])(?:" + "|".join(map(re.escape, keywords)) + r")(?![a-z0-9])")
    return any(pattern.search(name) for name in names)


def matching_workloads(snapshot: Snapshot) -> list[WorkloadType]:
    """Categories whose defining signals are present, in declaration order."""
    apps = [app.name.lower() for app in snapshot.applications]
    processes = [p.name.lower() for p in snapshot.cpu.processes]
    load = snapshot.cpu.load_percent

    matches = []
    if _contains_any(apps, DEVELOPMENT_APPS) or _contains_any(processes, DEVELOPMENT_PROCESSES):
        matches.append(WorkloadType.DEVELOPMENT)
    if _names_any(apps, DESIGN_APPS):
        matches.append(WorkloadType.DESIGN)
    if _names_any(apps, VIDEO_APPS):
        matches.append(WorkloadType.VIDEO_EDITING)
    if _contains_any(apps, GAMING_APPS) or (
        load > 60 and any("Unity" in p.display_name for p in snapshot.cpu.processes)
    ):
        matches.append(WorkloadType.GAMING)
    if _names_any(apps, BROWSER_APPS) and load < 30:
        matches.append(WorkloadType.BROWSING)
    if _names_any(apps, OFFICE_APPS):
        matches.append(WorkloadType.OFFICE)
    return matches


def workload_confidence(workload: WorkloadType, snapshot: Snapshot) -> float:
    """Base confidence plus corroborating resource bonuses, capped at 1.0."""
    if workload is WorkloadType.UNKNOWN:
        return UNKNOWN_CONFIDENCE

    load = snapshot.cpu.load_percent
    memory = snapshot.memory.used
    power = snapshot.battery.power_usage
    confidence = BASE_CONFIDENCE

    if workload is WorkloadType.DEVELOPMENT:
        if load > 40:
            confidence += 0.2
        if memory > 8 * GB:
            confidence += 0.2
        confidence += 0.1
    elif workload is WorkloadType.DESIGN:
        if memory > 4 * GB:
            confidence += 0.2
        confidence += 0.2
    elif workload is WorkloadType.VIDEO_EDITING:
        if load > 50:
            confidence += 0.3
        confidence += 0.2
    elif workload is WorkloadType.GAMING:
        if load > 60:
            confidence += 0.2
        if power > 20:
            confidence += 0.2
        confidence += 0.1
    elif workload is WorkloadType.BROWSING:
        if load < 20:
            confidence += 0.3
        confidence += 0.1
    elif workload is WorkloadType.OFFICE:
        if load < 30:
            confidence += 0.2
        confidence += 0.2

    return min(1.0, confidence)


class WorkloadClassifier:
    """
    Infers the activity category of each snapshot.

    Every detection is appended to a one-hour history. The published
    ``current_workload`` only moves when a detection's confidence exceeds the
    threshold, so a single noisy tick cannot flip it.
    """

    def __init__(self, config: AnalysisConfig = ANALYSIS) -> None:
        self._config = config
        self._history: deque[WorkloadDetection] = deque()
        self._current = WorkloadType.UNKNOWN
        self._confidence = UNKNOWN_CONFIDENCE
        self._since: float | None = None

    @property
    def current_workload(self) -> WorkloadType:
        return self._current

    @property
    def confidence(self) -> float:
        """Confidence of the detection that set the current workload."""
        return self._confidence

    @property
    def since(self) -> float | None:
        """Timestamp at which the current workload was first published."""
        return self._since

    @property
    def history(self) -> tuple[WorkloadDetection, ...]:
        return tuple(self._history)

    def classify(self, snapshot: Snapshot) -> WorkloadDetection:
        best = WorkloadType.UNKNOWN
        best_confidence = UNKNOWN_CONFIDENCE
        for workload in matching_workloads(snapshot):
            confidence = workload_confidence(workload, snapshot)
            if confidence > best_confidence:
                best, best_confidence = workload, confidence
        return WorkloadDetection(
            timestamp=snapshot.timestamp,
            workload=best,
            confidence=best_confidence,
        )

    def record(self, detection: WorkloadDetection) -> bool:
        """Append to history and apply the gate. Returns True if the workload changed."""
        self._history.append(detection)
        cutoff = detection.timestamp - self._config.workload_history_seconds
        while self._history and self._history[0].timestamp <= cutoff:
            self._history.popleft()

        if detection.confidence <= self._config.confidence_threshold:
            return False
        changed = detection.workload is not self._current
        if changed:
            logger.info(
                "Workload changed: %s -> %s (%.2f)",
                self._current.value,
                detection.workload.value,
                detection.confidence,
            )
            self._since = detection.timestamp
        elif self._since is None:
            self._since = detection.timestamp
        self._current = detection.workload
        self._confidence = detection.confidence
        return changed

    def update(self, snapshot: Snapshot) -> WorkloadDetection:
        detection = self.classify(snapshot)
        self.record(detection)
        return detection
