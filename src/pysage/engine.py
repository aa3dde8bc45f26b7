"""Intelligence engine: owns the analysis state and produces the published report."""

import logging
import threading

from pysage.anomalies import AnomalyDetector
from pysage.classifier import WorkloadClassifier
from pysage.config import ANALYSIS, AnalysisConfig, session_capacity
from pysage.insights import generate_insights, generate_suggestions
from pysage.models import IntelligenceReport, Snapshot, SystemAnomaly
from pysage.scoring import PerformanceScorer
from pysage.session import SessionMemory

logger = logging.getLogger(__name__)


class IntelligenceEngine:
    """
    Runs one analysis pass per snapshot.

    The classifier history, the active anomaly set and the session memory are
    mutated only from :meth:`analyze`, which the monitor calls from a single
    cycle at a time. Consumers only ever see the returned
    :class:`IntelligenceReport`, which is immutable.
    """

    def __init__(
        self,
        config: AnalysisConfig = ANALYSIS,
        interval: float = 60.0,
        classifier: WorkloadClassifier | None = None,
        detector: AnomalyDetector | None = None,
        scorer: PerformanceScorer | None = None,
        session: SessionMemory | None = None,
    ) -> None:
        self._config = config
        self.classifier = classifier or WorkloadClassifier(config)
        self.detector = detector or AnomalyDetector(config)
        self.scorer = scorer or PerformanceScorer()
        self.session = session or SessionMemory(
            session_capacity(config.session_duration_seconds, interval)
        )
        self._resize_lock = threading.Lock()
        self._pending_capacity: int | None = None

    def set_interval(self, interval: float) -> None:
        """
        Schedule a session resize so it still covers the configured duration.

        May be called from any thread. The resize is applied at the start of
        the next :meth:`analyze`, on the cycle that owns the session.
        """
        with self._resize_lock:
            self._pending_capacity = session_capacity(self._config.session_duration_seconds, interval)

    def analyze(self, snapshot: Snapshot) -> IntelligenceReport:
        self._apply_pending_resize()
        self.session.add(snapshot)
        self.classifier.update(snapshot)
        workload = self.classifier.current_workload

        anomalies = self.detector.update(snapshot, workload)
        performance = self.scorer.score(snapshot, workload)
        insights = generate_insights(
            snapshot,
            workload,
            self.classifier.since,
            performance.score,
            anomalies,
            self.session,
            self._config,
        )
        suggestions = generate_suggestions(snapshot, workload)

        logger.debug(
            "Analysis: workload=%s score=%.1f anomalies=%d",
            workload.value,
            performance.score,
            len(anomalies),
        )
        return IntelligenceReport(
            snapshot=snapshot,
            workload=workload,
            confidence=self.classifier.confidence,
            performance=performance,
            insights=tuple(insights[: self._config.max_insights]),
            anomalies=self._top(anomalies),
            suggestions=tuple(suggestions),
        )

    def _top(self, anomalies: tuple[SystemAnomaly, ...]) -> tuple[SystemAnomaly, ...]:
        ranked = sorted(anomalies, key=lambda a: (a.severity.rank, a.timestamp), reverse=True)
        return tuple(ranked[: self._config.max_anomalies])

    def _apply_pending_resize(self) -> None:
        with self._resize_lock:
            capacity, self._pending_capacity = self._pending_capacity, None
        if capacity is not None and capacity != self.session.capacity:
            logger.debug("Resizing session memory to %d snapshots", capacity)
            self.session.resize(capacity)
