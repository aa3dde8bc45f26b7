"""Session memory: a fixed-capacity rolling buffer of snapshots."""

from collections import deque
from collections.abc import Callable
from statistics import fmean

from pysage.models import Snapshot

DEFAULT_WINDOW = 600.0  # seconds


class SessionMemory:
    """
    Ring buffer of snapshots in insertion order.

    Adding to a full buffer evicts the oldest entry. Nothing is persisted
    across restarts.
    """

    def __init__(self, capacity: int = 720):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._snapshots: deque[Snapshot] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._snapshots)

    @property
    def capacity(self) -> int:
        return self._snapshots.maxlen

    @property
    def latest(self) -> Snapshot | None:
        return self._snapshots[-1] if self._snapshots else None

    def add(self, snapshot: Snapshot) -> None:
        self._snapshots.append(snapshot)

    def resize(self, capacity: int) -> None:
        """Change capacity, keeping the newest entries."""
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._snapshots = deque(self._snapshots, maxlen=capacity)

    def snapshots(self) -> tuple[Snapshot, ...]:
        return tuple(self._snapshots)

    def recent(self, cutoff: float) -> list[Snapshot]:
        """Entries with a timestamp strictly newer than ``cutoff``."""
        return [s for s in self._snapshots if s.timestamp > cutoff]

    def _average(self, value: Callable[[Snapshot], float], window: float, now: float | None) -> float:
        if not self._snapshots:
            return 0.0
        if now is None:
            now = self._snapshots[-1].timestamp
        # The window is inclusive of the newest entry.
        entries = [s for s in self._snapshots if s.timestamp >= now - window]
        if not entries:
            return 0.0
        return fmean(value(s) for s in entries)

    def average_cpu(self, window: float = DEFAULT_WINDOW, now: float | None = None) -> float:
        """Mean machine-wide CPU load (0 - 100) over the trailing window."""
        return self._average(lambda s: s.cpu.load_percent, window, now)

    def average_memory(self, window: float = DEFAULT_WINDOW, now: float | None = None) -> float:
        """Mean memory usage in percent over the trailing window."""
        return self._average(lambda s: s.memory.percent, window, now)

    def average_power(self, window: float = DEFAULT_WINDOW, now: float | None = None) -> float:
        """Mean power draw in Watts over the trailing window."""
        return self._average(lambda s: s.battery.power_usage, window, now)
