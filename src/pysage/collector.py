"""Uniform collector interface: acquire, then fall back."""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Collector(ABC, Generic[T]):
    """
    Base class for a telemetry collector.

    Subclasses implement :meth:`acquire`, which may raise, and
    :meth:`fallback`, the documented degraded value. :meth:`collect` never
    raises: a failed acquisition is logged and replaced by the fallback.
    """

    name = "collector"

    @abstractmethod
    def acquire(self) -> T:
        """Query the operating environment."""

    @abstractmethod
    def fallback(self) -> T:
        """Value published when acquisition fails."""

    def prime(self) -> None:
        """Establish sampling baselines before the first cycle."""

    def start(self) -> None:
        """Start any background feed the collector listens to."""

    def stop(self) -> None:
        """Stop background feeds started by :meth:`start`."""

    def collect(self) -> T:
        try:
            return self.acquire()
        except Exception:
            logger.warning("Collector '%s' failed, using fallback", self.name, exc_info=True)
            return self.fallback()


def first_result(tiers: Iterable[tuple[str, Callable[[], T]]]) -> tuple[str, T] | None:
    """
    Try acquisition tiers in order.

    A tier is skipped when it raises or returns an empty value. Returns the
    name and value of the first tier that produced something, or None.
    """
    for name, tier in tiers:
        try:
            value = tier()
        except Exception as exc:
            logger.debug("Tier '%s' unavailable: %s", name, exc)
            continue
        if value:
            return name, value
        logger.debug("Tier '%s' returned nothing", name)
    return None
