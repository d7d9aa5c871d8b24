"""
Time sources.

Everything time-dependent (cache freshness, event timestamps, span
durations) reads the clock it was constructed with, so tests can drive
time by hand.
"""
import time
from typing import Protocol


class Clock(Protocol):
    """Anything with a ``now()`` returning Unix epoch seconds."""

    def now(self) -> float:
        ...


class SystemClock:
    """Wall clock."""

    def now(self) -> float:
        return time.time()


class ManualClock:
    """
    Clock that only moves when told to.

    Usage:
        clock = ManualClock()
        cache = CacheManager(clock=clock, default_ttl=1.0)
        clock.advance(0.9)
    """

    def __init__(self, start: float = 0.0):
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        """Move forward by ``seconds`` and return the new time."""
        if seconds < 0:
            raise ValueError("ManualClock cannot move backwards")
        self._now += seconds
        return self._now

    def set(self, timestamp: float) -> None:
        self._now = float(timestamp)
