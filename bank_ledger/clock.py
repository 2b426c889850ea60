"""
Clock sources for ledger timestamps.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional
import threading


class Clock(ABC):
    """Provides the timestamp stamped on each appended entry"""

    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware"""
        pass


class SystemClock(Clock):
    """Wall clock in UTC"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Deterministic clock for tests; optionally advances on every read"""

    def __init__(self, start: Optional[datetime] = None, step: timedelta = timedelta(0)):
        self._current = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._step = step
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            value = self._current
            self._current = self._current + self._step
            return value

    def advance(self, delta: timedelta) -> None:
        with self._lock:
            self._current = self._current + delta
