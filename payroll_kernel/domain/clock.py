"""
Clock -- injectable time and sleep.

Services never call ``datetime.now()`` or ``time.sleep()`` directly. Retry
backoff, confirmation polling and price staleness checks all go through a
Clock so tests run deterministically and never wait in real time.
"""

import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Contract:
        ``now()`` returns a timezone-aware UTC ``datetime``.
        ``sleep(seconds)`` blocks (or pretends to) for ``seconds``.
    """

    @abstractmethod
    def now(self) -> datetime:
        ...

    @abstractmethod
    def sleep(self, seconds: float) -> None:
        ...


class SystemClock(Clock):
    """Production clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    ``sleep()`` does not block: it advances the clock and records the
    requested duration in ``sleeps`` so tests can assert on backoff.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._now = fixed_time or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self._now = self._now + timedelta(seconds=seconds)

    def set_time(self, value: datetime) -> None:
        with self._lock:
            self._now = value

    def advance(self, seconds: float = 1) -> None:
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds)
