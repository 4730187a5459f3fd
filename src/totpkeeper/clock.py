"""Injectable time source.

Code generation and the sync timer both read time through a ``Clock`` so
tests can pin the wall clock and step the monotonic clock by hand.
"""

from __future__ import annotations

import threading
import time
from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    def time(self) -> float:
        """Wall-clock seconds since the Unix epoch."""

    def monotonic(self) -> float:
        """Seconds on a clock that never goes backwards."""


class SystemClock:
    """Clock backed by the ``time`` module."""

    def time(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()


class FakeClock:
    """Manually advanced clock for tests and dry runs."""

    def __init__(self, start: float = 0.0, monotonic_start: float = 0.0) -> None:
        self._now = float(start)
        self._mono = float(monotonic_start)
        self._lock = threading.Lock()

    def time(self) -> float:
        with self._lock:
            return self._now

    def monotonic(self) -> float:
        with self._lock:
            return self._mono

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds
            self._mono += seconds

    def set(self, unix_time: float) -> None:
        """Jump the wall clock without touching the monotonic clock."""
        with self._lock:
            self._now = float(unix_time)


def utc_now(clock: Clock) -> datetime:
    """Current wall-clock time from ``clock`` as an aware UTC datetime."""
    return datetime.fromtimestamp(clock.time(), tz=UTC)


system_clock = SystemClock()
