# src/dbconnector/engine/clock.py
"""Clock abstraction for watermark timestamps.

When no watermark column is configured, an incremental traversal's
watermark is the wall-clock time its cycle started. The connector's start
time is also the initial watermark. Both come from a Clock so tests can
control them.

Production code uses SystemClock (the default).
Tests inject MockClock to control time advancement.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Abstract wall clock."""

    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""
        ...


class SystemClock:
    """Production clock using datetime.now(UTC)."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class MockClock:
    """Controllable clock for deterministic testing.

    Example:
        clock = MockClock(datetime(2024, 1, 1, tzinfo=UTC))
        clock.advance(60)
        assert clock.now() == datetime(2024, 1, 1, 0, 1, tzinfo=UTC)
    """

    def __init__(self, start: datetime) -> None:
        if start.tzinfo is None:
            raise ValueError("MockClock requires an aware datetime")
        self._current = start

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: float) -> None:
        """Advance time by the given number of seconds.

        Raises:
            ValueError: If seconds is negative
        """
        if seconds < 0:
            raise ValueError(f"Cannot advance clock by negative amount: {seconds}")
        self._current += timedelta(seconds=seconds)
