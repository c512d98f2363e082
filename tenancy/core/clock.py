"""Wall-clock abstraction.

Every time-based decision (expiry, grace periods, warnings) reads the time
through a ``Clock`` so tests and manual maintenance runs can pin "now".
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Return the current time as a timezone-aware UTC datetime."""
        ...


class SystemClock:
    """Clock backed by the host's UTC time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FrozenClock:
    """Clock that returns a fixed instant until moved explicitly.

    Example:
        >>> clock = FrozenClock(datetime(2025, 1, 1, tzinfo=UTC))
        >>> clock.advance(days=7).now().isoformat()
        '2025-01-08T00:00:00+00:00'
    """

    def __init__(self, current: datetime | None = None):
        self._current = ensure_utc(current or datetime.now(UTC))

    def now(self) -> datetime:
        return self._current

    def set(self, current: datetime) -> FrozenClock:
        self._current = ensure_utc(current)
        return self

    def advance(self, **delta: float) -> FrozenClock:
        self._current = self._current + timedelta(**delta)
        return self


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


_default_clock: Clock = SystemClock()


def get_clock() -> Clock:
    """FastAPI dependency returning the process clock."""
    return _default_clock
