"""
Clock abstraction. All scheduling math is relative to an injected clock so
tests can move time forward without sleeping.

Times are naive UTC datetimes, matching the DateTime columns in models.py.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class ClockMock:
    """Manually driven clock. Starts at the real current time unless told otherwise."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start if start is not None else SystemClock().now()

    def now(self) -> datetime:
        return self._now

    def set_time(self, value: datetime) -> None:
        self._now = value

    def add_seconds(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)

    def add_days(self, days: int) -> None:
        self._now += timedelta(days=days)
