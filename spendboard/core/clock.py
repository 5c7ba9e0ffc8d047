"""Spendboard - Injectable clock for date boundaries and cache expiry."""

import time
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from spendboard.config import settings


class Clock:
    """Wall clock bound to the reporting timezone."""

    def __init__(self, tz_name: str | None = None):
        self.tz = ZoneInfo(tz_name or settings.reporting_timezone)

    def today(self) -> date:
        return datetime.now(self.tz).date()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


class FixedClock(Clock):
    """Clock frozen at a given day; `advance` moves the monotonic counter."""

    def __init__(self, today: date, tz_name: str = "UTC"):
        super().__init__(tz_name)
        self._today = today
        self._ticks = 0.0

    def today(self) -> date:
        return self._today

    def now(self) -> datetime:
        return datetime(
            self._today.year, self._today.month, self._today.day, 12, tzinfo=timezone.utc
        )

    def monotonic(self) -> float:
        return self._ticks

    def advance(self, seconds: float) -> None:
        self._ticks += seconds
