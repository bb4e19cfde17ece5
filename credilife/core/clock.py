from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from credilife.core.config import settings


class SystemClock:
    """Wall clock in the configured back-office timezone."""

    def __init__(self, timezone: Optional[str] = None):
        self.tz = ZoneInfo(timezone or settings.SCHEDULER_TIMEZONE)

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def today(self) -> date:
        return self.now().date()


class FixedClock:
    """Clock frozen at a given instant; tests move it with `advance`."""

    def __init__(self, now: datetime):
        if now.tzinfo is None:
            now = now.replace(tzinfo=ZoneInfo("UTC"))
        self._now = now
        self.tz = now.tzinfo

    def now(self) -> datetime:
        return self._now

    def today(self) -> date:
        return self._now.date()

    def set(self, now: datetime) -> None:
        if now.tzinfo is None:
            now = now.replace(tzinfo=self.tz)
        self._now = now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now
