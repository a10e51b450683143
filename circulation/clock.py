from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import settings


class Clock:
    """Supplies the current instant in the library timezone.

    Every instant the engine stores or compares goes through ``localize`` so
    naive datetimes from callers are read as library-local time.
    """

    def __init__(self, timezone: Optional[str] = None) -> None:
        self.tz = ZoneInfo(timezone or settings.library_timezone)

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def localize(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=self.tz)
        return value.astimezone(self.tz)

    def parse(self, raw: str) -> datetime:
        return self.localize(datetime.fromisoformat(raw))

    def format(self, value: datetime) -> str:
        return self.localize(value).isoformat()


class FrozenClock(Clock):
    """A clock that only moves when told to. Used by tests and dry runs."""

    def __init__(self, instant: datetime, timezone: Optional[str] = None) -> None:
        super().__init__(timezone)
        self._instant = self.localize(instant)

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime) -> None:
        self._instant = self.localize(instant)

    def advance(self, **kwargs) -> datetime:
        self._instant = self._instant + timedelta(**kwargs)
        return self._instant
