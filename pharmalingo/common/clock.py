"""
Clock Source

The engine never calls ``datetime.now()`` directly; it asks a clock. Every
clock reports timezone-aware instants and the learner's local calendar day in
the configured zone.
"""

import datetime
from typing import Optional, Union
from zoneinfo import ZoneInfo


def resolve_timezone(tz: Union[str, datetime.tzinfo, None]) -> datetime.tzinfo:
    """Turn a zone name (or None for UTC) into a tzinfo."""
    if tz is None:
        return datetime.timezone.utc
    if isinstance(tz, str):
        return ZoneInfo(tz)
    return tz


class Clock:
    """Base clock interface"""

    def __init__(self, tz: Union[str, datetime.tzinfo, None] = None):
        self.tz = resolve_timezone(tz)

    def now(self) -> datetime.datetime:
        raise NotImplementedError

    def today(self) -> datetime.date:
        """Local calendar day of ``now()``"""
        return self.local_date(self.now())

    def local_date(self, instant: datetime.datetime) -> datetime.date:
        return instant.astimezone(self.tz).date()


class SystemClock(Clock):
    """Wall clock"""

    def now(self) -> datetime.datetime:
        return datetime.datetime.now(self.tz)


class FixedClock(Clock):
    """
    Manually driven clock.

    Starts at ``start`` (or the current wall time) and only moves when
    ``set`` or ``advance`` is called.
    """

    def __init__(
        self,
        start: Optional[datetime.datetime] = None,
        tz: Union[str, datetime.tzinfo, None] = None
    ):
        super().__init__(tz)
        start = start or datetime.datetime.now(self.tz)
        if start.tzinfo is None:
            start = start.replace(tzinfo=self.tz)
        self._now = start

    def now(self) -> datetime.datetime:
        return self._now

    def set(self, instant: datetime.datetime) -> None:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=self.tz)
        self._now = instant

    def advance(self, **delta) -> datetime.datetime:
        """Move forward by ``datetime.timedelta(**delta)`` and return the new time"""
        self._now = self._now + datetime.timedelta(**delta)
        return self._now
