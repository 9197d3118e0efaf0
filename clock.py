"""
Clock port for the smart charging engine.

The engine never reads the wall clock itself. A query reads the clock once,
producing a ClockReading, and threads that value through every stage so a
single computation sees one consistent "now".
"""

from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Optional

SECONDS_PER_DAY = 24 * 3600
DAY_END = SECONDS_PER_DAY - 1


def seconds_from_midnight(instant: datetime) -> int:
    """Seconds elapsed since local midnight of the instant's own timezone."""
    return instant.hour * 3600 + instant.minute * 60 + instant.second


@dataclass(frozen=True)
class ClockReading:
    """
    One read of the clock.

    Attributes:
        seconds_from_midnight: Time of day in seconds (0-86399)
        instant: Timezone-aware wall clock instant the reading was taken at
    """
    seconds_from_midnight: int
    instant: datetime

    @classmethod
    def at(cls, instant: datetime) -> "ClockReading":
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return cls(seconds_from_midnight(instant), instant)

    @property
    def tz(self) -> tzinfo:
        return self.instant.tzinfo

    def end_of_day(self) -> datetime:
        """23:59:59.999 of the reading's day (wire timestamps carry milliseconds)."""
        return self.instant.replace(hour=23, minute=59, second=59, microsecond=999000)

    def midnight(self) -> datetime:
        return self.instant.replace(hour=0, minute=0, second=0, microsecond=0)


class Clock:
    """Interface: anything with now() -> ClockReading."""

    def now(self) -> ClockReading:
        raise NotImplementedError


class SystemClock(Clock):
    """Reads the real wall clock, expressed in the configured timezone."""

    def __init__(self, tz: Optional[tzinfo] = None):
        self.tz = tz or timezone.utc

    def now(self) -> ClockReading:
        return ClockReading.at(datetime.now(self.tz))


class FixedClock(Clock):
    """Always returns the same instant. Used by tests and replay tools."""

    def __init__(self, instant: datetime):
        self._reading = ClockReading.at(instant)

    def now(self) -> ClockReading:
        return self._reading

    def set(self, instant: datetime) -> None:
        self._reading = ClockReading.at(instant)
