"""Calendar anchors that fire at most once per natural period.

An anchor matches during one wall-clock minute (for example Saturdays at
18:00). When it fires it records the key of its containing period; it cannot
fire again until the clock is in a different period. A process that is down
during the anchor minute skips that period.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Hashable

DAY = "day"
WEEK = "week"
MONTH = "month"
YEAR = "year"


def period_key(period: str, now: datetime) -> Hashable:
    if period == DAY:
        return now.date()
    if period == WEEK:
        iso = now.isocalendar()
        return (iso[0], iso[1])
    if period == MONTH:
        return (now.year, now.month)
    if period == YEAR:
        return now.year
    raise ValueError(f"Unknown period: {period}")


@dataclass
class Anchor:
    """A daily, weekly, monthly or yearly firing point.

    ``weekday`` uses ``datetime.weekday()`` numbering (Monday is 0).
    """

    name: str
    period: str
    hour: int
    minute: int = 0
    weekday: int | None = None
    day: int | None = None
    month: int | None = None
    last_fired: Hashable | None = field(default=None, repr=False)

    def matches(self, now: datetime) -> bool:
        if (now.hour, now.minute) != (self.hour, self.minute):
            return False
        if self.weekday is not None and now.weekday() != self.weekday:
            return False
        if self.day is not None and now.day != self.day:
            return False
        if self.month is not None and now.month != self.month:
            return False
        return True

    def due(self, now: datetime) -> bool:
        return self.matches(now) and self.last_fired != period_key(self.period, now)

    def mark_fired(self, now: datetime) -> None:
        self.last_fired = period_key(self.period, now)


def daily(name: str, hour: int, minute: int = 0) -> Anchor:
    return Anchor(name, DAY, hour, minute)


def weekly(name: str, weekday: int, hour: int, minute: int = 0) -> Anchor:
    return Anchor(name, WEEK, hour, minute, weekday=weekday)


def monthly(name: str, day: int, hour: int, minute: int = 0) -> Anchor:
    return Anchor(name, MONTH, hour, minute, day=day)


def yearly(name: str, month: int, day: int, hour: int, minute: int = 0) -> Anchor:
    return Anchor(name, YEAR, hour, minute, day=day, month=month)
