# ==== CLOCK ABSTRACTION ==== #

"""
Injectable time source.

Services never call datetime.now() directly; they ask a Clock. Production
uses SystemClock, tests pin time with FixedClock so that due-date, aging
and replay-window decisions are reproducible.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...

    def today(self) -> date:
        ...


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return utcnow()

    def today(self) -> date:
        return self.now().date()


class FixedClock:
    """Clock pinned to a given instant; advance() moves it forward."""

    def __init__(self, instant: datetime):
        self._instant = instant

    def now(self) -> datetime:
        return self._instant

    def today(self) -> date:
        return self._instant.date()

    def set(self, instant: datetime) -> None:
        self._instant = instant

    def advance(self, **delta: float) -> None:
        self._instant = self._instant + timedelta(**delta)


_default_clock: Clock = SystemClock()


def get_clock() -> Clock:
    return _default_clock
