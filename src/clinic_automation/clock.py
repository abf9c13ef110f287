"""
Time sources used by the engine

All timestamps are naive UTC datetimes.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock(ABC):
    """Time source interface"""

    @abstractmethod
    def now(self) -> datetime:
        pass


class SystemClock(Clock):
    """Wall clock"""

    def now(self) -> datetime:
        return utcnow()


class FrozenClock(Clock):
    """Manually advanced clock for tests and dry runs"""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or utcnow()

    def now(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta = None, **kwargs) -> datetime:
        self.current = self.current + (delta or timedelta(**kwargs))
        return self.current

    def set(self, moment: datetime):
        self.current = moment


def as_naive_utc(moment: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC"""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)
