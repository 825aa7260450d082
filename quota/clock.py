import threading
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo

from quota.config import cfg


def canonical_timezone() -> tzinfo:
    name = str(cfg.get("quota.timezone", "UTC") or "UTC").strip()
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


class Clock(ABC):
    """Time source for day-boundary decisions.

    Every quota computation reads time through a Clock so that the day
    rollover is decided in one canonical zone and can be simulated in tests.
    """

    def __init__(self, tz: Optional[tzinfo] = None):
        self.tz = tz or timezone.utc

    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware."""

    def _localize(self, ts: datetime) -> datetime:
        if ts.tzinfo is None:
            return ts.replace(tzinfo=self.tz)
        return ts.astimezone(self.tz)

    def day_boundary(self, ts: datetime) -> date:
        return self._localize(ts).date()

    def today(self) -> date:
        return self.day_boundary(self.now())

    def next_reset_at(self, ts: Optional[datetime] = None) -> datetime:
        day = self.day_boundary(ts or self.now())
        return datetime.combine(day + timedelta(days=1), time.min, tzinfo=self.tz)


class SystemClock(Clock):
    def __init__(self, tz: Optional[tzinfo] = None):
        super().__init__(tz or canonical_timezone())

    def now(self) -> datetime:
        return datetime.now(self.tz)


class FixedClock(Clock):
    """Manually driven clock for tests and simulations."""

    def __init__(self, current: datetime, tz: Optional[tzinfo] = None):
        super().__init__(tz)
        self._lock = threading.Lock()
        self._current = self._localize(current)

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def set(self, current: datetime) -> None:
        with self._lock:
            self._current = self._localize(current)

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self._current = self._current + timedelta(**kwargs)
            return self._current
