"""Fixed-clock scheduling and per-dormitory run locks."""

import asyncio
from datetime import datetime, time as dt_time, timedelta, tzinfo
from typing import Dict, Sequence


class DailySchedule:
    """Fires at fixed times of day in a fixed timezone.

    Kept free of any clock of its own: callers pass ``now`` in, which keeps
    it trivially testable.
    """

    def __init__(self, times: Sequence[dt_time], tz: tzinfo):
        if not times:
            raise ValueError("DailySchedule needs at least one time of day")
        self.times = sorted(set(times))
        self.tz = tz

    def next_fire(self, now: datetime) -> datetime:
        """First fire time strictly after ``now`` (timezone-aware, in the schedule tz)."""
        if now.tzinfo is None:
            raise ValueError("now must be timezone-aware")
        local = now.astimezone(self.tz)
        for offset in (0, 1):
            day = local.date() + timedelta(days=offset)
            for t in self.times:
                candidate = datetime.combine(day, t, tzinfo=self.tz)
                if candidate > local:
                    return candidate
        # Unreachable: tomorrow's first slot is always in the future
        raise RuntimeError("No fire time found")

    def seconds_until_next(self, now: datetime) -> float:
        return max(0.0, (self.next_fire(now) - now).total_seconds())

    def describe(self) -> str:
        return ", ".join(t.strftime("%H:%M") for t in self.times) + f" ({self.tz})"


class KeyedLock:
    """One asyncio.Lock per key, created on first use.

    Serializes work on the same dormitory while leaving different
    dormitories independent.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
