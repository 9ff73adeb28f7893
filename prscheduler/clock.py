"""
PRSCHEDULER Clock

A source of strictly increasing, timezone-aware timestamps delivered at a
fixed period. The engine only ever compares with "is after", so an entry
due exactly on a tick fires on the following one.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import AsyncIterator


def local_now() -> datetime:
    return datetime.now().astimezone()


class Clock(ABC):
    def __init__(self, period: float = 1.0):
        if period <= 0:
            raise ValueError("Clock period must be positive")
        self.period = period
        self._last: datetime | None = None

    @abstractmethod
    def now(self) -> datetime:
        """Current time, without emitting a tick."""
        ...

    @abstractmethod
    def ticks(self) -> AsyncIterator[datetime]:
        """Yield one timestamp per period, forever."""
        ...

    def _monotonic(self, value: datetime) -> datetime:
        # Wall clocks can step backwards; ticks must not.
        if self._last is not None and value <= self._last:
            value = self._last + timedelta(microseconds=1)
        self._last = value
        return value


class SystemClock(Clock):
    """Wall-clock ticks, one every `period` seconds."""

    async def ticks(self) -> AsyncIterator[datetime]:
        while True:
            await asyncio.sleep(self.period)
            yield self._monotonic(local_now())

    def now(self) -> datetime:
        return local_now()


class ManualClock(Clock):
    """
    A clock advanced explicitly by the caller. Each `advance()` queues one
    tick for `ticks()` consumers. Used to drive the runtime deterministically.
    """

    def __init__(self, start: datetime | None = None, period: float = 1.0):
        super().__init__(period)
        self._now = start or local_now()
        self._pending: asyncio.Queue[datetime] = asyncio.Queue()

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float | None = None) -> datetime:
        self._now = self._now + timedelta(seconds=self.period if seconds is None else seconds)
        tick = self._monotonic(self._now)
        self._pending.put_nowait(tick)
        return tick

    async def ticks(self) -> AsyncIterator[datetime]:
        while True:
            yield await self._pending.get()
