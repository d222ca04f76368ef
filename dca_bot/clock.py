"""
Time sources for the plan scheduler.

SystemClock sleeps on the event loop against wall-clock UTC time.
ManualClock keeps virtual time that only moves when advance() is called,
so timers can be fast-forwarded without waiting on real intervals.
"""

import asyncio
import heapq
import itertools
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple


class Clock(ABC):
    """Source of "now" and of timed waits."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""

    @abstractmethod
    async def sleep_until(self, when: datetime) -> None:
        """Suspend until ``when`` has been reached."""


class SystemClock(Clock):
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep_until(self, when: datetime) -> None:
        # Re-check after waking: asyncio.sleep may return slightly early
        # relative to the wall clock.
        while True:
            delay = (when - self.now()).total_seconds()
            if delay <= 0:
                return
            await asyncio.sleep(delay)


class ManualClock(Clock):
    """Virtual time for tests and simulations."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        if self._now.tzinfo is None:
            self._now = self._now.replace(tzinfo=timezone.utc)
        self._sleepers: List[Tuple[datetime, int, asyncio.Future]] = []
        self._counter = itertools.count()

    def now(self) -> datetime:
        return self._now

    @property
    def waiting(self) -> int:
        """Number of coroutines currently blocked in sleep_until."""
        return sum(1 for _, _, fut in self._sleepers if not fut.done())

    async def sleep_until(self, when: datetime) -> None:
        if when <= self._now:
            await asyncio.sleep(0)
            return
        fut = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (when, next(self._counter), fut))
        await fut

    async def advance(self, seconds: float = 0, settle_rounds: int = 20) -> None:
        """Move virtual time forward and wake every sleeper that is due."""
        self._now += timedelta(seconds=seconds)
        while self._sleepers and self._sleepers[0][0] <= self._now:
            _, _, fut = heapq.heappop(self._sleepers)
            if not fut.done():
                fut.set_result(None)
        for _ in range(settle_rounds):
            await asyncio.sleep(0)
