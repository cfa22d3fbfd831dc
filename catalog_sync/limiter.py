from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Awaitable, Callable, Optional

from .common import LOGGER


Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class AsyncWindowLimiter:
    """Async sliding-window limiter: at most `max_requests` per `period_seconds`."""

    def __init__(
        self,
        max_requests: int,
        period_seconds: float,
        name: str,
        *,
        margin_seconds: float = 0.0,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
    ):
        self.max_requests = max(1, int(max_requests))
        self.period_seconds = float(period_seconds)
        self.margin_seconds = max(0.0, float(margin_seconds))
        self.name = name
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._events: deque[float] = deque()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._events)

    async def acquire(self) -> None:
        while True:
            async with self._lock:
                now = self._clock()
                while self._events and now - self._events[0] >= self.period_seconds:
                    self._events.popleft()

                if len(self._events) < self.max_requests:
                    self._events.append(now)
                    return

                wait_for = self.period_seconds - (now - self._events[0]) + self.margin_seconds
                wait_for = max(0.001, wait_for)

            LOGGER.debug("[%s] Rate limit reached, waiting %.2fs", self.name, wait_for)
            await self._sleep(wait_for)


class MinIntervalLimiter:
    """Fixed minimum spacing between consecutive requests."""

    def __init__(
        self,
        min_interval_seconds: float,
        name: str,
        *,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
    ):
        self.min_interval_seconds = max(0.0, float(min_interval_seconds))
        self.name = name
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._last: Optional[float] = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            if self._last is not None:
                wait_for = self._last + self.min_interval_seconds - self._clock()
                if wait_for > 0:
                    await self._sleep(wait_for)
            self._last = self._clock()
