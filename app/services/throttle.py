"""Sliding-window request throttle shared by every call to an upstream."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestThrottle:
    """Bound the number of task starts inside a trailing time window.

    Tasks are admitted strictly in submission order. Consecutive starts are
    separated by ``spacing`` seconds even while the window has room, and a
    full window blocks until its oldest start ages out (plus ``buffer``).
    Admission is serialized; the task bodies themselves run unlocked so an
    admitted read does not hold up the queue while it waits on the network.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        spacing: float = 0.1,
        buffer: float = 0.1,
        name: str = "upstream",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.spacing = spacing
        self.buffer = buffer
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._timestamps: deque[float] = deque()
        self._last_start: float | None = None
        self._lock = asyncio.Lock()
        self._waiting = 0

    @property
    def queue_length(self) -> int:
        """Number of tasks waiting for admission."""

        return self._waiting

    def current_request_count(self) -> int:
        """Number of task starts inside the current window."""

        self._prune(self._clock())
        return len(self._timestamps)

    async def schedule(self, task: Callable[[], Awaitable[T]]) -> T:
        """Run ``task`` once the window admits it and return its result."""

        self._waiting += 1
        try:
            async with self._lock:
                await self._admit()
        finally:
            self._waiting -= 1
        return await task()

    async def _admit(self) -> None:
        if self._last_start is not None and self.spacing > 0:
            elapsed = self._clock() - self._last_start
            if elapsed < self.spacing:
                await self._sleep(self.spacing - elapsed)

        while True:
            now = self._clock()
            self._prune(now)
            if len(self._timestamps) < self.max_requests:
                self._timestamps.append(now)
                self._last_start = now
                return

            oldest = self._timestamps[0]
            wait = self.window_seconds - (now - oldest) + self.buffer
            logger.debug(
                "%s throttle full (%s requests in %.0fs window), waiting %.2fs",
                self.name,
                len(self._timestamps),
                self.window_seconds,
                wait,
            )
            await self._sleep(wait)

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()
