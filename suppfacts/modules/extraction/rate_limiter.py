"""Sliding-window admission gate, one instance per provider."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger()

WINDOW_SECONDS = 60.0
SAFETY_MARGIN_SECONDS = 0.1


class SlidingWindowRateLimiter:
    """Admit at most ``max_per_minute`` calls in any rolling window.

    ``acquire()`` never rejects: when the window is full it sleeps until the
    oldest admission leaves the window, then tries again.  The lock is held
    for the whole admission (including the wait) so concurrent callers are
    admitted one by one and the window can never be over-filled.
    """

    def __init__(
        self,
        max_per_minute: int,
        *,
        name: str = "default",
        window: float = WINDOW_SECONDS,
        margin: float = SAFETY_MARGIN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_per_minute < 1:
            raise ValueError("max_per_minute must be at least 1")
        self.name = name
        self.max_per_minute = max_per_minute
        self._window = window
        self._margin = margin
        self._clock = clock
        self._sleep = sleep
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _purge(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self._window:
            self._timestamps.popleft()

    @property
    def available(self) -> int:
        """Free slots in the current window."""
        self._purge(self._clock())
        return max(0, self.max_per_minute - len(self._timestamps))

    async def acquire(self) -> float:
        """Wait for a slot and record the admission.

        Returns:
            Total seconds spent waiting.
        """
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._purge(now)
                if len(self._timestamps) < self.max_per_minute:
                    self._timestamps.append(now)
                    return waited

                delay = self._timestamps[0] + self._window - now + self._margin
                logger.info(
                    "Rate limit reached, waiting",
                    limiter=self.name,
                    wait_seconds=round(delay, 2),
                    in_window=len(self._timestamps),
                )
                await self._sleep(delay)
                waited += delay
