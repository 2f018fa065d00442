"""Sliding-window rate limiting for the external image API.

Flash and Pro image models have separate per-minute quotas, so each gets
its own limiter. Workers acquire a slot before every external call.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


class SlidingWindowRateLimiter:
    """Allows at most max_requests acquisitions in any window_seconds span."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = WINDOW_SECONDS,
        name: str = "default",
        clock: Optional[Callable[[], float]] = None
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock or time.monotonic
        self._timestamps = deque()
        self._queued = 0
        self._lock: Optional[asyncio.Lock] = None

    def _prune(self, now: float):
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    def try_acquire(self) -> bool:
        """Take a slot if one is free right now."""
        now = self._clock()
        self._prune(now)
        if len(self._timestamps) < self.max_requests:
            self._timestamps.append(now)
            return True
        return False

    def wait_time(self) -> float:
        """Seconds until the oldest request in the window falls out of it."""
        now = self._clock()
        self._prune(now)
        if len(self._timestamps) < self.max_requests:
            return 0.0
        return max(self._timestamps[0] + self.window_seconds - now, 0.0)

    async def acquire(self):
        """Wait until a slot is free, then take it."""
        if self._lock is None:
            self._lock = asyncio.Lock()

        self._queued += 1
        try:
            async with self._lock:
                while not self.try_acquire():
                    delay = self.wait_time()
                    logger.debug(f"Rate limiter {self.name} full, waiting {delay:.2f}s")
                    await asyncio.sleep(delay)
        finally:
            self._queued -= 1

    def get_stats(self) -> Dict[str, float]:
        self._prune(self._clock())
        active = len(self._timestamps)
        return {
            "active_requests": active,
            "max_requests": self.max_requests,
            "queued_requests": self._queued,
            "available_slots": max(self.max_requests - active, 0),
            "utilization_percent": round(active / self.max_requests * 100, 1),
        }

    def reset(self):
        self._timestamps.clear()


class ModelRateLimiters:
    """One limiter per model family."""

    def __init__(self, flash_rpm: int = 1000, pro_rpm: int = 500):
        self.flash = SlidingWindowRateLimiter(flash_rpm, name="flash")
        self.pro = SlidingWindowRateLimiter(pro_rpm, name="pro")

    def for_model(self, model: str) -> SlidingWindowRateLimiter:
        if model and "pro" in model:
            return self.pro
        return self.flash

    def get_stats(self) -> Dict[str, Dict[str, float]]:
        return {"flash": self.flash.get_stats(), "pro": self.pro.get_stats()}
