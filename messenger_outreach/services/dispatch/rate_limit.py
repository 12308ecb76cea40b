"""Per-page sliding-window rate limiting for the Send API."""

import asyncio
import time
from collections import deque
from typing import Awaitable, Callable

import structlog

logger = structlog.get_logger()


class RateLimitTracker:
    """Allow at most ``max_calls`` per ``period`` seconds for each key.

    ``acquire`` waits until a slot frees instead of failing. Keys with no
    calls in the window and no penalty are dropped.
    """

    def __init__(
        self,
        max_calls: int,
        period: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_calls <= 0 or period <= 0:
            raise ValueError("max_calls and period must be positive")
        self.max_calls = max_calls
        self.period = period
        self._clock = clock
        self._sleep = sleep
        self._calls: dict[str, deque[float]] = {}
        self._blocked_until: dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        cutoff = now - self.period
        for key in list(self._calls):
            calls = self._calls[key]
            while calls and calls[0] <= cutoff:
                calls.popleft()
            if not calls and self._blocked_until.get(key, 0.0) <= now:
                del self._calls[key]
                self._blocked_until.pop(key, None)
        for key in [k for k, until in self._blocked_until.items() if until <= now]:
            if key not in self._calls:
                del self._blocked_until[key]

    def _wait_time(self, key: str, now: float) -> float:
        blocked = self._blocked_until.get(key, 0.0) - now
        if blocked > 0:
            return blocked
        calls = self._calls.get(key)
        if calls and len(calls) >= self.max_calls:
            return calls[0] + self.period - now
        return 0.0

    async def acquire(self, key: str) -> None:
        """Wait for a free slot for ``key`` and record the call."""
        while True:
            async with self._lock:
                now = self._clock()
                self._evict(now)
                wait = self._wait_time(key, now)
                if wait <= 0:
                    self._calls.setdefault(key, deque()).append(now)
                    return
            logger.debug("Rate limit wait", key=key, seconds=round(wait, 3))
            await self._sleep(wait)

    def penalize(self, key: str, seconds: float) -> None:
        """Block ``key`` for ``seconds`` after the API reported a rate limit."""
        until = self._clock() + seconds
        if until > self._blocked_until.get(key, 0.0):
            self._blocked_until[key] = until
            logger.info("Rate limit penalty", key=key, seconds=seconds)

    def remaining(self, key: str) -> int:
        now = self._clock()
        cutoff = now - self.period
        calls = [t for t in self._calls.get(key, ()) if t > cutoff]
        return max(0, self.max_calls - len(calls))

    @property
    def tracked_keys(self) -> int:
        return len(self._calls)
