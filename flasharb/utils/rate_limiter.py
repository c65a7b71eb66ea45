"""Sliding-window limiter used to pace calls to the quote service."""

from __future__ import annotations

import asyncio
from collections import deque
import time

import structlog

log = structlog.get_logger()


class AdaptiveRateLimiter:
    """Allow at most ``max_requests`` acquisitions per ``time_window`` seconds.

    With ``max_requests=1`` it becomes a fixed pacer: consecutive calls are
    spaced by at least ``time_window`` seconds.

    Example:
        >>> limiter = AdaptiveRateLimiter(max_requests=1, time_window=0.4, name="zerox")
        >>> async with limiter:
        ...     await client.get_quote(...)
    """

    def __init__(
        self,
        max_requests: int,
        time_window: float,
        name: str = "default",
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.time_window = time_window
        self.name = name
        self.requests: deque[float] = deque()
        self.lock = asyncio.Lock()
        self._total_waited = 0.0
        self._acquired = 0

    async def acquire(self) -> None:
        """Block until another request fits in the window."""
        async with self.lock:
            now = time.monotonic()

            while self.requests and self.requests[0] <= now - self.time_window:
                self.requests.popleft()

            if len(self.requests) >= self.max_requests:
                sleep_time = self.time_window - (now - self.requests[0])
                if sleep_time > 0:
                    log.debug(
                        "rate_limit.waiting",
                        limiter=self.name,
                        sleep_time=sleep_time,
                        current_requests=len(self.requests),
                    )
                    await asyncio.sleep(sleep_time)
                    self._total_waited += sleep_time
                self.requests.popleft()

            self.requests.append(time.monotonic())
            self._acquired += 1

    async def __aenter__(self) -> AdaptiveRateLimiter:
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        return None

    def get_stats(self) -> dict[str, float | int | str]:
        return {
            "name": self.name,
            "max_requests": self.max_requests,
            "time_window": self.time_window,
            "current_requests": len(self.requests),
            "acquired": self._acquired,
            "total_waited": self._total_waited,
        }
