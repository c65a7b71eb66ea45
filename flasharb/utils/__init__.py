"""Utility modules: call pacing and bounded retries."""

from flasharb.utils.rate_limiter import AdaptiveRateLimiter
from flasharb.utils.resilience import retry_async, with_timeout

__all__ = [
    "AdaptiveRateLimiter",
    "retry_async",
    "with_timeout",
]
