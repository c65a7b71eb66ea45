"""Tests for retry, timeout and rate limiter utilities."""

import asyncio
import time

import pytest

from flasharb.utils.rate_limiter import AdaptiveRateLimiter
from flasharb.utils.resilience import retry_async, with_timeout


@pytest.mark.asyncio
async def test_adaptive_rate_limiter_enforces_window() -> None:
    limiter = AdaptiveRateLimiter(max_requests=2, time_window=0.05, name="test")
    start = time.perf_counter()
    await limiter.acquire()
    await limiter.acquire()
    await limiter.acquire()  # should wait for window to roll
    elapsed = time.perf_counter() - start
    assert elapsed >= 0.04
    stats = limiter.get_stats()
    assert stats["total_waited"] > 0
    assert stats["acquired"] == 3


@pytest.mark.asyncio
async def test_single_slot_limiter_spaces_calls() -> None:
    limiter = AdaptiveRateLimiter(max_requests=1, time_window=0.03, name="pacer")
    start = time.perf_counter()
    for _ in range(3):
        async with limiter:
            pass
    assert time.perf_counter() - start >= 0.05


def test_rate_limiter_rejects_empty_window() -> None:
    with pytest.raises(ValueError):
        AdaptiveRateLimiter(max_requests=0, time_window=1.0)


@pytest.mark.asyncio
async def test_retry_async_retries_then_succeeds() -> None:
    attempts = 0

    async def flaky() -> str:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise RuntimeError("fail")
        return "ok"

    start = time.perf_counter()
    result = await retry_async(flaky, max_attempts=3, base_delay=0.01, jitter=False)
    elapsed = time.perf_counter() - start
    assert result == "ok"
    assert attempts == 3
    assert elapsed >= 0.025


@pytest.mark.asyncio
async def test_retry_async_raises_last_error_when_exhausted() -> None:
    attempts = 0

    async def always_fails() -> None:
        nonlocal attempts
        attempts += 1
        raise RuntimeError(f"fail {attempts}")

    with pytest.raises(RuntimeError, match="fail 2"):
        await retry_async(always_fails, max_attempts=2, base_delay=0.0)
    assert attempts == 2


@pytest.mark.asyncio
async def test_retry_async_only_retries_listed_errors() -> None:
    attempts = 0

    async def wrong_kind() -> None:
        nonlocal attempts
        attempts += 1
        raise KeyError("nope")

    with pytest.raises(KeyError):
        await retry_async(wrong_kind, max_attempts=5, base_delay=0.0, retry_on=(RuntimeError,))
    assert attempts == 1


@pytest.mark.asyncio
async def test_retry_async_rejects_zero_attempts() -> None:
    async def never_called() -> None:
        raise AssertionError("should not run")

    with pytest.raises(ValueError):
        await retry_async(never_called, max_attempts=0)


@pytest.mark.asyncio
async def test_with_timeout_raises() -> None:
    async def slow() -> None:
        await asyncio.sleep(0.05)

    with pytest.raises(TimeoutError, match="too slow"):
        await with_timeout(slow(), timeout=0.01, error_message="too slow")


@pytest.mark.asyncio
async def test_with_timeout_returns_result() -> None:
    async def quick() -> int:
        return 7

    assert await with_timeout(quick(), timeout=1.0) == 7
