"""Bounded retry and timeout helpers for chain reads.

Implements:
- Retry with exponential backoff and jitter, with a hard attempt cap
- Timeout wrapper that raises the builtin TimeoutError
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import random
from typing import TypeVar

import structlog

log = structlog.get_logger()

T = TypeVar("T")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.25,
    max_delay: float = 5.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    name: str = "operation",
) -> T:
    """Await ``operation()`` until it succeeds or ``max_attempts`` is reached.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt
        max_attempts: Total attempts including the first one
        base_delay: Delay before the second attempt in seconds
        max_delay: Upper bound for any single delay
        exponential_base: Delay multiplier between attempts
        jitter: Add random jitter of +/-25%
        retry_on: Exception types that trigger another attempt
        name: Label used in log events

    Returns:
        Result of the first successful attempt

    Raises:
        The last exception once attempts are exhausted.

    Example:
        >>> nonce = await retry_async(lambda: w3.eth.get_transaction_count(addr, "pending"))
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    delay = base_delay
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt == max_attempts:
                log.error("retry.exhausted", operation=name, attempts=max_attempts, error=str(e))
                raise

            current_delay = delay * random.uniform(0.75, 1.25) if jitter else delay
            current_delay = min(current_delay, max_delay)
            log.warning(
                "retry.attempt",
                operation=name,
                attempt=attempt,
                max_attempts=max_attempts,
                delay=current_delay,
                error=str(e),
            )
            await asyncio.sleep(current_delay)
            delay *= exponential_base

    raise AssertionError("unreachable")


async def with_timeout(
    coro: Awaitable[T],
    timeout: float,
    error_message: str = "Operation timed out",
) -> T:
    """Await ``coro`` for at most ``timeout`` seconds.

    Used around single chain writes that have no retry of their own.

    Raises:
        TimeoutError: If operation times out
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except TimeoutError as e:
        log.warning("resilience.timeout", timeout=timeout, message=error_message)
        raise TimeoutError(error_message) from e
