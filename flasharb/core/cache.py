"""Two-tier TTL cache: shared Redis store first, in-process map as fallback.

Every write lands in both tiers with the same ``CacheEntry`` bookkeeping so
expiry is decided identically whichever tier answers a read. Store failures
are logged and never reach callers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import contextlib
import fnmatch
import time
from typing import TYPE_CHECKING, Any

import msgspec
import redis.asyncio as aioredis
from redis.exceptions import RedisError
import structlog

from flasharb.core.types import CacheEntry

if TYPE_CHECKING:
    from flasharb.config import ArbSettings

log = structlog.get_logger()

_encoder = msgspec.json.Encoder()
_decoder = msgspec.json.Decoder(CacheEntry)

# Both tiers are treated alike: connection drops, protocol errors and bad payloads
_STORE_ERRORS = (RedisError, OSError, msgspec.DecodeError)


def _now_ms() -> int:
    return int(time.time() * 1000)


class CacheManager:
    """Namespaced TTL cache used for prices, quotes and fee history.

    Example:
        >>> cache = CacheManager.from_settings(settings)
        >>> await cache.open()
        >>> await cache.set("price:0xabc", 3000.0, ttl_seconds=30)
        >>> await cache.get("price:0xabc")
        3000.0
    """

    def __init__(
        self,
        *,
        enabled: bool = False,
        url: str = "redis://localhost:6379/0",
        prefix: str = "flash_arb:",
        default_ttl_seconds: float = 30.0,
        max_entries: int = 1000,
        sweep_interval_seconds: float = 60.0,
        client: Any | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        """Initialize cache.

        Args:
            enabled: Use the shared store when reachable
            url: Redis connection URL
            prefix: Namespace prepended to every key
            default_ttl_seconds: TTL used when ``set`` is called without one
            max_entries: Cap for the in-process map (oldest-inserted evicted)
            sweep_interval_seconds: Period of the background expiry sweep
            client: Pre-built async Redis client (tests inject a fake)
            clock: Millisecond clock
        """
        self.enabled = enabled or client is not None
        self.url = url
        self.prefix = prefix
        self.default_ttl_seconds = default_ttl_seconds
        self.max_entries = max_entries
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._client = client
        self._connected = False
        self._memory: dict[str, CacheEntry] = {}
        self._sweeper: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, settings: ArbSettings, client: Any | None = None) -> CacheManager:
        return cls(
            enabled=settings.redis_enabled,
            url=settings.redis_url,
            prefix=settings.cache_prefix,
            default_ttl_seconds=settings.cache_ttl_seconds,
            max_entries=settings.memory_cache_max_entries,
            sweep_interval_seconds=settings.cache_sweep_interval_seconds,
            client=client,
        )

    @property
    def store_connected(self) -> bool:
        return self._connected and self._client is not None

    async def open(self) -> None:
        """Connect the shared store (if enabled) and start the sweeper."""
        if self.enabled:
            try:
                if self._client is None:
                    self._client = aioredis.from_url(
                        self.url,
                        decode_responses=True,
                        socket_timeout=5,
                    )
                await self._client.ping()
                self._connected = True
                log.info("cache.store_connected", url=self.url)
            except _STORE_ERRORS as e:
                self._connected = False
                log.warning("cache.store_unavailable", url=self.url, error=str(e))
        else:
            log.info("cache.memory_only")

        if self._sweeper is None and self.sweep_interval_seconds > 0:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="cache-sweeper")

    async def close(self) -> None:
        """Stop the sweeper and release the store connection."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None

        if self._client is not None and self._connected:
            try:
                await self._client.aclose()
            except _STORE_ERRORS as e:
                log.debug("cache.close_failed", error=str(e))
        self._connected = False

    async def __aenter__(self) -> CacheManager:
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Any | None:
        """Return the cached value or None when absent or expired."""
        full_key = self._key(key)
        now = self._clock()

        if self.store_connected:
            try:
                raw = await self._client.get(full_key)
                if raw is not None:
                    entry = _decoder.decode(raw)
                    if entry.is_expired(now):
                        await self._evict(full_key)
                        return None
                    return entry.data
            except _STORE_ERRORS as e:
                log.warning("cache.store_get_failed", key=key, error=str(e))

        entry = self._memory.get(full_key)
        if entry is None:
            return None
        if entry.is_expired(now):
            await self._evict(full_key)
            return None
        return entry.data

    async def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        """Store ``value`` in both tiers for ``ttl_seconds`` (default TTL if None)."""
        full_key = self._key(key)
        ttl_ms = int((ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds) * 1000)
        entry = CacheEntry(
            data=msgspec.to_builtins(value),
            written_at_ms=self._clock(),
            ttl_ms=ttl_ms,
        )

        if self.store_connected:
            try:
                await self._client.psetex(full_key, max(ttl_ms, 1), _encoder.encode(entry))
            except _STORE_ERRORS as e:
                log.warning("cache.store_set_failed", key=key, error=str(e))

        # Replace wholesale so a rewritten key moves to the end of insertion order
        self._memory.pop(full_key, None)
        self._memory[full_key] = entry
        while len(self._memory) > self.max_entries:
            oldest = next(iter(self._memory))
            del self._memory[oldest]

    async def delete(self, key: str) -> None:
        await self._evict(self._key(key))

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob ``pattern`` (namespace applied).

        Returns:
            Number of in-process entries removed
        """
        full_pattern = self._key(pattern)

        if self.store_connected:
            try:
                keys = [k async for k in self._client.scan_iter(match=full_pattern)]
                if keys:
                    await self._client.delete(*keys)
            except _STORE_ERRORS as e:
                log.warning("cache.store_delete_pattern_failed", pattern=pattern, error=str(e))

        matched = [k for k in self._memory if fnmatch.fnmatchcase(k, full_pattern)]
        for k in matched:
            del self._memory[k]
        return len(matched)

    def sweep(self) -> int:
        """Drop expired in-process entries; returns how many were removed."""
        now = self._clock()
        expired = [k for k, entry in self._memory.items() if entry.is_expired(now)]
        for k in expired:
            del self._memory[k]
        if expired:
            log.debug("cache.swept", removed=len(expired), remaining=len(self._memory))
        return len(expired)

    async def stats(self) -> dict[str, Any]:
        store_entries = None
        if self.store_connected:
            try:
                store_entries = await self._client.dbsize()
            except _STORE_ERRORS as e:
                log.debug("cache.store_stats_failed", error=str(e))
        return {
            "store_connected": self.store_connected,
            "memory_entries": len(self._memory),
            "store_entries": store_entries,
        }

    async def get_price_usd(self, address: str) -> float | None:
        value = await self.get(f"price:{address.lower()}")
        return float(value) if value is not None else None

    async def set_price_usd(self, address: str, price: float, ttl_seconds: float | None = None) -> None:
        await self.set(f"price:{address.lower()}", price, ttl_seconds)

    async def _evict(self, full_key: str) -> None:
        self._memory.pop(full_key, None)
        if self.store_connected:
            try:
                await self._client.delete(full_key)
            except _STORE_ERRORS as e:
                log.warning("cache.store_delete_failed", key=full_key, error=str(e))

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            self.sweep()
