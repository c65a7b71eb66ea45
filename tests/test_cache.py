"""Tests for the two-tier TTL cache."""

import fnmatch

import msgspec
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from flasharb.core.cache import CacheManager
from flasharb.core.types import CacheEntry


class FakeClock:
    def __init__(self, now: int = 1_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeRedis:
    def __init__(self, *, ping_fails: bool = False) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.ping_fails = ping_fails
        self.broken = False
        self.closed = False

    def _check(self) -> None:
        if self.broken:
            raise RedisConnectionError("store down")

    async def ping(self) -> bool:
        if self.ping_fails:
            raise RedisConnectionError("refused")
        return True

    async def get(self, key: str) -> str | None:
        self._check()
        return self.data.get(key)

    async def psetex(self, key: str, ttl_ms: int, value: bytes) -> None:
        self._check()
        self.data[key] = value.decode() if isinstance(value, bytes) else value
        self.ttls[key] = ttl_ms

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match: str):
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def dbsize(self) -> int:
        return len(self.data)

    async def aclose(self) -> None:
        self.closed = True


def _memory_cache(clock: FakeClock, **kwargs) -> CacheManager:
    return CacheManager(sweep_interval_seconds=0, clock=clock, **kwargs)


@pytest.mark.asyncio
async def test_memory_entry_expires_strictly_after_ttl() -> None:
    clock = FakeClock()
    cache = _memory_cache(clock)

    await cache.set("price:usdc", 1.0, ttl_seconds=1)

    clock.advance(1000)
    assert await cache.get("price:usdc") == 1.0  # now - written == ttl is not expired

    clock.advance(1)
    assert await cache.get("price:usdc") is None
    assert (await cache.stats())["memory_entries"] == 0


@pytest.mark.asyncio
async def test_memory_cap_evicts_oldest_inserted() -> None:
    cache = _memory_cache(FakeClock(), max_entries=2)

    await cache.set("a", 1)
    await cache.set("b", 2)
    await cache.set("a", 10)  # rewrite moves "a" behind "b"
    await cache.set("c", 3)

    assert await cache.get("b") is None
    assert await cache.get("a") == 10
    assert await cache.get("c") == 3


@pytest.mark.asyncio
async def test_store_and_memory_share_ttl_bookkeeping() -> None:
    clock = FakeClock()
    store = FakeRedis()
    cache = _memory_cache(clock, client=store)
    await cache.open()

    await cache.set("quote:x", {"amount": 5}, ttl_seconds=1.5)

    raw = store.data["flash_arb:quote:x"]
    entry = msgspec.json.decode(raw, type=CacheEntry)
    assert store.ttls["flash_arb:quote:x"] == 1500
    assert entry.ttl_ms == 1500
    assert entry.written_at_ms == clock.now
    assert await cache.get("quote:x") == {"amount": 5}

    await cache.close()
    assert store.closed


@pytest.mark.asyncio
async def test_expired_store_entry_is_removed_from_both_tiers() -> None:
    clock = FakeClock()
    store = FakeRedis()
    cache = _memory_cache(clock, client=store)
    await cache.open()

    await cache.set("k", "v", ttl_seconds=1)
    clock.advance(1001)

    assert await cache.get("k") is None
    assert store.data == {}
    assert (await cache.stats())["memory_entries"] == 0


@pytest.mark.asyncio
async def test_store_errors_fall_back_to_memory() -> None:
    store = FakeRedis()
    cache = _memory_cache(FakeClock(), client=store)
    await cache.open()
    store.broken = True

    await cache.set("k", 42)

    assert await cache.get("k") == 42


@pytest.mark.asyncio
async def test_unreachable_store_runs_memory_only() -> None:
    store = FakeRedis(ping_fails=True)
    cache = _memory_cache(FakeClock(), client=store)

    await cache.open()
    await cache.set("k", "v")

    stats = await cache.stats()
    assert stats["store_connected"] is False
    assert stats["store_entries"] is None
    assert store.data == {}
    assert await cache.get("k") == "v"


@pytest.mark.asyncio
async def test_sweep_drops_only_expired_entries() -> None:
    clock = FakeClock()
    cache = _memory_cache(clock)
    await cache.set("short", 1, ttl_seconds=1)
    await cache.set("long", 2, ttl_seconds=60)

    clock.advance(5_000)

    assert cache.sweep() == 1
    assert await cache.get("long") == 2


@pytest.mark.asyncio
async def test_delete_pattern_and_price_helpers() -> None:
    store = FakeRedis()
    cache = _memory_cache(FakeClock(), client=store)
    await cache.open()

    await cache.set_price_usd("0xABCdef", 3000.5)
    await cache.set("quote:a", 1)
    await cache.set("quote:b", 2)

    assert await cache.get("price:0xabcdef") == 3000.5
    assert await cache.get_price_usd("0xabcDEF") == 3000.5

    removed = await cache.delete_pattern("quote:*")
    assert removed == 2
    assert await cache.get("quote:a") is None
    assert list(store.data) == ["flash_arb:price:0xabcdef"]

    await cache.delete("price:0xabcdef")
    assert await cache.get_price_usd("0xabcdef") is None
