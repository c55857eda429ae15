"""
Unit Tests - Cache Store
Tests for the in-process backend, TTL handling and the Redis downgrade.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from market_overview.data_providers.cache_manager import CacheStore, MemoryCacheBackend


class TestMemoryCacheBackend:
    """Tests for the in-process backend."""

    def test_get_returns_value_before_expiry(self, clock):
        """Entries are readable until their TTL elapses."""
        backend = MemoryCacheBackend(clock=clock)
        backend.set("quote:TCS", '{"price": 1}', 30)

        clock.advance(29)
        assert backend.get("quote:TCS") == '{"price": 1}'

    def test_expired_entry_is_miss_and_evicted(self, clock):
        """Reading an expired entry returns None and removes it."""
        backend = MemoryCacheBackend(clock=clock, cleanup_probability=0)
        backend.set("quote:TCS", "1", 30)

        clock.advance(30)
        assert backend.get("quote:TCS") is None
        assert backend.size() == 0

    def test_probabilistic_cleanup_on_set(self, clock):
        """A set that hits the cleanup roll sweeps expired entries."""
        rng = MagicMock()
        rng.random.side_effect = [0.99, 0.01]
        backend = MemoryCacheBackend(clock=clock, rng=rng)

        backend.set("a", "1", 10)
        clock.advance(11)
        backend.set("b", "2", 10)

        assert backend.keys() == ["b"]

    def test_no_cleanup_when_roll_misses(self, clock):
        """Expired entries stay until read or swept."""
        rng = MagicMock()
        rng.random.return_value = 0.5
        backend = MemoryCacheBackend(clock=clock, rng=rng)

        backend.set("a", "1", 10)
        clock.advance(11)
        backend.set("b", "2", 10)

        assert sorted(backend.keys()) == ["a", "b"]

    def test_purge_expired_counts(self, clock):
        """purge_expired reports how many entries it removed."""
        backend = MemoryCacheBackend(clock=clock, cleanup_probability=0)
        backend.set("a", "1", 10)
        backend.set("b", "2", 100)
        clock.advance(50)

        assert backend.purge_expired() == 1
        assert backend.keys() == ["b"]

    def test_delete_and_clear(self, clock):
        backend = MemoryCacheBackend(clock=clock)
        backend.set("a", "1", 10)
        backend.set("b", "2", 10)

        assert backend.delete("a") is True
        assert backend.delete("a") is False
        assert backend.clear() == 1
        assert backend.size() == 0


class TestCacheStoreMemory:
    """Tests for the facade over the in-process backend."""

    @pytest.mark.asyncio
    async def test_set_get_roundtrip(self, cache):
        """Documents come back equal to what was stored."""
        await cache.initialize()
        await cache.set("quote:INFY", {"symbol": "INFY", "price": 1500.5}, 30)

        assert await cache.get("quote:INFY") == {"symbol": "INFY", "price": 1500.5}
        assert cache.backend == "memory"

    @pytest.mark.asyncio
    async def test_reads_return_fresh_copies(self, cache):
        """Mutating a returned document does not affect the cache."""
        await cache.set("k", {"items": [1, 2]}, 30)

        first = await cache.get("k")
        first["items"].append(3)

        assert await cache.get("k") == {"items": [1, 2]}

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, cache, clock):
        """Entries expire after their TTL."""
        await cache.set("k", {"v": 1}, 30)
        clock.advance(31)

        assert await cache.get("k") is None
        assert await cache.exists("k") is False

    @pytest.mark.asyncio
    async def test_stats_track_hits_and_misses(self, cache):
        await cache.set("k", {"v": 1}, 30)
        await cache.get("k")
        await cache.get("missing")

        stats = await cache.stats()
        assert stats["backend"] == "memory"
        assert stats["size"] == 1
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["keys"] == ["k"]

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, cache):
        await cache.set("a", 1, 30)
        await cache.set("b", 2, 30)

        assert await cache.delete("a") is True
        assert await cache.clear() == 1
        assert await cache.size() == 0


class TestCacheStoreRedis:
    """Tests for the Redis backend and its downgrade."""

    @pytest.fixture
    def redis_client(self):
        client = MagicMock()
        client.initialize = AsyncMock()
        client.close = AsyncMock()
        client.get = AsyncMock(return_value=None)
        client.set = AsyncMock(return_value=True)
        client.delete = AsyncMock(return_value=1)
        client.exists = AsyncMock(return_value=True)
        client.count_keys = AsyncMock(return_value=3)
        client.delete_pattern = AsyncMock(return_value=3)
        client.memory_info = AsyncMock(return_value={"used_memory_human": "1.20M"})
        return client

    @pytest.mark.asyncio
    async def test_uses_redis_when_reachable(self, redis_client, clock):
        """A successful PING selects the Redis backend."""
        store = CacheStore(redis_url="redis://localhost:6379/0", redis_client=redis_client, clock=clock)
        await store.initialize()

        await store.set("quote:TCS", {"price": 1}, 30)

        assert store.backend == "redis"
        redis_client.set.assert_awaited_once_with("market_overview:quote:TCS", '{"price": 1}', ex=30)

    @pytest.mark.asyncio
    async def test_redis_get_decodes_json(self, redis_client, clock):
        redis_client.get.return_value = '{"price": 2}'
        store = CacheStore(redis_url="redis://x", redis_client=redis_client, clock=clock)
        await store.initialize()

        assert await store.get("quote:TCS") == {"price": 2}
        redis_client.get.assert_awaited_once_with("market_overview:quote:TCS")

    @pytest.mark.asyncio
    async def test_init_failure_downgrades_to_memory(self, redis_client, clock):
        """Connection failure at startup selects the in-process backend."""
        redis_client.initialize.side_effect = ConnectionError("refused")
        store = CacheStore(redis_url="redis://x", redis_client=redis_client, clock=clock)

        await store.initialize()
        await store.set("k", {"v": 1}, 30)

        assert store.backend == "memory"
        assert store.downgraded is True
        assert await store.get("k") == {"v": 1}
        redis_client.set.assert_not_called()

    @pytest.mark.asyncio
    async def test_runtime_error_is_a_miss_and_sticky(self, redis_client, clock):
        """A Redis error mid-flight degrades to a miss and stays on memory."""
        store = CacheStore(redis_url="redis://x", redis_client=redis_client, clock=clock)
        await store.initialize()
        redis_client.get.side_effect = ConnectionError("gone")

        assert await store.get("k") is None
        assert store.backend == "memory"

        redis_client.get.side_effect = None
        redis_client.get.return_value = '{"v": 1}'
        assert await store.get("k") is None
        assert redis_client.get.await_count == 1

    @pytest.mark.asyncio
    async def test_runtime_set_error_writes_to_memory(self, redis_client, clock):
        store = CacheStore(redis_url="redis://x", redis_client=redis_client, clock=clock)
        await store.initialize()
        redis_client.set.side_effect = ConnectionError("gone")

        await store.set("k", {"v": 1}, 30)

        assert store.backend == "memory"
        assert await store.get("k") == {"v": 1}

    @pytest.mark.asyncio
    async def test_redis_stats_use_key_count(self, redis_client, clock):
        store = CacheStore(redis_url="redis://x", redis_client=redis_client, clock=clock)
        await store.initialize()

        stats = await store.stats()

        assert stats["backend"] == "redis"
        assert stats["size"] == 3
        assert stats["redis_memory"] == "1.20M"
        assert "keys" not in stats
