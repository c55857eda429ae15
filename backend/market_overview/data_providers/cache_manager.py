"""
Cache Manager

Key/value cache with per-entry TTL for market data.
Uses Redis when configured and reachable, otherwise an in-process map.
A Redis failure at any point downgrades the store to the in-process
backend for the rest of the process lifetime.
"""
import json
import random
import threading
import time
from dataclasses import dataclass
from typing import Optional, Any, Callable
from loguru import logger

from market_overview.db.redis_client import RedisClient


@dataclass
class CacheEntry:
    """A cached JSON document and its absolute expiry (epoch seconds)."""
    key: str
    payload: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class MemoryCacheBackend:
    """
    In-process cache backend.

    Expired entries are evicted when read, and roughly one in ten writes
    also sweeps the whole map.
    """

    name = "memory"

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        cleanup_probability: float = 0.1,
    ):
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._rng = rng or random.Random()
        self.cleanup_probability = cleanup_probability

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return entry.payload

    def set(self, key: str, payload: str, ttl_seconds: float) -> None:
        with self._lock:
            now = self._clock()
            self._entries[key] = CacheEntry(key=key, payload=payload, expires_at=now + ttl_seconds)
            if self._rng.random() < self.cleanup_probability:
                self._purge_locked(now)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked(self._clock())

    def _purge_locked(self, now: float) -> int:
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries.keys())

    def size(self) -> int:
        with self._lock:
            return len(self._entries)


class CacheStore:
    """
    Cache facade used by the orchestrator.

    Features:
    - JSON documents in, fresh copies out
    - Redis backend with sticky downgrade to memory
    - Redis errors never propagate (miss / no-op write)
    - Statistics tracking
    """

    def __init__(
        self,
        redis_url: str = "",
        clock: Callable[[], float] = time.time,
        memory: Optional[MemoryCacheBackend] = None,
        redis_client: Optional[RedisClient] = None,
        prefix: str = "market_overview",
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self._memory = memory or MemoryCacheBackend(clock=clock)
        self._redis: Optional[RedisClient] = redis_client
        self._using_redis = False
        self._downgraded = False
        self._stats = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "deletes": 0,
        }

    async def initialize(self) -> None:
        """Connect to Redis if configured, otherwise use the in-process map."""
        if not self.redis_url and self._redis is None:
            logger.info("Cache store using in-memory backend")
            return

        if self._redis is None:
            self._redis = RedisClient(self.redis_url)

        try:
            await self._redis.initialize()
            self._using_redis = True
            logger.info("Cache store using Redis backend")
        except Exception as e:
            self._downgrade(f"initialization failed: {e}")

    async def close(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.close()
            except Exception as e:
                logger.warning(f"Error closing Redis cache backend: {e}")

    @property
    def backend(self) -> str:
        return "redis" if self._using_redis else MemoryCacheBackend.name

    @property
    def downgraded(self) -> bool:
        return self._downgraded

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def _downgrade(self, reason: str) -> None:
        self._using_redis = False
        if not self._downgraded:
            self._downgraded = True
            logger.warning(f"Redis cache unavailable ({reason}); falling back to in-memory cache")

    # ==================== Basic Operations ====================

    async def get(self, key: str) -> Optional[Any]:
        """Get a cached document; expired or missing entries return None."""
        payload: Optional[str] = None

        if self._using_redis:
            try:
                payload = await self._redis.get(self._key(key))
            except Exception as e:
                self._downgrade(f"get {key}: {e}")
                payload = None
        else:
            payload = self._memory.get(key)

        if payload is None:
            self._stats["misses"] += 1
            return None

        try:
            value = json.loads(payload)
        except ValueError as e:
            logger.error(f"Corrupt cache entry {key}: {e}")
            await self.delete(key)
            self._stats["misses"] += 1
            return None

        self._stats["hits"] += 1
        return value

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        """Cache a JSON-serialisable document for ttl_seconds."""
        payload = json.dumps(value)

        if self._using_redis:
            try:
                await self._redis.set(self._key(key), payload, ex=max(1, int(ttl_seconds)))
                self._stats["sets"] += 1
                return
            except Exception as e:
                self._downgrade(f"set {key}: {e}")

        self._memory.set(key, payload, ttl_seconds)
        self._stats["sets"] += 1

    async def delete(self, key: str) -> bool:
        self._stats["deletes"] += 1
        if self._using_redis:
            try:
                return await self._redis.delete(self._key(key)) > 0
            except Exception as e:
                self._downgrade(f"delete {key}: {e}")
        return self._memory.delete(key)

    async def exists(self, key: str) -> bool:
        if self._using_redis:
            try:
                return await self._redis.exists(self._key(key))
            except Exception as e:
                self._downgrade(f"exists {key}: {e}")
        return self._memory.exists(key)

    # ==================== Maintenance ====================

    async def purge_expired(self) -> int:
        """Evict expired in-process entries (Redis expires its own)."""
        removed = self._memory.purge_expired()
        if removed:
            logger.debug(f"Cache purge removed {removed} expired entries")
        return removed

    async def clear(self) -> int:
        """Remove every entry owned by this store."""
        cleared = self._memory.clear()
        if self._using_redis:
            try:
                cleared += await self._redis.delete_pattern(f"{self.prefix}:*")
            except Exception as e:
                self._downgrade(f"clear: {e}")
        logger.info(f"Cache cleared ({cleared} entries)")
        return cleared

    async def size(self) -> int:
        if self._using_redis:
            try:
                return await self._redis.count_keys(f"{self.prefix}:*")
            except Exception as e:
                self._downgrade(f"size: {e}")
        return self._memory.size()

    async def stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        total = self._stats["hits"] + self._stats["misses"]
        hit_rate = self._stats["hits"] / total if total > 0 else 0

        result: dict[str, Any] = {
            "backend": self.backend,
            "size": await self.size(),
            "downgraded": self._downgraded,
            "hit_rate": round(hit_rate * 100, 2),
            **self._stats,
        }
        if self._using_redis:
            try:
                info = await self._redis.memory_info()
                result["redis_memory"] = info.get("used_memory_human")
            except Exception as e:
                logger.warning(f"Could not read Redis memory info: {e}")
        else:
            result["keys"] = self._memory.keys()
        return result
