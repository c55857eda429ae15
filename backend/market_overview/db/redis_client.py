"""
Market Overview - Redis Client
"""
from typing import Optional
import redis.asyncio as redis
from loguru import logger


class RedisClient:
    """Async Redis client wrapper."""

    def __init__(self, url: str):
        self.url = url
        self._client: redis.Redis | None = None

    @property
    def display_url(self) -> str:
        """URL without credentials, safe to log."""
        return self.url.split("@")[-1] if "@" in self.url else self.url

    async def initialize(self):
        """Initialize Redis connection."""
        try:
            self._client = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
            )
            # Test connection
            await self._client.ping()
            logger.info(f"Redis connected: {self.display_url}")
        except Exception as e:
            logger.error(f"Redis connection failed: {e}")
            raise

    async def close(self):
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Redis connection closed")

    @property
    def client(self) -> redis.Redis:
        """Get Redis client instance."""
        if not self._client:
            raise RuntimeError("Redis client not initialized. Call initialize() first.")
        return self._client

    # =========================
    # Generic Get/Set Methods
    # =========================
    async def get(self, key: str) -> Optional[str]:
        """Get value by key."""
        return await self.client.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        """Set value with optional expiry (in seconds)."""
        if ex:
            await self.client.setex(key, ex, value)
        else:
            await self.client.set(key, value)
        return True

    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""
        if not keys:
            return 0
        return await self.client.delete(*keys)

    async def exists(self, key: str) -> bool:
        """Check whether a key exists."""
        return await self.client.exists(key) > 0

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern (SCAN based)."""
        deleted = 0
        async for key in self.client.scan_iter(match=pattern, count=500):
            deleted += await self.client.delete(key)
        return deleted

    async def count_keys(self, pattern: str) -> int:
        """Count keys matching a glob pattern (SCAN based)."""
        count = 0
        async for _ in self.client.scan_iter(match=pattern, count=500):
            count += 1
        return count

    async def memory_info(self) -> dict:
        """Return the INFO memory section."""
        return await self.client.info("memory")
