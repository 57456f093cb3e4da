"""
Redis client for caching.
"""
import json
from typing import Optional, Any

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from analytics_engine.core.config import settings
from analytics_engine.core.exceptions import CacheError
from analytics_engine.core.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """
    Async Redis client for caching JSON-serializable values.

    Backend failures raise ``CacheError``; callers that can run without the
    cache catch it and carry on.
    """

    def __init__(self, url: Optional[str] = None, default_ttl: Optional[int] = None, client: Optional[Redis] = None):
        """Initialize Redis client."""
        self.url = url or settings.REDIS_URL
        self.default_ttl = default_ttl or settings.REDIS_CACHE_TTL
        self.client: Optional[Redis] = client
        if self.client is None:
            self._connect()

    def _connect(self):
        """Create the connection pool (connections are opened lazily)."""
        self.client = redis.from_url(
            self.url,
            encoding="utf-8",
            decode_responses=True
        )
        logger.info("Redis client configured")

    async def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache.

        Args:
            key: Cache key

        Returns:
            Cached value or None
        """
        try:
            value = await self.client.get(key)
        except RedisError as e:
            raise CacheError(f"Error getting {key} from cache: {e}", cause=e) from e

        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None
    ) -> None:
        """
        Set value in cache.

        Args:
            key: Cache key
            value: Value to cache
            ttl: Time to live in seconds (uses default if None)
        """
        payload = json.dumps(value, default=str)
        try:
            await self.client.setex(key, ttl or self.default_ttl, payload)
        except RedisError as e:
            raise CacheError(f"Error setting {key} in cache: {e}", cause=e) from e

    async def delete(self, key: str) -> None:
        """Delete key from cache."""
        try:
            await self.client.delete(key)
        except RedisError as e:
            raise CacheError(f"Error deleting {key} from cache: {e}", cause=e) from e

    async def clear_pattern(self, pattern: str) -> int:
        """
        Clear all keys matching pattern.

        Args:
            pattern: Redis key pattern (e.g., "analytics-query:tenant-1:*")

        Returns:
            Number of keys deleted
        """
        try:
            keys = [key async for key in self.client.scan_iter(match=pattern)]
            if keys:
                return await self.client.delete(*keys)
            return 0
        except RedisError as e:
            raise CacheError(f"Error clearing cache pattern {pattern}: {e}", cause=e) from e

    async def close(self):
        """Close Redis connection."""
        if self.client:
            await self.client.aclose()
            self.client = None
