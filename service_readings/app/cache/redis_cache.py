"""
Redis cache store for the Readings Service.
"""

from typing import Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from shared.logging import get_logger
from shared.errors import StoreUnavailableError

_UNAVAILABLE = (RedisConnectionError, RedisTimeoutError, OSError)


class RedisCacheStore:
    """Redis-backed cache of serialized readings."""

    def __init__(self, redis_url: str, socket_timeout: float = 5.0, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.logger = get_logger("readings.cache.redis")
        self.redis: Optional[redis.Redis] = client

    async def start(self):
        """Open the shared Redis client and verify it answers."""
        if self.redis is None:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                retry_on_timeout=True,
                health_check_interval=30
            )

        try:
            pong = await self.redis.ping()
        except _UNAVAILABLE as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            raise StoreUnavailableError("redis", str(e)) from e

        self.logger.info("Redis cache started", ping=pong)

    async def stop(self):
        """Close the Redis client."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis cache stopped")

    def _client(self) -> redis.Redis:
        if self.redis is None:
            raise StoreUnavailableError("redis", "cache not started")
        return self.redis

    async def get(self, key: str) -> Optional[str]:
        """Return the raw cached value, or None on a miss."""
        try:
            value = await self._client().get(key)
        except _UNAVAILABLE as e:
            self.logger.error("Error reading cache", cache_key=key, error=str(e))
            raise StoreUnavailableError("redis", str(e)) from e

        self.logger.debug("Cache lookup", cache_key=key, hit=value is not None)
        return value

    async def set(self, key: str, value: str, expire_seconds: Optional[int] = None) -> bool:
        """Store a value, with an expiration when ``expire_seconds`` is given."""
        try:
            if expire_seconds:
                result = await self._client().set(key, value, ex=int(expire_seconds))
            else:
                result = await self._client().set(key, value)
        except _UNAVAILABLE as e:
            self.logger.error("Error writing cache", cache_key=key, error=str(e))
            raise StoreUnavailableError("redis", str(e)) from e

        self.logger.debug("Cached reading", cache_key=key, ttl=expire_seconds)
        return bool(result)

    async def delete(self, key: str) -> bool:
        """Remove a key; returns whether it existed."""
        try:
            removed = await self._client().delete(key)
        except _UNAVAILABLE as e:
            self.logger.error("Error deleting cache key", cache_key=key, error=str(e))
            raise StoreUnavailableError("redis", str(e)) from e
        return removed > 0

    async def ttl(self, key: str) -> int:
        """Seconds left on a key: -2 when missing, -1 when it never expires."""
        try:
            return int(await self._client().ttl(key))
        except _UNAVAILABLE as e:
            self.logger.error("Error reading cache TTL", cache_key=key, error=str(e))
            raise StoreUnavailableError("redis", str(e)) from e

    async def ping(self):
        """Return the PING reply."""
        try:
            return await self._client().ping()
        except _UNAVAILABLE as e:
            raise StoreUnavailableError("redis", str(e)) from e
