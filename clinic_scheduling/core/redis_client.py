"""Redis client configuration and utilities."""

import json
from typing import Any, cast

import redis
import redis.asyncio as aioredis

from clinic_scheduling.config import settings

# Global Redis client instances
_redis_client: redis.Redis | None = None
_async_redis_client: aioredis.Redis | None = None


def get_redis_client() -> redis.Redis:
    """
    Get or create the Redis client used for entity caching.

    Returns:
        Redis client instance
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            username=settings.redis_username,
            password=settings.redis_password,
            decode_responses=settings.redis_decode_responses,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30,
        )

    return _redis_client


def get_async_redis_client() -> aioredis.Redis:
    """
    Get or create the asyncio Redis client used for distributed slot locks.

    Returns:
        Async Redis client instance
    """
    global _async_redis_client

    if _async_redis_client is None:
        _async_redis_client = aioredis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            username=settings.redis_username,
            password=settings.redis_password,
            decode_responses=settings.redis_decode_responses,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30,
        )

    return _async_redis_client


async def close_redis_connections() -> None:
    """Close both Redis clients."""
    global _redis_client, _async_redis_client

    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None

    if _async_redis_client is not None:
        await _async_redis_client.aclose()
        _async_redis_client = None


class CacheManager:
    """Redis-based cache for reference records."""

    def __init__(self, redis_client: redis.Redis, ttl: int | None = None):
        """Initialize cache manager with Redis client and default TTL."""
        self.redis = redis_client
        self.ttl = ttl

    def get_json(self, key: str) -> Any | None:
        """
        Get JSON value from cache and deserialize.

        A Redis outage reads as a cache miss.

        Args:
            key: Cache key

        Returns:
            Deserialized object or None
        """
        try:
            value = cast(str | None, self.redis.get(key))
        except redis.RedisError:
            return None
        if value:
            return json.loads(value)
        return None

    def set_json(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """
        Serialize and set JSON value in cache.

        Args:
            key: Cache key
            value: Value to serialize and cache
            ttl: Time to live in seconds, defaults to the manager TTL

        Returns:
            True if successful, False otherwise
        """
        ttl = ttl or self.ttl
        json_value = json.dumps(value, default=str)
        try:
            if ttl:
                self.redis.setex(key, ttl, json_value)
            else:
                self.redis.set(key, json_value)
        except redis.RedisError:
            return False
        return True

    def delete(self, key: str) -> bool:
        """Delete key from cache."""
        try:
            self.redis.delete(key)
        except redis.RedisError:
            return False
        return True
