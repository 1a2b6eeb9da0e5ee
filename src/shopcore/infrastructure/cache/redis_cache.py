"""
Redis Cache Implementation
Async Redis-based shared cache tier
"""
from __future__ import annotations

import json
from typing import Any

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from shopcore.config import Settings
from shopcore.errors import CacheUnavailableError
from shopcore.logging import get_logger
from shopcore.utils.serialization import SafeEncoder

logger = get_logger(__name__)


def create_redis_client(settings: Settings) -> Redis:
    """Build the async client (from_url is sync; the first command connects)."""
    if not settings.redis_url:
        raise ValueError("REDIS_URL is not configured")
    return redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        health_check_interval=30,
        socket_connect_timeout=2.0,
        socket_timeout=2.0,
        retry_on_timeout=True,
        max_connections=50,
    )


class RedisCache:
    """
    Async Redis cache implementation.

    CRITICAL: Redis is ONLY for optimization - never source of truth.
    Connection failures surface as `CacheUnavailableError`; undecodable
    entries are treated as misses.

    Attributes:
        redis: Async Redis client
        key_prefix: Prefix for all cache keys (for namespacing)
    """

    def __init__(self, redis: Redis, key_prefix: str = "shopcore") -> None:
        self.redis = redis
        self.key_prefix = key_prefix

    def _make_key(self, key: str) -> str:
        """Create prefixed key for namespacing."""
        return f"{self.key_prefix}:{key}"

    def _unavailable(self, operation: str, key: str, error: Exception) -> CacheUnavailableError:
        logger.warning("Redis operation failed", operation=operation, key=key, error=str(error))
        return CacheUnavailableError(f"Redis {operation} failed", operation=operation)

    async def get(self, key: str) -> Any | None:
        try:
            value = await self.redis.get(self._make_key(key))
        except RedisError as e:
            raise self._unavailable("GET", key, e) from e
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            logger.error("Failed to deserialize cached value", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        serialized = json.dumps(value, cls=SafeEncoder)
        try:
            if ttl:
                await self.redis.setex(self._make_key(key), ttl, serialized)
            else:
                await self.redis.set(self._make_key(key), serialized)
        except RedisError as e:
            raise self._unavailable("SET", key, e) from e
        logger.debug("Cached value", key=key, ttl=ttl)
        return True

    async def delete(self, key: str) -> bool:
        try:
            result = await self.redis.delete(self._make_key(key))
        except RedisError as e:
            raise self._unavailable("DELETE", key, e) from e
        return result > 0

    async def exists(self, key: str) -> bool:
        try:
            result = await self.redis.exists(self._make_key(key))
        except RedisError as e:
            raise self._unavailable("EXISTS", key, e) from e
        return result > 0

    async def increment(self, key: str, amount: int = 1, ttl: int | None = None) -> int:
        redis_key = self._make_key(key)
        try:
            if not ttl:
                return int(await self.redis.incrby(redis_key, amount))
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incrby(redis_key, amount)
                pipe.expire(redis_key, ttl)
                value, _ = await pipe.execute()
            return int(value)
        except RedisError as e:
            raise self._unavailable("INCR", key, e) from e

    async def get_int(self, key: str) -> int:
        try:
            value = await self.redis.get(self._make_key(key))
        except RedisError as e:
            raise self._unavailable("GET", key, e) from e
        return int(value) if value is not None else 0

    async def get_many(self, keys: list[str]) -> dict[str, Any]:
        if not keys:
            return {}
        try:
            values = await self.redis.mget([self._make_key(k) for k in keys])
        except RedisError as e:
            raise self._unavailable("MGET", ",".join(keys[:3]), e) from e

        result = {}
        for key, value in zip(keys, values):
            if value is None:
                continue
            try:
                result[key] = json.loads(value)
            except json.JSONDecodeError:
                logger.warning("Failed to deserialize cached value", key=key)
        return result

    async def ping(self) -> bool:
        try:
            await self.redis.ping()
            return True
        except RedisError as e:
            logger.error("Redis PING failed", error=str(e))
            return False

    async def close(self) -> None:
        await self.redis.aclose()
