from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Tuple

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import get_settings

logger = logging.getLogger(__name__)


class RedisCrudService:
    """Async CRUD operations against a Redis instance."""

    def __init__(self, url: str) -> None:
        """Create a Redis client for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._client: Redis[Any] | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(
            self._url,
            decode_responses=True,
        )
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def client(self) -> Redis[Any] | None:
        """Return the underlying Redis client, or None if not connected."""
        return self._client

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def get(self, key: str) -> str | None:
        """Return the value for key, or None if missing or on error."""
        if self._client is None:
            return None
        try:
            value = await self._client.get(key)
            return value if value is None else str(value)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis get %s failed: %s", key, e)
            return None

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None = None,
    ) -> bool:
        """Set key to value. If ttl_seconds is set, the key will expire. Returns True on success."""
        if self._client is None:
            return False
        try:
            if ttl_seconds is not None and ttl_seconds > 0:
                await self._client.setex(key, ttl_seconds, value)
            else:
                await self._client.set(key, value)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis set %s failed: %s", key, e)
            return False

    async def exists(self, key: str) -> bool:
        """Return True if key exists."""
        if self._client is None:
            return False
        try:
            n = await self._client.exists(key)
            return bool(n)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis exists %s failed: %s", key, e)
            return False

    async def delete(self, *keys: str, unindex: Tuple[str, str] | None = None) -> bool:
        """Delete keys in one MULTI/EXEC transaction. True if deleted or absent.

        `unindex` is a (sorted set key, member) pair removed in the same transaction.
        """
        if self._client is None or not keys:
            return False
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.delete(*keys)
                if unindex is not None:
                    pipe.zrem(*unindex)
                await pipe.execute()
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis delete %s failed: %s", ", ".join(keys), e)
            return False

    async def rpush(self, key: str, *values: str, ttl_seconds: int | None = None) -> bool:
        """Append values to the list at key. Returns True on success."""
        if self._client is None or not values:
            return False
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.rpush(key, *values)
                if ttl_seconds is not None and ttl_seconds > 0:
                    pipe.expire(key, ttl_seconds)
                await pipe.execute()
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis rpush %s failed: %s", key, e)
            return False

    async def lrange(self, key: str, start: int, end: int) -> List[str]:
        """Return list items between start and end (inclusive), [] on error."""
        if self._client is None:
            return []
        try:
            return [str(v) for v in await self._client.lrange(key, start, end)]
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis lrange %s failed: %s", key, e)
            return []

    async def llen(self, key: str) -> int:
        if self._client is None:
            return 0
        try:
            return int(await self._client.llen(key))
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis llen %s failed: %s", key, e)
            return 0

    async def hset(
        self,
        key: str,
        mapping: Mapping[str, str],
        ttl_seconds: int | None = None,
    ) -> bool:
        """Set hash fields at key. Returns True on success."""
        if self._client is None:
            return False
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=dict(mapping))
                if ttl_seconds is not None and ttl_seconds > 0:
                    pipe.expire(key, ttl_seconds)
                await pipe.execute()
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis hset %s failed: %s", key, e)
            return False

    async def hsetnx(self, key: str, field: str, value: str) -> bool:
        """Set a hash field only if it does not exist yet."""
        if self._client is None:
            return False
        try:
            return bool(await self._client.hsetnx(key, field, value))
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis hsetnx %s failed: %s", key, e)
            return False

    async def hgetall(self, key: str) -> Dict[str, str]:
        if self._client is None:
            return {}
        try:
            return dict(await self._client.hgetall(key))
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis hgetall %s failed: %s", key, e)
            return {}

    async def zadd(self, key: str, member: str, score: float) -> bool:
        if self._client is None:
            return False
        try:
            await self._client.zadd(key, {member: score})
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis zadd %s failed: %s", key, e)
            return False

    async def zrem(self, key: str, member: str) -> bool:
        if self._client is None:
            return False
        try:
            await self._client.zrem(key, member)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis zrem %s failed: %s", key, e)
            return False

    async def zrevrange(self, key: str, start: int, end: int) -> List[str]:
        """Return sorted-set members by descending score, [] on error."""
        if self._client is None:
            return []
        try:
            return [str(m) for m in await self._client.zrevrange(key, start, end)]
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis zrevrange %s failed: %s", key, e)
            return []

    async def zcard(self, key: str) -> int:
        if self._client is None:
            return 0
        try:
            return int(await self._client.zcard(key))
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis zcard %s failed: %s", key, e)
            return 0


def get_redis_crud_service() -> RedisCrudService | None:
    """Return a Redis CRUD service if redis_url is configured, else None."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisCrudService(settings.redis_url.strip())
