"""Shared key-value cache backed by Redis"""

import json
from typing import Any, List, Optional

import redis.asyncio as redis
import structlog

from fulfillment.config import settings

logger = structlog.get_logger()


class CacheStore:
    """
    Thin JSON layer over an async Redis client.
    Every write is a complete object replacement; callers that read, modify
    and write back a shared document hold ``lock`` around the cycle.
    """

    def __init__(self, client: "redis.Redis", prefix: str = "fulfillment:"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: Optional[str] = None) -> "CacheStore":
        """Create a store with its own connection pool"""
        url = url or settings.redis_url
        logger.info("Creating Redis connection pool", redis_url=url)
        return cls(redis.from_url(url, decode_responses=True))

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get_json(self, key: str) -> Optional[Any]:
        """Return the decoded value or None on a miss"""
        value = await self.client.get(self._key(key))
        if value is None:
            return None
        return json.loads(value)

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Write a value with a TTL (SETEX semantics)"""
        await self.client.set(self._key(key), json.dumps(value), ex=ttl_seconds)

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        """Atomically create a marker key; False if it already exists"""
        created = await self.client.set(self._key(key), "1", ex=ttl_seconds, nx=True)
        return bool(created)

    def lock(self, key: str, timeout: float, blocking_timeout: float):
        """
        Distributed mutex (redis-py ``Lock``), used as ``async with``.
        Raises ``redis.exceptions.LockError`` when not acquired in time.
        """
        return self.client.lock(self._key(key), timeout=timeout, blocking_timeout=blocking_timeout)

    async def delete(self, key: str) -> None:
        await self.client.delete(self._key(key))

    async def add_to_set(self, key: str, member: str, ttl_seconds: Optional[int] = None) -> None:
        full_key = self._key(key)
        await self.client.sadd(full_key, member)
        if ttl_seconds:
            await self.client.expire(full_key, ttl_seconds)

    async def remove_from_set(self, key: str, member: str) -> None:
        await self.client.srem(self._key(key), member)

    async def set_members(self, key: str) -> List[str]:
        members = await self.client.smembers(self._key(key))
        return sorted(members)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()
