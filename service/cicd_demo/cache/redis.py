"""Redis cache implementation"""

import json
from typing import Optional, Any

import redis.asyncio as redis


class RedisCache:
    """Redis-based cache

    Connection and command errors propagate to the caller so that the
    instrumentation layer records them as cache failures.
    """

    def __init__(self, redis_url: str, timeout_seconds: float = 5.0):
        """
        Initialize Redis cache

        Args:
            redis_url: Redis connection URL
            timeout_seconds: socket connect/read timeout
        """
        self.redis_url = redis_url
        self.timeout_seconds = timeout_seconds
        self.client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Connect to Redis"""
        if self.client is None:
            self.client = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=self.timeout_seconds,
                socket_timeout=self.timeout_seconds,
            )

    async def close(self) -> None:
        """Close Redis connection"""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def ping(self) -> bool:
        await self.connect()
        return bool(await self.client.ping())

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache, None on miss"""
        await self.connect()
        value = await self.client.get(key)
        if value is None:
            return None
        return json.loads(value)

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        """Set value in cache"""
        await self.connect()
        serialized = json.dumps(value)
        if ttl_seconds:
            await self.client.setex(key, ttl_seconds, serialized)
        else:
            await self.client.set(key, serialized)

    async def delete(self, key: str) -> None:
        """Delete key from cache"""
        await self.connect()
        await self.client.delete(key)
