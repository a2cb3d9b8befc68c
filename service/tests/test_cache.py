"""Tests for cache backends"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from cicd_demo.cache import InstrumentedCache, MemoryCache, RedisCache, create_cache_backend


def test_backend_selection():
    assert isinstance(create_cache_backend(None), MemoryCache)
    assert isinstance(create_cache_backend("redis://localhost:6379/0"), RedisCache)


@pytest.mark.asyncio
async def test_memory_cache_ttl():
    cache = MemoryCache()
    await cache.set("short", 1, ttl_seconds=0.01)
    await cache.set("forever", {"a": 1})

    assert await cache.get("short") == 1
    await asyncio.sleep(0.02)
    assert await cache.get("short") is None
    assert await cache.get("forever") == {"a": 1}

    await cache.delete("forever")
    assert await cache.get("forever") is None
    assert await cache.ping() is True


@pytest.mark.asyncio
async def test_redis_cache_serializes_json():
    cache = RedisCache("redis://localhost:6379/0")
    cache.client = AsyncMock()
    cache.client.get.return_value = json.dumps({"id": "1"})

    await cache.set("user:1", {"id": "1"}, ttl_seconds=300)
    assert await cache.get("user:1") == {"id": "1"}

    cache.client.setex.assert_awaited_once_with("user:1", 300, json.dumps({"id": "1"}))
    cache.client.get.return_value = None
    assert await cache.get("user:2") is None


@pytest.mark.asyncio
async def test_redis_errors_propagate_through_instrumentation(instrumentation, registry):
    backend = RedisCache("redis://localhost:6379/0")
    backend.client = AsyncMock()
    backend.client.get.side_effect = ConnectionError("connection refused")
    cache = InstrumentedCache(backend, instrumentation)

    with pytest.raises(ConnectionError):
        await cache.get("user:1")

    assert registry.get_sample_value(
        "cache_operations_total", {"operation": "get", "result": "error"}
    ) == 1
