"""Cache wrapper that traces and measures every call"""

from typing import Any, Optional

from ..observability import Instrumentation, OperationCategory
from .memory import MemoryCache
from .redis import RedisCache


class InstrumentedCache:
    """Delegates to a cache backend through the cache instrumentation category"""

    def __init__(self, backend: Any, instrumentation: Instrumentation):
        self.backend = backend
        self.get = instrumentation.wrap(backend.get, "get", OperationCategory.CACHE)
        self.set = instrumentation.wrap(backend.set, "set", OperationCategory.CACHE)
        self.delete = instrumentation.wrap(backend.delete, "delete", OperationCategory.CACHE)

    async def ping(self) -> bool:
        return await self.backend.ping()

    async def close(self) -> None:
        await self.backend.close()


def create_cache_backend(redis_url: Optional[str] = None) -> Any:
    """Redis when a URL is configured, otherwise the in-process cache"""
    if redis_url:
        return RedisCache(redis_url)
    return MemoryCache()
