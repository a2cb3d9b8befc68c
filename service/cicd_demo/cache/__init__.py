"""Caching layer with Redis support"""

from .redis import RedisCache
from .memory import MemoryCache
from .instrumented import InstrumentedCache, create_cache_backend

__all__ = ["RedisCache", "MemoryCache", "InstrumentedCache", "create_cache_backend"]
