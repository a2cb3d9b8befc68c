"""In-process cache used when no Redis URL is configured"""

import asyncio
import time
from typing import Any, Dict, Optional, Tuple


class MemoryCache:
    """Dictionary-backed cache with optional per-key TTL"""

    def __init__(self):
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= time.monotonic():
                del self._data[key]
                return None
            return value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        async with self._lock:
            self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def close(self) -> None:
        async with self._lock:
            self._data.clear()
