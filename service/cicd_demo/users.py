"""In-memory user registry behind instrumented business and cache operations"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .observability import Instrumentation, OperationCategory

USER_CACHE_TTL_SECONDS = 300


class UserCreate(BaseModel):
    """User registration payload"""
    username: str = Field(..., min_length=3, max_length=30, pattern="^[a-zA-Z0-9_.-]+$")
    email: str = Field(..., max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(..., min_length=8, max_length=128)
    user_type: str = Field("standard", pattern="^[a-z_]+$")


class UserResponse(BaseModel):
    """Public user representation"""
    id: str
    username: str
    email: str
    user_type: str
    created_at: str


class UserExistsError(Exception):
    """Username already taken"""
    status_code = 409

    def __init__(self, username: str):
        super().__init__(f"User '{username}' already exists")
        self.username = username


def _cache_key(user_id: str) -> str:
    return f"user:{user_id}"


class UserService:
    """User registration and lookup

    Records are held in memory; lookups go through the cache first.
    """

    def __init__(self, cache: Any, instrumentation: Instrumentation):
        self.cache = cache
        self.metrics = instrumentation.metrics
        self._users: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

        self.create_user = instrumentation.wrap(
            self._create_user, "create_user", OperationCategory.BUSINESS
        )
        self.get_user = instrumentation.wrap(
            self._get_user,
            "get_user",
            OperationCategory.BUSINESS,
            tag_extractor=lambda user_id: {"business.user_id": user_id},
        )
        self.delete_user = instrumentation.wrap(
            self._delete_user,
            "delete_user",
            OperationCategory.BUSINESS,
            tag_extractor=lambda user_id: {"business.user_id": user_id},
        )

    async def _create_user(self, data: UserCreate) -> Dict[str, Any]:
        async with self._lock:
            if any(user["username"] == data.username for user in self._users.values()):
                raise UserExistsError(data.username)
            user = {
                "id": str(uuid.uuid4()),
                "username": data.username,
                "email": data.email,
                "user_type": data.user_type,
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
            self._users[user["id"]] = user
            count = len(self._users)

        await self.cache.set(_cache_key(user["id"]), user, ttl_seconds=USER_CACHE_TTL_SECONDS)
        self.metrics.record_business_event("user_registered", data.user_type)
        self.metrics.record_active_users(count)
        return user

    async def _get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        cached = await self.cache.get(_cache_key(user_id))
        if cached is not None:
            return cached

        user = self._users.get(user_id)
        if user is not None:
            await self.cache.set(_cache_key(user_id), user, ttl_seconds=USER_CACHE_TTL_SECONDS)
        return user

    async def _delete_user(self, user_id: str) -> bool:
        async with self._lock:
            user = self._users.pop(user_id, None)
            count = len(self._users)
        if user is None:
            return False
        await self.cache.delete(_cache_key(user_id))
        self.metrics.record_active_users(count)
        return True

    def list_users(self) -> List[Dict[str, Any]]:
        return sorted(self._users.values(), key=lambda user: user["created_at"])
