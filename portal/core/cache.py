"""Permission cache: an explicit interface with an in-memory TTL implementation."""

import asyncio
import fnmatch
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Optional


class PermissionCache(ABC):
    """Cache interface injected into the permission and role services.

    Writers that change effective permissions must invalidate explicitly.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if missing or expired."""
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def clear_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern. Returns count of deleted keys."""
        ...

    async def clear(self) -> int:
        return await self.clear_pattern("*")


class InMemoryPermissionCache(PermissionCache):
    """In-memory cache with TTL and LRU eviction."""

    def __init__(self, default_ttl: int = 3600, max_size: int = 10000):
        self._default_ttl = default_ttl
        self._max_size = max_size
        self._store: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            if key not in self._store:
                return None

            value, expires_at = self._store[key]
            if expires_at > 0 and time.time() > expires_at:
                del self._store[key]
                return None

            self._store.move_to_end(key)
            return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        async with self._lock:
            ttl = ttl if ttl is not None else self._default_ttl
            expires_at = time.time() + ttl if ttl > 0 else 0
            self._store[key] = (value, expires_at)
            self._store.move_to_end(key)
            while len(self._store) > self._max_size:
                self._store.popitem(last=False)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def clear_pattern(self, pattern: str) -> int:
        async with self._lock:
            to_delete = [k for k in self._store if fnmatch.fnmatch(k, pattern)]
            for k in to_delete:
                del self._store[k]
            return len(to_delete)

    @property
    def size(self) -> int:
        return len(self._store)


def permission_key(user_id: str, permission: str) -> str:
    return f"perm:{user_id}:{permission}"


def user_pattern(user_id: str) -> str:
    return f"perm:{user_id}:*"
