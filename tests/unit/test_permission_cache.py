"""Unit tests for the in-memory permission cache."""

from types import SimpleNamespace

import pytest

import portal.core.cache as cache_module
from portal.core.cache import InMemoryPermissionCache, permission_key, user_pattern


@pytest.mark.asyncio
async def test_set_and_get():
    cache = InMemoryPermissionCache()
    await cache.set("perm:u1:roles:read", True)
    assert await cache.get("perm:u1:roles:read") is True
    assert await cache.get("perm:u1:roles:write") is None


@pytest.mark.asyncio
async def test_false_is_cached():
    cache = InMemoryPermissionCache()
    await cache.set("perm:u1:roles:write", False)
    assert await cache.get("perm:u1:roles:write") is False


@pytest.mark.asyncio
async def test_entries_expire(monkeypatch):
    now = [1000.0]
    monkeypatch.setattr(cache_module, "time", SimpleNamespace(time=lambda: now[0]))
    cache = InMemoryPermissionCache(default_ttl=60)

    await cache.set("k", "v")
    now[0] += 59
    assert await cache.get("k") == "v"
    now[0] += 2
    assert await cache.get("k") is None
    assert cache.size == 0


@pytest.mark.asyncio
async def test_zero_ttl_never_expires(monkeypatch):
    now = [1000.0]
    monkeypatch.setattr(cache_module, "time", SimpleNamespace(time=lambda: now[0]))
    cache = InMemoryPermissionCache(default_ttl=60)

    await cache.set("k", "v", ttl=0)
    now[0] += 10**6
    assert await cache.get("k") == "v"


@pytest.mark.asyncio
async def test_least_recently_used_evicted():
    cache = InMemoryPermissionCache(max_size=2)
    await cache.set("a", 1)
    await cache.set("b", 2)
    await cache.get("a")
    await cache.set("c", 3)

    assert await cache.get("a") == 1
    assert await cache.get("b") is None
    assert await cache.get("c") == 3


@pytest.mark.asyncio
async def test_clear_pattern_scoped_to_user():
    cache = InMemoryPermissionCache()
    await cache.set(permission_key("u1", "roles:read"), True)
    await cache.set(permission_key("u1", "config:read"), False)
    await cache.set(permission_key("u2", "roles:read"), True)

    assert await cache.clear_pattern(user_pattern("u1")) == 2
    assert await cache.get(permission_key("u2", "roles:read")) is True


@pytest.mark.asyncio
async def test_delete_and_clear():
    cache = InMemoryPermissionCache()
    await cache.set("a", 1)
    await cache.set("b", 2)
    await cache.delete("a")
    await cache.delete("missing")
    assert await cache.get("a") is None
    assert await cache.clear() == 1
    assert cache.size == 0
