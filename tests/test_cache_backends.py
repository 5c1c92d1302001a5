"""Tests for the identity/session cache backends."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from rtbf.cache.backend import InMemoryCacheBackend, RedisCacheBackend, get_cache_backend
from rtbf.config import Settings


class TestInMemoryCacheBackend:
    async def test_set_get_delete(self):
        cache = InMemoryCacheBackend()
        await cache.set("identity:user:7", {"name": "Alice"}, ttl=60)
        assert await cache.get("identity:user:7") == {"name": "Alice"}

        await cache.delete("identity:user:7")
        await cache.delete("identity:user:7")
        assert await cache.get("identity:user:7") is None

    async def test_expired_entries_are_misses(self):
        cache = InMemoryCacheBackend()
        await cache.set("k", "v", ttl=0)
        assert await cache.get("k") is None

    async def test_delete_pattern(self):
        cache = InMemoryCacheBackend()
        for key in ("session:user:7:a", "session:user:7:b", "session:user:77:c"):
            await cache.set(key, 1, ttl=60)

        assert await cache.delete_pattern("session:user:7:*") == 2
        assert await cache.get("session:user:77:c") == 1


class _AsyncKeys:
    def __init__(self, keys: list[str]) -> None:
        self._keys = list(keys)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        if not self._keys:
            raise StopAsyncIteration
        return self._keys.pop(0)


class TestRedisCacheBackend:
    @pytest.fixture
    def client(self) -> MagicMock:
        client = MagicMock()
        client.get = AsyncMock(return_value=json.dumps({"name": "Alice"}))
        client.setex = AsyncMock()
        client.delete = AsyncMock(return_value=1)
        client.aclose = AsyncMock()
        return client

    @pytest.fixture
    def cache(self, client: MagicMock) -> RedisCacheBackend:
        backend = RedisCacheBackend("redis://localhost:6379/0")
        backend._client = client
        return backend

    async def test_get_decodes_json(self, cache, client):
        assert await cache.get("identity:user:7") == {"name": "Alice"}
        client.get.assert_awaited_once_with("identity:user:7")

    async def test_get_failure_is_a_miss(self, cache, client):
        client.get.side_effect = ConnectionError("redis down")
        assert await cache.get("identity:user:7") is None

    async def test_set_encodes_json(self, cache, client):
        await cache.set("k", {"a": 1}, ttl=30)
        client.setex.assert_awaited_once_with("k", 30, '{"a": 1}')

    async def test_delete_failure_propagates(self, cache, client):
        client.delete.side_effect = ConnectionError("redis down")
        with pytest.raises(ConnectionError):
            await cache.delete("identity:user:7")

    async def test_delete_pattern_scans(self, cache, client):
        keys = ["session:user:7:a", "session:user:7:b"]
        client.scan_iter = MagicMock(return_value=_AsyncKeys(keys))

        assert await cache.delete_pattern("session:user:7:*") == 2
        client.scan_iter.assert_called_once_with(match="session:user:7:*", count=100)
        assert client.delete.await_count == 2

    async def test_close(self, cache, client):
        await cache.close()
        client.aclose.assert_awaited_once()
        assert cache._client is None


class TestGetCacheBackend:
    def test_memory_without_redis_url(self):
        assert isinstance(get_cache_backend(Settings(redis_url="")), InMemoryCacheBackend)

    def test_redis_with_url(self):
        backend = get_cache_backend(Settings(redis_url="redis://localhost:6379/0"))
        assert isinstance(backend, RedisCacheBackend)
        assert backend._client is None
