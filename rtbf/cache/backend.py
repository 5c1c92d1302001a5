"""Cache backend implementations.

The identity cache and the session store live in a key/value cache shared
with the wiki front-ends. This service only ever reads, writes and evicts
keys there; eviction is what the identity rename depends on.

- RedisCacheBackend: production backend using redis.asyncio with JSON values
- InMemoryCacheBackend: dict-based backend with TTL, for tests and local dev

Reads and writes are best effort (a cache miss is always safe). Deletions
raise, because a silently failed eviction leaves a renamed user's old
identity or live sessions behind.
"""

from __future__ import annotations

import asyncio
import fnmatch
import json
import time
from abc import ABC, abstractmethod
from typing import Any

import redis.asyncio as aioredis
import structlog

from rtbf.config import Settings

log = structlog.get_logger(__name__)


class CacheBackend(ABC):
    """Abstract interface all cache backends must implement."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return cached value for key, or None if not found / expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None:
        """Store value under key with TTL in seconds."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete key from cache (no-op if key does not exist)."""

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern. Returns deleted count."""

    async def close(self) -> None:  # noqa: B027 - optional hook
        """Release connections held by the backend."""


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisCacheBackend(CacheBackend):
    """Cache backend backed by Redis.

    Values are JSON-serialised so they round-trip cleanly without pickle.
    The client is created lazily on first use so construction never blocks.
    """

    def __init__(self, redis_url: str) -> None:
        self._redis_url = redis_url
        self._client: aioredis.Redis | None = None

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._get_client().get(key)
            if raw is None:
                return None
            return json.loads(raw)
        except Exception as exc:
            log.warning("cache.redis.get_failed", key=key, error=str(exc))
            return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self._get_client().setex(key, ttl, json.dumps(value, default=str))
        except Exception as exc:
            log.warning("cache.redis.set_failed", key=key, error=str(exc))

    async def delete(self, key: str) -> None:
        await self._get_client().delete(key)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern using SCAN + DEL."""
        client = self._get_client()
        deleted = 0
        async for key in client.scan_iter(match=pattern, count=100):
            deleted += await client.delete(key)
        log.debug("cache.redis.pattern_deleted", pattern=pattern, deleted=deleted)
        return deleted

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# ---------------------------------------------------------------------------
# In-memory backend (testing / dev)
# ---------------------------------------------------------------------------


class _CacheEntry:
    """Single entry stored by InMemoryCacheBackend."""

    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, ttl: int) -> None:
        self.value = value
        self.expires_at: float = time.monotonic() + ttl

    @property
    def is_expired(self) -> bool:
        return time.monotonic() >= self.expires_at


class InMemoryCacheBackend(CacheBackend):
    """Dict-backed cache with TTL support.

    Guarded by an asyncio.Lock. Does NOT persist across process restarts.
    """

    def __init__(self) -> None:
        self._store: dict[str, _CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if entry.is_expired:
                del self._store[key]
                return None
            return entry.value

    async def set(self, key: str, value: Any, ttl: int) -> None:
        async with self._lock:
            self._store[key] = _CacheEntry(value, ttl)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern (fnmatch semantics)."""
        async with self._lock:
            to_delete = [k for k in self._store if fnmatch.fnmatchcase(k, pattern)]
            for k in to_delete:
                del self._store[k]
            return len(to_delete)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def get_cache_backend(settings: Settings) -> CacheBackend:
    """Redis when ``redis_url`` is configured, otherwise the in-memory backend."""
    if settings.redis_url:
        log.info("cache.backend_selected", backend="redis", url=settings.redis_url.split("@")[-1])
        return RedisCacheBackend(settings.redis_url)

    log.info("cache.backend_selected", backend="memory")
    return InMemoryCacheBackend()
