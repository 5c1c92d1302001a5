"""Cache backends for the shared identity cache and session store."""

from rtbf.cache.backend import (
    CacheBackend,
    InMemoryCacheBackend,
    RedisCacheBackend,
    get_cache_backend,
)

__all__ = [
    "CacheBackend",
    "InMemoryCacheBackend",
    "RedisCacheBackend",
    "get_cache_backend",
]
