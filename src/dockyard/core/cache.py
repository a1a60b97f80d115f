"""
Keyed TTL cache used for notification dedup and cooldown tracking.

Controllers never keep "last alert sent" state in module globals.  They
receive a ``CacheBackend`` and ask it whether a key is still inside its
cooldown window.  ``add()`` is the atomic primitive: it stores a key only
if it is absent, so two workers evaluating the same server at the same
moment cannot both fire the same alert.

Architecture:
    ::

        CacheBackend (Protocol)
        ├── InMemoryCache  : single-process, bounded LRU (tests, dev)
        └── RedisCache     : shared between workers (SET NX EX)

        API: get(key) → value | None
             set(key, value, ttl_seconds=None)
             add(key, value, ttl_seconds=None) → bool   (set-if-absent)
             delete(key)
             exists(key) → bool
             clear()

Examples:
    >>> from dockyard.core.cache import InMemoryCache
    >>> cache = InMemoryCache(default_ttl_seconds=900)
    >>> cache.add("threshold-alert:srv-1:cpu", True)
    True
    >>> cache.add("threshold-alert:srv-1:cpu", True)
    False

Guardrails:
    ❌ DON'T: Use InMemoryCache with more than one worker process
    ✅ DO: Use RedisCache in production (DOCKYARD_CACHE_BACKEND=redis)

Tags:
    cache, redis, ttl, cooldown, dedup
"""

from __future__ import annotations

import json
import time
from typing import Any, Protocol, runtime_checkable

import redis


@runtime_checkable
class CacheBackend(Protocol):
    """Protocol for cache backend implementations."""

    def get(self, key: str) -> Any | None:
        """Return the cached value, or ``None`` if missing or expired."""
        ...

    def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        """Store a value; ``ttl_seconds=None`` uses the backend default."""
        ...

    def add(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> bool:
        """Store a value only if the key is absent.

        Returns:
            ``True`` if the value was stored, ``False`` if the key already existed.
        """
        ...

    def delete(self, key: str) -> None:
        """Remove a key. No-op if it does not exist."""
        ...

    def exists(self, key: str) -> bool:
        """Check if a key exists and has not expired."""
        ...

    def clear(self) -> None:
        """Remove all keys. Tests only."""
        ...


# ------------------------------------------------------------------ #
# In-Memory Cache
# ------------------------------------------------------------------ #


class InMemoryCache:
    """Bounded in-memory cache with TTL support.

    Uses LRU eviction when ``max_size`` is reached. Expiry is checked lazily
    on read against ``time.time()``.

    Example:
        cache = InMemoryCache(max_size=500, default_ttl_seconds=1800)
        cache.set("auto-provision-cooldown:7", True, ttl_seconds=21600)
    """

    def __init__(
        self,
        *,
        max_size: int = 10_000,
        default_ttl_seconds: int | None = 3600,
    ):
        self._store: dict[str, tuple[Any, float | None]] = {}
        self._access_order: list[str] = []
        self._max_size = max_size
        self._default_ttl = default_ttl_seconds

    def get(self, key: str) -> Any | None:
        if not self.exists(key):
            return None

        value, _ = self._store[key]
        self._touch(key)
        return value

    def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        expires_at = (time.time() + ttl) if ttl else None

        # Evict LRU if at capacity
        if key not in self._store and len(self._store) >= self._max_size:
            if self._access_order:
                lru_key = self._access_order.pop(0)
                self._store.pop(lru_key, None)

        self._store[key] = (value, expires_at)
        self._touch(key)

    def add(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> bool:
        if self.exists(key):
            return False
        self.set(key, value, ttl_seconds=ttl_seconds)
        return True

    def delete(self, key: str) -> None:
        self._store.pop(key, None)
        if key in self._access_order:
            self._access_order.remove(key)

    def exists(self, key: str) -> bool:
        if key not in self._store:
            return False

        _, expires_at = self._store[key]
        if expires_at is not None and time.time() >= expires_at:
            self.delete(key)
            return False

        return True

    def clear(self) -> None:
        self._store.clear()
        self._access_order.clear()

    def size(self) -> int:
        """Return current number of cached keys."""
        return len(self._store)

    def _touch(self, key: str) -> None:
        if key in self._access_order:
            self._access_order.remove(key)
        self._access_order.append(key)


# ------------------------------------------------------------------ #
# Redis Cache
# ------------------------------------------------------------------ #


class RedisCache:
    """Redis-backed cache shared by all workers.

    Values are JSON encoded. ``add`` maps to ``SET key value NX EX ttl`` so
    the dedup decision is atomic across processes.

    Example:
        cache = RedisCache("redis://localhost:6379/0", default_ttl_seconds=600)
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        default_ttl_seconds: int | None = 3600,
        key_prefix: str = "dockyard:cache:",
        client: redis.Redis | None = None,
    ):
        self._client = client or redis.Redis.from_url(url, decode_responses=False)
        self._default_ttl = default_ttl_seconds
        self._prefix = key_prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> Any | None:
        raw = self._client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        serialized = json.dumps(value)

        if ttl:
            self._client.setex(self._key(key), ttl, serialized)
        else:
            self._client.set(self._key(key), serialized)

    def add(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> bool:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        stored = self._client.set(self._key(key), json.dumps(value), nx=True, ex=ttl or None)
        return bool(stored)

    def delete(self, key: str) -> None:
        self._client.delete(self._key(key))

    def exists(self, key: str) -> bool:
        return bool(self._client.exists(self._key(key)))

    def clear(self) -> None:
        """Remove every key under this cache's prefix."""
        for key in self._client.scan_iter(match=f"{self._prefix}*"):
            self._client.delete(key)


__all__ = [
    "CacheBackend",
    "InMemoryCache",
    "RedisCache",
]
