"""
Tests for dockyard.core.cache.

Covers:
- InMemoryCache: get/set/delete/exists/clear, LRU eviction, TTL expiry
- add() as set-if-absent (the dedup primitive)
- RedisCache against a mocked client
"""

import json
from unittest.mock import MagicMock, patch

from dockyard.core.cache import CacheBackend, InMemoryCache, RedisCache


class TestInMemoryCache:
    """Test InMemoryCache backend."""

    def test_protocol(self):
        assert isinstance(InMemoryCache(), CacheBackend)

    def test_basic_get_set(self):
        """Cache should store and retrieve values."""
        cache = InMemoryCache(default_ttl_seconds=None)
        cache.set("key1", {"data": [1, 2, 3]})
        assert cache.get("key1") == {"data": [1, 2, 3]}

    def test_get_missing_key(self):
        assert InMemoryCache().get("missing") is None

    def test_delete(self):
        cache = InMemoryCache()
        cache.set("key1", "value1")
        cache.delete("key1")
        assert not cache.exists("key1")

    def test_clear(self):
        cache = InMemoryCache()
        cache.set("k1", 1)
        cache.set("k2", 2)
        cache.clear()
        assert cache.size() == 0

    def test_lru_eviction(self):
        """Least recently used key is evicted at capacity."""
        cache = InMemoryCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert cache.exists("a")
        assert not cache.exists("b")
        assert cache.exists("c")

    def test_ttl_expiry(self):
        """Entries disappear once their TTL has passed."""
        cache = InMemoryCache()
        with patch("dockyard.core.cache.time.time", return_value=1000.0):
            cache.set("cooldown", True, ttl_seconds=60)
        with patch("dockyard.core.cache.time.time", return_value=1059.0):
            assert cache.exists("cooldown")
        with patch("dockyard.core.cache.time.time", return_value=1060.0):
            assert not cache.exists("cooldown")
            assert cache.get("cooldown") is None


class TestAdd:
    """add() only writes when the key is absent."""

    def test_first_add_wins(self):
        cache = InMemoryCache()
        assert cache.add("alert", "first", ttl_seconds=900) is True
        assert cache.add("alert", "second", ttl_seconds=900) is False
        assert cache.get("alert") == "first"

    def test_add_after_expiry(self):
        cache = InMemoryCache()
        with patch("dockyard.core.cache.time.time", return_value=0.0):
            cache.add("alert", 1, ttl_seconds=900)
        with patch("dockyard.core.cache.time.time", return_value=901.0):
            assert cache.add("alert", 2, ttl_seconds=900) is True
            assert cache.get("alert") == 2


class TestRedisCache:
    """RedisCache with a mocked client."""

    def test_protocol(self):
        assert isinstance(RedisCache(client=MagicMock()), CacheBackend)

    def test_set_uses_prefix_and_ttl(self):
        client = MagicMock()
        cache = RedisCache(client=client, default_ttl_seconds=None)
        cache.set("k", {"a": 1}, ttl_seconds=30)
        key, ttl, payload = client.setex.call_args.args
        assert key == "dockyard:cache:k"
        assert ttl == 30
        assert json.loads(payload) == {"a": 1}

    def test_add_is_set_nx(self):
        client = MagicMock()
        client.set.return_value = None
        cache = RedisCache(client=client)
        assert cache.add("k", 1, ttl_seconds=60) is False
        assert client.set.call_args.kwargs["nx"] is True

    def test_get_decodes_json(self):
        client = MagicMock()
        client.get.return_value = b'{"x": 2}'
        assert RedisCache(client=client).get("k") == {"x": 2}
