"""
Tests for dockyard.execution.locks.

DatabaseLock runs against an in-memory sqlite connection; RedisLock
against a mocked client.
"""

import sqlite3
from unittest.mock import MagicMock, patch

import pytest

from dockyard.execution.locks import (
    PROVISIONING_LOCK_KEY,
    DatabaseLock,
    InMemoryLock,
    RedisLock,
    deployment_lock_key,
    hold,
)


class TestKeys:
    def test_deployment_lock_key(self):
        assert deployment_lock_key(42) == "deployment:application:42"

    def test_provisioning_key_is_global(self):
        assert PROVISIONING_LOCK_KEY == "auto-provision-server"


class TestInMemoryLock:
    def test_exclusive(self):
        lock = InMemoryLock()
        assert lock.acquire("k", "a")
        assert not lock.acquire("k", "b")
        assert lock.holder("k") == "a"

    def test_reentrant_for_same_owner(self):
        lock = InMemoryLock()
        assert lock.acquire("k", "a")
        assert lock.acquire("k", "a")

    def test_release_checks_owner(self):
        lock = InMemoryLock()
        lock.acquire("k", "a")
        assert not lock.release("k", "b")
        assert lock.release("k", "a")
        assert not lock.is_locked("k")

    def test_expiry(self):
        lock = InMemoryLock()
        with patch("dockyard.execution.locks.time.time", return_value=100.0):
            lock.acquire("k", "a", ttl_seconds=10)
        with patch("dockyard.execution.locks.time.time", return_value=110.0):
            assert not lock.is_locked("k")
            assert lock.acquire("k", "b")


@pytest.fixture
def db_lock():
    conn = sqlite3.connect(":memory:")
    lock = DatabaseLock(conn)
    lock.create_table()
    yield lock
    conn.close()


class TestDatabaseLock:
    def test_exclusive(self, db_lock):
        assert db_lock.acquire("deployment:application:1", "dep-1")
        assert not db_lock.acquire("deployment:application:1", "dep-2")
        assert db_lock.holder("deployment:application:1") == "dep-1"

    def test_reentrant_extends(self, db_lock):
        assert db_lock.acquire("k", "dep-1", ttl_seconds=60)
        assert db_lock.acquire("k", "dep-1", ttl_seconds=600)

    def test_release(self, db_lock):
        db_lock.acquire("k", "dep-1")
        assert not db_lock.release("k", "dep-2")
        assert db_lock.release("k", "dep-1")
        assert not db_lock.is_locked("k")
        assert db_lock.acquire("k", "dep-2")

    def test_expired_lock_is_taken_over(self, db_lock):
        db_lock.acquire("k", "crashed", ttl_seconds=-1)
        assert db_lock.holder("k") is None
        assert db_lock.acquire("k", "fresh")

    def test_cleanup_expired(self, db_lock):
        db_lock.acquire("a", "x", ttl_seconds=-1)
        db_lock.acquire("b", "y", ttl_seconds=-1)
        db_lock.acquire("c", "z", ttl_seconds=600)
        assert db_lock.cleanup_expired() == 2
        assert db_lock.is_locked("c")


class TestRedisLock:
    def test_acquire_uses_set_nx(self):
        client = MagicMock()
        client.set.return_value = True
        lock = RedisLock(client=client)
        assert lock.acquire("k", "owner-1", ttl_seconds=30)
        client.set.assert_called_once_with("dockyard:lock:k", "owner-1", nx=True, ex=30)

    def test_acquire_falls_back_to_owner_extend(self):
        client = MagicMock()
        client.set.return_value = None
        extend = MagicMock(return_value=0)
        client.register_script.side_effect = [MagicMock(), extend]
        lock = RedisLock(client=client)
        assert not lock.acquire("k", "owner-2", ttl_seconds=30)
        extend.assert_called_once_with(keys=["dockyard:lock:k"], args=["owner-2", 30])

    def test_holder_decodes(self):
        client = MagicMock()
        client.get.return_value = b"owner-1"
        assert RedisLock(client=client).holder("k") == "owner-1"


class TestHold:
    def test_releases_on_exit(self):
        lock = InMemoryLock()
        with hold(lock, "k", "a") as acquired:
            assert acquired
            assert lock.is_locked("k")
        assert not lock.is_locked("k")

    def test_does_not_release_foreign_lock(self):
        lock = InMemoryLock()
        lock.acquire("k", "other")
        with hold(lock, "k", "a") as acquired:
            assert not acquired
        assert lock.holder("k") == "other"

    def test_releases_on_exception(self):
        lock = InMemoryLock()
        with pytest.raises(RuntimeError):
            with hold(lock, "k", "a"):
                raise RuntimeError("build failed")
        assert not lock.is_locked("k")
