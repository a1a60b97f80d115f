"""Resource locks: one active operation per key.

WHY
───
Two deployments of the same application must never build and swap
containers at the same time, and two auto-provisioning jobs must never
both buy a server for the same spike.  Each of those operations takes a
named lock first.  A job that cannot get the lock declines (or
re-schedules itself); it does not fail.

Locks expire.  If a worker dies mid-deployment the lock self-heals after
its TTL, which is set to the job's own time limit.

ARCHITECTURE
────────────
::

    ResourceLock (Protocol)
      ├── .acquire(key, owner, ttl_seconds)  ─ try-lock, reentrant per owner
      ├── .release(key, owner=None)          ─ explicit unlock
      ├── .is_locked(key)                    ─ check without acquiring
      └── .holder(key)                       ─ owner of a live lock

    DatabaseLock   ─ DB-API table ``dockyard_resource_locks``
    RedisLock      ─ ``SET key owner NX EX ttl`` + owner-checked delete
    InMemoryLock   ─ single process (tests, dev)

    Key convention:
      "deployment:application:<id>"   per-application deployment lock
      "auto-provision-server"         global provisioning lock

Example::

    lock = InMemoryLock()
    with hold(lock, "auto-provision-server", owner="job-1", ttl_seconds=600) as acquired:
        if not acquired:
            return
        provision()
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from typing import Protocol

import redis

from dockyard.core.logging import get_logger
from dockyard.core.models import utcnow

logger = get_logger(__name__)

PROVISIONING_LOCK_KEY = "auto-provision-server"


def deployment_lock_key(application_id: int) -> str:
    return f"deployment:application:{application_id}"


class ResourceLock(Protocol):
    """Named mutual exclusion with expiry."""

    def acquire(self, key: str, owner: str, ttl_seconds: int = 3600) -> bool:
        """Try to take *key* for *owner*.

        Re-acquiring a key already held by the same owner succeeds and
        extends the expiry.

        Returns:
            True if the lock is now held by *owner*
        """
        ...

    def release(self, key: str, owner: str | None = None) -> bool:
        """Release *key*; with *owner*, only if that owner holds it."""
        ...

    def is_locked(self, key: str) -> bool:
        ...

    def holder(self, key: str) -> str | None:
        ...


# ------------------------------------------------------------------ #
# In-memory
# ------------------------------------------------------------------ #


class InMemoryLock:
    """Process-local lock table keyed by name."""

    def __init__(self) -> None:
        self._locks: dict[str, tuple[str, float]] = {}

    def _live(self, key: str) -> tuple[str, float] | None:
        entry = self._locks.get(key)
        if entry is None:
            return None
        if time.time() >= entry[1]:
            del self._locks[key]
            return None
        return entry

    def acquire(self, key: str, owner: str, ttl_seconds: int = 3600) -> bool:
        entry = self._live(key)
        if entry is not None and entry[0] != owner:
            return False
        self._locks[key] = (owner, time.time() + ttl_seconds)
        return True

    def release(self, key: str, owner: str | None = None) -> bool:
        entry = self._live(key)
        if entry is None:
            return False
        if owner is not None and entry[0] != owner:
            return False
        del self._locks[key]
        return True

    def is_locked(self, key: str) -> bool:
        return self._live(key) is not None

    def holder(self, key: str) -> str | None:
        entry = self._live(key)
        return entry[0] if entry else None


# ------------------------------------------------------------------ #
# Redis
# ------------------------------------------------------------------ #

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

_EXTEND_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('expire', KEYS[1], ARGV[2])
end
return 0
"""


class RedisLock:
    """Lock shared by every worker through Redis.

    The value stored under the key is the owner id, so release and
    re-acquire can check ownership atomically with a Lua script.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        key_prefix: str = "dockyard:lock:",
        client: redis.Redis | None = None,
    ):
        self._client = client or redis.Redis.from_url(url, decode_responses=True)
        self._prefix = key_prefix
        self._release = self._client.register_script(_RELEASE_SCRIPT)
        self._extend = self._client.register_script(_EXTEND_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def acquire(self, key: str, owner: str, ttl_seconds: int = 3600) -> bool:
        if self._client.set(self._key(key), owner, nx=True, ex=ttl_seconds):
            return True
        # Already held; succeeds only for the same owner
        return bool(self._extend(keys=[self._key(key)], args=[owner, ttl_seconds]))

    def release(self, key: str, owner: str | None = None) -> bool:
        if owner is None:
            return bool(self._client.delete(self._key(key)))
        return bool(self._release(keys=[self._key(key)], args=[owner]))

    def is_locked(self, key: str) -> bool:
        return bool(self._client.exists(self._key(key)))

    def holder(self, key: str) -> str | None:
        value = self._client.get(self._key(key))
        if isinstance(value, bytes):
            return value.decode()
        return value


# ------------------------------------------------------------------ #
# Database
# ------------------------------------------------------------------ #

LOCK_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS dockyard_resource_locks (
    lock_key TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
)
"""


class DatabaseLock:
    """Lock table in the control plane's database.

    Uses a primary-key insert as the try-lock: the insert fails when the key
    is held.  Expired rows are deleted before each attempt so a crashed
    worker's lock self-heals.
    """

    def __init__(self, conn):
        """Initialize with a DB-API connection (sqlite3, psycopg)."""
        self._conn = conn

    def create_table(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute(LOCK_TABLE_DDL)
        self._conn.commit()

    def acquire(self, key: str, owner: str, ttl_seconds: int = 3600) -> bool:
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)
        cursor = self._conn.cursor()

        cursor.execute(
            "DELETE FROM dockyard_resource_locks WHERE lock_key = ? AND expires_at < ?",
            (key, now.isoformat()),
        )

        try:
            cursor.execute(
                """
                INSERT INTO dockyard_resource_locks (lock_key, owner, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (key, owner, now.isoformat(), expires_at.isoformat()),
            )
            self._conn.commit()
            return True
        except Exception:
            # Key exists; succeed only if we already own it
            self._conn.rollback()
            cursor.execute(
                "SELECT owner FROM dockyard_resource_locks WHERE lock_key = ?",
                (key,),
            )
            row = cursor.fetchone()
            if row and row[0] == owner:
                return self.extend(key, owner, ttl_seconds)
            return False

    def release(self, key: str, owner: str | None = None) -> bool:
        cursor = self._conn.cursor()
        if owner:
            cursor.execute(
                "DELETE FROM dockyard_resource_locks WHERE lock_key = ? AND owner = ?",
                (key, owner),
            )
        else:
            cursor.execute("DELETE FROM dockyard_resource_locks WHERE lock_key = ?", (key,))
        self._conn.commit()
        return cursor.rowcount > 0

    def is_locked(self, key: str) -> bool:
        return self.holder(key) is not None

    def holder(self, key: str) -> str | None:
        cursor = self._conn.cursor()
        cursor.execute(
            "SELECT owner, expires_at FROM dockyard_resource_locks WHERE lock_key = ?",
            (key,),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        if row[1] < utcnow().isoformat():
            self.release(key)
            return None
        return row[0]

    def extend(self, key: str, owner: str, ttl_seconds: int = 3600) -> bool:
        expires_at = utcnow() + timedelta(seconds=ttl_seconds)
        cursor = self._conn.cursor()
        cursor.execute(
            "UPDATE dockyard_resource_locks SET expires_at = ? WHERE lock_key = ? AND owner = ?",
            (expires_at.isoformat(), key, owner),
        )
        self._conn.commit()
        return cursor.rowcount > 0

    def cleanup_expired(self) -> int:
        """Delete every expired lock row; returns the number removed."""
        cursor = self._conn.cursor()
        cursor.execute(
            "DELETE FROM dockyard_resource_locks WHERE expires_at < ?",
            (utcnow().isoformat(),),
        )
        self._conn.commit()
        return cursor.rowcount


@contextmanager
def hold(lock: ResourceLock, key: str, owner: str, ttl_seconds: int = 3600) -> Iterator[bool]:
    """Hold *key* for the duration of the block.

    Yields whether the lock was acquired; the lock is released on exit only
    if this call acquired it.
    """
    acquired = lock.acquire(key, owner, ttl_seconds)
    if not acquired:
        logger.info("lock.busy", lock_key=key, holder=lock.holder(key))
    try:
        yield acquired
    finally:
        if acquired:
            lock.release(key, owner)


__all__ = [
    "PROVISIONING_LOCK_KEY",
    "deployment_lock_key",
    "ResourceLock",
    "InMemoryLock",
    "RedisLock",
    "DatabaseLock",
    "LOCK_TABLE_DDL",
    "hold",
]
