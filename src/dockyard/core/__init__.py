"""Dockyard core: logging, errors, settings, cache, events and shared records.

Everything in this package is independent of the pipelines; the
``deploy``, ``backup``, ``transfer`` and ``provisioning`` packages build on
it.
"""

from dockyard.core.cache import CacheBackend, InMemoryCache, RedisCache
from dockyard.core.errors import (
    DockyardError,
    ErrorCategory,
    PreconditionError,
    RemoteCommandError,
    TransientError,
    ValidationError,
)
from dockyard.core.events import Event, EventEmitter, EventType, InMemoryEventEmitter
from dockyard.core.logging import configure_logging, get_logger
from dockyard.core.models import Host, PrivateKey, Server, utcnow
from dockyard.core.settings import DockyardSettings, get_settings

__all__ = [
    "CacheBackend",
    "InMemoryCache",
    "RedisCache",
    "DockyardError",
    "ErrorCategory",
    "PreconditionError",
    "RemoteCommandError",
    "TransientError",
    "ValidationError",
    "Event",
    "EventEmitter",
    "EventType",
    "InMemoryEventEmitter",
    "configure_logging",
    "get_logger",
    "Host",
    "PrivateKey",
    "Server",
    "utcnow",
    "DockyardSettings",
    "get_settings",
]
