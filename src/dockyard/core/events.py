"""Notification events emitted by the orchestration jobs.

The jobs never format Slack/Discord/Telegram payloads themselves.  They
emit a structured :class:`Event` through an :class:`EventEmitter`; the
control plane's notification senders and webhook dispatcher subscribe on
the other side (Redis channel ``dockyard:events``).

Usage::

    from dockyard.core.events import Event, EventType

    emitter.emit(Event(
        event_type=EventType.ROLLBACK_TRIGGERED,
        source="health-monitor",
        payload={"deployment_uuid": "d-1", "reason": "crash_loop"},
    ))

Emitters
--------
InMemoryEventEmitter    records events (tests, single process)
LoggingEventEmitter     writes every event to the structured log
RedisEventEmitter       publishes JSON to a Redis Pub/Sub channel
FanOutEventEmitter      forwards to several emitters, isolating failures
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

import redis

from dockyard.core.logging import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    DEPLOYMENT_STATUS_CHANGED = "deployment.status_changed"
    ROLLBACK_TRIGGERED = "deployment.rollback_triggered"
    CANARY_PROMOTED = "deployment.canary_promoted"
    CANARY_ROLLED_BACK = "deployment.canary_rolled_back"
    BACKUP_SUCCESS = "backup.success"
    BACKUP_FAILED = "backup.failed"
    RESTORE_SUCCESS = "backup.restore_success"
    RESTORE_FAILED = "backup.restore_failed"
    RESTORE_TEST_SUCCESS = "backup.restore_test_success"
    RESTORE_TEST_FAILED = "backup.restore_test_failed"
    RESOURCE_THRESHOLD_BREACHED = "server.resource_threshold_breached"
    AUTO_PROVISION_REQUESTED = "server.auto_provision_requested"
    AUTO_PROVISION_COMPLETED = "server.auto_provision_completed"
    AUTO_PROVISION_FAILED = "server.auto_provision_failed"
    TRANSFER_STATUS_CHANGED = "transfer.status_changed"


@dataclass
class Event:
    """Event payload handed to notification consumers.

    Attributes:
        event_type: One of :class:`EventType`
        source: Emitting component (``deployment``, ``health-monitor``, ...)
        payload: Event-specific data (ids, names, reasons; never secrets)
        team_id: Team that should be notified, when known
        timestamp: When the event occurred (UTC)
        event_id: Unique event identifier
    """

    event_type: EventType
    source: str
    payload: dict[str, Any] = field(default_factory=dict)
    team_id: int | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def matches(self, pattern: str) -> bool:
        """Check if the event type matches ``backup.*``, ``*`` or an exact type."""
        if pattern == "*":
            return True
        if pattern.endswith(".*"):
            return self.event_type.value.startswith(pattern[:-2] + ".")
        return self.event_type.value == pattern

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "source": self.source,
            "team_id": self.team_id,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }


@runtime_checkable
class EventEmitter(Protocol):
    """Anything that can deliver an :class:`Event`."""

    def emit(self, event: Event) -> None:
        ...


class InMemoryEventEmitter:
    """Keeps every emitted event in order."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def emit(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, pattern: str) -> list[Event]:
        return [e for e in self.events if e.matches(pattern)]

    def clear(self) -> None:
        self.events.clear()


class LoggingEventEmitter:
    """Writes events to the structured log."""

    def emit(self, event: Event) -> None:
        logger.info(
            "notification.emitted",
            event_type=event.event_type.value,
            source=event.source,
            team_id=event.team_id,
            **event.payload,
        )


class RedisEventEmitter:
    """Publishes events as JSON to a Redis Pub/Sub channel."""

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        channel: str = "dockyard:events",
        client: redis.Redis | None = None,
    ) -> None:
        self._client = client or redis.Redis.from_url(url)
        self._channel = channel

    def emit(self, event: Event) -> None:
        self._client.publish(self._channel, json.dumps(event.to_dict(), default=str))


class FanOutEventEmitter:
    """Forwards each event to every wrapped emitter.

    One failing sink is logged and skipped; the remaining sinks still
    receive the event and the caller never sees the exception.
    """

    def __init__(self, *emitters: EventEmitter) -> None:
        self._emitters = list(emitters)

    def emit(self, event: Event) -> None:
        for emitter in self._emitters:
            try:
                emitter.emit(event)
            except Exception as exc:
                logger.warning(
                    "notification.sink_failed",
                    sink=type(emitter).__name__,
                    event_type=event.event_type.value,
                    error=str(exc),
                )


def emit_safely(emitter: EventEmitter, event: Event) -> None:
    """Emit *event* and swallow delivery errors.

    Notification failures never turn a successful pipeline into a failed one.
    """
    try:
        emitter.emit(event)
    except Exception as exc:
        logger.warning(
            "notification.failed",
            event_type=event.event_type.value,
            error=str(exc),
        )


__all__ = [
    "EventType",
    "Event",
    "EventEmitter",
    "InMemoryEventEmitter",
    "LoggingEventEmitter",
    "RedisEventEmitter",
    "FanOutEventEmitter",
    "emit_safely",
]
