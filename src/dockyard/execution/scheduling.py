"""Delayed job submission.

Self-rescheduling components (health monitor, canary controller, the
deployment lock/approval waits) never sleep.  They finish their current
step and ask a :class:`Scheduler` to run the next one ``countdown``
seconds later.  In production that is ``send_task(..., countdown=...)``
on the Celery app; tests use :class:`RecordingScheduler` and inspect the
calls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from celery import Celery

from dockyard.core.logging import get_logger

logger = get_logger(__name__)

TASK_DEPLOY = "dockyard.deploy.application"
TASK_HEALTH_MONITOR = "dockyard.deploy.monitor_health"
TASK_CANARY_BEGIN = "dockyard.deploy.canary_begin"
TASK_CANARY_ADVANCE = "dockyard.deploy.canary_advance"
TASK_CHECK_SERVER_RESOURCES = "dockyard.provisioning.check_server_resources"
TASK_AUTO_PROVISION = "dockyard.provisioning.auto_provision"
TASK_BACKUP = "dockyard.backup.run"
TASK_RESTORE = "dockyard.backup.restore"
TASK_RESTORE_TEST = "dockyard.backup.restore_test"
TASK_TRANSFER = "dockyard.transfer.run"


class Scheduler(Protocol):
    """Submits a named job, optionally delayed."""

    def schedule(
        self,
        task_name: str,
        kwargs: dict[str, Any],
        *,
        countdown: int = 0,
        queue: str | None = None,
        tags: list[str] | None = None,
    ) -> str | None:
        """Submit *task_name* with *kwargs*; returns the job id when known."""
        ...


class CeleryScheduler:
    """Scheduler backed by ``Celery.send_task``."""

    def __init__(self, app: Celery):
        self._app = app

    def schedule(
        self,
        task_name: str,
        kwargs: dict[str, Any],
        *,
        countdown: int = 0,
        queue: str | None = None,
        tags: list[str] | None = None,
    ) -> str | None:
        options: dict[str, Any] = {}
        if countdown:
            options["countdown"] = countdown
        if queue:
            options["queue"] = queue
        if tags:
            options["headers"] = {"tags": tags}

        result = self._app.send_task(task_name, kwargs=kwargs, **options)
        logger.debug(
            "job.scheduled",
            task=task_name,
            countdown=countdown,
            queue=queue,
            job_id=result.id,
        )
        return result.id


@dataclass
class ScheduledCall:
    task_name: str
    kwargs: dict[str, Any]
    countdown: int = 0
    queue: str | None = None
    tags: list[str] = field(default_factory=list)


class RecordingScheduler:
    """Keeps scheduled calls in a list instead of submitting them."""

    def __init__(self) -> None:
        self.calls: list[ScheduledCall] = []

    def schedule(
        self,
        task_name: str,
        kwargs: dict[str, Any],
        *,
        countdown: int = 0,
        queue: str | None = None,
        tags: list[str] | None = None,
    ) -> str | None:
        self.calls.append(ScheduledCall(task_name, dict(kwargs), countdown, queue, list(tags or [])))
        return f"recorded-{len(self.calls)}"

    def for_task(self, task_name: str) -> list[ScheduledCall]:
        return [c for c in self.calls if c.task_name == task_name]

    @property
    def last(self) -> ScheduledCall | None:
        return self.calls[-1] if self.calls else None


__all__ = [
    "TASK_DEPLOY",
    "TASK_HEALTH_MONITOR",
    "TASK_CANARY_BEGIN",
    "TASK_CANARY_ADVANCE",
    "TASK_CHECK_SERVER_RESOURCES",
    "TASK_AUTO_PROVISION",
    "TASK_BACKUP",
    "TASK_RESTORE",
    "TASK_RESTORE_TEST",
    "TASK_TRANSFER",
    "Scheduler",
    "CeleryScheduler",
    "ScheduledCall",
    "RecordingScheduler",
]
