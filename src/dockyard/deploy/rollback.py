"""Automatic rollback to the last good deployment.

A rollback is an ordinary deployment with ``rollback=True`` and the commit
of the target.  When the target still has its image, the new deployment is
a promotion of that image and skips the build.
"""

from __future__ import annotations

from typing import Any

from dockyard.core.events import Event, EventEmitter, EventType, emit_safely
from dockyard.core.logging import get_logger
from dockyard.deploy.models import (
    Application,
    DeploymentRecord,
    RollbackEvent,
    RollbackTriggerType,
)
from dockyard.execution.scheduling import TASK_DEPLOY, Scheduler
from dockyard.persistence import DeploymentRepository, RollbackEventRepository

logger = get_logger(__name__)

NO_TARGET_MESSAGE = "No previous successful deployment found"


class RollbackService:
    """Creates rollback events and enqueues the rollback deployment."""

    def __init__(
        self,
        *,
        deployments: DeploymentRepository,
        rollbacks: RollbackEventRepository,
        scheduler: Scheduler,
        emitter: EventEmitter,
    ):
        self._deployments = deployments
        self._rollbacks = rollbacks
        self._scheduler = scheduler
        self._emitter = emitter

    def trigger(
        self,
        application: Application,
        failed: DeploymentRecord,
        reason: str,
        metrics: dict[str, Any],
        *,
        trigger_type: RollbackTriggerType = RollbackTriggerType.AUTOMATIC,
        source: str = "health-monitor",
    ) -> RollbackEvent:
        """Roll *application* back from *failed* to its previous good deployment.

        The target is the latest FINISHED production deployment with a
        smaller id.  Without one, the event is recorded as skipped and
        nothing is enqueued.
        """
        event = self._rollbacks.add(RollbackEvent(
            application_id=application.id,
            failed_deployment_id=failed.id,
            trigger_reason=reason,
            trigger_type=trigger_type,
            from_commit=failed.commit,
            metrics_snapshot=dict(metrics),
        ))

        target = self._deployments.find_previous_successful(application.id, failed.id)
        if target is None:
            event.mark_skipped(NO_TARGET_MESSAGE)
            self._rollbacks.update(event)
            logger.warning(
                "rollback.skipped",
                application_id=application.id,
                deployment_id=failed.id,
                reason=reason,
            )
            return event

        rollback = self._deployments.add(DeploymentRecord(
            application_id=application.id,
            server_id=failed.server_id,
            commit=target.commit,
            rollback=True,
            is_promotion=bool(target.image),
            promoted_from_image=target.image,
        ))
        rollback.append_log(f"Rollback of deployment {failed.uuid} to commit {target.commit} ({reason}).")
        self._deployments.update(rollback)

        event.to_commit = target.commit
        event.rollback_deployment_id = rollback.id
        event.mark_in_progress()
        self._rollbacks.update(event)

        self._scheduler.schedule(
            TASK_DEPLOY,
            {"deployment_id": rollback.id},
            queue="high",
            tags=rollback.tags,
        )

        logger.warning(
            "rollback.triggered",
            application_id=application.id,
            deployment_id=failed.id,
            rollback_deployment_id=rollback.id,
            reason=reason,
            to_commit=target.commit,
        )
        emit_safely(self._emitter, Event(
            event_type=EventType.ROLLBACK_TRIGGERED,
            source=source,
            team_id=application.team_id,
            payload={
                "application_id": application.id,
                "application_name": application.name,
                "deployment_uuid": failed.uuid,
                "rollback_deployment_uuid": rollback.uuid,
                "reason": reason,
                "from_commit": failed.commit,
                "to_commit": target.commit,
            },
        ))
        return event

    def complete(self, rollback_deployment: DeploymentRecord, *, succeeded: bool, error: str | None = None) -> None:
        """Close the rollback event of a rollback deployment that reached a terminal state."""
        event = self._rollbacks.find_by_rollback_deployment(rollback_deployment.id)
        if event is None:
            return
        if succeeded:
            event.mark_success()
        else:
            event.mark_failed(error or f"Rollback deployment ended as {rollback_deployment.status.value}")
        self._rollbacks.update(event)


__all__ = ["RollbackService", "NO_TARGET_MESSAGE"]
