"""Tests for dockyard.deploy.rollback."""

import pytest

from dockyard.core.events import EventType
from dockyard.deploy.models import (
    Application,
    DeploymentRecord,
    DeploymentStatus,
    RollbackStatus,
)
from dockyard.deploy.rollback import NO_TARGET_MESSAGE, RollbackService
from dockyard.execution.scheduling import TASK_DEPLOY


@pytest.fixture
def service(deployments, rollbacks, scheduler, emitter):
    return RollbackService(deployments=deployments, rollbacks=rollbacks, scheduler=scheduler, emitter=emitter)


@pytest.fixture
def app():
    return Application(id=1, name="shop", team_id=7)


class TestTrigger:
    def test_rolls_back_to_previous_finished(self, service, deployments, scheduler, emitter, app):
        deployments.add(DeploymentRecord(application_id=1, commit="aaa", image="app-1:aaa",
                                         status=DeploymentStatus.FINISHED))
        deployments.add(DeploymentRecord(application_id=1, commit="pr", status=DeploymentStatus.FINISHED,
                                         pull_request_id=4))
        failed = deployments.add(DeploymentRecord(application_id=1, server_id=1, commit="bbb",
                                                  status=DeploymentStatus.FAILED))

        event = service.trigger(app, failed, "crash_loop", {"restart_count": 4})

        rollback = deployments.get(event.rollback_deployment_id)
        assert rollback.rollback is True
        assert rollback.commit == "aaa"
        assert rollback.is_promotion is True
        assert rollback.promoted_from_image == "app-1:aaa"
        assert rollback.server_id == 1
        assert event.status is RollbackStatus.IN_PROGRESS
        assert event.from_commit == "bbb"
        assert event.to_commit == "aaa"
        assert event.metrics_snapshot == {"restart_count": 4}

        call = scheduler.last
        assert call.task_name == TASK_DEPLOY
        assert call.kwargs == {"deployment_id": rollback.id}
        assert call.queue == "high"

        (notification,) = emitter.of_type(EventType.ROLLBACK_TRIGGERED.value)
        assert notification.payload["reason"] == "crash_loop"
        assert notification.team_id == 7

    def test_without_image_rebuilds(self, service, deployments, app):
        deployments.add(DeploymentRecord(application_id=1, commit="aaa", status=DeploymentStatus.FINISHED))
        failed = deployments.add(DeploymentRecord(application_id=1, commit="bbb"))
        event = service.trigger(app, failed, "health_check_failed", {})
        assert deployments.get(event.rollback_deployment_id).is_promotion is False

    def test_skipped_without_target(self, service, deployments, scheduler, emitter, app):
        failed = deployments.add(DeploymentRecord(application_id=1, commit="bbb"))
        event = service.trigger(app, failed, "crash_loop", {})
        assert event.status is RollbackStatus.SKIPPED
        assert event.error_message == NO_TARGET_MESSAGE
        assert scheduler.calls == []
        assert emitter.events == []

    def test_ignores_newer_and_other_applications(self, service, deployments, app):
        deployments.add(DeploymentRecord(application_id=2, commit="other", status=DeploymentStatus.FINISHED))
        failed = deployments.add(DeploymentRecord(application_id=1, commit="bbb"))
        deployments.add(DeploymentRecord(application_id=1, commit="newer", status=DeploymentStatus.FINISHED))
        assert service.trigger(app, failed, "crash_loop", {}).status is RollbackStatus.SKIPPED


class TestComplete:
    def test_marks_event(self, service, deployments, rollbacks, app):
        deployments.add(DeploymentRecord(application_id=1, commit="aaa", status=DeploymentStatus.FINISHED))
        failed = deployments.add(DeploymentRecord(application_id=1, commit="bbb"))
        event = service.trigger(app, failed, "crash_loop", {})
        rollback = deployments.get(event.rollback_deployment_id)

        rollback.status = DeploymentStatus.FAILED
        service.complete(rollback, succeeded=False)
        assert event.status is RollbackStatus.FAILED
        assert event.error_message == "Rollback deployment ended as failed"

    def test_success(self, service, deployments, app):
        deployments.add(DeploymentRecord(application_id=1, commit="aaa", status=DeploymentStatus.FINISHED))
        failed = deployments.add(DeploymentRecord(application_id=1, commit="bbb"))
        event = service.trigger(app, failed, "crash_loop", {})
        service.complete(deployments.get(event.rollback_deployment_id), succeeded=True)
        assert event.status is RollbackStatus.SUCCESS

    def test_unknown_deployment_is_ignored(self, service):
        service.complete(DeploymentRecord(id=99), succeeded=True)
