"""Tests for dockyard.deploy.models."""

import pytest

from dockyard.core.errors import InvalidTransitionError
from dockyard.deploy.models import (
    TERMINAL_DEPLOYMENT_STATUSES,
    Application,
    DeploymentRecord,
    DeploymentStatus,
    HealthCheckWindow,
    RollbackEvent,
    RollbackStatus,
)


class TestDeploymentTransitions:
    def test_lifecycle_stamps_times(self):
        record = DeploymentRecord()
        record.transition_to(DeploymentStatus.IN_PROGRESS)
        assert record.started_at is not None
        record.transition_to(DeploymentStatus.FINISHED)
        assert record.finished_at is not None
        assert record.is_terminal

    def test_terminal_is_final(self):
        record = DeploymentRecord(status=DeploymentStatus.FAILED)
        with pytest.raises(InvalidTransitionError):
            record.transition_to(DeploymentStatus.IN_PROGRESS)

    def test_approval_gate(self):
        record = DeploymentRecord(status=DeploymentStatus.PENDING_APPROVAL)
        with pytest.raises(InvalidTransitionError):
            record.transition_to(DeploymentStatus.IN_PROGRESS)
        record.transition_to(DeploymentStatus.QUEUED)

    def test_terminal_set(self):
        assert TERMINAL_DEPLOYMENT_STATUSES == {
            DeploymentStatus.FINISHED,
            DeploymentStatus.FAILED,
            DeploymentStatus.CANCELLED_BY_USER,
            DeploymentStatus.TIMED_OUT,
        }

    def test_logs_and_tags(self):
        record = DeploymentRecord(id=12)
        record.append_log("Building image")
        assert record.logs[0].endswith("] Building image")
        assert record.tags == ["deployment:12"]
        assert not record.is_preview


class TestApplication:
    def test_exposed_ports(self):
        assert Application(ports_exposes="3000, 8080,x").exposed_ports == [3000, 8080]

    def test_first_fqdn(self):
        assert Application(fqdn="https://app.example.com/,https://b.example.com").first_fqdn == "app.example.com"
        assert Application(fqdn="").first_fqdn is None


class TestHealthCheckWindow:
    def test_for_window(self):
        window = HealthCheckWindow.for_window(3, window_seconds=1800, interval_seconds=30)
        assert window.total_checks == 60
        assert not window.is_last_check

    def test_tiny_window_still_checks_once(self):
        assert HealthCheckWindow.for_window(3, window_seconds=0).total_checks == 1

    def test_success_resets_streak(self):
        window = HealthCheckWindow(deployment_id=1, consecutive_failures=1)
        assert window.next_check(failed=True).consecutive_failures == 2
        assert window.next_check(failed=False).consecutive_failures == 0
        assert window.next_check(failed=False).current_check == 1

    def test_task_kwargs_are_plain_ints(self):
        window = HealthCheckWindow(deployment_id=1, current_check=4, initial_restart_count=2)
        kwargs = window.to_task_kwargs()
        assert all(isinstance(v, int) for v in kwargs.values())
        assert HealthCheckWindow.from_task_kwargs({**kwargs, "unknown": "x"}) == window


class TestRollbackEvent:
    def test_marks(self):
        event = RollbackEvent()
        event.mark_in_progress()
        assert event.status is RollbackStatus.IN_PROGRESS
        event.mark_failed("no previous image")
        assert event.status is RollbackStatus.FAILED
        assert event.error_message == "no previous image"
        assert event.completed_at is not None
