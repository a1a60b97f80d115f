"""Tests for dockyard.execution.scheduling."""

from unittest.mock import MagicMock

from dockyard.execution.scheduling import (
    TASK_HEALTH_MONITOR,
    TASK_DEPLOY,
    CeleryScheduler,
    RecordingScheduler,
)


class TestRecordingScheduler:
    def test_records_calls(self):
        scheduler = RecordingScheduler()
        job_id = scheduler.schedule(TASK_HEALTH_MONITOR, {"deployment_id": 1}, countdown=30, tags=["d-1"])
        assert job_id == "recorded-1"
        call = scheduler.last
        assert call.task_name == TASK_HEALTH_MONITOR
        assert call.kwargs == {"deployment_id": 1}
        assert call.countdown == 30
        assert call.tags == ["d-1"]

    def test_kwargs_are_copied(self):
        scheduler = RecordingScheduler()
        kwargs = {"deployment_id": 1}
        scheduler.schedule(TASK_DEPLOY, kwargs)
        kwargs["deployment_id"] = 2
        assert scheduler.last.kwargs == {"deployment_id": 1}

    def test_for_task(self):
        scheduler = RecordingScheduler()
        scheduler.schedule(TASK_DEPLOY, {})
        scheduler.schedule(TASK_HEALTH_MONITOR, {})
        assert len(scheduler.for_task(TASK_DEPLOY)) == 1
        assert RecordingScheduler().last is None


class TestCeleryScheduler:
    def test_send_task_options(self):
        app = MagicMock()
        app.send_task.return_value.id = "celery-1"
        job_id = CeleryScheduler(app).schedule(
            TASK_DEPLOY, {"deployment_id": 3}, countdown=60, queue="high", tags=["app-1"]
        )
        assert job_id == "celery-1"
        app.send_task.assert_called_once_with(
            TASK_DEPLOY,
            kwargs={"deployment_id": 3},
            countdown=60,
            queue="high",
            headers={"tags": ["app-1"]},
        )

    def test_no_countdown_means_no_option(self):
        app = MagicMock()
        CeleryScheduler(app).schedule(TASK_DEPLOY, {})
        assert app.send_task.call_args.kwargs == {"kwargs": {}}
