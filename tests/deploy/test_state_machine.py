"""
Tests for dockyard.deploy.state_machine.

Covers:
- Happy path per build mode (build, promotion, restart)
- Lock wait and approval gate re-scheduling
- Cooperative cancellation between phases
- Failure handling: precondition, build failure, unhealthy container
- Transient errors re-raised with the lock kept
- Permanent-failure callback and rollback bookkeeping
"""

import copy

import pytest

from dockyard.core.errors import PreconditionError, RemoteTimeoutError, ValidationError
from dockyard.core.events import EventType
from dockyard.deploy.models import (
    Application,
    BuildPack,
    DeploymentRecord,
    DeploymentStatus,
    DeploymentStrategy,
    RollbackEvent,
    RollbackStatus,
)
from dockyard.deploy.rollback import RollbackService
from dockyard.deploy.state_machine import (
    LOCK_WAIT_MESSAGE,
    DeploymentStateMachine,
    DeployOutcome,
    container_name_for,
    run_container_command,
)
from dockyard.execution.locks import deployment_lock_key
from dockyard.execution.scheduling import TASK_CANARY_BEGIN, TASK_DEPLOY, TASK_HEALTH_MONITOR
from dockyard.persistence import InMemoryDeploymentRepository

DEPLOYMENT_UUID = "d1e2f3a4-0000"
CONTAINER = "app-1-d1e2f3a4"
LOCK_KEY = deployment_lock_key(1)


class CopyingDeploymentRepository(InMemoryDeploymentRepository):
    """Returns and stores copies, like a database-backed repository."""

    def get(self, record_id):
        record = super().get(record_id)
        return copy.deepcopy(record) if record is not None else None

    def update(self, record):
        super().update(copy.deepcopy(record))


@pytest.fixture
def app(applications):
    return applications.add(Application(
        id=1,
        uuid="app-1",
        name="shop",
        team_id=7,
        server_id=1,
        git_repository="https://git.example.com/shop.git",
    ))


@pytest.fixture
def deployment(deployments, app):
    return deployments.add(DeploymentRecord(
        uuid=DEPLOYMENT_UUID,
        application_id=app.id,
        server_id=1,
        commit="abc",
    ))


@pytest.fixture
def machine(deployments, applications, servers, executor, lock, scheduler, emitter, rollbacks, settings):
    rollback = RollbackService(deployments=deployments, rollbacks=rollbacks, scheduler=scheduler, emitter=emitter)
    return DeploymentStateMachine(
        deployments=deployments,
        applications=applications,
        servers=servers,
        executor=executor,
        lock=lock,
        scheduler=scheduler,
        emitter=emitter,
        rollback=rollback,
        settings=settings,
    )


@pytest.fixture(autouse=True)
def running_container(executor):
    executor.on("{{.RestartCount}}", stdout="running false 0\n")


class TestNaming:
    def test_container_names(self):
        app = Application(uuid="app-1")
        deployment = DeploymentRecord(uuid=DEPLOYMENT_UUID)
        assert container_name_for(app, deployment) == CONTAINER
        assert container_name_for(app, DeploymentRecord(pull_request_id=9)) == "app-1-pr-9"
        assert container_name_for(Application(uuid="app-1", consistent_container_name=True), deployment) == "app-1"
        assert container_name_for(Application(uuid="app-1", custom_internal_name="shop"), deployment) == "shop"

    def test_run_command(self):
        app = Application(uuid="app-1", ports_mappings="8080:3000, 9000:9000")
        command = run_container_command(app, DeploymentRecord(uuid=DEPLOYMENT_UUID), "app-1:abc")
        assert command.startswith(f"docker run -d --name {CONTAINER} --network dockyard")
        assert "--label dockyard.application=app-1" in command
        assert "-p 8080:3000 -p 9000:9000" in command
        assert "--health-cmd" not in command
        assert command.endswith(" app-1:abc")

    def test_run_command_with_health_check(self):
        app = Application(uuid="app-1", health_check_enabled=True)
        command = run_container_command(app, DeploymentRecord(uuid=DEPLOYMENT_UUID), "app-1:abc")
        assert "--health-cmd" in command
        assert "--health-retries 10" in command


class TestHappyPath:
    def test_build_and_start(self, machine, deployment, executor, lock, emitter, scheduler):
        assert machine.start(deployment.id) is DeployOutcome.FINISHED

        assert deployment.status is DeploymentStatus.FINISHED
        assert deployment.image == "app-1:abc"
        assert deployment.container_name == CONTAINER
        assert deployment.worker_host
        order = [
            executor.index_of(f"docker run -d --rm --name {DEPLOYMENT_UUID}"),
            executor.index_of("git clone"),
            executor.index_of("nixpacks build"),
            executor.index_of(f"docker run -d --name {CONTAINER}"),
            executor.index_of("{{.RestartCount}}"),
            executor.index_of(f"docker rm -f {DEPLOYMENT_UUID}"),
        ]
        assert order == sorted(order)
        assert not lock.is_locked(LOCK_KEY)
        statuses = [e.payload["status"] for e in emitter.of_type(EventType.DEPLOYMENT_STATUS_CHANGED.value)]
        assert statuses == ["in_progress", "finished"]
        assert scheduler.calls == []

    def test_dockerfile_reads_final_stage(self, machine, app, deployment, executor):
        app.build_pack = BuildPack.DOCKERFILE
        executor.on("cat /artifacts", stdout="FROM node:20 AS build\nFROM nginx:alpine AS web\n")
        assert machine.start(deployment.id) is DeployOutcome.FINISHED
        assert "--target web" in executor.ran("docker build")[0]

    def test_previous_container_removed_after_health(self, machine, deployment, executor):
        executor.on("docker ps --filter", stdout="app-1-old\n")
        machine.start(deployment.id)
        assert deployment.previous_container == "app-1-old"
        assert executor.index_of("docker rm -f app-1-old") > executor.index_of("{{.RestartCount}}")

    def test_promotion_skips_build(self, machine, deployment, executor):
        deployment.is_promotion = True
        deployment.promoted_from_image = "app-1:aaa"
        assert machine.start(deployment.id) is DeployOutcome.FINISHED
        assert not executor.ran("git clone")
        assert not executor.ran("--rm --name")
        assert executor.ran(f"docker run -d --name {CONTAINER}")[0].endswith(" app-1:aaa")

    def test_restart_only(self, machine, deployment, executor):
        deployment.restart_only = True
        deployment.container_name = "app-1-old"
        assert machine.start(deployment.id) is DeployOutcome.FINISHED
        assert executor.ran("docker restart app-1-old")
        assert not executor.ran("docker run")

    def test_retry_of_in_progress_deployment(self, machine, deployment):
        deployment.status = DeploymentStatus.IN_PROGRESS
        assert machine.start(deployment.id) is DeployOutcome.FINISHED
        assert any(line.endswith("Retrying deployment.") for line in deployment.logs)


class TestFollowUps:
    def test_rolling_schedules_health_monitor(self, machine, app, deployment, scheduler):
        app.auto_rollback_enabled = True
        machine.start(deployment.id)
        call = scheduler.last
        assert call.task_name == TASK_HEALTH_MONITOR
        assert call.countdown == 10
        assert call.kwargs["deployment_id"] == deployment.id
        assert call.kwargs["total_checks"] == 60

    def test_canary_keeps_previous_and_schedules_canary(self, machine, app, deployment, executor, scheduler):
        app.auto_rollback_enabled = True
        app.deployment_strategy = DeploymentStrategy.CANARY
        executor.on("docker ps --filter", stdout="app-1-old\n")
        machine.start(deployment.id)
        assert not executor.ran("docker rm -f app-1-old")
        assert scheduler.last.task_name == TASK_CANARY_BEGIN
        assert scheduler.last.kwargs == {"deployment_id": deployment.id}

    def test_rollback_deployment_is_not_monitored(self, machine, app, deployment, rollbacks, scheduler):
        app.auto_rollback_enabled = True
        deployment.rollback = True
        event = rollbacks.add(RollbackEvent(application_id=1, rollback_deployment_id=deployment.id,
                                            status=RollbackStatus.IN_PROGRESS))
        machine.start(deployment.id)
        assert scheduler.calls == []
        assert event.status is RollbackStatus.SUCCESS


class TestGates:
    def test_lock_held_reschedules(self, machine, deployment, lock, scheduler, executor):
        lock.acquire(LOCK_KEY, "other-deployment")
        assert machine.start(deployment.id) is DeployOutcome.WAITING_FOR_LOCK
        assert deployment.status is DeploymentStatus.QUEUED
        assert deployment.logs[-1].endswith(LOCK_WAIT_MESSAGE)
        call = scheduler.last
        assert (call.task_name, call.countdown, call.kwargs) == (TASK_DEPLOY, 30, {"deployment_id": deployment.id})
        assert executor.commands == []

    def test_approval_flow(self, machine, deployment, scheduler):
        deployment.requires_approval = True
        assert machine.start(deployment.id) is DeployOutcome.AWAITING_APPROVAL
        assert deployment.status is DeploymentStatus.PENDING_APPROVAL
        assert scheduler.last.countdown == 60

        machine.approve(deployment.id, "alice", "ship it")
        assert deployment.status is DeploymentStatus.QUEUED
        assert len(scheduler.calls) == 1

        assert machine.start(deployment.id) is DeployOutcome.FINISHED
        assert any(line.endswith("Deployment approved by alice: ship it") for line in deployment.logs)

    def test_rejected(self, machine, deployment, executor):
        deployment.requires_approval = True
        machine.reject(deployment.id, "bob", "not today")
        assert deployment.status is DeploymentStatus.CANCELLED_BY_USER
        assert machine.start(deployment.id) is DeployOutcome.CANCELLED
        assert executor.commands == []

    def test_approve_requires_pending(self, machine, deployment):
        with pytest.raises(ValidationError):
            machine.approve(deployment.id, "alice")
        with pytest.raises(PreconditionError):
            machine.approve(404, "alice")

    def test_terminal_and_missing_are_skipped(self, machine, deployment):
        assert machine.start(404) is DeployOutcome.SKIPPED
        deployment.status = DeploymentStatus.FINISHED
        assert machine.start(deployment.id) is DeployOutcome.SKIPPED


class TestCancellation:
    def test_cancel_between_phases(self, machine, deployment, executor, lock):
        executor.on("nixpacks build", effect=lambda _: machine.cancel(deployment.id))
        assert machine.start(deployment.id) is DeployOutcome.CANCELLED
        assert deployment.status is DeploymentStatus.CANCELLED_BY_USER
        assert not executor.ran(f"docker run -d --name {CONTAINER}")
        assert executor.ran(f"docker rm -f {DEPLOYMENT_UUID}")
        assert not lock.is_locked(LOCK_KEY)

    def test_cancel_survives_row_copies(self, deployment, applications, servers, executor, lock,
                                        scheduler, emitter, rollbacks, settings):
        """A repository handing out copies never lets a phase write over a cancel."""
        rows = CopyingDeploymentRepository([deployment])
        rollback = RollbackService(deployments=rows, rollbacks=rollbacks, scheduler=scheduler, emitter=emitter)
        machine = DeploymentStateMachine(
            deployments=rows,
            applications=applications,
            servers=servers,
            executor=executor,
            lock=lock,
            scheduler=scheduler,
            emitter=emitter,
            rollback=rollback,
            settings=settings,
        )
        accepted = []
        executor.on("nixpacks build", effect=lambda _: accepted.append(machine.cancel(deployment.id)))

        assert machine.start(deployment.id) is DeployOutcome.CANCELLED

        assert accepted == [True]
        assert rows.get(deployment.id).status is DeploymentStatus.CANCELLED_BY_USER
        assert not executor.ran(f"docker run -d --name {CONTAINER}")
        assert not lock.is_locked(LOCK_KEY)

    def test_transient_error_after_cancel_keeps_cancel(self, deployment, applications, servers, executor,
                                                       lock, scheduler, emitter, rollbacks, settings):
        rows = CopyingDeploymentRepository([deployment])
        rollback = RollbackService(deployments=rows, rollbacks=rollbacks, scheduler=scheduler, emitter=emitter)
        machine = DeploymentStateMachine(
            deployments=rows,
            applications=applications,
            servers=servers,
            executor=executor,
            lock=lock,
            scheduler=scheduler,
            emitter=emitter,
            rollback=rollback,
            settings=settings,
        )

        def cancel_then_time_out(_):
            machine.cancel(deployment.id)
            raise RemoteTimeoutError("ssh timed out")

        executor.on("git clone", effect=cancel_then_time_out)

        assert machine.start(deployment.id) is DeployOutcome.CANCELLED
        assert rows.get(deployment.id).status is DeploymentStatus.CANCELLED_BY_USER
        assert not lock.is_locked(LOCK_KEY)

    def test_cancel_terminal_is_refused(self, machine, deployment):
        deployment.status = DeploymentStatus.FAILED
        assert machine.cancel(deployment.id) is False
        assert machine.cancel(404) is False


class TestFailures:
    def test_server_not_functional(self, machine, deployment, server, lock):
        server.functional = False
        assert machine.start(deployment.id) is DeployOutcome.FAILED
        assert deployment.status is DeploymentStatus.FAILED
        assert any("PreconditionError: Server is not functional" in line for line in deployment.logs)
        assert not lock.is_locked(LOCK_KEY)

    def test_build_failure(self, machine, deployment, executor):
        executor.on("nixpacks build", exit_code=1, stderr="no space left on device")
        assert machine.start(deployment.id) is DeployOutcome.FAILED
        assert any("Build failed: no space left on device" in line for line in deployment.logs)
        assert not executor.ran(f"docker run -d --name {CONTAINER}")
        assert executor.ran(f"docker rm -f {DEPLOYMENT_UUID}")

    def test_unhealthy_container_is_diagnosed_and_removed(self, machine, app, deployment, executor):
        app.health_check_enabled = True
        executor.on(".State.Health.Status", stdout="unhealthy\n", exit_code=1)
        executor.on("docker logs", stdout="Error: DATABASE_URL is required\n")

        assert machine.start(deployment.id) is DeployOutcome.FAILED

        text = deployment.log_text
        assert "Health check: GET: http://localhost:3000/" in text
        assert "ERROR: Missing required environment variables" in text
        assert "  - DATABASE_URL" in text
        assert executor.ran(f"docker rm -f {CONTAINER}")

    def test_exit_code_diagnosis_without_logs(self, machine, deployment, executor):
        executor.on("{{.RestartCount}}", stdout="exited false 0\n")
        executor.on("{{.State.ExitCode}}", stdout="127 false \n")
        assert machine.start(deployment.id) is DeployOutcome.FAILED
        assert "ERROR: Container exited with code 127" in deployment.log_text

    def test_transient_error_is_reraised_and_lock_kept(self, machine, deployment, executor, lock):
        executor.on("git clone", raises=RemoteTimeoutError("ssh timed out"))
        with pytest.raises(RemoteTimeoutError):
            machine.start(deployment.id)
        assert deployment.status is DeploymentStatus.IN_PROGRESS
        assert lock.holder(LOCK_KEY) == DEPLOYMENT_UUID
        assert executor.ran(f"docker rm -f {DEPLOYMENT_UUID}")


class TestFailedCallback:
    def test_marks_timed_out_and_releases_lock(self, machine, deployment, lock):
        deployment.status = DeploymentStatus.IN_PROGRESS
        lock.acquire(LOCK_KEY, DEPLOYMENT_UUID)

        machine.failed(deployment.id, RuntimeError("worker lost"), timed_out=True)

        assert deployment.status is DeploymentStatus.TIMED_OUT
        assert "Deployment failed: RuntimeError: worker lost" in deployment.log_text
        assert not lock.is_locked(LOCK_KEY)

    def test_idempotent(self, machine, deployment, lock, executor):
        deployment.status = DeploymentStatus.FINISHED
        log_count = len(deployment.logs)
        lock.acquire(LOCK_KEY, DEPLOYMENT_UUID)
        machine.failed(deployment.id, RuntimeError("late"))
        assert deployment.status is DeploymentStatus.FINISHED
        assert len(deployment.logs) == log_count
        assert not lock.is_locked(LOCK_KEY)
        assert executor.commands == []

    def test_removes_started_container(self, machine, deployment, executor):
        deployment.status = DeploymentStatus.IN_PROGRESS
        deployment.container_name = CONTAINER
        machine.failed(deployment.id, RuntimeError("boom"))
        assert executor.ran(f"docker rm -f {CONTAINER}")
        assert not executor.ran("docker build")

    def test_failed_rollback_deployment_closes_event(self, machine, deployment, rollbacks):
        deployment.status = DeploymentStatus.IN_PROGRESS
        deployment.rollback = True
        event = rollbacks.add(RollbackEvent(application_id=1, rollback_deployment_id=deployment.id))
        machine.failed(deployment.id, RuntimeError("boom"))
        assert event.status is RollbackStatus.FAILED
