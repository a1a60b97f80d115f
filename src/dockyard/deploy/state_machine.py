"""Deployment state machine.

Runs one application deployment from QUEUED to a terminal state.

Manifesto:
    A deployment touches a remote host over SSH for every step, so any
    step can hang, time out or be cancelled from the dashboard.  The
    state machine therefore keeps three promises:

    - **One deployment per application.** The per-application lock is
      held from IN_PROGRESS to the terminal state; a second deployment
      re-schedules itself instead of failing.
    - **Cooperative cancellation.** ``cancel()`` only flips the status;
      the running job notices at the next phase boundary and stops.
    - **Cleanup always runs.** The build helper container and the lock
      are released in ``finally`` with each step isolated.

Architecture:
    ::

        start(deployment_id)
          ├── cancelled / terminal                → return
          ├── approval gate      pending          → re-schedule in 60 s
          │                      rejected         → CANCELLED_BY_USER
          ├── lock               held elsewhere   → re-schedule in 30 s
          ├── IN_PROGRESS (+ worker host)
          ├── server not functional               → FAILED
          ├── phases: restart | promotion | build → start → health check
          │     (cancellation checked between phases)
          ├── FINISHED → schedule HealthMonitor / CanaryController
          └── finally: remove helper, release lock when terminal

        TransientError      → re-raised, the queue retries (lock kept)
        other DockyardError → FAILED without retry
        retries exhausted   → failed(deployment_id, error)

Tags:
    deployment, state-machine, lock, cancellation
"""

from __future__ import annotations

import socket
import traceback
from enum import Enum

from dockyard.core.errors import (
    DeploymentCancelledError,
    DeploymentError,
    DockyardError,
    PreconditionError,
    TransientError,
    ValidationError,
)
from dockyard.core.events import Event, EventEmitter, EventType, emit_safely
from dockyard.core.logging import LogContext, get_logger
from dockyard.core.models import Host, Server
from dockyard.core.settings import DockyardSettings, get_settings
from dockyard.deploy.builders import (
    SOURCE_BUILD_PACKS,
    BuildContext,
    BuildPlan,
    clone_commands,
    helper_cleanup_command,
    helper_start_command,
    in_helper,
    plan_build,
)
from dockyard.deploy.healthcheck import (
    Diagnosis,
    build_probe,
    container_exit_command,
    container_logs_command,
    container_state_command,
    diagnose_exit,
    diagnose_logs,
    docker_health_options,
    parse_container_state,
    wait_for_health_command,
)
from dockyard.deploy.models import (
    Application,
    ApprovalStatus,
    BuildPack,
    DeploymentRecord,
    DeploymentStatus,
    DeploymentStrategy,
)
from dockyard.deploy.monitor import initial_window
from dockyard.deploy.rollback import RollbackService
from dockyard.execution.locks import ResourceLock, deployment_lock_key
from dockyard.execution.scheduling import (
    TASK_CANARY_BEGIN,
    TASK_DEPLOY,
    TASK_HEALTH_MONITOR,
    Scheduler,
)
from dockyard.persistence import ApplicationRepository, DeploymentRepository, ServerRepository
from dockyard.remote.executor import RemoteExecutor, run_all, run_checked
from dockyard.remote.shell import quote

logger = get_logger(__name__)

LOCK_WAIT_MESSAGE = "Another deployment is already in progress. Waiting..."
APP_LABEL = "dockyard.application"
DEPLOYMENT_LABEL = "dockyard.deployment"
TRACEBACK_LINES = 5


class DeployOutcome(str, Enum):
    SKIPPED = "skipped"
    AWAITING_APPROVAL = "awaiting_approval"
    WAITING_FOR_LOCK = "waiting_for_lock"
    FINISHED = "finished"
    FAILED = "failed"
    CANCELLED = "cancelled"


def container_name_for(app: Application, deployment: DeploymentRecord) -> str:
    """Container name of *deployment*.

    Custom and consistent names are reused across deployments; everything
    else gets a fresh name so the previous container keeps running until
    the new one is healthy.
    """
    if app.custom_internal_name:
        return app.custom_internal_name
    if deployment.is_preview:
        return f"{app.uuid}-pr-{deployment.pull_request_id}"
    if app.consistent_container_name:
        return app.uuid
    return f"{app.uuid}-{deployment.uuid[:8]}"


def uses_fixed_name(app: Application, deployment: DeploymentRecord) -> bool:
    return bool(app.custom_internal_name or app.consistent_container_name or deployment.is_preview)


def run_container_command(app: Application, deployment: DeploymentRecord, image: str) -> str:
    name = container_name_for(app, deployment)
    parts = [
        "docker run -d",
        f"--name {quote(name)}",
        f"--network {quote(app.network)}",
        f"--label {quote(f'{APP_LABEL}={app.uuid}')}",
        f"--label {quote(f'{DEPLOYMENT_LABEL}={deployment.uuid}')}",
        "--restart unless-stopped",
    ]
    if app.health_check_enabled:
        parts.extend(docker_health_options(app, build_probe(app)))
    for mapping in filter(None, (m.strip() for m in app.ports_mappings.split(","))):
        parts.append(f"-p {quote(mapping)}")
    parts.append(quote(image))
    return " ".join(parts)


def running_containers_command(app: Application) -> str:
    return (
        f"docker ps --filter {quote(f'label={APP_LABEL}={app.uuid}')} "
        "--format '{{.Names}}'"
    )


class DeploymentStateMachine:
    """Runs, cancels, approves and fails deployments."""

    def __init__(
        self,
        *,
        deployments: DeploymentRepository,
        applications: ApplicationRepository,
        servers: ServerRepository,
        executor: RemoteExecutor,
        lock: ResourceLock,
        scheduler: Scheduler,
        emitter: EventEmitter,
        rollback: RollbackService,
        settings: DockyardSettings | None = None,
    ):
        self._deployments = deployments
        self._applications = applications
        self._servers = servers
        self._executor = executor
        self._lock = lock
        self._scheduler = scheduler
        self._emitter = emitter
        self._rollback = rollback
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Job entry point
    # ------------------------------------------------------------------

    def start(self, deployment_id: int) -> DeployOutcome:
        deployment = self._deployments.get(deployment_id)
        if deployment is None:
            logger.warning("deployment.not_found", deployment_id=deployment_id)
            return DeployOutcome.SKIPPED
        if deployment.status == DeploymentStatus.CANCELLED_BY_USER:
            logger.info("deployment.already_cancelled", deployment_id=deployment_id)
            return DeployOutcome.CANCELLED
        if deployment.is_terminal:
            return DeployOutcome.SKIPPED

        key = deployment_lock_key(deployment.application_id)
        try:
            gate = self._approval_gate(deployment)
            if gate is not None:
                return gate

            if not self._lock.acquire(key, deployment.uuid, self._settings.deploy_timeout_seconds):
                deployment.append_log(LOCK_WAIT_MESSAGE)
                self._save(deployment)
                logger.info(
                    "deployment.waiting_for_lock",
                    deployment_id=deployment.id,
                    holder=self._lock.holder(key),
                )
                self._reschedule(deployment, self._settings.lock_wait_countdown_seconds)
                return DeployOutcome.WAITING_FOR_LOCK
        except DeploymentCancelledError:
            logger.info("deployment.already_cancelled", deployment_id=deployment_id)
            return DeployOutcome.CANCELLED

        with LogContext(deployment_id=deployment.id, deployment_uuid=deployment.uuid):
            return self._execute(deployment, key)

    def _execute(self, deployment: DeploymentRecord, lock_key: str) -> DeployOutcome:
        helper: str | None = None
        server: Server | None = None
        try:
            if deployment.status == DeploymentStatus.IN_PROGRESS:
                deployment.append_log("Retrying deployment.")
            else:
                self._transition(deployment, DeploymentStatus.IN_PROGRESS)
                deployment.append_log("Starting deployment.")
            deployment.worker_host = socket.gethostname()
            self._save(deployment)
            logger.info("deployment.started", commit=deployment.commit, worker=deployment.worker_host)

            app = self._applications.get(deployment.application_id)
            if app is None:
                raise PreconditionError("Application not found")
            server = self._servers.get(deployment.server_id)
            if server is None or not server.functional:
                raise PreconditionError("Server is not functional")

            if deployment.restart_only:
                self._restart(deployment, app, server.host)
            else:
                if not deployment.is_promotion:
                    helper = deployment.uuid
                plan = self._prepare_image(deployment, app, server.host)
                self._check_cancelled(deployment)
                self._start_container(deployment, app, server.host, plan)

            self._check_cancelled(deployment)
            self._transition(deployment, DeploymentStatus.FINISHED)
            deployment.append_log("Deployment finished.")
            self._save(deployment)
            logger.info("deployment.finished", image=deployment.image, container=deployment.container_name)
            self._schedule_follow_up(deployment, app)
            return DeployOutcome.FINISHED

        except DeploymentCancelledError:
            deployment.append_log("Deployment cancelled by user.")
            self._deployments.update(deployment)
            logger.info("deployment.cancelled")
            return DeployOutcome.CANCELLED

        except TransientError as exc:
            deployment.append_log(f"Transient error, the deployment will be retried: {exc.message}")
            try:
                self._save(deployment)
            except DeploymentCancelledError:
                logger.info("deployment.cancelled", error=exc.message)
                return DeployOutcome.CANCELLED
            logger.warning("deployment.transient_error", error=exc.message, error_type=type(exc).__name__)
            raise

        except DockyardError as exc:
            self._mark_failed(deployment, exc, server=server)
            return DeployOutcome.FAILED

        finally:
            if helper is not None and server is not None:
                try:
                    self._executor.run(server.host, helper_cleanup_command(helper), timeout_seconds=60)
                except Exception as exc:
                    logger.warning("deployment.helper_cleanup_failed", helper=helper, error=str(exc))
            if deployment.is_terminal:
                try:
                    self._lock.release(lock_key, deployment.uuid)
                except Exception as exc:
                    logger.warning("deployment.lock_release_failed", lock_key=lock_key, error=str(exc))
                try:
                    self._complete_rollback(deployment)
                except Exception as exc:
                    logger.warning("deployment.rollback_update_failed", error=str(exc))

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _restart(self, deployment: DeploymentRecord, app: Application, host: Host) -> None:
        container = deployment.container_name or self._current_container(host, app)
        if not container:
            raise PreconditionError("No running container to restart")
        deployment.container_name = container
        deployment.append_log(f"Restarting container {container}.")
        run_checked(
            self._executor, host, f"docker restart {quote(container)}",
            timeout_seconds=300, error_message="Container restart failed",
        )
        self._check_cancelled(deployment)
        self._verify_health(deployment, app, host, container)

    def _prepare_image(
        self, deployment: DeploymentRecord, app: Application, host: Host
    ) -> BuildPlan:
        """Build (or pull) the image; promotions reuse their image as is."""
        if deployment.is_promotion:
            if not deployment.promoted_from_image:
                raise ValidationError("Promotion without an image", field="promoted_from_image")
            deployment.image = deployment.promoted_from_image
            deployment.append_log(f"Promoting image {deployment.image}, skipping build.")
            self._save(deployment)
            return BuildPlan(helper="", image=deployment.image)

        helper = deployment.uuid
        timeout = self._settings.command_timeout_seconds
        run_checked(
            self._executor, host, helper_start_command(helper, self._settings.helper_image),
            timeout_seconds=300, error_message="Failed to start the build helper",
        )
        ctx = BuildContext(deployment, app, helper=helper)

        if app.build_pack in SOURCE_BUILD_PACKS:
            deployment.append_log(f"Cloning {app.git_repository} ({app.git_branch}).")
            self._save(deployment)
            run_all(self._executor, host, [in_helper(helper, c) for c in clone_commands(ctx)],
                    timeout_seconds=timeout, error_message="Source checkout failed")
            self._check_cancelled(deployment)

        if app.build_pack == BuildPack.DOCKERFILE:
            result = run_checked(
                self._executor, host, in_helper(helper, f"cat {quote(ctx.dockerfile_path)}"),
                timeout_seconds=60, error_message="Dockerfile not found",
            )
            ctx.dockerfile_content = result.stdout

        plan = plan_build(ctx)
        deployment.append_log(f"Building with the {app.build_pack.value} build pack.")
        self._save(deployment)
        for command in plan.commands:
            run_checked(self._executor, host, in_helper(helper, command),
                        timeout_seconds=timeout, error_message="Build failed")
        deployment.image = plan.image
        self._save(deployment)
        return plan

    def _start_container(self, deployment: DeploymentRecord, app: Application, host: Host, plan: BuildPlan) -> None:
        if plan.compose_file:
            deployment.append_log("Starting services with docker compose.")
            run_checked(
                self._executor, host,
                in_helper(plan.helper, f"docker compose --project-name {quote(app.uuid)} -f {quote(plan.compose_file)} up -d"),
                timeout_seconds=self._settings.command_timeout_seconds,
                error_message="docker compose up failed",
            )
            return

        if not deployment.image:
            raise DeploymentError("Build produced no image")
        name = container_name_for(app, deployment)
        previous = self._current_container(host, app, exclude=name)

        if uses_fixed_name(app, deployment):
            self._executor.run(host, f"docker rm -f {quote(name)} >/dev/null 2>&1 || true", timeout_seconds=60)
            previous = None

        deployment.container_name = name
        deployment.previous_container = previous
        deployment.append_log(f"Starting container {name} from {deployment.image}.")
        self._save(deployment)
        run_checked(
            self._executor, host,
            run_container_command(app, deployment, deployment.image),
            timeout_seconds=300, error_message="Container failed to start",
        )

        self._check_cancelled(deployment)
        self._verify_health(deployment, app, host, name)

        if previous and not self._keeps_previous(deployment, app):
            deployment.append_log(f"Removing previous container {previous}.")
            self._executor.run(host, f"docker rm -f {quote(previous)} >/dev/null 2>&1 || true", timeout_seconds=120)

    def _verify_health(
        self,
        deployment: DeploymentRecord,
        app: Application,
        host: Host,
        container: str,
    ) -> None:
        if app.health_check_enabled:
            probe = build_probe(app)
            deployment.append_log(f"Health check: {probe.display}")
            self._save(deployment)
            result = self._executor.run(
                host,
                wait_for_health_command(
                    container,
                    retries=app.health_check_retries,
                    interval=app.health_check_interval,
                    start_period=app.health_check_start_period,
                ),
                timeout_seconds=self._settings.command_timeout_seconds,
            )
            status = result.output.splitlines()[-1] if result.output else "unknown"
            if result.ok and status == "healthy":
                deployment.append_log("Container is healthy.")
                return
            deployment.append_log(f"Health check status: {status}")
        else:
            result = self._executor.run(host, container_state_command(container), timeout_seconds=60)
            state = parse_container_state(result.output)
            if result.ok and not state.has_exited and not state.restarting:
                deployment.append_log(f"Container is {state.status}.")
                return
            deployment.append_log(f"Container state: {state.status} (restarts: {state.restart_count})")

        for line in self._diagnose(host, container).lines():
            deployment.append_log(line)
        self._save(deployment)
        raise DeploymentError("Container did not become healthy")

    def _diagnose(self, host: Host, container: str) -> Diagnosis:
        logs = self._executor.run(host, container_logs_command(container), timeout_seconds=60)
        if logs.output:
            return diagnose_logs(logs.output)
        inspect = self._executor.run(host, container_exit_command(container), timeout_seconds=60)
        parts = inspect.output.split(" ", 2)
        try:
            exit_code = int(parts[0]) if parts and parts[0] else None
        except ValueError:
            exit_code = None
        oom_killed = len(parts) > 1 and parts[1] == "true"
        docker_error = parts[2].strip() if len(parts) > 2 else ""
        return diagnose_exit(exit_code, oom_killed=oom_killed, docker_error=docker_error)

    def _current_container(self, host: Host, app: Application, *, exclude: str | None = None) -> str | None:
        result = self._executor.run(host, running_containers_command(app), timeout_seconds=60)
        if not result.ok:
            return None
        for name in result.output.splitlines():
            name = name.strip()
            if name and name != exclude:
                return name
        return None

    def _keeps_previous(self, deployment: DeploymentRecord, app: Application) -> bool:
        """The canary controller needs the previous container as its stable side."""
        return (
            app.deployment_strategy == DeploymentStrategy.CANARY
            and app.auto_rollback_enabled
            and not deployment.is_preview
            and not deployment.rollback
        )

    # ------------------------------------------------------------------
    # Gates and follow-ups
    # ------------------------------------------------------------------

    def _approval_gate(self, deployment: DeploymentRecord) -> DeployOutcome | None:
        if not deployment.requires_approval:
            return None

        if deployment.approval_status == ApprovalStatus.REJECTED:
            if not deployment.is_terminal:
                self._transition(deployment, DeploymentStatus.CANCELLED_BY_USER)
                deployment.append_log("Deployment was rejected.")
                self._save(deployment)
            return DeployOutcome.CANCELLED

        if deployment.approval_status != ApprovalStatus.APPROVED:
            if deployment.status == DeploymentStatus.QUEUED:
                self._transition(deployment, DeploymentStatus.PENDING_APPROVAL)
                deployment.append_log("Waiting for approval.")
                self._save(deployment)
            self._reschedule(deployment, self._settings.approval_wait_countdown_seconds)
            return DeployOutcome.AWAITING_APPROVAL

        if deployment.status == DeploymentStatus.PENDING_APPROVAL:
            self._transition(deployment, DeploymentStatus.QUEUED)
        if deployment.status == DeploymentStatus.QUEUED:
            message = f"Deployment approved by {deployment.approved_by or 'unknown'}"
            if deployment.approval_note:
                message += f": {deployment.approval_note}"
            deployment.append_log(message)
            self._save(deployment)
        return None

    def _check_cancelled(self, deployment: DeploymentRecord) -> None:
        current = self._deployments.get(deployment.id)
        if current is not None and current.status == DeploymentStatus.CANCELLED_BY_USER:
            deployment.status = current.status
            deployment.finished_at = current.finished_at
            raise DeploymentCancelledError("Deployment cancelled by user")

    def _reschedule(self, deployment: DeploymentRecord, countdown: int) -> None:
        self._scheduler.schedule(
            TASK_DEPLOY,
            {"deployment_id": deployment.id},
            countdown=countdown,
            queue="high",
            tags=deployment.tags,
        )

    def _schedule_follow_up(self, deployment: DeploymentRecord, app: Application) -> None:
        if not app.auto_rollback_enabled or deployment.is_preview or deployment.rollback:
            return
        delay = self._settings.post_deploy_delay_seconds
        if app.deployment_strategy == DeploymentStrategy.CANARY:
            self._scheduler.schedule(
                TASK_CANARY_BEGIN, {"deployment_id": deployment.id}, countdown=delay, queue="high",
            )
        else:
            window = initial_window(app, deployment, self._settings)
            self._scheduler.schedule(TASK_HEALTH_MONITOR, window.to_task_kwargs(), countdown=delay)

    def _complete_rollback(self, deployment: DeploymentRecord) -> None:
        if deployment.rollback and deployment.is_terminal:
            self._rollback.complete(
                deployment, succeeded=deployment.status == DeploymentStatus.FINISHED
            )

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _mark_failed(
        self,
        deployment: DeploymentRecord,
        error: BaseException,
        *,
        server: Server | None = None,
        trace: str | None = None,
        status: DeploymentStatus = DeploymentStatus.FAILED,
    ) -> None:
        current = self._deployments.get(deployment.id)
        if current is not None and current.is_terminal:
            deployment.status = current.status
            logger.info("deployment.failed_after_terminal", status=current.status.value, error=str(error))
            return

        message = getattr(error, "message", None) or str(error)
        deployment.append_log(f"Deployment failed: {type(error).__name__}: {message}")
        if trace:
            for line in trace.strip().splitlines()[:TRACEBACK_LINES]:
                deployment.append_log(line)
        self._transition(deployment, status)
        self._save(deployment)
        logger.error("deployment.failed", error=message, error_type=type(error).__name__)

        app = self._applications.get(deployment.application_id)
        if (
            server is not None
            and app is not None
            and deployment.container_name
            and not uses_fixed_name(app, deployment)
        ):
            try:
                self._executor.run(
                    server.host,
                    f"docker rm -f {quote(deployment.container_name)} >/dev/null 2>&1 || true",
                    timeout_seconds=60,
                )
            except Exception as exc:
                logger.warning("deployment.container_cleanup_failed", error=str(exc))

    def failed(self, deployment_id: int, error: BaseException, *, timed_out: bool = False) -> None:
        """Permanent-failure callback, run once the queue gives up.

        Idempotent: a deployment that is already terminal is left alone
        apart from releasing its lock.  Never re-runs remote build or deploy
        commands; at most removes the container this deployment started.
        """
        deployment = self._deployments.get(deployment_id)
        if deployment is None:
            return
        key = deployment_lock_key(deployment.application_id)
        try:
            if deployment.is_terminal:
                return
            trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
            self._mark_failed(
                deployment,
                error,
                server=self._servers.get(deployment.server_id),
                trace=trace,
                status=DeploymentStatus.TIMED_OUT if timed_out else DeploymentStatus.FAILED,
            )
            self._complete_rollback(deployment)
        finally:
            self._lock.release(key, deployment.uuid)

    # ------------------------------------------------------------------
    # External requests
    # ------------------------------------------------------------------

    def cancel(self, deployment_id: int) -> bool:
        deployment = self._deployments.get(deployment_id)
        if deployment is None or deployment.is_terminal:
            return False
        self._transition(deployment, DeploymentStatus.CANCELLED_BY_USER)
        deployment.append_log("Deployment cancelled by user.")
        self._save(deployment)
        logger.info("deployment.cancel_requested", deployment_id=deployment_id)
        return True

    def approve(self, deployment_id: int, approver: str, note: str | None = None) -> DeploymentRecord:
        deployment = self._pending_approval(deployment_id)
        deployment.approval_status = ApprovalStatus.APPROVED
        deployment.approved_by = approver
        deployment.approval_note = note
        if deployment.status == DeploymentStatus.PENDING_APPROVAL:
            self._transition(deployment, DeploymentStatus.QUEUED)
        self._save(deployment)
        return deployment

    def reject(self, deployment_id: int, approver: str, note: str | None = None) -> DeploymentRecord:
        deployment = self._pending_approval(deployment_id)
        deployment.approval_status = ApprovalStatus.REJECTED
        deployment.approved_by = approver
        deployment.approval_note = note
        self._transition(deployment, DeploymentStatus.CANCELLED_BY_USER)
        deployment.append_log(f"Deployment rejected by {approver}" + (f": {note}" if note else ""))
        self._save(deployment)
        return deployment

    def _pending_approval(self, deployment_id: int) -> DeploymentRecord:
        deployment = self._deployments.get(deployment_id)
        if deployment is None:
            raise PreconditionError("Deployment not found")
        if not deployment.requires_approval or deployment.is_terminal:
            raise ValidationError("Deployment is not awaiting approval", field="status", value=deployment.status.value)
        return deployment

    def _save(self, deployment: DeploymentRecord) -> None:
        """Write *deployment* back unless the stored row was cancelled meanwhile.

        Raises :class:`DeploymentCancelledError` instead of overwriting a
        user's cancel with the in-flight copy.
        """
        if deployment.status != DeploymentStatus.CANCELLED_BY_USER:
            self._check_cancelled(deployment)
        self._deployments.update(deployment)

    def _transition(self, deployment: DeploymentRecord, status: DeploymentStatus) -> None:
        if deployment.status != DeploymentStatus.CANCELLED_BY_USER:
            self._check_cancelled(deployment)
        deployment.transition_to(status)
        self._deployments.update(deployment)
        emit_safely(self._emitter, Event(
            event_type=EventType.DEPLOYMENT_STATUS_CHANGED,
            source="deployment",
            payload={
                "deployment_id": deployment.id,
                "deployment_uuid": deployment.uuid,
                "application_id": deployment.application_id,
                "status": deployment.status.value,
            },
        ))


__all__ = [
    "LOCK_WAIT_MESSAGE",
    "DeployOutcome",
    "container_name_for",
    "uses_fixed_name",
    "run_container_command",
    "running_containers_command",
    "DeploymentStateMachine",
]
