"""Celery application and job entry points.

Each task is a thin shell around one component built from the process
:class:`~dockyard.execution.runtime.Runtime`: it receives ids, calls the
component and returns a JSON-friendly outcome.  Retry and timeout
behaviour comes from the job's :class:`JobPolicy`:

    task                        tries  backoff        limit   queue
    ──────────────────────────  ─────  ─────────────  ──────  ───────
    deploy.application          3      30, 60, 120    3600    high
    deploy.monitor_health       1                      120    default
    deploy.canary_*             1                      300    high
    provisioning.check_*        3      10, 30, 60      300    low
    provisioning.auto_provision 1                      600    high
    backup.run                  2      60, 120        3600    default
    backup.restore              1                     3600    high
    backup.restore_test         1                     1800    high
    transfer.run                1                     7200    default

Only :class:`TransientError` is retried.  Once retries are exhausted, or
on a non-transient error or a time limit, the task's ``on_failure`` hook
runs the component's permanent-failure callback (deployments and
restores).  Those callbacks only update records.

Run a worker with::

    celery -A dockyard.execution.tasks worker -Q high,default,low
"""

from __future__ import annotations

from typing import Any

from celery import Celery, Task
from celery.exceptions import SoftTimeLimitExceeded, TimeLimitExceeded
from celery.signals import setup_logging

from dockyard.core.errors import TransientError
from dockyard.core.logging import configure_logging, get_logger
from dockyard.core.settings import get_settings
from dockyard.deploy.models import HealthCheckWindow
from dockyard.execution.retry import (
    AUTO_PROVISION_POLICY,
    BACKUP_POLICY,
    CANARY_POLICY,
    DEPLOY_POLICY,
    HEALTH_MONITOR_POLICY,
    RESOURCE_CHECK_POLICY,
    RESTORE_POLICY,
    RESTORE_TEST_POLICY,
    TRANSFER_POLICY,
    JobPolicy,
)
from dockyard.execution.runtime import (
    Runtime,
    build_default_runtime,
    configure_runtime,
    get_runtime,
    runtime_configured,
)
from dockyard.execution.scheduling import (
    TASK_AUTO_PROVISION,
    TASK_BACKUP,
    TASK_CANARY_ADVANCE,
    TASK_CANARY_BEGIN,
    TASK_CHECK_SERVER_RESOURCES,
    TASK_DEPLOY,
    TASK_HEALTH_MONITOR,
    TASK_RESTORE,
    TASK_RESTORE_TEST,
    TASK_TRANSFER,
    CeleryScheduler,
)

logger = get_logger(__name__)

settings = get_settings()

TASK_POLICIES: dict[str, JobPolicy] = {
    TASK_DEPLOY: DEPLOY_POLICY,
    TASK_HEALTH_MONITOR: HEALTH_MONITOR_POLICY,
    TASK_CANARY_BEGIN: CANARY_POLICY,
    TASK_CANARY_ADVANCE: CANARY_POLICY,
    TASK_CHECK_SERVER_RESOURCES: RESOURCE_CHECK_POLICY,
    TASK_AUTO_PROVISION: AUTO_PROVISION_POLICY,
    TASK_BACKUP: BACKUP_POLICY,
    TASK_RESTORE: RESTORE_POLICY,
    TASK_RESTORE_TEST: RESTORE_TEST_POLICY,
    TASK_TRANSFER: TRANSFER_POLICY,
}

# Seconds between the soft limit (raised inside the task) and the hard kill.
HARD_LIMIT_GRACE_SECONDS = 30

app = Celery(
    "dockyard",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="default",
    task_routes={name: {"queue": policy.queue} for name, policy in TASK_POLICIES.items()},
)


@setup_logging.connect
def _configure_worker_logging(**_: Any) -> None:
    configure_logging(
        settings.log_level,
        json_format=settings.log_format == "json",
        service="dockyard-worker",
    )


def runtime() -> Runtime:
    """The process runtime; defaults to one that schedules through this app."""
    if not runtime_configured():
        configure_runtime(build_default_runtime(scheduler=CeleryScheduler(app)))
    return get_runtime()


def _task_options(name: str) -> dict[str, Any]:
    policy = TASK_POLICIES[name]
    return {
        "name": name,
        "bind": True,
        "policy": policy,
        "max_retries": policy.max_retries,
        "soft_time_limit": policy.timeout_seconds,
        "time_limit": policy.timeout_seconds + HARD_LIMIT_GRACE_SECONDS,
    }


class DockyardTask(Task):
    """Base task applying the job policy's retry schedule."""

    abstract = True
    policy: JobPolicy = JobPolicy()

    def retry_transient(self, exc: TransientError):
        """Re-queue after the policy delay, or re-raise once tries are used up."""
        strategy = self.policy.strategy()
        attempt = self.request.retries
        if not strategy.should_retry(attempt, exc):
            raise exc
        countdown = strategy.next_delay(attempt, exc)
        logger.warning(
            "job.retrying",
            task=self.name,
            attempt=attempt + 1,
            countdown=countdown,
            error=exc.message,
        )
        raise self.retry(exc=exc, countdown=countdown, max_retries=self.policy.max_retries)


def _timed_out(exc: BaseException) -> bool:
    return isinstance(exc, (SoftTimeLimitExceeded, TimeLimitExceeded))


class DeployTask(DockyardTask):
    abstract = True

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        deployment_id = kwargs.get("deployment_id", args[0] if args else None)
        if deployment_id is None:
            return
        try:
            runtime().state_machine().failed(int(deployment_id), exc, timed_out=_timed_out(exc))
        except Exception as callback_error:
            logger.error("deployment.failure_callback_failed", deployment_id=deployment_id, error=str(callback_error))


class RestoreTask(DockyardTask):
    abstract = True

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        execution_id = kwargs.get("execution_id")
        rt = runtime()
        execution = rt.executions.get(int(execution_id)) if execution_id is not None else None
        if execution is None:
            return
        try:
            rt.restore_pipeline().failed(execution, exc)
        except Exception as callback_error:
            logger.error("restore.failure_callback_failed", execution_id=execution_id, error=str(callback_error))


# =============================================================================
# DEPLOYMENTS
# =============================================================================


@app.task(base=DeployTask, **_task_options(TASK_DEPLOY))
def deploy_application(self, deployment_id: int) -> str:
    logger.info("job.started", task=self.name, deployment_id=deployment_id, task_id=self.request.id)
    try:
        outcome = runtime().state_machine().start(deployment_id)
    except TransientError as exc:
        self.retry_transient(exc)
    return outcome.value


@app.task(base=DockyardTask, **_task_options(TASK_HEALTH_MONITOR))
def monitor_health(self, deployment_id: int, **state: Any) -> str:
    window = HealthCheckWindow.from_task_kwargs({"deployment_id": deployment_id, **state})
    return runtime().health_monitor().run(window).value


@app.task(base=DockyardTask, **_task_options(TASK_CANARY_BEGIN))
def canary_begin(self, deployment_id: int) -> str:
    return runtime().canary_controller().begin(deployment_id).value


@app.task(base=DockyardTask, **_task_options(TASK_CANARY_ADVANCE))
def canary_advance(self, deployment_id: int, **_state: Any) -> str:
    # The persisted canary state is authoritative; the kwargs are informational.
    return runtime().canary_controller().advance(deployment_id).value


# =============================================================================
# PROVISIONING
# =============================================================================


@app.task(base=DockyardTask, **_task_options(TASK_CHECK_SERVER_RESOURCES))
def check_server_resources(self, server_id: int) -> dict[str, Any] | None:
    rt = runtime()
    server = rt.servers.get(server_id)
    if server is None:
        logger.warning("resource_check.server_missing", server_id=server_id)
        return None
    try:
        result = rt.provision_controller().check_server(server)
    except TransientError as exc:
        self.retry_transient(exc)
    return {
        "server_id": result.server_id,
        "notified": result.notified,
        "critical_reason": result.critical_reason,
        "provisioning_requested": result.provisioning_requested,
    }


@app.task(base=DockyardTask, **_task_options(TASK_AUTO_PROVISION))
def auto_provision(self, server_id: int, reason: str, metrics: dict[str, Any] | None = None) -> str | None:
    event = runtime().provisioner().run(server_id, reason, metrics)
    return event.status.value if event is not None else None


# =============================================================================
# BACKUPS
# =============================================================================


@app.task(base=DockyardTask, **_task_options(TASK_BACKUP))
def run_backup(self, backup_id: int) -> dict[str, Any] | None:
    rt = runtime()
    backup = rt.backups.get(backup_id)
    if backup is None or not backup.enabled:
        logger.info("backup.skipped", backup_id=backup_id)
        return None
    try:
        result = rt.backup_pipeline().run(backup)
    except TransientError as exc:
        self.retry_transient(exc)
    return result.model_dump()


@app.task(base=RestoreTask, **_task_options(TASK_RESTORE))
def restore_backup(self, backup_id: int, execution_id: int) -> str | None:
    rt = runtime()
    backup = rt.backups.get(backup_id)
    execution = rt.executions.get(execution_id)
    if backup is None or execution is None:
        logger.warning("restore.not_found", backup_id=backup_id, execution_id=execution_id)
        return None
    record = rt.restore_pipeline().run(backup, execution)
    return record.restore_status.value if record.restore_status else None


@app.task(base=DockyardTask, **_task_options(TASK_RESTORE_TEST))
def restore_test(self, backup_id: int, execution_id: int | None = None) -> str | None:
    rt = runtime()
    backup = rt.backups.get(backup_id)
    if backup is None:
        logger.warning("restore_test.backup_missing", backup_id=backup_id)
        return None
    execution = rt.executions.get(execution_id) if execution_id is not None else None
    record = rt.restore_test_pipeline().run(backup, execution)
    if record is None or record.restore_test_status is None:
        return None
    return record.restore_test_status.value


# =============================================================================
# TRANSFERS
# =============================================================================


@app.task(base=DockyardTask, **_task_options(TASK_TRANSFER))
def run_transfer(self, transfer_id: int) -> str | None:
    record = runtime().transfer_pipeline().run(transfer_id)
    return record.status.value if record is not None else None


__all__ = [
    "TASK_POLICIES",
    "app",
    "runtime",
    "DockyardTask",
    "DeployTask",
    "RestoreTask",
    "deploy_application",
    "monitor_health",
    "canary_begin",
    "canary_advance",
    "check_server_resources",
    "auto_provision",
    "run_backup",
    "restore_backup",
    "restore_test",
    "run_transfer",
]
