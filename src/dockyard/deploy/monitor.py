"""Post-deploy health monitor.

WHY
───
A container that passes its startup health check can still fall over a
minute later.  For a validation window after each production deployment
the monitor samples the application once per invocation and rolls back
when two consecutive samples fail.

ARCHITECTURE
────────────
::

    HealthMonitor.run(window)
      ├── guards: auto-rollback off / PR preview / not FINISHED  → stop
      ├── sample: runtime status, restart count, log error count
      ├── evaluate → RollbackReason | None
      ├── 2 consecutive failures → RollbackService.trigger()     → stop
      ├── last check                                              → stop
      └── Scheduler.schedule(monitor, window.next_check(), countdown=interval)

    One check per invocation.  The poll state travels in the task kwargs
    (:class:`HealthCheckWindow`); the worker is free between checks.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from dockyard.core.errors import DockyardError
from dockyard.core.logging import get_logger
from dockyard.core.settings import DockyardSettings, get_settings
from dockyard.deploy.models import (
    Application,
    DeploymentRecord,
    DeploymentStatus,
    HealthCheckWindow,
    RollbackReason,
)
from dockyard.deploy.rollback import RollbackService
from dockyard.execution.scheduling import TASK_HEALTH_MONITOR, Scheduler
from dockyard.persistence import ApplicationRepository, DeploymentRepository, ServerRepository
from dockyard.remote.executor import RemoteExecutor
from dockyard.remote.shell import quote

logger = get_logger(__name__)

ERROR_PATTERN = "error|exception|fatal|panic"


class MonitorOutcome(str, Enum):
    SKIPPED = "skipped"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    ROLLED_BACK = "rolled_back"
    COMPLETED = "completed"


@dataclass(frozen=True)
class HealthSample:
    status: str
    restart_count: int
    error_count: int = 0


def evaluate_sample(
    app: Application,
    window: HealthCheckWindow,
    sample: HealthSample,
    *,
    error_threshold: int,
) -> RollbackReason | None:
    """Return why *sample* counts as a failed check, or ``None`` if it passed."""
    restart_delta = sample.restart_count - window.initial_restart_count
    if app.rollback_on_crash_loop and restart_delta >= app.rollback_max_restarts:
        return RollbackReason.CRASH_LOOP
    if sample.status.startswith("exited"):
        return RollbackReason.CONTAINER_EXITED
    if (
        sample.status.endswith("unhealthy")
        and app.health_check_enabled
        and app.rollback_on_health_check_fail
    ):
        return RollbackReason.HEALTH_CHECK_FAILED
    if error_threshold > 0 and sample.error_count >= error_threshold:
        return RollbackReason.ERROR_RATE
    return None


def initial_window(
    app: Application, deployment: DeploymentRecord, settings: DockyardSettings
) -> HealthCheckWindow:
    """Poll state for the first check of a deployment that just finished."""
    return HealthCheckWindow.for_window(
        deployment.id,
        window_seconds=app.rollback_validation_seconds or settings.health_validation_window_seconds,
        interval_seconds=settings.health_check_interval_seconds,
        initial_restart_count=app.restart_count,
    )


class HealthMonitor:
    """Runs one health check of a finished deployment."""

    def __init__(
        self,
        *,
        deployments: DeploymentRepository,
        applications: ApplicationRepository,
        servers: ServerRepository,
        executor: RemoteExecutor,
        rollback: RollbackService,
        scheduler: Scheduler,
        settings: DockyardSettings | None = None,
    ):
        self._deployments = deployments
        self._applications = applications
        self._servers = servers
        self._executor = executor
        self._rollback = rollback
        self._scheduler = scheduler
        self._settings = settings or get_settings()

    def window_for(self, app: Application, deployment: DeploymentRecord) -> HealthCheckWindow:
        return initial_window(app, deployment, self._settings)

    def run(self, window: HealthCheckWindow) -> MonitorOutcome:
        deployment = self._deployments.get(window.deployment_id)
        if deployment is None:
            logger.info("health_monitor.deployment_missing", deployment_id=window.deployment_id)
            return MonitorOutcome.SKIPPED

        app = self._applications.get(deployment.application_id)
        if app is None or not app.auto_rollback_enabled:
            return MonitorOutcome.SKIPPED
        if deployment.is_preview or deployment.status != DeploymentStatus.FINISHED:
            return MonitorOutcome.SKIPPED

        sample = self.sample(app, deployment)
        reason = evaluate_sample(
            app, window, sample, error_threshold=self._settings.error_count_threshold
        )
        following = window.next_check(failed=reason is not None)
        check_number = window.current_check + 1

        if reason is not None:
            logger.warning(
                "health_monitor.check_failed",
                deployment_id=deployment.id,
                check=check_number,
                total=window.total_checks,
                reason=reason.value,
                consecutive_failures=following.consecutive_failures,
            )
            if following.consecutive_failures >= self._settings.rollback_failure_threshold:
                self._rollback.trigger(
                    app,
                    deployment,
                    reason.value,
                    {
                        "status": sample.status,
                        "restart_count": sample.restart_count,
                        "restart_delta": sample.restart_count - window.initial_restart_count,
                        "check_number": check_number,
                        "error_count": sample.error_count,
                    },
                )
                return MonitorOutcome.ROLLED_BACK

        if following.current_check >= following.total_checks:
            logger.info(
                "health_monitor.completed",
                deployment_id=deployment.id,
                checks=following.current_check,
            )
            return MonitorOutcome.COMPLETED

        self._scheduler.schedule(
            TASK_HEALTH_MONITOR,
            following.to_task_kwargs(),
            countdown=window.check_interval_seconds,
        )
        return MonitorOutcome.UNHEALTHY if reason is not None else MonitorOutcome.HEALTHY

    def sample(self, app: Application, deployment: DeploymentRecord) -> HealthSample:
        """Current runtime status plus the error count of the last interval's logs.

        A failed log scan counts as zero errors; the status fields alone then
        decide the check.
        """
        return HealthSample(
            status=app.status or "",
            restart_count=app.restart_count,
            error_count=self._count_log_errors(deployment),
        )

    def _count_log_errors(self, deployment: DeploymentRecord) -> int:
        if not deployment.container_name:
            return 0
        server = self._servers.get(deployment.server_id)
        if server is None:
            return 0

        interval = self._settings.health_check_interval_seconds
        command = (
            f"docker logs --since {int(interval)}s {quote(deployment.container_name)} 2>&1 "
            f"| grep -ciE {quote(ERROR_PATTERN)} || true"
        )
        try:
            result = self._executor.run(server.host, command, timeout_seconds=30)
        except DockyardError as exc:
            logger.warning("health_monitor.log_scan_failed", deployment_id=deployment.id, error=str(exc))
            return 0
        try:
            return int(result.output or 0)
        except ValueError:
            return 0


__all__ = ["MonitorOutcome", "HealthSample", "evaluate_sample", "initial_window", "HealthMonitor", "ERROR_PATTERN"]
