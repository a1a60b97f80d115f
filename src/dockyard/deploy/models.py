"""Deployment domain records.

Status enums follow the transition-table pattern: every allowed move is
listed in ``DEPLOYMENT_VALID_TRANSITIONS`` and anything else raises
:class:`InvalidTransitionError`.  Terminal states map to an empty set, so
once a deployment is FINISHED/FAILED/CANCELLED_BY_USER/TIMED_OUT nothing
moves it again.

Records are plain dataclasses; persistence goes through the repository
protocols in :mod:`dockyard.persistence`.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from dockyard.core.errors import InvalidTransitionError
from dockyard.core.formatting import log_line
from dockyard.core.models import utcnow


def _new_uuid() -> str:
    return str(uuid.uuid4())


# =============================================================================
# ENUMS
# =============================================================================


class DeploymentStatus(str, Enum):
    """Deployment lifecycle status.

    Transitions: PENDING_APPROVAL → QUEUED → IN_PROGRESS →
    FINISHED | FAILED | CANCELLED_BY_USER | TIMED_OUT
    """

    PENDING_APPROVAL = "pending_approval"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"
    FAILED = "failed"
    CANCELLED_BY_USER = "cancelled-by-user"
    TIMED_OUT = "timed-out"


DEPLOYMENT_VALID_TRANSITIONS: dict[DeploymentStatus, frozenset[DeploymentStatus]] = {
    DeploymentStatus.PENDING_APPROVAL: frozenset({
        DeploymentStatus.QUEUED,
        DeploymentStatus.CANCELLED_BY_USER,
    }),
    DeploymentStatus.QUEUED: frozenset({
        DeploymentStatus.PENDING_APPROVAL,
        DeploymentStatus.IN_PROGRESS,
        DeploymentStatus.FAILED,
        DeploymentStatus.CANCELLED_BY_USER,
        DeploymentStatus.TIMED_OUT,
    }),
    DeploymentStatus.IN_PROGRESS: frozenset({
        DeploymentStatus.FINISHED,
        DeploymentStatus.FAILED,
        DeploymentStatus.CANCELLED_BY_USER,
        DeploymentStatus.TIMED_OUT,
    }),
    DeploymentStatus.FINISHED: frozenset(),
    DeploymentStatus.FAILED: frozenset(),
    DeploymentStatus.CANCELLED_BY_USER: frozenset(),
    DeploymentStatus.TIMED_OUT: frozenset(),
}

TERMINAL_DEPLOYMENT_STATUSES = frozenset(
    status for status, targets in DEPLOYMENT_VALID_TRANSITIONS.items() if not targets
)


def validate_deployment_transition(current: DeploymentStatus, target: DeploymentStatus) -> None:
    """Raise InvalidTransitionError if *current* → *target* is not allowed."""
    if target not in DEPLOYMENT_VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value, "DeploymentStatus")


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class BuildPack(str, Enum):
    DOCKERFILE = "dockerfile"
    DOCKERCOMPOSE = "dockercompose"
    DOCKERIMAGE = "dockerimage"
    STATIC = "static"
    NIXPACKS = "nixpacks"


class DeploymentStrategy(str, Enum):
    ROLLING = "rolling"
    CANARY = "canary"


class RollbackTriggerType(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class RollbackStatus(str, Enum):
    TRIGGERED = "triggered"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RollbackReason(str, Enum):
    CRASH_LOOP = "crash_loop"
    HEALTH_CHECK_FAILED = "health_check_failed"
    CONTAINER_EXITED = "container_exited"
    ERROR_RATE = "error_rate"
    MANUAL = "manual"


# =============================================================================
# RECORDS
# =============================================================================


@dataclass
class Application:
    """Deployable application and its rollout settings."""

    id: int = 0
    uuid: str = field(default_factory=_new_uuid)
    name: str = ""
    team_id: int | None = None
    server_id: int | None = None

    # Source / build
    git_repository: str = ""
    git_branch: str = "main"
    build_pack: BuildPack = BuildPack.NIXPACKS
    base_directory: str = "/"
    dockerfile_location: str = "/Dockerfile"
    docker_compose_location: str = "/docker-compose.yaml"
    docker_image: str = ""
    docker_image_tag: str = "latest"
    static_publish_directory: str = "/"
    ports_exposes: str = "3000"
    ports_mappings: str = ""
    fqdn: str = ""
    network: str = "dockyard"

    # Health check
    health_check_enabled: bool = False
    health_check_method: str = "GET"
    health_check_scheme: str = "http"
    health_check_host: str = "localhost"
    health_check_port: str | None = None
    health_check_path: str = "/"
    health_check_interval: int = 5
    health_check_timeout: int = 5
    health_check_retries: int = 10
    health_check_start_period: int = 5

    # Rollout
    auto_rollback_enabled: bool = False
    rollback_validation_seconds: int | None = None
    rollback_max_restarts: int = 3
    rollback_on_health_check_fail: bool = True
    rollback_on_crash_loop: bool = True
    deployment_strategy: DeploymentStrategy = DeploymentStrategy.ROLLING
    canary_steps: list[int] = field(default_factory=lambda: [10, 25, 50, 100])
    canary_step_minutes: int = 5

    consistent_container_name: bool = False
    custom_internal_name: str | None = None

    # Runtime (refreshed by the control plane's status sync)
    status: str = "exited"
    restart_count: int = 0

    @property
    def exposed_ports(self) -> list[int]:
        return [int(p) for p in self.ports_exposes.replace(" ", "").split(",") if p.isdigit()]

    @property
    def first_fqdn(self) -> str | None:
        """First configured domain without its scheme."""
        for entry in self.fqdn.split(","):
            entry = entry.strip()
            if entry:
                return entry.split("://", 1)[-1].rstrip("/")
        return None


@dataclass
class DeploymentRecord:
    """One queued deployment. Never deleted; terminal records are history."""

    id: int = 0
    uuid: str = field(default_factory=_new_uuid)
    application_id: int = 0
    server_id: int = 0
    status: DeploymentStatus = DeploymentStatus.QUEUED

    commit: str = "HEAD"
    image: str | None = None
    container_name: str | None = None
    previous_container: str | None = None
    is_promotion: bool = False
    promoted_from_image: str | None = None
    rollback: bool = False
    restart_only: bool = False
    force_rebuild: bool = False
    pull_request_id: int = 0

    requires_approval: bool = False
    approval_status: ApprovalStatus | None = None
    approved_by: str | None = None
    approval_note: str | None = None

    worker_host: str | None = None
    logs: list[str] = field(default_factory=list)

    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DEPLOYMENT_STATUSES

    @property
    def is_preview(self) -> bool:
        return bool(self.pull_request_id)

    @property
    def tags(self) -> list[str]:
        return [f"deployment:{self.id}"]

    @property
    def log_text(self) -> str:
        return "\n".join(self.logs)

    def append_log(self, message: str) -> None:
        self.logs.append(log_line(message))

    def transition_to(self, target: DeploymentStatus) -> None:
        """Move to *target*, stamping start/finish times."""
        validate_deployment_transition(self.status, target)
        self.status = target
        if target == DeploymentStatus.IN_PROGRESS:
            self.started_at = utcnow()
        elif target in TERMINAL_DEPLOYMENT_STATUSES:
            self.finished_at = utcnow()


@dataclass
class RollbackEvent:
    """Audit record of one rollback decision."""

    id: int = 0
    application_id: int = 0
    failed_deployment_id: int | None = None
    rollback_deployment_id: int | None = None
    trigger_reason: str = RollbackReason.MANUAL.value
    trigger_type: RollbackTriggerType = RollbackTriggerType.AUTOMATIC
    status: RollbackStatus = RollbackStatus.TRIGGERED
    from_commit: str | None = None
    to_commit: str | None = None
    metrics_snapshot: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    triggered_by_user_id: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    def mark_in_progress(self) -> None:
        self.status = RollbackStatus.IN_PROGRESS

    def mark_success(self) -> None:
        self.status = RollbackStatus.SUCCESS
        self.completed_at = utcnow()

    def mark_failed(self, message: str) -> None:
        self.status = RollbackStatus.FAILED
        self.error_message = message
        self.completed_at = utcnow()

    def mark_skipped(self, message: str) -> None:
        self.status = RollbackStatus.SKIPPED
        self.error_message = message
        self.completed_at = utcnow()


@dataclass
class HealthCheckWindow:
    """Poll state of the post-deploy health monitor.

    Travels in task kwargs between invocations; nothing else keeps it.
    """

    deployment_id: int
    check_interval_seconds: int = 30
    total_checks: int = 60
    current_check: int = 0
    consecutive_failures: int = 0
    initial_restart_count: int = 0

    @classmethod
    def for_window(
        cls,
        deployment_id: int,
        *,
        window_seconds: int,
        interval_seconds: int = 30,
        initial_restart_count: int = 0,
    ) -> HealthCheckWindow:
        interval = max(interval_seconds, 1)
        return cls(
            deployment_id=deployment_id,
            check_interval_seconds=interval,
            total_checks=max(math.ceil(window_seconds / interval), 1),
            initial_restart_count=initial_restart_count,
        )

    @property
    def is_last_check(self) -> bool:
        return self.current_check + 1 >= self.total_checks

    def next_check(self, *, failed: bool) -> HealthCheckWindow:
        """State for the following invocation. A success resets the failure streak."""
        return HealthCheckWindow(
            deployment_id=self.deployment_id,
            check_interval_seconds=self.check_interval_seconds,
            total_checks=self.total_checks,
            current_check=self.current_check + 1,
            consecutive_failures=self.consecutive_failures + 1 if failed else 0,
            initial_restart_count=self.initial_restart_count,
        )

    def to_task_kwargs(self) -> dict[str, int]:
        return {
            "deployment_id": self.deployment_id,
            "check_interval_seconds": self.check_interval_seconds,
            "total_checks": self.total_checks,
            "current_check": self.current_check,
            "consecutive_failures": self.consecutive_failures,
            "initial_restart_count": self.initial_restart_count,
        }

    @classmethod
    def from_task_kwargs(cls, kwargs: dict[str, Any]) -> HealthCheckWindow:
        return cls(**{k: int(v) for k, v in kwargs.items() if k in cls.__dataclass_fields__})


@dataclass
class CanaryState:
    """Progress of one canary rollout."""

    deployment_id: int
    application_id: int
    canary_container: str
    stable_container: str
    steps: list[int] = field(default_factory=lambda: [10, 25, 50, 100])
    step_minutes: int = 5
    current_step: int = 0
    current_weight: int = 0
    consecutive_failures: int = 0
    started_at: datetime = field(default_factory=utcnow)

    @property
    def is_last_step(self) -> bool:
        return self.current_step >= len(self.steps) - 1

    @property
    def step_seconds(self) -> int:
        return self.step_minutes * 60

    def to_task_kwargs(self) -> dict[str, Any]:
        return {
            "deployment_id": self.deployment_id,
            "current_step": self.current_step,
            "consecutive_failures": self.consecutive_failures,
        }


__all__ = [
    "DeploymentStatus",
    "DEPLOYMENT_VALID_TRANSITIONS",
    "TERMINAL_DEPLOYMENT_STATUSES",
    "validate_deployment_transition",
    "ApprovalStatus",
    "BuildPack",
    "DeploymentStrategy",
    "RollbackTriggerType",
    "RollbackStatus",
    "RollbackReason",
    "Application",
    "DeploymentRecord",
    "RollbackEvent",
    "HealthCheckWindow",
    "CanaryState",
]
