"""Canary rollout controller.

Shifts traffic from the previous (stable) container to the new (canary)
container in steps, 10% → 25% → 50% → 100% by default, one step every
``canary_step_minutes``.  Traffic weights are a Traefik file-provider
config written next to the proxy::

    <proxy_path>/dynamic/dockyard-canary-<app uuid>.yaml

Every step probes the canary container first.  Two failed probes at the
same step roll back: weight 0, canary removed, config removed.  When the
last step passes the canary is promoted: weight 100, stable removed,
canary renamed to the stable name, config removed.

Like the health monitor, each invocation does one step and schedules the
next through the :class:`Scheduler`.
"""

from __future__ import annotations

import base64
from enum import Enum
from typing import Any

import yaml

from dockyard.core.errors import DockyardError
from dockyard.core.events import Event, EventEmitter, EventType, emit_safely
from dockyard.core.logging import get_logger
from dockyard.core.models import Server, utcnow
from dockyard.core.settings import DockyardSettings, get_settings
from dockyard.deploy.models import (
    Application,
    CanaryState,
    DeploymentRecord,
    DeploymentStatus,
    RollbackEvent,
    RollbackStatus,
    RollbackTriggerType,
)
from dockyard.execution.scheduling import TASK_CANARY_ADVANCE, Scheduler
from dockyard.persistence import (
    ApplicationRepository,
    CanaryStateRepository,
    DeploymentRepository,
    RollbackEventRepository,
    ServerRepository,
)
from dockyard.remote.executor import RemoteExecutor, run_checked
from dockyard.remote.shell import quote

logger = get_logger(__name__)

DEFAULT_CANARY_STEPS = [10, 25, 50, 100]
PROXY_RELOAD_SECONDS = 5


class CanaryOutcome(str, Enum):
    SKIPPED = "skipped"
    STARTED = "started"
    ADVANCED = "advanced"
    RETRYING = "retrying"
    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"
    STOPPED = "stopped"


def stable_weight(canary_weight: int) -> int:
    return max(0, 100 - canary_weight)


def canary_port(app: Application) -> int:
    ports = app.exposed_ports
    return ports[0] if ports and ports[0] > 0 else 80


def canary_fqdn(app: Application) -> str:
    return app.first_fqdn or f"{app.uuid}.local"


def canary_config_path(proxy_path: str, app: Application) -> str:
    return f"{proxy_path.rstrip('/')}/dynamic/dockyard-canary-{app.uuid}.yaml"


def render_traefik_config(app: Application, state: CanaryState, canary_weight: int) -> str:
    """Traefik dynamic config splitting traffic between stable and canary."""
    uuid = app.uuid
    port = canary_port(app)
    config: dict[str, Any] = {
        "http": {
            "services": {
                f"{uuid}-canary-weighted": {
                    "weighted": {
                        "services": [
                            {"name": f"{uuid}-stable-backend", "weight": stable_weight(canary_weight)},
                            {"name": f"{uuid}-canary-backend", "weight": canary_weight},
                        ],
                    },
                },
                f"{uuid}-stable-backend": {
                    "loadBalancer": {"servers": [{"url": f"http://{state.stable_container}:{port}"}]},
                },
                f"{uuid}-canary-backend": {
                    "loadBalancer": {"servers": [{"url": f"http://{state.canary_container}:{port}"}]},
                },
            },
            "routers": {
                f"{uuid}-canary": {
                    "entryPoints": ["web", "websecure"],
                    "service": f"{uuid}-canary-weighted",
                    "rule": f"Host(`{canary_fqdn(app)}`)",
                    "tls": {"certResolver": "letsencrypt"},
                },
            },
        },
    }
    return yaml.safe_dump(config, sort_keys=False, default_flow_style=False)


def container_probe_command(container: str) -> str:
    return (
        "docker inspect --format='{{.State.Status}} "
        "{{if .State.Health}}{{.State.Health.Status}}{{else}}none{{end}}' "
        f"{quote(container)}"
    )


def probe_passed(output: str) -> bool:
    """``"running healthy"`` or ``"running none"`` pass; anything else fails."""
    parts = output.strip().split()
    if not parts or parts[0] != "running":
        return False
    health = parts[1] if len(parts) > 1 else "none"
    return health in ("healthy", "none", "starting")


class CanaryController:
    """Drives one canary rollout step at a time."""

    def __init__(
        self,
        *,
        deployments: DeploymentRepository,
        applications: ApplicationRepository,
        servers: ServerRepository,
        canaries: CanaryStateRepository,
        rollbacks: RollbackEventRepository,
        executor: RemoteExecutor,
        scheduler: Scheduler,
        emitter: EventEmitter,
        settings: DockyardSettings | None = None,
    ):
        self._deployments = deployments
        self._applications = applications
        self._servers = servers
        self._canaries = canaries
        self._rollbacks = rollbacks
        self._executor = executor
        self._scheduler = scheduler
        self._emitter = emitter
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def begin(self, deployment_id: int) -> CanaryOutcome:
        """Start a rollout for a deployment that just finished."""
        loaded = self._load(deployment_id)
        if loaded is None:
            return CanaryOutcome.SKIPPED
        deployment, app, server = loaded

        stable = deployment.previous_container
        canary = deployment.container_name
        if not stable or not canary or not self._is_running(server, stable):
            deployment.append_log("Canary mode: no running stable container, keeping the normal rollout.")
            self._deployments.update(deployment)
            logger.info("canary.skipped", deployment_id=deployment.id, stable=stable)
            return CanaryOutcome.SKIPPED

        state = CanaryState(
            deployment_id=deployment.id,
            application_id=app.id,
            canary_container=canary,
            stable_container=stable,
            steps=list(app.canary_steps or DEFAULT_CANARY_STEPS),
            step_minutes=app.canary_step_minutes,
        )
        self._write_weight(server, app, state, state.steps[0])
        self._canaries.save(state)

        deployment.append_log(
            f"Canary started: {canary} receives {state.current_weight}% of traffic, {stable} stays stable."
        )
        self._deployments.update(deployment)
        logger.info(
            "canary.started",
            deployment_id=deployment.id,
            canary=canary,
            stable=stable,
            weight=state.current_weight,
        )
        self._schedule_next(state, state.step_seconds)
        return CanaryOutcome.STARTED

    def advance(self, deployment_id: int) -> CanaryOutcome:
        """Probe the canary and move one step forward, retry, promote or roll back."""
        state = self._canaries.get(deployment_id)
        if state is None:
            return CanaryOutcome.STOPPED

        loaded = self._load(deployment_id)
        if loaded is None:
            self._canaries.delete(deployment_id)
            return CanaryOutcome.STOPPED
        deployment, app, server = loaded

        if not self._probe(server, state.canary_container):
            state.consecutive_failures += 1
            logger.warning(
                "canary.probe_failed",
                deployment_id=deployment.id,
                step=state.current_step,
                consecutive_failures=state.consecutive_failures,
            )
            if state.consecutive_failures >= self._settings.canary_failure_threshold:
                self.rollback(deployment, app, server, state, "health_check_failed")
                return CanaryOutcome.ROLLED_BACK
            self._canaries.save(state)
            self._schedule_next(state, self._settings.health_check_interval_seconds)
            return CanaryOutcome.RETRYING

        state.consecutive_failures = 0
        if state.is_last_step:
            self.promote(deployment, app, server, state)
            return CanaryOutcome.PROMOTED

        state.current_step += 1
        self._write_weight(server, app, state, state.steps[state.current_step])
        if state.is_last_step and state.current_weight >= 100:
            self.promote(deployment, app, server, state)
            return CanaryOutcome.PROMOTED

        self._canaries.save(state)
        deployment.append_log(f"Canary step {state.current_step + 1}/{len(state.steps)}: {state.current_weight}% of traffic.")
        self._deployments.update(deployment)
        self._schedule_next(state, state.step_seconds)
        return CanaryOutcome.ADVANCED

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def promote(self, deployment: DeploymentRecord, app: Application, server: Server, state: CanaryState) -> None:
        if state.current_weight < 100:
            self._write_weight(server, app, state, 100)

        stable = quote(state.stable_container)
        canary = quote(state.canary_container)
        self._executor.run(
            server.host,
            f"sleep {PROXY_RELOAD_SECONDS}; "
            f"docker rm -f {stable} >/dev/null 2>&1 || true; "
            f"docker rename {canary} {stable} >/dev/null 2>&1 || true",
            timeout_seconds=120,
        )
        self._remove_config(server, app)
        self._canaries.delete(deployment.id)

        deployment.container_name = state.stable_container
        deployment.append_log(
            f"Canary promoted: {state.canary_container} now serves 100% of traffic as {state.stable_container}."
        )
        self._deployments.update(deployment)
        logger.info("canary.promoted", deployment_id=deployment.id, container=state.stable_container)
        emit_safely(self._emitter, Event(
            event_type=EventType.CANARY_PROMOTED,
            source="canary",
            team_id=app.team_id,
            payload={
                "application_id": app.id,
                "application_name": app.name,
                "deployment_uuid": deployment.uuid,
            },
        ))

    def rollback(
        self,
        deployment: DeploymentRecord,
        app: Application,
        server: Server,
        state: CanaryState,
        reason: str,
    ) -> RollbackEvent:
        self._write_weight(server, app, state, 0)
        self._executor.run(
            server.host,
            f"sleep {PROXY_RELOAD_SECONDS}; docker rm -f {quote(state.canary_container)} >/dev/null 2>&1 || true",
            timeout_seconds=120,
        )
        self._remove_config(server, app)
        self._canaries.delete(deployment.id)

        event = self._rollbacks.add(RollbackEvent(
            application_id=app.id,
            failed_deployment_id=deployment.id,
            trigger_reason=f"canary_{reason}",
            trigger_type=RollbackTriggerType.AUTOMATIC,
            status=RollbackStatus.SUCCESS,
            from_commit=deployment.commit,
            metrics_snapshot={
                "canary_container": state.canary_container,
                "stable_container": state.stable_container,
                "rollback_reason": reason,
                "step": state.current_step,
                "weight": state.current_weight,
                "rolled_back_at": utcnow().isoformat(),
            },
            completed_at=utcnow(),
        ))

        deployment.container_name = state.stable_container
        deployment.append_log(
            f"Canary rolled back due to: {reason}. {state.stable_container} is serving 100% of traffic."
        )
        self._deployments.update(deployment)
        logger.warning("canary.rolled_back", deployment_id=deployment.id, reason=reason)
        emit_safely(self._emitter, Event(
            event_type=EventType.CANARY_ROLLED_BACK,
            source="canary",
            team_id=app.team_id,
            payload={
                "application_id": app.id,
                "application_name": app.name,
                "deployment_uuid": deployment.uuid,
                "reason": f"canary_{reason}",
            },
        ))
        return event

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, deployment_id: int) -> tuple[DeploymentRecord, Application, Server] | None:
        deployment = self._deployments.get(deployment_id)
        if deployment is None or deployment.status != DeploymentStatus.FINISHED or deployment.is_preview:
            return None
        app = self._applications.get(deployment.application_id)
        server = self._servers.get(deployment.server_id)
        if app is None or server is None:
            return None
        return deployment, app, server

    def _schedule_next(self, state: CanaryState, countdown: int) -> None:
        self._scheduler.schedule(TASK_CANARY_ADVANCE, state.to_task_kwargs(), countdown=countdown)

    def _write_weight(self, server: Server, app: Application, state: CanaryState, weight: int) -> None:
        path = canary_config_path(self._settings.proxy_path, app)
        content = base64.b64encode(render_traefik_config(app, state, weight).encode()).decode()
        directory = path.rsplit("/", 1)[0]
        run_checked(
            self._executor,
            server.host,
            f"mkdir -p {quote(directory)} && echo {quote(content)} | base64 -d > {quote(path)}",
            timeout_seconds=60,
            error_message="Failed to write canary proxy config",
        )
        state.current_weight = weight
        logger.info(
            "canary.traffic_updated",
            deployment_id=state.deployment_id,
            canary=weight,
            stable=stable_weight(weight),
        )

    def _remove_config(self, server: Server, app: Application) -> None:
        path = canary_config_path(self._settings.proxy_path, app)
        try:
            self._executor.run(server.host, f"rm -f {quote(path)}", timeout_seconds=60)
        except DockyardError as exc:
            logger.warning("canary.config_cleanup_failed", path=path, error=str(exc))

    def _is_running(self, server: Server, container: str) -> bool:
        try:
            result = self._executor.run(server.host, container_probe_command(container), timeout_seconds=30)
        except DockyardError:
            return False
        return result.ok and result.output.startswith("running")

    def _probe(self, server: Server, container: str) -> bool:
        try:
            result = self._executor.run(server.host, container_probe_command(container), timeout_seconds=30)
        except DockyardError as exc:
            logger.warning("canary.probe_error", container=container, error=str(exc))
            return False
        return result.ok and probe_passed(result.output)


__all__ = [
    "DEFAULT_CANARY_STEPS",
    "CanaryOutcome",
    "stable_weight",
    "canary_port",
    "canary_fqdn",
    "canary_config_path",
    "render_traefik_config",
    "container_probe_command",
    "probe_passed",
    "CanaryController",
]
