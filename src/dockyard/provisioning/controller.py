"""Resource threshold control loop.

``check_server`` runs per server on a schedule (Celery beat, configured by
the host application)::

    metrics disabled                          → no-op
    latest cpu / memory / disk sample
      ├── warning breach  → notify once per 15 min per server+metric
      └── critical breach → notify once per 30 min per server+metric
                            reason: cpu_critical > memory_critical > disk_critical
                            eligible? → enqueue the auto-provision job

Eligibility, in order: auto-provisioning enabled, today's auto-provisioned
servers below the daily cap, no provisioning in flight for the team, and
no provisioning cooldown for the server (6 h by default).

Dedup state lives in the injected :class:`CacheBackend`; ``add()`` is the
set-if-absent primitive, so concurrent checks of one server send one alert.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time

from dockyard.core.cache import CacheBackend
from dockyard.core.events import Event, EventEmitter, EventType, emit_safely
from dockyard.core.logging import get_logger
from dockyard.core.models import Server, utcnow
from dockyard.core.settings import DockyardSettings, get_settings
from dockyard.execution.scheduling import TASK_AUTO_PROVISION, Scheduler
from dockyard.persistence import ProvisioningEventRepository, ServerRepository, ThresholdPolicyRepository
from dockyard.provisioning.models import MetricSnapshot, MetricsSource, ResourceThresholdPolicy
from dockyard.provisioning.thresholds import (
    Breach,
    Severity,
    evaluate,
    latest_snapshot,
    select_critical_reason,
)

logger = get_logger(__name__)


def alert_key(server_id: int, metric: str, severity: Severity) -> str:
    return f"threshold-alert:{server_id}:{metric}:{severity.value}"


def cooldown_key(server_id: int) -> str:
    return f"auto-provision-cooldown:{server_id}"


def start_of_day(now: datetime | None = None) -> datetime:
    now = now or utcnow()
    return datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)


@dataclass
class CheckResult:
    """What one ``check_server`` call decided."""

    server_id: int
    snapshot: MetricSnapshot | None = None
    breaches: list[Breach] = field(default_factory=list)
    notified: list[str] = field(default_factory=list)
    critical_reason: str | None = None
    provisioning_requested: bool = False
    declined_reason: str | None = None


class ProvisioningGuards:
    """Eligibility checks shared by the controller and the provisioning job."""

    def __init__(
        self,
        *,
        servers: ServerRepository,
        events: ProvisioningEventRepository,
        cache: CacheBackend,
    ):
        self._servers = servers
        self._events = events
        self._cache = cache

    def decline_reason(self, server: Server, policy: ResourceThresholdPolicy) -> str | None:
        """Why provisioning must not start now, or ``None`` when it may."""
        if not policy.auto_provision_enabled:
            return "Auto-provisioning is disabled"
        created_today = self._servers.count_auto_provisioned_since(server.team_id, start_of_day())
        if created_today >= policy.max_servers_per_day:
            return "Daily auto-provisioning limit reached"
        if self._events.has_active(server.team_id):
            return "Another auto-provisioning is already in progress"
        if self._cache.exists(cooldown_key(server.id)):
            return "Auto-provisioning cooldown active for server"
        return None


class AutoProvisionController:
    """Evaluates one server's resource usage and reacts to breaches."""

    def __init__(
        self,
        *,
        metrics: MetricsSource,
        policies: ThresholdPolicyRepository,
        servers: ServerRepository,
        events: ProvisioningEventRepository,
        cache: CacheBackend,
        scheduler: Scheduler,
        emitter: EventEmitter,
        settings: DockyardSettings | None = None,
    ):
        self._metrics = metrics
        self._policies = policies
        self._cache = cache
        self._scheduler = scheduler
        self._emitter = emitter
        self._settings = settings or get_settings()
        self._guards = ProvisioningGuards(servers=servers, events=events, cache=cache)

    def policy_for(self, team_id: int | None) -> ResourceThresholdPolicy:
        policy = self._policies.for_team(team_id)
        if policy is None:
            policy = ResourceThresholdPolicy(
                team_id=team_id,
                cooldown_minutes=self._settings.provisioning_cooldown_minutes,
            )
        return policy

    def check_server(self, server: Server) -> CheckResult:
        result = CheckResult(server_id=server.id)
        if not server.metrics_enabled:
            return result

        series = self._metrics.fetch(server.id)
        if series is None:
            logger.info("resource_check.no_metrics", server_id=server.id)
            return result

        policy = self.policy_for(server.team_id)
        result.snapshot = latest_snapshot(series)
        result.breaches = evaluate(result.snapshot, policy)
        if not result.breaches:
            return result

        for breach in result.breaches:
            if self._notify_once(server, breach):
                result.notified.append(breach.reason)

        result.critical_reason = select_critical_reason(result.breaches)
        if result.critical_reason is None:
            return result

        result.declined_reason = self._guards.decline_reason(server, policy)
        if result.declined_reason is not None:
            logger.info(
                "resource_check.provisioning_declined",
                server_id=server.id,
                reason=result.critical_reason,
                declined=result.declined_reason,
            )
            return result

        self._scheduler.schedule(
            TASK_AUTO_PROVISION,
            {
                "server_id": server.id,
                "reason": result.critical_reason,
                "metrics": result.snapshot.to_dict(),
            },
            queue="high",
        )
        result.provisioning_requested = True
        logger.warning(
            "resource_check.provisioning_requested",
            server_id=server.id,
            reason=result.critical_reason,
        )
        emit_safely(self._emitter, Event(
            event_type=EventType.AUTO_PROVISION_REQUESTED,
            source="resource-monitor",
            team_id=server.team_id,
            payload={
                "server_id": server.id,
                "server_name": server.name,
                "reason": result.critical_reason,
                "metrics": result.snapshot.to_dict(),
            },
        ))
        return result

    def _notify_once(self, server: Server, breach: Breach) -> bool:
        minutes = (
            self._settings.critical_notification_cooldown_minutes
            if breach.severity == Severity.CRITICAL
            else self._settings.warning_notification_cooldown_minutes
        )
        key = alert_key(server.id, breach.metric.value, breach.severity)
        if not self._cache.add(key, utcnow().isoformat(), ttl_seconds=minutes * 60):
            return False

        logger.warning(
            "resource_check.threshold_breached",
            server_id=server.id,
            metric=breach.metric.value,
            severity=breach.severity.value,
            value=breach.value,
            threshold=breach.threshold,
        )
        emit_safely(self._emitter, Event(
            event_type=EventType.RESOURCE_THRESHOLD_BREACHED,
            source="resource-monitor",
            team_id=server.team_id,
            payload={
                "server_id": server.id,
                "server_name": server.name,
                "metric": breach.metric.value,
                "severity": breach.severity.value,
                "value": breach.value,
                "threshold": breach.threshold,
            },
        ))
        return True


__all__ = [
    "alert_key",
    "cooldown_key",
    "start_of_day",
    "CheckResult",
    "ProvisioningGuards",
    "AutoProvisionController",
]
