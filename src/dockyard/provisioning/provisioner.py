"""Auto-provisioning job.

Creates one new server at the team's cloud provider after a critical
resource breach.  Runs under the global ``auto-provision-server`` lock;
when the lock is held the job declines silently, since another run is
already adding capacity.

Event lifecycle::

    pending → provisioning → installing → ready
                    └──────────┴──────────→ failed

The per-server cooldown key is written *before* the provider is called,
so a crash half-way still suppresses a second attempt for the cooldown
window.
"""

from __future__ import annotations

import secrets
import uuid
from typing import Any

from dockyard.core.cache import CacheBackend
from dockyard.core.errors import DockyardError, ProvisioningError, RateLimitError
from dockyard.core.events import Event, EventEmitter, EventType, emit_safely
from dockyard.core.logging import get_logger
from dockyard.core.models import PrivateKey, Server
from dockyard.core.settings import DockyardSettings, get_settings
from dockyard.execution.locks import PROVISIONING_LOCK_KEY, ResourceLock, hold
from dockyard.execution.scheduling import TASK_AUTO_PROVISION, Scheduler
from dockyard.persistence import (
    PrivateKeyRepository,
    ProvisioningEventRepository,
    ServerRepository,
    ThresholdPolicyRepository,
)
from dockyard.provisioning.controller import ProvisioningGuards, cooldown_key
from dockyard.provisioning.models import (
    CloudProvider,
    ProvisioningEvent,
    ProvisionRequest,
    ResourceThresholdPolicy,
)
from dockyard.remote.executor import RemoteExecutor, run_checked

logger = get_logger(__name__)

DOCKER_INSTALL_COMMAND = (
    "command -v docker >/dev/null 2>&1 || (curl -fsSL https://get.docker.com | sh) "
    "&& docker network inspect dockyard >/dev/null 2>&1 || docker network create --attachable dockyard"
)


class AutoProvisioner:
    """Runs the auto-provisioning job for one trigger server."""

    def __init__(
        self,
        *,
        servers: ServerRepository,
        keys: PrivateKeyRepository,
        policies: ThresholdPolicyRepository,
        events: ProvisioningEventRepository,
        providers: dict[str, CloudProvider],
        executor: RemoteExecutor,
        lock: ResourceLock,
        cache: CacheBackend,
        scheduler: Scheduler,
        emitter: EventEmitter,
        settings: DockyardSettings | None = None,
    ):
        self._servers = servers
        self._keys = keys
        self._policies = policies
        self._events = events
        self._providers = providers
        self._executor = executor
        self._lock = lock
        self._cache = cache
        self._scheduler = scheduler
        self._emitter = emitter
        self._settings = settings or get_settings()
        self._guards = ProvisioningGuards(servers=servers, events=events, cache=cache)

    def run(self, server_id: int, reason: str, metrics: dict[str, Any] | None = None) -> ProvisioningEvent | None:
        owner = f"provision:{server_id}:{uuid.uuid4().hex[:8]}"
        with hold(self._lock, PROVISIONING_LOCK_KEY, owner, self._settings.provisioning_lock_seconds) as acquired:
            if not acquired:
                logger.info("auto_provision.lock_held", server_id=server_id)
                return None
            return self._provision(server_id, reason, metrics or {})

    def _provision(self, server_id: int, reason: str, metrics: dict[str, Any]) -> ProvisioningEvent | None:
        server = self._servers.get(server_id)
        if server is None:
            logger.warning("auto_provision.server_missing", server_id=server_id)
            return None

        policy = self._policies.for_team(server.team_id) or ResourceThresholdPolicy(
            team_id=server.team_id,
            cooldown_minutes=self._settings.provisioning_cooldown_minutes,
        )
        declined = self._guards.decline_reason(server, policy)
        if declined is not None:
            logger.info("auto_provision.declined", server_id=server.id, reason=declined)
            return None

        token = self._token(policy)
        if token is None:
            logger.warning("auto_provision.declined", server_id=server.id, reason="No cloud provider token found for auto-provisioning")
            return None
        key = self._private_key(server)
        if key is None:
            logger.warning("auto_provision.declined", server_id=server.id, reason="No private key found for auto-provisioning")
            return None

        cooldown = cooldown_key(server.id)
        self._cache.set(cooldown, reason, ttl_seconds=policy.cooldown_minutes * 60)

        event = self._events.add(ProvisioningEvent(
            team_id=server.team_id,
            trigger_server_id=server.id,
            trigger_reason=reason,
            trigger_metrics=dict(metrics),
        ))
        logger.info("auto_provision.started", server_id=server.id, reason=reason, event_id=event.id)

        try:
            provider = self._providers.get(policy.provider)
            if provider is None:
                raise ProvisioningError(f"Unsupported provider: {policy.provider}")

            event.mark_provisioning()
            self._events.update(event)
            created = provider.create_server(
                ProvisionRequest(
                    name=f"{self._settings.auto_server_name_prefix}{secrets.token_hex(4)}",
                    server_type=policy.server_type,
                    location=policy.location,
                    ssh_public_key=key.public_key,
                    team_id=server.team_id,
                    labels={"dockyard-trigger-server": server.uuid or str(server.id)},
                ),
                token,
            )

            new_server = self._servers.add(Server(
                uuid=str(uuid.uuid4()),
                name=created.name,
                ip=created.ip,
                team_id=server.team_id,
                private_key_id=key.id,
                private_key_path=key.path,
                functional=False,
                auto_provisioned=True,
                provider_server_id=created.provider_server_id,
            ))
            event.mark_installing(new_server.id, created.provider_server_id)
            self._events.update(event)

            run_checked(
                self._executor,
                new_server.host,
                DOCKER_INSTALL_COMMAND,
                timeout_seconds=self._settings.docker_install_timeout_seconds,
                error_message="Docker installation failed",
            )
            new_server.functional = True
            self._servers.update(new_server)

            event.mark_ready()
            self._events.update(event)
        except RateLimitError as exc:
            retry_after = exc.retry_after or 60
            event.mark_failed(f"Rate limit exceeded during auto-provisioning, retrying in {retry_after}s")
            self._events.update(event)
            self._cache.delete(cooldown)
            self._scheduler.schedule(
                TASK_AUTO_PROVISION,
                {"server_id": server.id, "reason": reason, "metrics": dict(metrics)},
                countdown=retry_after,
                queue="high",
            )
            logger.warning("auto_provision.rate_limited", server_id=server.id, retry_after=retry_after)
            return event
        except DockyardError as exc:
            event.mark_failed(exc.message)
            self._events.update(event)
            logger.error("auto_provision.failed", server_id=server.id, error=exc.message, event_id=event.id)
            emit_safely(self._emitter, Event(
                event_type=EventType.AUTO_PROVISION_FAILED,
                source="auto-provision",
                team_id=server.team_id,
                payload={"trigger_server_id": server.id, "reason": reason, "error": exc.message},
            ))
            return event
        except Exception as exc:
            event.mark_failed(str(exc))
            self._events.update(event)
            raise

        logger.info(
            "auto_provision.completed",
            server_id=server.id,
            new_server_id=new_server.id,
            provider_server_id=created.provider_server_id,
        )
        emit_safely(self._emitter, Event(
            event_type=EventType.AUTO_PROVISION_COMPLETED,
            source="auto-provision",
            team_id=server.team_id,
            payload={
                "trigger_server_id": server.id,
                "server_id": new_server.id,
                "server_name": new_server.name,
                "ip": new_server.ip,
                "reason": reason,
            },
        ))
        return event

    def _token(self, policy: ResourceThresholdPolicy) -> str | None:
        for secret in (self._settings.auto_provision_api_key, policy.cloud_token):
            if secret is not None and secret.get_secret_value():
                return secret.get_secret_value()
        return None

    def _private_key(self, server: Server) -> PrivateKey | None:
        if server.private_key_id:
            key = self._keys.get(server.private_key_id)
            if key is not None:
                return key
        for key in self._keys.list_for_team(server.team_id):
            if not key.is_git_related:
                return key
        return None


__all__ = ["DOCKER_INSTALL_COMMAND", "AutoProvisioner"]
