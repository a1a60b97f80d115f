"""Collaborators shared by the job entry points.

Celery tasks receive plain ids.  Everything else (repositories, the remote
executor, lock, cache, scheduler and event sinks) comes from the process
wide :class:`Runtime`.  The host application installs its own runtime at
worker start-up with :func:`configure_runtime`; without one,
:func:`get_runtime` builds a default from :class:`DockyardSettings` with
in-memory repositories.

Example:
    from dockyard.execution.runtime import Runtime, configure_runtime

    configure_runtime(Runtime(deployments=SqlDeploymentRepository(engine), ...))
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field

from dockyard.backup.pipelines import BackupPipeline, RestorePipeline, RestoreTestPipeline
from dockyard.core.cache import CacheBackend, InMemoryCache, RedisCache
from dockyard.core.events import (
    EventEmitter,
    FanOutEventEmitter,
    LoggingEventEmitter,
    RedisEventEmitter,
)
from dockyard.core.logging import get_logger
from dockyard.core.settings import CacheBackendKind, DockyardSettings, LockBackendKind, get_settings
from dockyard.deploy.canary import CanaryController
from dockyard.deploy.monitor import HealthMonitor
from dockyard.deploy.rollback import RollbackService
from dockyard.deploy.state_machine import DeploymentStateMachine
from dockyard.execution.locks import DatabaseLock, InMemoryLock, RedisLock, ResourceLock
from dockyard.execution.scheduling import RecordingScheduler, Scheduler
from dockyard.persistence import (
    ApplicationRepository,
    BackupExecutionRepository,
    BackupRepository,
    CanaryStateRepository,
    DatabaseRepository,
    DeploymentRepository,
    InMemoryApplicationRepository,
    InMemoryBackupExecutionRepository,
    InMemoryBackupRepository,
    InMemoryCanaryStateRepository,
    InMemoryDatabaseRepository,
    InMemoryDeploymentRepository,
    InMemoryPrivateKeyRepository,
    InMemoryProvisioningEventRepository,
    InMemoryRollbackEventRepository,
    InMemoryServerRepository,
    InMemoryThresholdPolicyRepository,
    InMemoryTransferRepository,
    PrivateKeyRepository,
    ProvisioningEventRepository,
    RollbackEventRepository,
    ServerRepository,
    ThresholdPolicyRepository,
    TransferRepository,
)
from dockyard.provisioning.controller import AutoProvisionController
from dockyard.provisioning.models import CloudProvider, MetricsSource, ServerMetrics
from dockyard.provisioning.provisioner import AutoProvisioner
from dockyard.remote.executor import RemoteExecutor, SshExecutor
from dockyard.transfer.pipeline import TransferPipeline
from dockyard.transfer.registry import ResourceRegistry, database_registry

logger = get_logger(__name__)


class NoMetrics:
    """Metrics source for installs without a metrics agent."""

    def fetch(self, server_id: int) -> ServerMetrics | None:
        return None


@dataclass
class Runtime:
    """Everything a job needs besides its ids."""

    executor: RemoteExecutor
    scheduler: Scheduler
    emitter: EventEmitter
    lock: ResourceLock
    cache: CacheBackend
    settings: DockyardSettings = field(default_factory=get_settings)

    deployments: DeploymentRepository = field(default_factory=InMemoryDeploymentRepository)
    applications: ApplicationRepository = field(default_factory=InMemoryApplicationRepository)
    servers: ServerRepository = field(default_factory=InMemoryServerRepository)
    keys: PrivateKeyRepository = field(default_factory=InMemoryPrivateKeyRepository)
    rollbacks: RollbackEventRepository = field(default_factory=InMemoryRollbackEventRepository)
    canaries: CanaryStateRepository = field(default_factory=InMemoryCanaryStateRepository)
    backups: BackupRepository = field(default_factory=InMemoryBackupRepository)
    executions: BackupExecutionRepository = field(default_factory=InMemoryBackupExecutionRepository)
    databases: DatabaseRepository = field(default_factory=InMemoryDatabaseRepository)
    transfers: TransferRepository = field(default_factory=InMemoryTransferRepository)
    provisioning_events: ProvisioningEventRepository = field(default_factory=InMemoryProvisioningEventRepository)
    policies: ThresholdPolicyRepository = field(default_factory=InMemoryThresholdPolicyRepository)
    metrics: MetricsSource = field(default_factory=NoMetrics)
    providers: dict[str, CloudProvider] = field(default_factory=dict)
    registry: ResourceRegistry | None = None

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def rollback_service(self) -> RollbackService:
        return RollbackService(
            deployments=self.deployments,
            rollbacks=self.rollbacks,
            scheduler=self.scheduler,
            emitter=self.emitter,
        )

    def state_machine(self) -> DeploymentStateMachine:
        return DeploymentStateMachine(
            deployments=self.deployments,
            applications=self.applications,
            servers=self.servers,
            executor=self.executor,
            lock=self.lock,
            scheduler=self.scheduler,
            emitter=self.emitter,
            rollback=self.rollback_service(),
            settings=self.settings,
        )

    def health_monitor(self) -> HealthMonitor:
        return HealthMonitor(
            deployments=self.deployments,
            applications=self.applications,
            servers=self.servers,
            executor=self.executor,
            rollback=self.rollback_service(),
            scheduler=self.scheduler,
            settings=self.settings,
        )

    def canary_controller(self) -> CanaryController:
        return CanaryController(
            deployments=self.deployments,
            applications=self.applications,
            servers=self.servers,
            canaries=self.canaries,
            rollbacks=self.rollbacks,
            executor=self.executor,
            scheduler=self.scheduler,
            emitter=self.emitter,
            settings=self.settings,
        )

    def provision_controller(self) -> AutoProvisionController:
        return AutoProvisionController(
            metrics=self.metrics,
            policies=self.policies,
            servers=self.servers,
            events=self.provisioning_events,
            cache=self.cache,
            scheduler=self.scheduler,
            emitter=self.emitter,
            settings=self.settings,
        )

    def provisioner(self) -> AutoProvisioner:
        return AutoProvisioner(
            servers=self.servers,
            keys=self.keys,
            policies=self.policies,
            events=self.provisioning_events,
            providers=self.providers,
            executor=self.executor,
            lock=self.lock,
            cache=self.cache,
            scheduler=self.scheduler,
            emitter=self.emitter,
            settings=self.settings,
        )

    def _backup_kwargs(self) -> dict:
        return {
            "servers": self.servers,
            "executions": self.executions,
            "executor": self.executor,
            "emitter": self.emitter,
            "settings": self.settings,
        }

    def backup_pipeline(self) -> BackupPipeline:
        return BackupPipeline(**self._backup_kwargs())

    def restore_pipeline(self) -> RestorePipeline:
        return RestorePipeline(**self._backup_kwargs())

    def restore_test_pipeline(self) -> RestoreTestPipeline:
        return RestoreTestPipeline(backups=self.backups, **self._backup_kwargs())

    def transfer_pipeline(self) -> TransferPipeline:
        return TransferPipeline(
            transfers=self.transfers,
            registry=self.registry or database_registry(self.databases),
            servers=self.servers,
            executor=self.executor,
            emitter=self.emitter,
            settings=self.settings,
        )


def _build_lock(settings: DockyardSettings) -> ResourceLock:
    if settings.lock_backend == LockBackendKind.REDIS:
        return RedisLock(settings.redis_url)
    if settings.lock_backend == LockBackendKind.DATABASE:
        lock = DatabaseLock(sqlite3.connect(settings.lock_database_path, check_same_thread=False))
        lock.create_table()
        return lock
    return InMemoryLock()


def build_default_runtime(settings: DockyardSettings | None = None, scheduler: Scheduler | None = None) -> Runtime:
    """Runtime wired from settings: ssh executor, configured cache/lock backends."""
    settings = settings or get_settings()

    if settings.cache_backend == CacheBackendKind.REDIS:
        cache: CacheBackend = RedisCache(settings.redis_url)
        emitter: EventEmitter = FanOutEventEmitter(LoggingEventEmitter(), RedisEventEmitter(settings.redis_url))
    else:
        cache = InMemoryCache()
        emitter = LoggingEventEmitter()

    lock = _build_lock(settings)

    logger.info(
        "runtime.built",
        cache_backend=settings.cache_backend.value,
        lock_backend=settings.lock_backend.value,
    )
    return Runtime(
        executor=SshExecutor(
            ssh_binary=settings.ssh_binary,
            scp_binary=settings.scp_binary,
            connect_timeout=settings.ssh_connect_timeout_seconds,
        ),
        scheduler=scheduler or RecordingScheduler(),
        emitter=emitter,
        lock=lock,
        cache=cache,
        settings=settings,
    )


_runtime: Runtime | None = None


def configure_runtime(runtime: Runtime | None) -> None:
    """Install *runtime* for this process; ``None`` resets to the default."""
    global _runtime
    _runtime = runtime


def runtime_configured() -> bool:
    return _runtime is not None


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = build_default_runtime()
    return _runtime


__all__ = [
    "NoMetrics",
    "Runtime",
    "build_default_runtime",
    "configure_runtime",
    "runtime_configured",
    "get_runtime",
]
