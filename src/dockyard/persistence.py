"""Repository protocols and in-memory implementations.

The control plane owns the database schema; the worker only needs a
handful of reads and writes per job.  Each pipeline declares the narrow
repository it uses here, and the host application provides the
implementation.  The in-memory classes back the tests and the
single-process development runtime.

Architecture:
    ::

        InMemoryRepository[T]        id → record, auto-increment ids
        ├── InMemoryDeploymentRepository      .find_previous_successful()
        ├── InMemoryApplicationRepository
        ├── InMemoryServerRepository          .count_auto_provisioned_since()
        ├── InMemoryPrivateKeyRepository      .list_for_team()
        ├── InMemoryRollbackEventRepository   .list_for_application()
        ├── InMemoryBackupRepository          scheduled backups
        ├── InMemoryBackupExecutionRepository .latest_successful(), .list_for_backup()
        ├── InMemoryDatabaseRepository        transfer sources/targets
        ├── InMemoryTransferRepository
        └── InMemoryProvisioningEventRepository .has_active()
        InMemoryCanaryStateRepository  keyed by deployment id
        InMemoryThresholdPolicyRepository keyed by team id
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Generic, Protocol, TypeVar

from dockyard.backup.models import BackupExecutionRecord, BackupStatus, DatabaseResource, ScheduledBackup
from dockyard.core.models import PrivateKey, Server
from dockyard.deploy.models import (
    Application,
    CanaryState,
    DeploymentRecord,
    DeploymentStatus,
    RollbackEvent,
)
from dockyard.provisioning.models import ProvisioningEvent, ResourceThresholdPolicy
from dockyard.transfer.models import TransferRecord

T = TypeVar("T")


# =============================================================================
# PROTOCOLS
# =============================================================================


class DeploymentRepository(Protocol):
    def get(self, record_id: int) -> DeploymentRecord | None: ...

    def add(self, record: DeploymentRecord) -> DeploymentRecord: ...

    def update(self, record: DeploymentRecord) -> None: ...

    def find_previous_successful(
        self, application_id: int, before_id: int
    ) -> DeploymentRecord | None:
        """Latest FINISHED production deployment of *application_id* older than *before_id*."""
        ...


class ApplicationRepository(Protocol):
    def get(self, record_id: int) -> Application | None: ...

    def update(self, record: Application) -> None: ...


class ServerRepository(Protocol):
    def get(self, record_id: int) -> Server | None: ...

    def add(self, record: Server) -> Server: ...

    def update(self, record: Server) -> None: ...

    def count_auto_provisioned_since(self, team_id: int | None, since: datetime) -> int: ...


class PrivateKeyRepository(Protocol):
    def get(self, record_id: int) -> PrivateKey | None: ...

    def list_for_team(self, team_id: int | None) -> list[PrivateKey]: ...


class RollbackEventRepository(Protocol):
    def add(self, record: RollbackEvent) -> RollbackEvent: ...

    def update(self, record: RollbackEvent) -> None: ...

    def list_for_application(self, application_id: int) -> list[RollbackEvent]: ...

    def find_by_rollback_deployment(self, deployment_id: int) -> RollbackEvent | None: ...


class CanaryStateRepository(Protocol):
    def get(self, deployment_id: int) -> CanaryState | None: ...

    def save(self, state: CanaryState) -> None: ...

    def delete(self, deployment_id: int) -> None: ...


class BackupRepository(Protocol):
    def get(self, record_id: int) -> ScheduledBackup | None: ...

    def update(self, record: ScheduledBackup) -> None: ...


class BackupExecutionRepository(Protocol):
    def get(self, record_id: int) -> BackupExecutionRecord | None: ...

    def add(self, record: BackupExecutionRecord) -> BackupExecutionRecord: ...

    def update(self, record: BackupExecutionRecord) -> None: ...

    def latest_successful(self, backup_id: int) -> BackupExecutionRecord | None: ...

    def list_for_backup(self, backup_id: int) -> list[BackupExecutionRecord]: ...

    def delete(self, record_id: int) -> None: ...


class DatabaseRepository(Protocol):
    def get(self, record_id: int) -> DatabaseResource | None: ...


class TransferRepository(Protocol):
    def get(self, record_id: int) -> TransferRecord | None: ...

    def update(self, record: TransferRecord) -> None: ...


class ProvisioningEventRepository(Protocol):
    def add(self, record: ProvisioningEvent) -> ProvisioningEvent: ...

    def update(self, record: ProvisioningEvent) -> None: ...

    def has_active(self, team_id: int | None) -> bool: ...


class ThresholdPolicyRepository(Protocol):
    def for_team(self, team_id: int | None) -> ResourceThresholdPolicy | None: ...


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================


class InMemoryRepository(Generic[T]):
    """Dict-backed store for records with an integer ``id`` attribute."""

    def __init__(self, items: list[T] | None = None) -> None:
        self._items: dict[int, T] = {}
        self._next_id = 1
        for item in items or []:
            self.add(item)

    def add(self, record: T) -> T:
        record_id = getattr(record, "id", 0)
        if not record_id:
            record_id = self._next_id
            record.id = record_id  # type: ignore[attr-defined]
        self._items[record_id] = record
        self._next_id = max(self._next_id, record_id + 1)
        return record

    def get(self, record_id: int) -> T | None:
        return self._items.get(record_id)

    def update(self, record: T) -> None:
        self._items[record.id] = record  # type: ignore[attr-defined]

    def delete(self, record_id: int) -> None:
        self._items.pop(record_id, None)

    def all(self) -> list[T]:
        return [self._items[k] for k in sorted(self._items)]

    def find(self, predicate: Callable[[T], bool]) -> list[T]:
        return [item for item in self.all() if predicate(item)]

    def __len__(self) -> int:
        return len(self._items)


class InMemoryDeploymentRepository(InMemoryRepository[DeploymentRecord]):
    def find_previous_successful(
        self, application_id: int, before_id: int
    ) -> DeploymentRecord | None:
        candidates = self.find(
            lambda d: d.application_id == application_id
            and d.id < before_id
            and d.status == DeploymentStatus.FINISHED
            and not d.pull_request_id
        )
        return candidates[-1] if candidates else None


class InMemoryApplicationRepository(InMemoryRepository[Application]):
    pass


class InMemoryServerRepository(InMemoryRepository[Server]):
    def count_auto_provisioned_since(self, team_id: int | None, since: datetime) -> int:
        return len(self.find(
            lambda s: s.auto_provisioned and s.team_id == team_id and s.created_at >= since
        ))


class InMemoryPrivateKeyRepository(InMemoryRepository[PrivateKey]):
    def list_for_team(self, team_id: int | None) -> list[PrivateKey]:
        return self.find(lambda k: k.team_id == team_id)


class InMemoryRollbackEventRepository(InMemoryRepository[RollbackEvent]):
    def list_for_application(self, application_id: int) -> list[RollbackEvent]:
        return self.find(lambda e: e.application_id == application_id)

    def find_by_rollback_deployment(self, deployment_id: int) -> RollbackEvent | None:
        matches = self.find(lambda e: e.rollback_deployment_id == deployment_id)
        return matches[-1] if matches else None


class InMemoryBackupRepository(InMemoryRepository[ScheduledBackup]):
    pass


class InMemoryBackupExecutionRepository(InMemoryRepository[BackupExecutionRecord]):
    def latest_successful(self, backup_id: int) -> BackupExecutionRecord | None:
        matches = self.find(
            lambda e: e.backup_id == backup_id and e.status == BackupStatus.SUCCESS
        )
        return matches[-1] if matches else None

    def list_for_backup(self, backup_id: int) -> list[BackupExecutionRecord]:
        return self.find(lambda e: e.backup_id == backup_id)


class InMemoryDatabaseRepository(InMemoryRepository[DatabaseResource]):
    pass


class InMemoryTransferRepository(InMemoryRepository[TransferRecord]):
    pass


class InMemoryProvisioningEventRepository(InMemoryRepository[ProvisioningEvent]):
    def has_active(self, team_id: int | None) -> bool:
        return any(e.is_active and e.team_id == team_id for e in self.all())


class InMemoryCanaryStateRepository:
    def __init__(self) -> None:
        self._states: dict[int, CanaryState] = {}

    def get(self, deployment_id: int) -> CanaryState | None:
        return self._states.get(deployment_id)

    def save(self, state: CanaryState) -> None:
        self._states[state.deployment_id] = state

    def delete(self, deployment_id: int) -> None:
        self._states.pop(deployment_id, None)


class InMemoryThresholdPolicyRepository:
    def __init__(self, policies: list[ResourceThresholdPolicy] | None = None) -> None:
        self._policies = {p.team_id: p for p in policies or []}

    def for_team(self, team_id: int | None) -> ResourceThresholdPolicy | None:
        return self._policies.get(team_id)

    def save(self, policy: ResourceThresholdPolicy) -> None:
        self._policies[policy.team_id] = policy


__all__ = [
    "DeploymentRepository",
    "ApplicationRepository",
    "ServerRepository",
    "PrivateKeyRepository",
    "RollbackEventRepository",
    "CanaryStateRepository",
    "BackupRepository",
    "BackupExecutionRepository",
    "DatabaseRepository",
    "TransferRepository",
    "ProvisioningEventRepository",
    "ThresholdPolicyRepository",
    "InMemoryRepository",
    "InMemoryDeploymentRepository",
    "InMemoryApplicationRepository",
    "InMemoryServerRepository",
    "InMemoryPrivateKeyRepository",
    "InMemoryRollbackEventRepository",
    "InMemoryBackupRepository",
    "InMemoryBackupExecutionRepository",
    "InMemoryDatabaseRepository",
    "InMemoryTransferRepository",
    "InMemoryProvisioningEventRepository",
    "InMemoryCanaryStateRepository",
    "InMemoryThresholdPolicyRepository",
]
