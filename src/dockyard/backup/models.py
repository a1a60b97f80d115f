"""Backup domain records.

``ScheduledBackup`` is the configuration the control plane stores;
``BackupExecutionRecord`` is one run of it (a backup, a restore or a
restore test).  ``BackupRunResult`` is the pydantic summary a pipeline
returns to its caller, finalised with :meth:`BackupRunResult.mark_complete`.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from dockyard.core.formatting import slugify
from dockyard.core.models import utcnow


class DatabaseEngine(str, Enum):
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MARIADB = "mariadb"
    MONGODB = "mongodb"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    DatabaseEngine.POSTGRESQL: "PostgreSQL",
    DatabaseEngine.MYSQL: "MySQL",
    DatabaseEngine.MARIADB: "MariaDB",
    DatabaseEngine.MONGODB: "MongoDB",
}

# First match wins.
_IMAGE_MARKERS: tuple[tuple[str, DatabaseEngine], ...] = (
    ("postgres", DatabaseEngine.POSTGRESQL),
    ("postgis", DatabaseEngine.POSTGRESQL),
    ("mariadb", DatabaseEngine.MARIADB),
    ("mysql", DatabaseEngine.MYSQL),
    ("mongo", DatabaseEngine.MONGODB),
)


def engine_from_image(image: str | None) -> DatabaseEngine | None:
    """Guess the engine of a service database from its image reference."""
    if not image:
        return None
    lowered = image.lower()
    for marker, engine in _IMAGE_MARKERS:
        if marker in lowered:
            return engine
    return None


class BackupStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class RestoreTestStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class RestoreStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


class ExecutionMode(str, Enum):
    BACKUP = "backup"
    RESTORE_TEST = "restore_test"
    RESTORE = "restore"


@dataclass
class DatabaseResource:
    """A database container (standalone or part of a service).

    Attributes:
        engine: Explicit engine; service databases leave it empty and set ``image``
        service_uuid: Container name for databases that live in a service stack
        user / password: Application credentials
        root_user / root_password: Superuser credentials used by dumps
        database_name: Default database inside the engine
    """

    id: int = 0
    uuid: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    engine: DatabaseEngine | None = None
    image: str | None = None
    version: str | None = None
    team_id: int | None = None
    server_id: int | None = None
    network: str = "dockyard"
    service_uuid: str | None = None

    user: str = ""
    password: str = ""
    root_user: str = "root"
    root_password: str = ""
    database_name: str = ""

    @property
    def resolved_engine(self) -> DatabaseEngine | None:
        return self.engine or engine_from_image(self.image)

    @property
    def container_name(self) -> str:
        return self.service_uuid or self.uuid

    @property
    def display(self) -> str:
        engine = self.resolved_engine
        label = engine.display_name if engine else "Database"
        return f"{label} '{self.name}'"


@dataclass
class S3Storage:
    """S3-compatible bucket used as off-site backup target."""

    id: int = 0
    name: str = ""
    endpoint: str = ""
    bucket: str = ""
    key: str = ""
    secret: str = ""
    region: str = "us-east-1"
    path: str = ""


@dataclass
class RetentionPolicy:
    """How many successful copies to keep in one location.

    Each limit is off at 0.  The newest successful copy is never pruned by
    ``max_storage_gb``.
    """

    amount: int = 0
    days: int = 0
    max_storage_gb: float = 0

    @property
    def unlimited(self) -> bool:
        return not (self.amount or self.days or self.max_storage_gb)


@dataclass
class ScheduledBackup:
    """Backup configuration for one database."""

    id: int = 0
    uuid: str = field(default_factory=lambda: str(uuid.uuid4()))
    team_id: int = 0
    team_name: str = ""
    database: DatabaseResource = field(default_factory=DatabaseResource)
    s3: S3Storage | None = None
    save_s3: bool = False
    disable_local_backup: bool = False
    dump_all: bool = False
    databases_to_backup: str = ""
    timeout: int = 3600
    enabled: bool = True
    local_retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    s3_retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    last_restore_test_at: datetime | None = None

    @property
    def database_names(self) -> list[str]:
        """Databases to dump; falls back to the resource's default database."""
        names = [n.strip() for n in self.databases_to_backup.split(",") if n.strip()]
        if not names and self.database.database_name:
            names = [self.database.database_name]
        return names

    @property
    def team_slug(self) -> str:
        return f"{slugify(self.team_name)}-{self.team_id}"


@dataclass
class BackupExecutionRecord:
    """One backup, restore or restore-test run."""

    id: int = 0
    uuid: str = field(default_factory=lambda: str(uuid.uuid4()))
    backup_id: int = 0
    mode: ExecutionMode = ExecutionMode.BACKUP
    database_name: str = ""
    status: BackupStatus = BackupStatus.PENDING
    filename: str | None = None
    size: int = 0
    message: str | None = None
    duration_seconds: float | None = None

    s3_uploaded: bool = False
    local_storage_deleted: bool = False
    s3_storage_deleted: bool = False

    restore_test_status: RestoreTestStatus | None = None
    restore_test_message: str | None = None
    restore_test_duration_seconds: float | None = None
    restore_test_at: datetime | None = None

    restore_status: RestoreStatus | None = None
    restore_message: str | None = None
    restore_started_at: datetime | None = None
    restore_finished_at: datetime | None = None

    created_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def basename(self) -> str | None:
        if not self.filename:
            return None
        return self.filename.rsplit("/", 1)[-1]


class ExecutionOutcome(BaseModel):
    """Per-database line of a backup run."""

    database: str
    status: BackupStatus
    filename: str | None = None
    size: int = 0
    s3_uploaded: bool = False
    message: str | None = None


class BackupRunResult(BaseModel):
    """Summary of one :class:`BackupPipeline` run."""

    backup_uuid: str
    started_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    finished_at: str | None = None
    duration_seconds: float | None = None
    outcomes: list[ExecutionOutcome] = Field(default_factory=list)
    pruned_executions: int = 0

    @property
    def succeeded(self) -> bool:
        return bool(self.outcomes) and all(o.status == BackupStatus.SUCCESS for o in self.outcomes)

    def mark_complete(self) -> None:
        now = datetime.now(UTC)
        self.finished_at = now.isoformat()
        started = datetime.fromisoformat(self.started_at)
        self.duration_seconds = round((now - started).total_seconds(), 3)


__all__ = [
    "DatabaseEngine",
    "engine_from_image",
    "BackupStatus",
    "RestoreTestStatus",
    "RestoreStatus",
    "ExecutionMode",
    "DatabaseResource",
    "S3Storage",
    "RetentionPolicy",
    "ScheduledBackup",
    "BackupExecutionRecord",
    "ExecutionOutcome",
    "BackupRunResult",
]
