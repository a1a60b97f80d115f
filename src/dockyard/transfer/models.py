"""Resource transfer records."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from dockyard.core.formatting import log_line
from dockyard.core.models import utcnow


class TransferStatus(str, Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    TRANSFERRING = "transferring"
    RESTORING = "restoring"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_TRANSFER_STATUSES = frozenset({
    TransferStatus.COMPLETED,
    TransferStatus.FAILED,
    TransferStatus.CANCELLED,
})


class TransferMode(str, Enum):
    CLONE = "clone"
    DATA_ONLY = "data_only"


@dataclass(frozen=True)
class ResourceRef:
    """Polymorphic reference: a type tag plus an id."""

    type: str
    id: int

    def __str__(self) -> str:
        return f"{self.type}:{self.id}"


@dataclass
class TransferRecord:
    """One point-to-point data migration."""

    id: int = 0
    uuid: str = field(default_factory=lambda: str(uuid.uuid4()))
    team_id: int | None = None
    source: ResourceRef | None = None
    target: ResourceRef | None = None
    target_server_id: int | None = None
    mode: TransferMode = TransferMode.CLONE
    status: TransferStatus = TransferStatus.PENDING
    current_step: str | None = None
    progress: int = 0
    transferred_bytes: int = 0
    total_bytes: int = 0
    logs: list[str] = field(default_factory=list)
    error_message: str | None = None
    error_details: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TRANSFER_STATUSES

    @property
    def is_cancelled(self) -> bool:
        return self.status == TransferStatus.CANCELLED

    def append_log(self, message: str) -> None:
        self.logs.append(log_line(message))

    def update_progress(self, status: TransferStatus, step: str, progress: int) -> None:
        """Move to a running stage. Ignored once the transfer is terminal."""
        if self.is_terminal:
            return
        self.status = status
        self.current_step = step
        self.progress = max(0, min(progress, 100))
        if self.started_at is None:
            self.started_at = utcnow()

    def mark_completed(self) -> None:
        if self.is_terminal:
            return
        self.status = TransferStatus.COMPLETED
        self.current_step = "Completed"
        self.progress = 100
        self.completed_at = utcnow()

    def mark_failed(self, error_message: str, error_details: dict[str, Any] | None = None) -> None:
        if self.is_terminal:
            return
        self.status = TransferStatus.FAILED
        self.error_message = error_message
        self.error_details = error_details
        self.completed_at = utcnow()

    def mark_cancelled(self) -> None:
        if self.is_terminal:
            return
        self.status = TransferStatus.CANCELLED
        self.completed_at = utcnow()


__all__ = [
    "TransferStatus",
    "TERMINAL_TRANSFER_STATUSES",
    "TransferMode",
    "ResourceRef",
    "TransferRecord",
]
