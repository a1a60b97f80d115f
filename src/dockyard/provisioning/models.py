"""Auto-provisioning records and the cloud provider interface."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, Field, SecretStr, model_validator

from dockyard.core.models import utcnow


class ResourceThresholdPolicy(BaseModel):
    """Per-team thresholds and provisioning settings.

    Read-only to the worker; the control plane owns and edits it.
    Percentages compare with ``>=``.
    """

    team_id: int | None = None

    cpu_warning: float = Field(default=75, ge=0, le=100)
    cpu_critical: float = Field(default=90, ge=0, le=100)
    memory_warning: float = Field(default=80, ge=0, le=100)
    memory_critical: float = Field(default=95, ge=0, le=100)
    disk_warning: float = Field(default=80, ge=0, le=100)
    disk_critical: float = Field(default=95, ge=0, le=100)

    auto_provision_enabled: bool = False
    max_servers_per_day: int = Field(default=3, ge=0)
    cooldown_minutes: int = Field(default=360, ge=0)

    provider: str = "hetzner"
    cloud_token: SecretStr | None = None
    server_type: str = "cx22"
    location: str = "nbg1"

    @model_validator(mode="after")
    def _warning_below_critical(self) -> ResourceThresholdPolicy:
        for metric in ("cpu", "memory", "disk"):
            if getattr(self, f"{metric}_warning") > getattr(self, f"{metric}_critical"):
                raise ValueError(f"{metric}_warning must not exceed {metric}_critical")
        return self

    def thresholds(self, metric: str) -> tuple[float, float]:
        """Return ``(warning, critical)`` for *metric*."""
        return getattr(self, f"{metric}_warning"), getattr(self, f"{metric}_critical")


class ProvisioningStatus(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    INSTALLING = "installing"
    READY = "ready"
    FAILED = "failed"


ACTIVE_PROVISIONING_STATUSES = frozenset({
    ProvisioningStatus.PENDING,
    ProvisioningStatus.PROVISIONING,
    ProvisioningStatus.INSTALLING,
})


@dataclass
class ProvisioningEvent:
    """Audit trail of one auto-provisioning attempt."""

    id: int = 0
    uuid: str = field(default_factory=lambda: str(uuid.uuid4()))
    team_id: int | None = None
    trigger_server_id: int | None = None
    provisioned_server_id: int | None = None
    trigger_reason: str = ""
    trigger_metrics: dict[str, Any] = field(default_factory=dict)
    status: ProvisioningStatus = ProvisioningStatus.PENDING
    provider_server_id: str | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_PROVISIONING_STATUSES

    def mark_provisioning(self) -> None:
        self.status = ProvisioningStatus.PROVISIONING

    def mark_installing(self, server_id: int, provider_server_id: str | None = None) -> None:
        self.status = ProvisioningStatus.INSTALLING
        self.provisioned_server_id = server_id
        self.provider_server_id = provider_server_id

    def mark_ready(self) -> None:
        self.status = ProvisioningStatus.READY
        self.completed_at = utcnow()

    def mark_failed(self, message: str) -> None:
        self.status = ProvisioningStatus.FAILED
        self.error_message = message
        self.completed_at = utcnow()


@dataclass(frozen=True)
class MetricSnapshot:
    """Latest CPU/memory/disk percentages; ``None`` means unknown."""

    cpu: float | None = None
    memory: float | None = None
    disk: float | None = None

    def get(self, metric: str) -> float | None:
        return getattr(self, metric)

    def to_dict(self) -> dict[str, float | None]:
        return {"cpu": self.cpu, "memory": self.memory, "disk": self.disk}


@dataclass(frozen=True)
class ServerMetrics:
    """Raw metric series as reported by the server's metrics agent."""

    cpu: list[Any] = field(default_factory=list)
    memory: list[Any] = field(default_factory=list)
    disk: list[Any] = field(default_factory=list)


class MetricsSource(Protocol):
    """Supplies the latest metric series of a server."""

    def fetch(self, server_id: int) -> ServerMetrics | None:
        ...


@dataclass(frozen=True)
class ProvisionRequest:
    name: str
    server_type: str
    location: str
    ssh_public_key: str
    team_id: int | None = None
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProvisionedServer:
    provider_server_id: str
    ip: str
    name: str


class CloudProvider(Protocol):
    """Creates servers at a cloud provider.

    Implementations raise :class:`dockyard.core.errors.RateLimitError` when
    the provider throttles the request.
    """

    def create_server(self, request: ProvisionRequest, token: str) -> ProvisionedServer:
        ...


__all__ = [
    "ResourceThresholdPolicy",
    "ProvisioningStatus",
    "ACTIVE_PROVISIONING_STATUSES",
    "ProvisioningEvent",
    "MetricSnapshot",
    "ServerMetrics",
    "MetricsSource",
    "ProvisionRequest",
    "ProvisionedServer",
    "CloudProvider",
]
