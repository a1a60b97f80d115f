"""Shared records used by more than one pipeline.

``Host`` is the connection target handed to a :class:`RemoteExecutor`;
``Server`` is the control plane's view of a managed machine.  Pipeline
specific records live next to their pipelines (``deploy.models``,
``backup.models``, ``transfer.models``, ``provisioning.models``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class Host:
    """SSH connection target."""

    address: str
    user: str = "root"
    port: int = 22
    private_key_path: str | None = None
    name: str | None = None

    @property
    def target(self) -> str:
        return f"{self.user}@{self.address}"

    def __str__(self) -> str:
        return self.name or self.address


@dataclass
class Server:
    """A machine managed by the control plane.

    Attributes:
        functional: Last reachability check passed (docker installed, ssh ok)
        metrics_enabled: Resource metrics collection is switched on
        auto_provisioned: Created by the auto-provisioning job
        private_key_id: Key used to reach this server (see PrivateKey)
    """

    id: int = 0
    uuid: str = ""
    name: str = ""
    ip: str = ""
    user: str = "root"
    port: int = 22
    team_id: int | None = None
    private_key_id: int | None = None
    private_key_path: str | None = None
    functional: bool = True
    metrics_enabled: bool = False
    is_swarm: bool = False
    auto_provisioned: bool = False
    provider_server_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def host(self) -> Host:
        return Host(
            address=self.ip,
            user=self.user,
            port=self.port,
            private_key_path=self.private_key_path,
            name=self.name or None,
        )


@dataclass
class PrivateKey:
    """An SSH key stored for a team.

    ``is_git_related`` keys are deploy keys for repositories and are never
    offered to newly provisioned servers.
    """

    id: int = 0
    uuid: str = ""
    team_id: int | None = None
    name: str = ""
    path: str | None = None
    public_key: str = ""
    is_git_related: bool = False


__all__ = ["utcnow", "Host", "Server", "PrivateKey"]
