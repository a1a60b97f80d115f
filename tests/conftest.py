"""
Shared pytest fixtures for dockyard tests.

This module provides:
- ScriptedExecutor: a RemoteExecutor fake that records every command and
  answers by substring match
- In-memory repositories, cache, lock, scheduler and event recorder
- Settings with the documented defaults

Usage:
    def test_something(executor, servers):
        executor.on("docker inspect", stdout="running")
        ...
        assert executor.ran("docker rm -f")
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import pytest

# Ensure dockyard package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dockyard.core.cache import InMemoryCache
from dockyard.core.events import InMemoryEventEmitter
from dockyard.core.models import Host, Server
from dockyard.core.settings import DockyardSettings
from dockyard.execution.locks import InMemoryLock
from dockyard.execution.scheduling import RecordingScheduler
from dockyard.persistence import (
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
)
from dockyard.remote.executor import CommandResult


# =============================================================================
# Remote executor fake
# =============================================================================


@dataclass
class _Rule:
    fragment: str
    result: CommandResult
    raises: BaseException | None = None
    effect: Callable[[str], None] | None = None


class ScriptedExecutor:
    """RemoteExecutor that answers from a rule list.

    The most recently added rule whose fragment occurs in the command wins;
    commands without a matching rule succeed with empty output.
    """

    def __init__(self) -> None:
        self.commands: list[str] = []
        self.hosts: list[Host] = []
        self.copies: list[tuple[Host, str, str]] = []
        self.fetches: list[tuple[Host, str, str]] = []
        self._rules: list[_Rule] = []

    def on(
        self,
        fragment: str,
        stdout: str = "",
        *,
        exit_code: int = 0,
        stderr: str = "",
        raises: BaseException | None = None,
        effect: Callable[[str], None] | None = None,
    ) -> ScriptedExecutor:
        self._rules.append(_Rule(fragment, CommandResult(exit_code, stdout, stderr), raises, effect))
        return self

    def run(self, host: Host, command: str, *, timeout_seconds: int = 3600) -> CommandResult:
        self.commands.append(command)
        self.hosts.append(host)
        for rule in reversed(self._rules):
            if rule.fragment in command:
                if rule.effect is not None:
                    rule.effect(command)
                if rule.raises is not None:
                    raise rule.raises
                return rule.result
        return CommandResult(0, "")

    def copy_file(self, host: Host, local_path: str, remote_path: str, *, timeout_seconds: int = 600) -> None:
        self.copies.append((host, local_path, remote_path))

    def fetch_file(self, host: Host, remote_path: str, local_path: str, *, timeout_seconds: int = 600) -> None:
        self.fetches.append((host, remote_path, local_path))

    def ran(self, fragment: str) -> list[str]:
        """Commands containing *fragment*, in order."""
        return [c for c in self.commands if fragment in c]

    def index_of(self, fragment: str) -> int:
        for index, command in enumerate(self.commands):
            if fragment in command:
                return index
        raise AssertionError(f"no command containing {fragment!r}")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings() -> DockyardSettings:
    return DockyardSettings(_env_file=None)


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def emitter() -> InMemoryEventEmitter:
    return InMemoryEventEmitter()


@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def lock() -> InMemoryLock:
    return InMemoryLock()


@pytest.fixture
def server() -> Server:
    return Server(id=1, uuid="srv-1", name="web-1", ip="10.0.0.1", team_id=7, functional=True)


@pytest.fixture
def servers(server) -> InMemoryServerRepository:
    return InMemoryServerRepository([server])


@pytest.fixture
def deployments() -> InMemoryDeploymentRepository:
    return InMemoryDeploymentRepository()


@pytest.fixture
def applications() -> InMemoryApplicationRepository:
    return InMemoryApplicationRepository()


@pytest.fixture
def rollbacks() -> InMemoryRollbackEventRepository:
    return InMemoryRollbackEventRepository()


@pytest.fixture
def canaries() -> InMemoryCanaryStateRepository:
    return InMemoryCanaryStateRepository()


@pytest.fixture
def keys() -> InMemoryPrivateKeyRepository:
    return InMemoryPrivateKeyRepository()


@pytest.fixture
def policies() -> InMemoryThresholdPolicyRepository:
    return InMemoryThresholdPolicyRepository()


@pytest.fixture
def provisioning_events() -> InMemoryProvisioningEventRepository:
    return InMemoryProvisioningEventRepository()


@pytest.fixture
def backups() -> InMemoryBackupRepository:
    return InMemoryBackupRepository()


@pytest.fixture
def executions() -> InMemoryBackupExecutionRepository:
    return InMemoryBackupExecutionRepository()


@pytest.fixture
def databases() -> InMemoryDatabaseRepository:
    return InMemoryDatabaseRepository()


@pytest.fixture
def transfers() -> InMemoryTransferRepository:
    return InMemoryTransferRepository()
