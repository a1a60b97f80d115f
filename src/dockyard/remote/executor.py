"""Remote command execution over the ``ssh``/``scp`` CLI.

Every interaction with a managed server (docker builds, dumps, restores,
Traefik config writes) is a shell command run through a
:class:`RemoteExecutor`.  Pipelines receive the executor as a
collaborator, so tests swap in a scripted fake and production uses
:class:`SshExecutor`.

Key Concepts:
    CommandResult: exit code + stdout + stderr of one command.
    RemoteExecutor: Protocol with ``run()``, ``copy_file()`` and ``fetch_file()``.
    SshExecutor: ``ssh -o BatchMode=yes ... bash -s`` with the command on
        stdin, ``scp`` for uploads and downloads.
    LocalExecutor: same contract against the local shell (single-host
        installs, tests).
    run_checked: raise :class:`RemoteCommandError` on non-zero exit.

Architecture Decisions:
    - subprocess, not an SSH library: the ``ssh`` client handles
      ControlMaster multiplexing, known hosts and agent forwarding the same
      way an operator's terminal does.
    - The command travels on stdin, so it is never re-split by the remote
      login shell and multi-line scripts work unchanged.
    - ``subprocess.TimeoutExpired`` becomes :class:`RemoteTimeoutError`;
      ssh exit status 255 becomes :class:`RemoteConnectionError`.  Both are
      transient and picked up by the job's backoff schedule.

Tags:
    ssh, subprocess, remote, docker, timeout
"""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass
from typing import Protocol

from dockyard.core.errors import (
    ConfigError,
    RemoteCommandError,
    RemoteConnectionError,
    RemoteTimeoutError,
)
from dockyard.core.logging import get_logger
from dockyard.core.models import Host
from dockyard.remote.shell import quote

logger = get_logger(__name__)

SSH_CONNECTION_FAILED = 255


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one remote command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Stripped stdout."""
        return self.stdout.strip()

    @property
    def combined_output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


class RemoteExecutor(Protocol):
    """Runs shell commands on a host."""

    def run(self, host: Host, command: str, *, timeout_seconds: int = 3600) -> CommandResult:
        """Run *command* with ``bash`` on *host*.

        Raises:
            RemoteTimeoutError: The command did not finish in time.
            RemoteConnectionError: The host could not be reached.
        """
        ...

    def copy_file(
        self,
        host: Host,
        local_path: str,
        remote_path: str,
        *,
        timeout_seconds: int = 600,
    ) -> None:
        """Upload a local file to *remote_path* on *host*."""
        ...

    def fetch_file(
        self,
        host: Host,
        remote_path: str,
        local_path: str,
        *,
        timeout_seconds: int = 600,
    ) -> None:
        """Download *remote_path* on *host* to a local file."""
        ...


class SshExecutor:
    """Remote executor backed by the OpenSSH client binaries.

    Example:
        executor = SshExecutor(connect_timeout=10)
        result = executor.run(server.host, "docker ps -q", timeout_seconds=30)
    """

    def __init__(
        self,
        *,
        ssh_binary: str = "ssh",
        scp_binary: str = "scp",
        connect_timeout: int = 10,
    ):
        self._ssh = ssh_binary
        self._scp = scp_binary
        self._connect_timeout = connect_timeout

    def _options(self, host: Host) -> list[str]:
        options = [
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", f"ConnectTimeout={self._connect_timeout}",
            "-o", "ServerAliveInterval=20",
            "-o", "LogLevel=ERROR",
        ]
        if host.private_key_path:
            options += ["-i", host.private_key_path]
        return options

    def build_ssh_command(self, host: Host) -> list[str]:
        return [self._ssh, *self._options(host), "-p", str(host.port), host.target, "bash -s"]

    def build_scp_command(
        self, host: Host, local_path: str, remote_path: str, *, download: bool = False
    ) -> list[str]:
        remote = f"{host.target}:{remote_path}"
        source, destination = (remote, local_path) if download else (local_path, remote)
        return [self._scp, *self._options(host), "-P", str(host.port), source, destination]

    def run(self, host: Host, command: str, *, timeout_seconds: int = 3600) -> CommandResult:
        argv = self.build_ssh_command(host)
        logger.debug("remote.exec", host=str(host), command=command[:200])
        started = time.monotonic()
        try:
            completed = subprocess.run(
                argv,
                input=command,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise RemoteTimeoutError(
                f"Command timed out after {timeout_seconds}s on {host}",
                cause=exc,
            ).with_context(host=host.address, command=command[:200]) from exc
        except FileNotFoundError as exc:
            raise ConfigError(f"ssh binary not found: {self._ssh}", cause=exc) from exc

        result = CommandResult(
            exit_code=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
            duration_seconds=time.monotonic() - started,
        )
        if result.exit_code == SSH_CONNECTION_FAILED:
            raise RemoteConnectionError(
                f"Could not connect to {host}: {result.stderr.strip()}",
            ).with_context(host=host.address)
        return result

    def copy_file(
        self,
        host: Host,
        local_path: str,
        remote_path: str,
        *,
        timeout_seconds: int = 600,
    ) -> None:
        logger.debug("remote.copy", host=str(host), local_path=local_path, remote_path=remote_path)
        self._transfer(host, self.build_scp_command(host, local_path, remote_path),
                       f"Upload to {host}:{remote_path}", timeout_seconds)

    def fetch_file(
        self,
        host: Host,
        remote_path: str,
        local_path: str,
        *,
        timeout_seconds: int = 600,
    ) -> None:
        logger.debug("remote.fetch", host=str(host), remote_path=remote_path, local_path=local_path)
        self._transfer(host, self.build_scp_command(host, local_path, remote_path, download=True),
                       f"Download of {host}:{remote_path}", timeout_seconds)

    def _transfer(self, host: Host, argv: list[str], label: str, timeout_seconds: int) -> None:
        try:
            completed = subprocess.run(
                argv, capture_output=True, text=True, errors="replace", timeout=timeout_seconds
            )
        except subprocess.TimeoutExpired as exc:
            raise RemoteTimeoutError(
                f"{label} timed out after {timeout_seconds}s",
                cause=exc,
            ).with_context(host=host.address) from exc
        except FileNotFoundError as exc:
            raise ConfigError(f"scp binary not found: {self._scp}", cause=exc) from exc

        if completed.returncode == SSH_CONNECTION_FAILED:
            raise RemoteConnectionError(f"Could not connect to {host}: {completed.stderr.strip()}")
        if completed.returncode != 0:
            raise RemoteCommandError(
                f"{label} failed",
                exit_code=completed.returncode,
                stderr=completed.stderr,
            )


class LocalExecutor:
    """Runs commands with the local ``bash``; the host argument is ignored."""

    def __init__(self, shell: str = "bash"):
        self._shell = shell

    def run(self, host: Host, command: str, *, timeout_seconds: int = 3600) -> CommandResult:
        started = time.monotonic()
        try:
            completed = subprocess.run(
                [self._shell, "-c", command],
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise RemoteTimeoutError(
                f"Command timed out after {timeout_seconds}s",
                cause=exc,
            ).with_context(command=command[:200]) from exc
        return CommandResult(
            exit_code=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
            duration_seconds=time.monotonic() - started,
        )

    def copy_file(
        self,
        host: Host,
        local_path: str,
        remote_path: str,
        *,
        timeout_seconds: int = 600,
    ) -> None:
        self._copy(local_path, remote_path, timeout_seconds)

    def fetch_file(
        self,
        host: Host,
        remote_path: str,
        local_path: str,
        *,
        timeout_seconds: int = 600,
    ) -> None:
        self._copy(remote_path, local_path, timeout_seconds)

    def _copy(self, source: str, destination: str, timeout_seconds: int) -> None:
        result = self.run(Host(address="localhost"), f"cp {quote(source)} {quote(destination)}",
                          timeout_seconds=timeout_seconds)
        if not result.ok:
            raise RemoteCommandError(
                f"Copy to {destination} failed",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )


def run_checked(
    executor: RemoteExecutor,
    host: Host,
    command: str,
    *,
    timeout_seconds: int = 3600,
    error_message: str | None = None,
) -> CommandResult:
    """Run *command* and raise :class:`RemoteCommandError` on non-zero exit."""
    result = executor.run(host, command, timeout_seconds=timeout_seconds)
    if not result.ok:
        detail = result.stderr.strip() or result.stdout.strip()
        message = error_message or f"Command failed with exit code {result.exit_code}"
        raise RemoteCommandError(
            f"{message}: {detail}" if detail else message,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
        ).with_context(host=host.address, command=command[:200])
    return result


def run_all(
    executor: RemoteExecutor,
    host: Host,
    commands: list[str],
    *,
    timeout_seconds: int = 3600,
    error_message: str | None = None,
) -> list[CommandResult]:
    """Run commands in order, stopping at the first failure."""
    return [
        run_checked(executor, host, command, timeout_seconds=timeout_seconds, error_message=error_message)
        for command in commands
    ]


__all__ = [
    "CommandResult",
    "RemoteExecutor",
    "SshExecutor",
    "LocalExecutor",
    "run_checked",
    "run_all",
]
