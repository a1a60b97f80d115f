"""
Structured error types for dockyard jobs.

Every job in the orchestration layer has to answer the same question when
something goes wrong: *should the queue retry this?*  An SSH timeout or a
Docker daemon restart usually clears up on its own; a missing server or a
transfer that the user already cancelled never will.  DockyardError and its
subclasses carry that answer with them.

Each error carries:
- **Category:** What kind of error (remote, validation, config, ...)
- **Retryable:** Whether the job's backoff schedule applies
- **Retry-after:** Seconds to wait before retrying (rate limits)
- **Context:** Identifiers of the deployment / execution / server involved
- **Cause:** Chained underlying exception

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       DockyardError                              │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │  TransientError          ValidationError        ConfigError     │
        │  (retryable=True)        (VALIDATION)           (CONFIG)        │
        │       │                       │                      │          │
        │  RemoteTimeoutError      PreconditionError     MissingConfig    │
        │  RemoteConnectionError   InvalidTransitionError                 │
        │  RateLimitError                                                 │
        │                                                                  │
        │  RemoteCommandError      CancelledError        LockNotAcquired  │
        │  (REMOTE, exit_code)     ├ DeploymentCancelled (CONCURRENCY)    │
        │                          └ TransferCancelled                    │
        │  BackupError  ProvisioningError  DeploymentError                │
        └─────────────────────────────────────────────────────────────────┘

Usage:
    >>> from dockyard.core.errors import RemoteTimeoutError, PreconditionError
    >>> err = RemoteTimeoutError("ssh timed out after 30s", retry_after=30)
    >>> err.retryable
    True
    >>> PreconditionError("Server is not functional").retryable
    False

Guardrails:
    ❌ DON'T: raise bare Exception from a job - the worker loses retry semantics
    ✅ DO: raise the narrowest DockyardError subclass

    ❌ DON'T: put credentials into error messages or context
    ✅ DO: pass ids and names, never secrets

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for routing, alerting and retry decisions."""

    # Infrastructure (usually transient)
    REMOTE = "REMOTE"                # SSH / command execution
    NETWORK = "NETWORK"              # Connection, timeout, DNS
    STORAGE = "STORAGE"              # Disk, S3

    # Input errors
    VALIDATION = "VALIDATION"        # Missing server, missing source database
    CONFIG = "CONFIG"                # Missing settings, bad thresholds

    # Flow control
    CANCELLED = "CANCELLED"          # Cooperative cancellation
    CONCURRENCY = "CONCURRENCY"      # Lock held by someone else

    # Domain pipelines
    DEPLOYMENT = "DEPLOYMENT"
    BACKUP = "BACKUP"
    PROVISIONING = "PROVISIONING"
    TRANSFER = "TRANSFER"

    INTERNAL = "INTERNAL"            # Bugs, unexpected state


@dataclass
class ErrorContext:
    """Identifiers attached to an error for logging.

    Only non-None fields are emitted by :meth:`to_dict`; anything that does
    not have a dedicated field goes into ``metadata``.
    """

    deployment_uuid: str | None = None
    execution_uuid: str | None = None
    transfer_uuid: str | None = None
    server: str | None = None
    host: str | None = None
    command: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["deployment_uuid", "execution_uuid", "transfer_uuid",
                    "server", "host", "command"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class DockyardError(Exception):
    """
    Base exception for all dockyard errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers
    may override either per instance.

    Example:
        >>> err = DockyardError("boom", retryable=True)
        >>> err.to_dict()["retryable"]
        True
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> DockyardError:
        """Add context to this error (fluent API).

        Usage:
            raise PreconditionError("Server not found").with_context(
                deployment_uuid=record.uuid,
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (Retryable)
# =============================================================================


class TransientError(DockyardError):
    """
    Temporary error that may succeed on retry.

    Raised for conditions such as an SSH timeout or a Docker daemon that is
    restarting.  Jobs re-raise these so that the queue applies the job's
    fixed backoff schedule; once ``tries`` are exhausted the job's
    permanent-failure callback runs.
    """

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class RemoteTimeoutError(TransientError):
    """A remote command did not finish within its timeout."""

    default_category = ErrorCategory.REMOTE


class RemoteConnectionError(TransientError):
    """SSH could not connect (exit code 255) or the host is unreachable."""

    default_category = ErrorCategory.REMOTE


class RateLimitError(TransientError):
    """Upstream API (cloud provider) rate limit exceeded."""

    default_category = ErrorCategory.NETWORK

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: int = 60,
        **kwargs: Any,
    ):
        super().__init__(message, retry_after=retry_after, **kwargs)


# =============================================================================
# REMOTE COMMAND ERRORS
# =============================================================================


class RemoteCommandError(DockyardError):
    """A remote command ran but exited non-zero.

    Not retryable by default: a failing ``docker build`` fails the same way
    the second time.
    """

    default_category = ErrorCategory.REMOTE
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.exit_code is not None:
            result["exit_code"] = self.exit_code
        return result


# =============================================================================
# VALIDATION / CONFIG ERRORS (Never retryable)
# =============================================================================


class ValidationError(DockyardError):
    """Invalid input. Never retryable - the input must be fixed."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        return result


class PreconditionError(ValidationError):
    """A required collaborator is missing or unusable (server, database, file)."""


class InvalidTransitionError(ValidationError):
    """Raised when an illegal status transition is attempted."""

    def __init__(self, current: str, target: str, enum_name: str = "Status") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")


class ConfigError(DockyardError):
    """Configuration error. Never retryable."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class MissingConfigError(ConfigError):
    """Required configuration is missing."""

    def __init__(self, key: str, message: str | None = None):
        self.key = key
        super().__init__(message or f"Missing required configuration: {key}")


# =============================================================================
# FLOW CONTROL
# =============================================================================


class CancelledError(DockyardError):
    """Cooperative cancellation observed at a stage boundary."""

    default_category = ErrorCategory.CANCELLED
    default_retryable = False


class DeploymentCancelledError(CancelledError):
    """The user cancelled the deployment."""


class TransferCancelledError(CancelledError):
    """The user cancelled the transfer."""


class LockNotAcquiredError(DockyardError):
    """Another job already holds the resource lock."""

    default_category = ErrorCategory.CONCURRENCY
    default_retryable = False

    def __init__(self, lock_key: str, holder: str | None = None):
        self.lock_key = lock_key
        self.holder = holder
        super().__init__(f"Lock {lock_key} is held by {holder or 'another job'}")


# =============================================================================
# DOMAIN PIPELINE ERRORS
# =============================================================================


class DeploymentError(DockyardError):
    """Deployment phase failure (build, start, health check)."""

    default_category = ErrorCategory.DEPLOYMENT


class BackupError(DockyardError):
    """Backup, restore or restore-test failure."""

    default_category = ErrorCategory.BACKUP


class ProvisioningError(DockyardError):
    """Auto-provisioning failure."""

    default_category = ErrorCategory.PROVISIONING


class TransferError(DockyardError):
    """Resource transfer failure."""

    default_category = ErrorCategory.TRANSFER


# =============================================================================
# HELPERS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Return whether *error* should be retried by the job's backoff schedule.

    Non-dockyard errors are treated as not retryable; the jobs wrap the
    exceptions they know to be transient (``subprocess.TimeoutExpired``,
    ``OSError`` from the ssh binary) before they reach the queue.
    """
    if isinstance(error, DockyardError):
        return error.retryable
    return False


def get_retry_after(error: BaseException) -> int | None:
    """Return the suggested retry delay carried by *error*, if any."""
    if isinstance(error, DockyardError):
        return error.retry_after
    return None


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "DockyardError",
    "TransientError",
    "RemoteTimeoutError",
    "RemoteConnectionError",
    "RateLimitError",
    "RemoteCommandError",
    "ValidationError",
    "PreconditionError",
    "InvalidTransitionError",
    "ConfigError",
    "MissingConfigError",
    "CancelledError",
    "DeploymentCancelledError",
    "TransferCancelledError",
    "LockNotAcquiredError",
    "DeploymentError",
    "BackupError",
    "ProvisioningError",
    "TransferError",
    "is_retryable",
    "get_retry_after",
]
