"""
Tests for dockyard.core.errors.

Covers:
- Category and retryable defaults per subclass
- retry_after on rate limits
- Context fluent API and serialization
- is_retryable / get_retry_after helpers
"""

import pytest

from dockyard.core.errors import (
    BackupError,
    DeploymentCancelledError,
    DockyardError,
    ErrorCategory,
    InvalidTransitionError,
    LockNotAcquiredError,
    MissingConfigError,
    PreconditionError,
    RateLimitError,
    RemoteCommandError,
    RemoteConnectionError,
    RemoteTimeoutError,
    TransientError,
    ValidationError,
    get_retry_after,
    is_retryable,
)


class TestErrorDefaults:
    """Each subclass answers 'should the queue retry this?'."""

    @pytest.mark.parametrize(
        "error_cls",
        [TransientError, RemoteTimeoutError, RemoteConnectionError, RateLimitError],
    )
    def test_transient_errors_are_retryable(self, error_cls):
        assert error_cls("boom").retryable is True

    @pytest.mark.parametrize(
        "error_cls",
        [RemoteCommandError, ValidationError, PreconditionError, BackupError, DeploymentCancelledError],
    )
    def test_other_errors_are_not_retryable(self, error_cls):
        assert error_cls("boom").retryable is False

    def test_categories(self):
        assert RemoteTimeoutError("x").category == ErrorCategory.REMOTE
        assert PreconditionError("x").category == ErrorCategory.VALIDATION
        assert DeploymentCancelledError("x").category == ErrorCategory.CANCELLED
        assert BackupError("x").category == ErrorCategory.BACKUP

    def test_override_retryable(self):
        """Callers can override the default per instance."""
        assert RemoteCommandError("docker daemon restarting", retryable=True).retryable is True


class TestRateLimitError:
    def test_default_retry_after(self):
        err = RateLimitError()
        assert err.retry_after == 60
        assert err.message == "Rate limit exceeded"

    def test_custom_retry_after(self):
        assert RateLimitError("slow down", retry_after=120).retry_after == 120


class TestContextAndSerialization:
    def test_with_context_sets_known_and_metadata_fields(self):
        err = PreconditionError("Server not found").with_context(deployment_uuid="d-1", attempt=2)
        assert err.context.deployment_uuid == "d-1"
        assert err.context.metadata == {"attempt": 2}

    def test_to_dict(self):
        cause = OSError("connection reset")
        err = RemoteTimeoutError("ssh timed out", retry_after=30, cause=cause).with_context(host="10.0.0.1")
        data = err.to_dict()
        assert data["error_type"] == "RemoteTimeoutError"
        assert data["retryable"] is True
        assert data["retry_after"] == 30
        assert data["context"] == {"host": "10.0.0.1"}
        assert data["cause"] == "connection reset"
        assert err.__cause__ is cause

    def test_remote_command_error_carries_exit_code(self):
        err = RemoteCommandError("build failed", exit_code=2, stderr="no space left")
        assert err.to_dict()["exit_code"] == 2
        assert err.stderr == "no space left"

    def test_validation_error_field(self):
        data = ValidationError("bad port", field="health_check_port", value="abc").to_dict()
        assert data["field"] == "health_check_port"
        assert data["value"] == "'abc'"


class TestSpecialisedErrors:
    def test_invalid_transition_message(self):
        err = InvalidTransitionError("finished", "in_progress", "DeploymentStatus")
        assert "finished → in_progress" in err.message
        assert err.current == "finished"

    def test_lock_not_acquired(self):
        err = LockNotAcquiredError("deployment:3", holder="dep-9")
        assert "deployment:3" in err.message
        assert err.holder == "dep-9"

    def test_missing_config(self):
        assert MissingConfigError("redis_url").key == "redis_url"


class TestHelpers:
    def test_is_retryable(self):
        assert is_retryable(RemoteTimeoutError("x")) is True
        assert is_retryable(BackupError("x")) is False
        assert is_retryable(ValueError("x")) is False

    def test_get_retry_after(self):
        assert get_retry_after(RateLimitError(retry_after=15)) == 15
        assert get_retry_after(DockyardError("x")) is None
        assert get_retry_after(RuntimeError("x")) is None
