"""Retry strategies and per-job queue policies.

Orchestration jobs retry on a *fixed schedule* rather than exponentially:
a deployment waits 30, 60, then 120 seconds; a backup 60 then 120.  The
schedule is an array and the last entry is reused once the array runs
out.

Example:
    >>> from dockyard.execution.retry import FixedScheduleBackoff
    >>>
    >>> strategy = FixedScheduleBackoff(schedule=(30, 60, 120), max_retries=2)
    >>> [strategy.next_delay(attempt) for attempt in range(4)]
    [30, 60, 120, 120]
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from dockyard.core.errors import get_retry_after, is_retryable


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int, error: BaseException | None = None) -> int:
        """Calculate delay before next retry attempt.

        Args:
            attempt: Zero-based attempt number (0 = first retry)
            error: The exception that caused the failure

        Returns:
            Delay in seconds before next attempt
        """
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """Determine if another retry should be attempted.

        Args:
            attempt: Number of retries already made
            error: The exception that caused the failure

        Returns:
            True if should retry, False otherwise
        """
        ...


@dataclass
class FixedScheduleBackoff(RetryStrategy):
    """Delays taken from a fixed schedule, clamped to the last entry.

    Only errors flagged retryable (see :func:`dockyard.core.errors.is_retryable`)
    are retried; an error's own ``retry_after`` wins over the schedule.

    Attributes:
        schedule: Delay in seconds per retry
        max_retries: Maximum number of retries (``tries - 1``)
    """

    schedule: tuple[int, ...] = (30, 60, 120)
    max_retries: int = 2

    def next_delay(self, attempt: int, error: BaseException | None = None) -> int:
        if error is not None:
            retry_after = get_retry_after(error)
            if retry_after is not None:
                return retry_after
        if not self.schedule:
            return 0
        return self.schedule[min(attempt, len(self.schedule) - 1)]

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        if attempt >= self.max_retries:
            return False
        if error is not None:
            return is_retryable(error)
        return True


@dataclass
class ConstantBackoff(RetryStrategy):
    """Constant delay between retries."""

    max_retries: int = 3
    delay: int = 30

    def next_delay(self, attempt: int, error: BaseException | None = None) -> int:
        return self.delay

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        return attempt < self.max_retries


@dataclass
class NoRetry(RetryStrategy):
    """No retry - fail immediately."""

    def next_delay(self, attempt: int, error: BaseException | None = None) -> int:
        return 0

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        return False


@dataclass(frozen=True)
class JobPolicy:
    """Queue-level settings of one job type.

    Attributes:
        tries: Total attempts including the first
        backoff: Fixed delay schedule between attempts
        timeout_seconds: Hard time limit of one attempt
        queue: Celery queue the job is routed to
    """

    tries: int = 1
    backoff: tuple[int, ...] = field(default_factory=tuple)
    timeout_seconds: int = 3600
    queue: str = "default"

    @property
    def max_retries(self) -> int:
        return max(self.tries - 1, 0)

    def strategy(self) -> RetryStrategy:
        if self.tries <= 1:
            return NoRetry()
        return FixedScheduleBackoff(schedule=self.backoff, max_retries=self.max_retries)


DEPLOY_POLICY = JobPolicy(tries=3, backoff=(30, 60, 120), timeout_seconds=3600, queue="high")
HEALTH_MONITOR_POLICY = JobPolicy(tries=1, timeout_seconds=120, queue="default")
CANARY_POLICY = JobPolicy(tries=1, timeout_seconds=300, queue="high")
RESOURCE_CHECK_POLICY = JobPolicy(tries=3, backoff=(10, 30, 60), timeout_seconds=300, queue="low")
AUTO_PROVISION_POLICY = JobPolicy(tries=1, timeout_seconds=600, queue="high")
BACKUP_POLICY = JobPolicy(tries=2, backoff=(60, 120), timeout_seconds=3600, queue="default")
RESTORE_POLICY = JobPolicy(tries=1, timeout_seconds=3600, queue="high")
RESTORE_TEST_POLICY = JobPolicy(tries=1, timeout_seconds=1800, queue="high")
TRANSFER_POLICY = JobPolicy(tries=1, timeout_seconds=7200, queue="default")


__all__ = [
    "RetryStrategy",
    "FixedScheduleBackoff",
    "ConstantBackoff",
    "NoRetry",
    "JobPolicy",
    "DEPLOY_POLICY",
    "HEALTH_MONITOR_POLICY",
    "CANARY_POLICY",
    "RESOURCE_CHECK_POLICY",
    "AUTO_PROVISION_POLICY",
    "BACKUP_POLICY",
    "RESTORE_POLICY",
    "RESTORE_TEST_POLICY",
    "TRANSFER_POLICY",
]
