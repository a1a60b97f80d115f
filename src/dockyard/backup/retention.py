"""Pruning old backup copies.

Local files and S3 objects are pruned independently, each by its own
:class:`RetentionPolicy`.  Candidates are the successful executions whose
copy in that location still exists, newest first:

- ``amount``: keep the newest N
- ``days``: drop anything older than the newest copy minus N days
- ``max_storage_gb``: walk from the second newest copy, summing sizes; at
  the first copy that pushes the total over the limit, drop every copy
  older than it

The union of the three selections is removed.  An execution whose copies
are all gone is deleted outright.
"""

from __future__ import annotations

from datetime import timedelta

from dockyard.backup.models import BackupExecutionRecord, BackupStatus, RetentionPolicy

GIB = 1024**3


def newest_first(executions: list[BackupExecutionRecord]) -> list[BackupExecutionRecord]:
    return sorted(executions, key=lambda e: (e.created_at, e.id), reverse=True)


def select_expired(
    executions: list[BackupExecutionRecord], policy: RetentionPolicy
) -> list[BackupExecutionRecord]:
    """Executions *policy* no longer keeps, in newest-first order."""
    ordered = newest_first([e for e in executions if e.status == BackupStatus.SUCCESS])
    if not ordered or policy.unlimited:
        return []

    expired: dict[int, BackupExecutionRecord] = {}

    if policy.amount > 0:
        for execution in ordered[policy.amount:]:
            expired[execution.id] = execution

    if policy.days > 0:
        cutoff = ordered[0].created_at - timedelta(days=policy.days)
        for execution in ordered:
            if execution.created_at < cutoff:
                expired[execution.id] = execution

    if policy.max_storage_gb > 0:
        limit = policy.max_storage_gb * GIB
        total = 0
        for index, execution in enumerate(ordered[1:], start=1):
            total += execution.size
            if total > limit:
                for older in ordered[index + 1:]:
                    expired[older.id] = older
                break

    return [e for e in ordered if e.id in expired]


def local_candidates(executions: list[BackupExecutionRecord]) -> list[BackupExecutionRecord]:
    return [e for e in executions if not e.local_storage_deleted]


def s3_candidates(executions: list[BackupExecutionRecord]) -> list[BackupExecutionRecord]:
    return [e for e in executions if e.s3_uploaded and not e.s3_storage_deleted]


def all_copies_gone(execution: BackupExecutionRecord) -> bool:
    if not execution.local_storage_deleted:
        return False
    return execution.s3_storage_deleted or not execution.s3_uploaded


__all__ = [
    "newest_first",
    "select_expired",
    "local_candidates",
    "s3_candidates",
    "all_copies_gone",
]
