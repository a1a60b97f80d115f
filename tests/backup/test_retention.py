"""Tests for dockyard.backup.retention."""

from datetime import timedelta

from dockyard.backup.models import BackupExecutionRecord, BackupStatus, RetentionPolicy
from dockyard.backup.retention import (
    GIB,
    all_copies_gone,
    local_candidates,
    s3_candidates,
    select_expired,
)
from dockyard.core.models import utcnow

NOW = utcnow()


def _execution(record_id, days_ago=0, size=1024, status=BackupStatus.SUCCESS, **fields):
    return BackupExecutionRecord(
        id=record_id,
        status=status,
        size=size,
        filename=f"/backups/dump-{record_id}.dmp",
        created_at=NOW - timedelta(days=days_ago),
        **fields,
    )


class TestRetentionPolicy:
    def test_unlimited_by_default(self):
        assert RetentionPolicy().unlimited
        assert not RetentionPolicy(days=7).unlimited


class TestSelectExpired:
    def test_unlimited_keeps_everything(self):
        assert select_expired([_execution(1, 30), _execution(2, 60)], RetentionPolicy()) == []

    def test_amount_keeps_newest(self):
        executions = [_execution(1, 3), _execution(2, 1), _execution(3, 0), _execution(4, 2)]
        expired = select_expired(executions, RetentionPolicy(amount=2))
        assert [e.id for e in expired] == [4, 1]

    def test_days_are_relative_to_newest_copy(self):
        executions = [_execution(1, 40), _execution(2, 12), _execution(3, 10)]
        expired = select_expired(executions, RetentionPolicy(days=7))
        assert [e.id for e in expired] == [1]

    def test_max_storage_drops_copies_older_than_the_overflow(self):
        executions = [
            _execution(1, 0, size=int(0.9 * GIB)),
            _execution(2, 1, size=int(0.6 * GIB)),
            _execution(3, 2, size=int(0.6 * GIB)),
            _execution(4, 3, size=int(0.1 * GIB)),
        ]
        expired = select_expired(executions, RetentionPolicy(max_storage_gb=1))
        assert [e.id for e in expired] == [4]

    def test_newest_copy_is_not_counted_against_storage(self):
        executions = [_execution(1, 0, size=5 * GIB), _execution(2, 1, size=GIB // 2)]
        assert select_expired(executions, RetentionPolicy(max_storage_gb=1)) == []

    def test_limits_are_combined(self):
        executions = [_execution(1, 0), _execution(2, 1), _execution(3, 20), _execution(4, 2)]
        expired = select_expired(executions, RetentionPolicy(amount=3, days=7))
        assert [e.id for e in expired] == [3]

    def test_failed_runs_are_never_candidates(self):
        executions = [_execution(1, 0), _execution(2, 9, status=BackupStatus.FAILED)]
        assert select_expired(executions, RetentionPolicy(amount=1)) == []


class TestCopies:
    def test_candidates(self):
        local_gone = _execution(1, local_storage_deleted=True, s3_uploaded=True)
        s3_gone = _execution(2, s3_uploaded=True, s3_storage_deleted=True)
        never_uploaded = _execution(3)
        executions = [local_gone, s3_gone, never_uploaded]
        assert local_candidates(executions) == [s3_gone, never_uploaded]
        assert s3_candidates(executions) == [local_gone]

    def test_all_copies_gone(self):
        assert all_copies_gone(_execution(1, local_storage_deleted=True))
        assert all_copies_gone(_execution(2, local_storage_deleted=True, s3_uploaded=True, s3_storage_deleted=True))
        assert not all_copies_gone(_execution(3, local_storage_deleted=True, s3_uploaded=True))
        assert not all_copies_gone(_execution(4, s3_uploaded=True, s3_storage_deleted=True))
