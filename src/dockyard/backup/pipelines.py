"""Backup, restore and restore-test pipelines.

BackupPipeline
    Dumps every configured database into the backup directory on the
    database server, checks the file is non-empty, optionally copies it
    to S3 and optionally deletes the local copy.  One execution record per
    database; a failing database does not stop the others.  After any
    success, copies past the retention policies are pruned.

RestorePipeline
    Restores one execution's file into the live database container,
    fetching it from S3 first when the local copy is gone.  Failures are
    persisted and re-raised.

RestoreTestPipeline
    Restores the latest successful backup into a throwaway container
    (``backup-test-<8 chars>``) and runs a verification query.  Failures
    are persisted and swallowed; the test container is removed in
    ``finally`` no matter what.
"""

from __future__ import annotations

import secrets
import string
import time

from dockyard.backup.engines import EngineStrategy, strategy_for
from dockyard.backup.models import (
    BackupExecutionRecord,
    BackupRunResult,
    BackupStatus,
    ExecutionMode,
    ExecutionOutcome,
    RestoreStatus,
    RestoreTestStatus,
    ScheduledBackup,
)
from dockyard.backup.retention import all_copies_gone, local_candidates, s3_candidates, select_expired
from dockyard.backup.storage import (
    download_command,
    file_exists_command,
    file_size_command,
    local_backup_dir,
    local_delete_command,
    s3_delete_command,
    s3_object_path,
    upload_command,
)
from dockyard.core.errors import (
    BackupError,
    DockyardError,
    PreconditionError,
    RemoteCommandError,
    TransientError,
)
from dockyard.core.events import Event, EventEmitter, EventType, emit_safely
from dockyard.core.logging import get_logger
from dockyard.core.models import Host, Server, utcnow
from dockyard.core.settings import DockyardSettings, get_settings
from dockyard.persistence import BackupExecutionRepository, BackupRepository, ServerRepository
from dockyard.remote.executor import RemoteExecutor, run_checked
from dockyard.remote.shell import bounded_wait, quote

logger = get_logger(__name__)

EMPTY_FILE_MESSAGE = "Local backup file is empty or was not created"
FILE_UNAVAILABLE_MESSAGE = "Backup file not available locally or in S3"
_TEST_NAME_ALPHABET = string.ascii_lowercase + string.digits


def restore_test_container_name() -> str:
    suffix = "".join(secrets.choice(_TEST_NAME_ALPHABET) for _ in range(8))
    return f"backup-test-{suffix}"


class _PipelineBase:
    def __init__(
        self,
        *,
        servers: ServerRepository,
        executions: BackupExecutionRepository,
        executor: RemoteExecutor,
        emitter: EventEmitter,
        settings: DockyardSettings | None = None,
    ):
        self._servers = servers
        self._executions = executions
        self._executor = executor
        self._emitter = emitter
        self._settings = settings or get_settings()

    def _server(self, backup: ScheduledBackup) -> Server:
        server_id = backup.database.server_id
        server = self._servers.get(server_id) if server_id is not None else None
        if server is None:
            raise PreconditionError("Server not found")
        return server

    def _file_exists(self, host: Host, path: str) -> bool:
        result = self._executor.run(host, file_exists_command(path), timeout_seconds=60)
        return result.output.strip() == "exists"

    def _fetch_from_s3(self, host: Host, backup: ScheduledBackup, execution: BackupExecutionRecord) -> bool:
        """Download the execution's file into its original path; ``False`` when impossible."""
        if backup.s3 is None or not execution.s3_uploaded or execution.s3_storage_deleted:
            return False
        assert execution.filename
        try:
            run_checked(
                self._executor,
                host,
                download_command(backup.s3, s3_object_path(backup, execution.filename), execution.filename),
                timeout_seconds=self._settings.command_timeout_seconds,
                error_message="S3 download failed",
            )
        except DockyardError as exc:
            logger.warning("backup.s3_download_failed", execution_uuid=execution.uuid, error=exc.message)
            return False
        return self._file_exists(host, execution.filename)

    def _notify(self, event_type: EventType, backup: ScheduledBackup, **payload) -> None:
        emit_safely(self._emitter, Event(
            event_type=event_type,
            source="backup",
            team_id=backup.team_id,
            payload={
                "backup_uuid": backup.uuid,
                "database": backup.database.display,
                **payload,
            },
        ))


# =============================================================================
# BACKUP
# =============================================================================


class BackupPipeline(_PipelineBase):
    """Runs one scheduled backup."""

    def run(self, backup: ScheduledBackup) -> BackupRunResult:
        result = BackupRunResult(backup_uuid=backup.uuid)
        server = self._server(backup)
        strategy = strategy_for(backup.database)

        databases: list[str | None] = [None] if backup.dump_all else list(backup.database_names)
        if not databases:
            raise BackupError("No databases selected for backup")

        directory = local_backup_dir(self._settings.backup_dir, backup)
        transient: TransientError | None = None
        for database in databases:
            try:
                outcome = self._backup_one(backup, server.host, strategy, directory, database)
            except TransientError as exc:
                transient = exc
                outcome = ExecutionOutcome(database=database or "all", status=BackupStatus.FAILED, message=exc.message)
            result.outcomes.append(outcome)

        if any(o.status == BackupStatus.SUCCESS for o in result.outcomes):
            result.pruned_executions = self._apply_retention(backup, server.host)

        result.mark_complete()
        logger.info(
            "backup.completed",
            backup_uuid=backup.uuid,
            databases=len(result.outcomes),
            succeeded=result.succeeded,
            duration_seconds=result.duration_seconds,
        )
        if transient is not None:
            raise transient
        return result

    def _backup_one(
        self,
        backup: ScheduledBackup,
        host: Host,
        strategy: EngineStrategy,
        directory: str,
        database: str | None,
    ) -> ExecutionOutcome:
        location = f"{directory}/{strategy.dump_filename(database, int(time.time()))}"
        execution = self._executions.add(BackupExecutionRecord(
            backup_id=backup.id,
            mode=ExecutionMode.BACKUP,
            database_name=database or "all",
            status=BackupStatus.PENDING,
            filename=location,
        ))
        started = time.monotonic()
        try:
            execution.status = BackupStatus.RUNNING
            self._executions.update(execution)
            run_checked(self._executor, host, f"mkdir -p {quote(directory)}", timeout_seconds=60)
            run_checked(
                self._executor,
                host,
                strategy.dump_command(backup.database, database, location),
                timeout_seconds=backup.timeout,
                error_message="Database dump failed",
            )
            size_output = self._executor.run(host, file_size_command(location), timeout_seconds=60).output
            execution.size = int(size_output) if size_output.isdigit() else 0
            if execution.size <= 0:
                raise BackupError(EMPTY_FILE_MESSAGE)

            execution.status = BackupStatus.SUCCESS
            if backup.save_s3 and backup.s3 is not None:
                self._upload(backup, host, execution)
            if backup.disable_local_backup and execution.s3_uploaded:
                self._executor.run(host, f"rm -f {quote(location)}", timeout_seconds=60)
                execution.local_storage_deleted = True

            logger.info("backup.database_succeeded", execution_uuid=execution.uuid, size=execution.size)
            self._notify(EventType.BACKUP_SUCCESS, backup, database_name=execution.database_name, size=execution.size)
        except TransientError as exc:
            execution.status = BackupStatus.FAILED
            execution.message = exc.message
            raise
        except DockyardError as exc:
            execution.status = BackupStatus.FAILED
            execution.message = exc.message
            logger.error("backup.database_failed", execution_uuid=execution.uuid, error=exc.message)
            self._notify(EventType.BACKUP_FAILED, backup, database_name=execution.database_name, error=exc.message)
        except Exception as exc:
            execution.status = BackupStatus.FAILED
            execution.message = f"{type(exc).__name__}: {exc}"
            logger.exception("backup.database_failed", execution_uuid=execution.uuid, error=execution.message)
            self._notify(
                EventType.BACKUP_FAILED, backup, database_name=execution.database_name, error=execution.message
            )
        finally:
            execution.finished_at = utcnow()
            execution.duration_seconds = round(time.monotonic() - started, 3)
            self._executions.update(execution)

        return ExecutionOutcome(
            database=execution.database_name,
            status=execution.status,
            filename=execution.filename,
            size=execution.size,
            s3_uploaded=execution.s3_uploaded,
            message=execution.message,
        )

    def _upload(self, backup: ScheduledBackup, host: Host, execution: BackupExecutionRecord) -> None:
        assert backup.s3 is not None and execution.filename
        try:
            run_checked(
                self._executor,
                host,
                upload_command(backup.s3, execution.filename, s3_object_path(backup, execution.filename)),
                timeout_seconds=backup.timeout,
                error_message="S3 upload failed",
            )
        except DockyardError as exc:
            execution.message = f"Backup succeeded but S3 upload failed: {exc.message}"
            logger.warning("backup.s3_upload_failed", execution_uuid=execution.uuid, error=exc.message)
            return
        execution.s3_uploaded = True

    def _apply_retention(self, backup: ScheduledBackup, host: Host) -> int:
        """Prune copies past the backup's retention; returns deleted record count."""
        executions = self._executions.list_for_backup(backup.id)
        try:
            if not backup.disable_local_backup:
                expired = select_expired(local_candidates(executions), backup.local_retention)
                paths = [e.filename for e in expired if e.filename]
                if paths:
                    run_checked(self._executor, host, local_delete_command(paths), timeout_seconds=300,
                                error_message="Failed to delete old local backups")
                for execution in expired:
                    execution.local_storage_deleted = True
                    self._executions.update(execution)

            if backup.save_s3 and backup.s3 is not None:
                expired = select_expired(s3_candidates(executions), backup.s3_retention)
                objects = [s3_object_path(backup, e.filename) for e in expired if e.filename]
                if objects:
                    run_checked(self._executor, host, s3_delete_command(backup.s3, objects), timeout_seconds=300,
                                error_message="Failed to delete old S3 backups")
                for execution in expired:
                    execution.s3_storage_deleted = True
                    self._executions.update(execution)
        except DockyardError as exc:
            logger.warning("backup.retention_failed", backup_uuid=backup.uuid, error=exc.message)

        gone = [e for e in executions if all_copies_gone(e)]
        for execution in gone:
            self._executions.delete(execution.id)
        if gone:
            logger.info("backup.retention_pruned", backup_uuid=backup.uuid, deleted=len(gone))
        return len(gone)


# =============================================================================
# RESTORE
# =============================================================================


class RestorePipeline(_PipelineBase):
    """Restores one backup execution into the live database."""

    def run(self, backup: ScheduledBackup, execution: BackupExecutionRecord) -> BackupExecutionRecord:
        execution.restore_status = RestoreStatus.IN_PROGRESS
        execution.restore_started_at = utcnow()
        execution.restore_message = None
        self._executions.update(execution)

        try:
            server = self._server(backup)
            strategy = strategy_for(backup.database)
            if not execution.filename:
                raise PreconditionError("Execution has no backup file")

            if execution.local_storage_deleted or not self._file_exists(server.host, execution.filename):
                self._fetch_from_s3(server.host, backup, execution)
            if not self._file_exists(server.host, execution.filename):
                raise BackupError(f"Backup file not found: {execution.filename}")

            run_checked(
                self._executor,
                server.host,
                strategy.restore_command(backup.database, execution.database_name or None, execution.filename),
                timeout_seconds=max(60, backup.timeout),
                error_message="Restore failed",
            )
        except DockyardError as exc:
            execution.restore_status = RestoreStatus.FAILED
            execution.restore_message = _error_output(exc)
            execution.restore_finished_at = utcnow()
            self._executions.update(execution)
            logger.error("restore.failed", execution_uuid=execution.uuid, error=exc.message)
            self._notify(EventType.RESTORE_FAILED, backup, execution_uuid=execution.uuid, error=exc.message)
            raise

        execution.restore_status = RestoreStatus.SUCCESS
        execution.restore_message = "Restore completed successfully"
        execution.restore_finished_at = utcnow()
        self._executions.update(execution)
        logger.info("restore.succeeded", execution_uuid=execution.uuid)
        self._notify(EventType.RESTORE_SUCCESS, backup, execution_uuid=execution.uuid)
        return execution

    def failed(self, execution: BackupExecutionRecord, error: BaseException) -> None:
        """Permanent-failure callback; updates the status only."""
        if execution.restore_status == RestoreStatus.FAILED:
            return
        execution.restore_status = RestoreStatus.FAILED
        execution.restore_message = str(error)
        execution.restore_finished_at = utcnow()
        self._executions.update(execution)


def _error_output(exc: DockyardError) -> str:
    if isinstance(exc, RemoteCommandError):
        output = "\n".join(p.strip() for p in (exc.stderr, exc.stdout) if p and p.strip())
        if output:
            return f"{exc.message}\n{output}"
    return exc.message


# =============================================================================
# RESTORE TEST
# =============================================================================


class RestoreTestPipeline(_PipelineBase):
    """Proves a backup can be restored, without touching the live database."""

    def __init__(self, *, backups: BackupRepository, **kwargs):
        super().__init__(**kwargs)
        self._backups = backups

    def run(
        self, backup: ScheduledBackup, execution: BackupExecutionRecord | None = None
    ) -> BackupExecutionRecord | None:
        execution = execution or self._executions.latest_successful(backup.id)
        if execution is None:
            logger.info("restore_test.no_successful_backup", backup_uuid=backup.uuid)
            return None

        execution.restore_test_status = RestoreTestStatus.PENDING
        execution.restore_test_at = utcnow()
        self._executions.update(execution)

        started = time.monotonic()
        container: str | None = None
        server: Server | None = None
        try:
            try:
                server = self._server(backup)
            except PreconditionError as exc:
                self._mark_failed(backup, execution, exc.message, started)
                return execution
            strategy = strategy_for(backup.database)

            location = self._ensure_file(server.host, backup, execution)
            if location is None:
                self._mark_failed(backup, execution, FILE_UNAVAILABLE_MESSAGE, started)
                return execution

            container = restore_test_container_name()
            execution.restore_test_status = RestoreTestStatus.RUNNING
            self._executions.update(execution)
            logger.info("restore_test.started", execution_uuid=execution.uuid, container=container)

            db = backup.database
            host = server.host
            run_checked(self._executor, host, strategy.test_run_command(db, container),
                        timeout_seconds=300, error_message="Failed to start test container")
            run_checked(
                self._executor,
                host,
                bounded_wait(strategy.ready_check(db, container),
                             timeout_seconds=self._settings.database_ready_timeout_seconds),
                timeout_seconds=self._settings.database_ready_timeout_seconds + 30,
                error_message="Test database did not become ready",
            )
            run_checked(self._executor, host, strategy.test_restore_command(db, container, location),
                        timeout_seconds=self._settings.restore_test_timeout_seconds,
                        error_message=f"{strategy.engine.display_name} restore failed")
            run_checked(self._executor, host, strategy.verify_command(db, container),
                        timeout_seconds=120, error_message="Verification query failed")

            execution.restore_test_status = RestoreTestStatus.SUCCESS
            execution.restore_test_message = "Restore test completed successfully"
            execution.restore_test_duration_seconds = round(time.monotonic() - started, 3)
            self._executions.update(execution)
            backup.last_restore_test_at = utcnow()
            self._backups.update(backup)
            logger.info(
                "restore_test.succeeded",
                execution_uuid=execution.uuid,
                duration_seconds=execution.restore_test_duration_seconds,
            )
            self._notify(
                EventType.RESTORE_TEST_SUCCESS,
                backup,
                execution_uuid=execution.uuid,
                duration_seconds=execution.restore_test_duration_seconds,
            )
        except Exception as exc:
            logger.error("restore_test.failed", execution_uuid=execution.uuid, error=str(exc))
            self._mark_failed(backup, execution, getattr(exc, "message", None) or str(exc), started)
        finally:
            if container is not None and server is not None:
                self._cleanup(server.host, container)
        return execution

    def _ensure_file(self, host: Host, backup: ScheduledBackup, execution: BackupExecutionRecord) -> str | None:
        if not execution.filename:
            return None
        if not execution.local_storage_deleted and self._file_exists(host, execution.filename):
            return execution.filename
        if self._fetch_from_s3(host, backup, execution):
            return execution.filename
        return None

    def _mark_failed(
        self, backup: ScheduledBackup, execution: BackupExecutionRecord, message: str, started: float
    ) -> None:
        execution.restore_test_status = RestoreTestStatus.FAILED
        execution.restore_test_message = message
        execution.restore_test_duration_seconds = round(time.monotonic() - started, 3)
        self._executions.update(execution)
        self._notify(EventType.RESTORE_TEST_FAILED, backup, execution_uuid=execution.uuid, error=message)

    def _cleanup(self, host: Host, container: str) -> None:
        try:
            self._executor.run(host, f"docker rm -f {quote(container)} 2>/dev/null || true", timeout_seconds=60)
        except Exception as exc:
            logger.warning("restore_test.cleanup_failed", container=container, error=str(exc))


__all__ = [
    "EMPTY_FILE_MESSAGE",
    "FILE_UNAVAILABLE_MESSAGE",
    "restore_test_container_name",
    "BackupPipeline",
    "RestorePipeline",
    "RestoreTestPipeline",
]
