"""Point-to-point database transfer.

Stages::

    pending → preparing → transferring → restoring → completed
                  │             │             │
                  └─────────────┴─────────────┴──→ failed | cancelled

``clone`` copies schema and data into the target (by default the same
database on ``target_server_id``); ``data_only`` copies rows into an
existing target database and keeps its schema.

The dump is written on the source server.  When the target lives on
another server the file is pulled to the worker and pushed to the target
with the executor's file transfer; the database servers never talk to
each other.

Cancellation is cooperative: the user flips the stored record to
``cancelled`` and the pipeline notices at the next stage boundary.  A
cancelled transfer is never overwritten by a later status.
"""

from __future__ import annotations

import os
import tempfile
import time
import traceback
from dataclasses import replace

from dockyard.backup.engines import strategy_for
from dockyard.backup.models import DatabaseResource
from dockyard.backup.storage import file_size_command
from dockyard.core.errors import (
    PreconditionError,
    TransferCancelledError,
    ValidationError,
)
from dockyard.core.events import Event, EventEmitter, EventType, emit_safely
from dockyard.core.formatting import format_bytes
from dockyard.core.logging import LogContext, get_logger
from dockyard.core.models import Host, Server
from dockyard.core.settings import DockyardSettings, get_settings
from dockyard.persistence import ServerRepository, TransferRepository
from dockyard.remote.executor import RemoteExecutor, run_checked
from dockyard.remote.shell import quote
from dockyard.transfer.models import TransferMode, TransferRecord, TransferStatus
from dockyard.transfer.registry import ResourceRegistry

logger = get_logger(__name__)


def work_directory(transfer: TransferRecord) -> str:
    return f"/tmp/dockyard-transfer-{transfer.uuid}"


class TransferPipeline:
    """Runs one resource transfer."""

    def __init__(
        self,
        *,
        transfers: TransferRepository,
        registry: ResourceRegistry,
        servers: ServerRepository,
        executor: RemoteExecutor,
        emitter: EventEmitter,
        settings: DockyardSettings | None = None,
    ):
        self._transfers = transfers
        self._registry = registry
        self._servers = servers
        self._executor = executor
        self._emitter = emitter
        self._settings = settings or get_settings()

    def run(self, transfer_id: int) -> TransferRecord | None:
        transfer = self._transfers.get(transfer_id)
        if transfer is None:
            logger.warning("transfer.not_found", transfer_id=transfer_id)
            return None
        if transfer.is_cancelled:
            logger.info("transfer.already_cancelled", transfer_uuid=transfer.uuid)
            return transfer

        with LogContext(transfer_uuid=transfer.uuid):
            return self._run(transfer)

    def _run(self, transfer: TransferRecord) -> TransferRecord:
        touched: list[Host] = []
        try:
            self._stage(transfer, TransferStatus.PREPARING, "Preparing transfer", 5)
            source, target = self._resolve(transfer)
            source_server = self._server(source, "Source server not found")
            target_server = self._server(target, "Target server not found")
            strategy = strategy_for(source)
            if strategy_for(target) is not strategy:
                raise ValidationError("Source and target database engines differ")
            data_only = transfer.mode == TransferMode.DATA_ONLY

            self._check_cancelled(transfer)
            self._stage(transfer, TransferStatus.TRANSFERRING, "Dumping source database", 30)
            directory = work_directory(transfer)
            location = f"{directory}/{strategy.dump_filename(source.database_name or None, int(time.time()))}"
            touched.append(source_server.host)
            run_checked(self._executor, source_server.host, f"mkdir -p {quote(directory)}", timeout_seconds=60)
            run_checked(
                self._executor,
                source_server.host,
                strategy.dump_command(source, source.database_name or None, location, data_only=data_only),
                timeout_seconds=self._settings.transfer_timeout_seconds,
                error_message="Source dump failed",
            )
            size_output = self._executor.run(source_server.host, file_size_command(location), timeout_seconds=60).output
            transfer.total_bytes = int(size_output) if size_output.isdigit() else 0
            transfer.append_log(f"Dump completed ({format_bytes(transfer.total_bytes)})")

            if target_server.id != source_server.id:
                touched.append(target_server.host)
                self._copy_between(source_server.host, target_server.host, location)
                transfer.append_log(f"Copied dump to {target_server.name or target_server.ip}")
            transfer.transferred_bytes = transfer.total_bytes
            self._save(transfer)

            self._check_cancelled(transfer)
            self._stage(transfer, TransferStatus.RESTORING, "Restoring into target database", 70)
            run_checked(
                self._executor,
                target_server.host,
                strategy.restore_command(target, target.database_name or None, location, data_only=data_only),
                timeout_seconds=self._settings.transfer_timeout_seconds,
                error_message="Target restore failed",
            )

            transfer.mark_completed()
            transfer.append_log("Transfer completed")
            logger.info("transfer.completed", bytes=transfer.total_bytes)
        except TransferCancelledError:
            transfer.append_log("Transfer cancelled")
            logger.info("transfer.cancelled", step=transfer.current_step)
        except Exception as exc:
            message = getattr(exc, "message", None) or str(exc)
            transfer.mark_failed(message, {
                "exception": type(exc).__name__,
                "trace": traceback.format_exc(),
            })
            transfer.append_log(f"Transfer failed: {message}")
            logger.error("transfer.failed", error=message, step=transfer.current_step)
            raise
        finally:
            self._cleanup(transfer, touched)
            self._save(transfer)
        return transfer

    def _resolve(self, transfer: TransferRecord) -> tuple[DatabaseResource, DatabaseResource]:
        source = self._registry.resolve(transfer.source) if transfer.source else None
        if source is None:
            raise PreconditionError("Source database not found")
        transfer.append_log(f"Source: {source.display}")

        if transfer.mode == TransferMode.DATA_ONLY or transfer.target is not None:
            target = self._registry.resolve(transfer.target) if transfer.target else None
            if target is None:
                raise PreconditionError("Target database not found")
        else:
            target = replace(source, server_id=transfer.target_server_id or source.server_id)
        transfer.append_log(f"Target: {target.display}")
        return source, target

    def _server(self, db: DatabaseResource, missing: str) -> Server:
        server = self._servers.get(db.server_id) if db.server_id is not None else None
        if server is None:
            raise PreconditionError(missing)
        return server

    def _copy_between(self, source: Host, target: Host, location: str) -> None:
        with tempfile.TemporaryDirectory(prefix="dockyard-transfer-") as scratch:
            local = os.path.join(scratch, os.path.basename(location))
            timeout = self._settings.transfer_timeout_seconds
            self._executor.fetch_file(source, location, local, timeout_seconds=timeout)
            run_checked(self._executor, target, f"mkdir -p {quote(os.path.dirname(location))}", timeout_seconds=60)
            self._executor.copy_file(target, local, location, timeout_seconds=timeout)

    def _stage(self, transfer: TransferRecord, status: TransferStatus, step: str, progress: int) -> None:
        transfer.update_progress(status, step, progress)
        transfer.append_log(step)
        logger.info("transfer.stage", status=status.value, step=step)
        self._save(transfer)

    def _check_cancelled(self, transfer: TransferRecord) -> None:
        stored = self._transfers.get(transfer.id)
        if stored is not None and stored.is_cancelled:
            transfer.mark_cancelled()
            raise TransferCancelledError("Transfer was cancelled").with_context(transfer_uuid=transfer.uuid)

    def _save(self, transfer: TransferRecord) -> None:
        stored = self._transfers.get(transfer.id)
        if stored is not None and stored is not transfer and stored.is_cancelled:
            transfer.status = TransferStatus.CANCELLED
        self._transfers.update(transfer)
        emit_safely(self._emitter, Event(
            event_type=EventType.TRANSFER_STATUS_CHANGED,
            source="transfer",
            team_id=transfer.team_id,
            payload={
                "transfer_uuid": transfer.uuid,
                "status": transfer.status.value,
                "step": transfer.current_step,
                "progress": transfer.progress,
            },
        ))

    def _cleanup(self, transfer: TransferRecord, hosts: list[Host]) -> None:
        for host in hosts:
            try:
                self._executor.run(host, f"rm -rf {quote(work_directory(transfer))}", timeout_seconds=60)
            except Exception as exc:
                logger.warning("transfer.cleanup_failed", host=str(host), error=str(exc))


__all__ = ["work_directory", "TransferPipeline"]
