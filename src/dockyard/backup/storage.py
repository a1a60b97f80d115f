"""Backup file locations and S3 transfer commands.

Local files and S3 objects share the same namespace::

    <backup_dir>/databases/<team-slug>-<team-id>/<db-slug>-<db-uuid>/<file>
    <s3 path>/databases/<team-slug>-<team-id>/<db-slug>-<db-uuid>/<file>

Uploads and downloads run the MinIO client (``mc``) in a throwaway
container on the database server, so the worker never holds the file.
"""

from __future__ import annotations

import posixpath

from dockyard.backup.models import S3Storage, ScheduledBackup
from dockyard.core.formatting import slugify
from dockyard.remote.shell import join_commands, quote

MC_IMAGE = "minio/mc:latest"
S3_ALIAS = "backup"


def database_directory(backup: ScheduledBackup) -> str:
    """``databases/<team-slug>-<team-id>/<db-slug>-<db-uuid>``."""
    db = backup.database
    return f"databases/{backup.team_slug}/{slugify(db.name)}-{db.uuid}"


def local_backup_dir(backup_root: str, backup: ScheduledBackup) -> str:
    return f"{backup_root.rstrip('/')}/{database_directory(backup)}"


def s3_object_path(backup: ScheduledBackup, filename: str) -> str:
    """Object key of *filename* inside the bucket."""
    prefix = backup.s3.path.strip("/") if backup.s3 else ""
    parts = [prefix, database_directory(backup), posixpath.basename(filename)]
    return "/".join(p for p in parts if p)


def file_exists_command(path: str) -> str:
    return f"test -f {quote(path)} && echo exists || echo not_found"


def file_size_command(path: str) -> str:
    return f"stat -c %s {quote(path)} 2>/dev/null || echo 0"


def _mc(s3: S3Storage, directory: str | None, script: str) -> str:
    alias = f"mc alias set {S3_ALIAS} {quote(s3.endpoint)} {quote(s3.key)} {quote(s3.secret)} >/dev/null"
    volume = f"-v {quote(f'{directory}:{directory}')} " if directory else ""
    return (
        f"docker run --rm {volume}--entrypoint sh {MC_IMAGE} "
        f"-c {quote(f'{alias} && {script}')}"
    )


def upload_command(s3: S3Storage, local_path: str, object_path: str) -> str:
    target = f"{S3_ALIAS}/{s3.bucket}/{object_path}"
    return _mc(s3, posixpath.dirname(local_path), f"mc cp {quote(local_path)} {quote(target)}")


def download_command(s3: S3Storage, object_path: str, local_path: str) -> str:
    directory = posixpath.dirname(local_path)
    source = f"{S3_ALIAS}/{s3.bucket}/{object_path}"
    return join_commands(
        f"mkdir -p {quote(directory)}",
        _mc(s3, directory, f"mc cp {quote(source)} {quote(local_path)}"),
    )


def local_delete_command(paths: list[str]) -> str:
    return "rm -f " + " ".join(quote(p) for p in paths)


def s3_delete_command(s3: S3Storage, object_paths: list[str]) -> str:
    """Remove *object_paths* from the bucket; missing objects are not an error."""
    targets = " ".join(quote(f"{S3_ALIAS}/{s3.bucket}/{p}") for p in object_paths)
    return _mc(s3, None, f"mc rm --force {targets}")


__all__ = [
    "MC_IMAGE",
    "database_directory",
    "local_backup_dir",
    "s3_object_path",
    "file_exists_command",
    "file_size_command",
    "upload_command",
    "download_command",
    "local_delete_command",
    "s3_delete_command",
]
