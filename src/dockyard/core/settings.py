"""Centralized settings for dockyard workers.

All fields can be set via ``DOCKYARD_*`` environment variables (e.g.
``DOCKYARD_CELERY_BROKER_URL=redis://redis:6379/0``) or a ``.env`` file.
Job defaults (backoff schedules, check intervals, cooldowns) live here so
an operator can tune them without a code change; per-application and
per-team values stored by the control plane take precedence where they
exist.

Usage:
    >>> from dockyard.core.settings import get_settings
    >>> settings = get_settings()
    >>> settings.health_check_interval_seconds
    30

Tags:
    settings, configuration, pydantic, environment
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class CacheBackendKind(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


class LockBackendKind(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"
    DATABASE = "database"


class DockyardSettings(BaseSettings):
    """Dockyard worker configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DOCKYARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Infrastructure ───────────────────────────────────────────
    redis_url: str = Field(default="redis://localhost:6379/0")
    celery_broker_url: str = Field(default="redis://localhost:6379/1")
    celery_result_backend: str = Field(default="redis://localhost:6379/2")
    cache_backend: CacheBackendKind = Field(default=CacheBackendKind.MEMORY)
    lock_backend: LockBackendKind = Field(default=LockBackendKind.MEMORY)
    lock_database_path: str = Field(default="/var/lib/dockyard/locks.db", description="sqlite file for the database lock backend")

    # ── Observability ────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="json or console")

    # ── Remote execution ─────────────────────────────────────────
    ssh_binary: str = Field(default="ssh")
    scp_binary: str = Field(default="scp")
    ssh_connect_timeout_seconds: int = Field(default=10)
    ssh_key_dir: str = Field(default="/var/lib/dockyard/ssh/keys")
    command_timeout_seconds: int = Field(default=3600)
    proxy_path: str = Field(default="/data/dockyard/proxy")
    helper_image: str = Field(default="ghcr.io/dockyard/helper:latest")
    backup_dir: str = Field(default="/data/dockyard/backups")

    # ── Deployments ──────────────────────────────────────────────
    deploy_backoff_seconds: list[int] = Field(default=[30, 60, 120])
    deploy_tries: int = Field(default=3)
    deploy_timeout_seconds: int = Field(default=3600)
    lock_wait_countdown_seconds: int = Field(default=30)
    approval_wait_countdown_seconds: int = Field(default=60)
    post_deploy_delay_seconds: int = Field(default=10)

    # ── Health monitoring / canary ───────────────────────────────
    health_check_interval_seconds: int = Field(default=30)
    health_validation_window_seconds: int = Field(default=1800)
    rollback_failure_threshold: int = Field(default=2)
    error_count_threshold: int = Field(default=10)
    canary_failure_threshold: int = Field(default=2)

    # ── Resource thresholds / auto-provisioning ──────────────────
    warning_notification_cooldown_minutes: int = Field(default=15)
    critical_notification_cooldown_minutes: int = Field(default=30)
    provisioning_cooldown_minutes: int = Field(default=360)
    provisioning_lock_seconds: int = Field(default=600)
    auto_server_name_prefix: str = Field(default="dockyard-auto-")
    auto_provision_api_key: SecretStr | None = Field(default=None, description="Instance-wide cloud token, preferred over team tokens")
    docker_install_timeout_seconds: int = Field(default=600)

    # ── Backups / transfers ──────────────────────────────────────
    backup_backoff_seconds: list[int] = Field(default=[60, 120])
    restore_test_timeout_seconds: int = Field(default=1800)
    transfer_timeout_seconds: int = Field(default=7200)
    database_ready_timeout_seconds: int = Field(default=120)


@lru_cache(maxsize=1)
def get_settings() -> DockyardSettings:
    """Return the process-wide settings (cached)."""
    return DockyardSettings()


def clear_settings_cache() -> None:
    """Forget cached settings; used by tests that patch the environment."""
    get_settings.cache_clear()


__all__ = [
    "CacheBackendKind",
    "LockBackendKind",
    "DockyardSettings",
    "get_settings",
    "clear_settings_cache",
]
