"""Tests for dockyard.core.settings."""

import pytest

from dockyard.core.settings import (
    CacheBackendKind,
    DockyardSettings,
    LockBackendKind,
    clear_settings_cache,
    get_settings,
)


@pytest.fixture(autouse=True)
def _fresh_settings():
    clear_settings_cache()
    yield
    clear_settings_cache()


class TestDefaults:
    def test_documented_defaults(self):
        settings = DockyardSettings(_env_file=None)
        assert settings.deploy_backoff_seconds == [30, 60, 120]
        assert settings.deploy_timeout_seconds == 3600
        assert settings.health_check_interval_seconds == 30
        assert settings.health_validation_window_seconds == 1800
        assert settings.rollback_failure_threshold == 2
        assert settings.canary_failure_threshold == 2
        assert settings.provisioning_cooldown_minutes == 360
        assert settings.provisioning_lock_seconds == 600
        assert settings.backup_backoff_seconds == [60, 120]
        assert settings.cache_backend is CacheBackendKind.MEMORY
        assert settings.lock_backend is LockBackendKind.MEMORY
        assert settings.auto_provision_api_key is None


class TestEnvironment:
    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("DOCKYARD_LOCK_BACKEND", "redis")
        monkeypatch.setenv("DOCKYARD_DEPLOY_TRIES", "5")
        monkeypatch.setenv("DOCKYARD_AUTO_PROVISION_API_KEY", "hcloud-token")
        settings = DockyardSettings(_env_file=None)
        assert settings.lock_backend is LockBackendKind.REDIS
        assert settings.deploy_tries == 5
        assert settings.auto_provision_api_key.get_secret_value() == "hcloud-token"
        assert "hcloud-token" not in repr(settings)

    def test_list_from_json(self, monkeypatch):
        monkeypatch.setenv("DOCKYARD_DEPLOY_BACKOFF_SECONDS", "[5, 10]")
        assert DockyardSettings(_env_file=None).deploy_backoff_seconds == [5, 10]


class TestCaching:
    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()

    def test_clear_settings_cache(self, monkeypatch):
        first = get_settings()
        clear_settings_cache()
        assert get_settings() is not first
