"""Tests for dockyard.execution.runtime."""

import pytest

from dockyard.backup.pipelines import BackupPipeline, RestorePipeline, RestoreTestPipeline
from dockyard.core.cache import InMemoryCache, RedisCache
from dockyard.core.events import FanOutEventEmitter, LoggingEventEmitter
from dockyard.core.settings import DockyardSettings
from dockyard.deploy.canary import CanaryController
from dockyard.deploy.monitor import HealthMonitor
from dockyard.deploy.state_machine import DeploymentStateMachine
from dockyard.execution.locks import DatabaseLock, InMemoryLock
from dockyard.execution.runtime import (
    NoMetrics,
    Runtime,
    build_default_runtime,
    configure_runtime,
    get_runtime,
    runtime_configured,
)
from dockyard.execution.scheduling import RecordingScheduler
from dockyard.provisioning.controller import AutoProvisionController
from dockyard.provisioning.provisioner import AutoProvisioner
from dockyard.remote.executor import SshExecutor
from dockyard.transfer.pipeline import TransferPipeline


@pytest.fixture(autouse=True)
def reset_runtime():
    configure_runtime(None)
    yield
    configure_runtime(None)


class TestBuildDefaultRuntime:
    def test_memory_backends(self, settings):
        runtime = build_default_runtime(settings)
        assert isinstance(runtime.executor, SshExecutor)
        assert isinstance(runtime.scheduler, RecordingScheduler)
        assert isinstance(runtime.emitter, LoggingEventEmitter)
        assert isinstance(runtime.cache, InMemoryCache)
        assert isinstance(runtime.lock, InMemoryLock)
        assert isinstance(runtime.metrics, NoMetrics)

    def test_database_lock(self, tmp_path):
        settings = DockyardSettings(
            _env_file=None, lock_backend="database", lock_database_path=str(tmp_path / "locks.db")
        )
        lock = build_default_runtime(settings).lock
        assert isinstance(lock, DatabaseLock)
        assert lock.acquire("k", "owner") is True

    def test_redis_cache_fans_out_events(self):
        settings = DockyardSettings(_env_file=None, cache_backend="redis")
        runtime = build_default_runtime(settings)
        assert isinstance(runtime.cache, RedisCache)
        assert isinstance(runtime.emitter, FanOutEventEmitter)

    def test_scheduler_override(self, settings, scheduler):
        assert build_default_runtime(settings, scheduler=scheduler).scheduler is scheduler


class TestRuntimeComponents:
    @pytest.fixture
    def runtime(self, executor, scheduler, emitter, lock, cache, settings):
        return Runtime(executor=executor, scheduler=scheduler, emitter=emitter, lock=lock, cache=cache,
                       settings=settings)

    @pytest.mark.parametrize(
        "factory,expected",
        [
            ("state_machine", DeploymentStateMachine),
            ("health_monitor", HealthMonitor),
            ("canary_controller", CanaryController),
            ("provision_controller", AutoProvisionController),
            ("provisioner", AutoProvisioner),
            ("backup_pipeline", BackupPipeline),
            ("restore_pipeline", RestorePipeline),
            ("restore_test_pipeline", RestoreTestPipeline),
            ("transfer_pipeline", TransferPipeline),
        ],
    )
    def test_factories(self, runtime, factory, expected):
        assert isinstance(getattr(runtime, factory)(), expected)

    def test_no_metrics(self):
        assert NoMetrics().fetch(1) is None


class TestProcessRuntime:
    def test_configure_and_get(self, executor, scheduler, emitter, lock, cache, settings):
        assert not runtime_configured()
        runtime = Runtime(executor=executor, scheduler=scheduler, emitter=emitter, lock=lock, cache=cache,
                          settings=settings)
        configure_runtime(runtime)
        assert runtime_configured()
        assert get_runtime() is runtime

    def test_default_is_built_lazily(self):
        runtime = get_runtime()
        assert get_runtime() is runtime
