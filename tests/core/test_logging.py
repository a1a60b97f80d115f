"""Tests for dockyard.core.logging."""

import logging

import structlog

from dockyard.core.logging import (
    LogContext,
    _add_service_metadata,
    _elasticsearch_compatible,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
)


class TestProcessors:
    def test_service_metadata(self):
        event = _add_service_metadata(None, "info", {"event": "x"})
        assert "service.name" in event

    def test_elasticsearch_field_names(self):
        event = _elasticsearch_compatible(None, "info", {"timestamp": "t", "level": "info", "event": "x"})
        assert event == {"@timestamp": "t", "log.level": "info", "event": "x"}


class TestContext:
    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_log_context_binds_and_unbinds(self):
        bind_context(worker="w1")
        with LogContext(transfer_uuid="t-1"):
            assert structlog.contextvars.get_contextvars() == {"worker": "w1", "transfer_uuid": "t-1"}
        assert structlog.contextvars.get_contextvars() == {"worker": "w1"}


class TestConfigure:
    def test_json_output_goes_through_stdlib(self, caplog):
        """Rendered events reach stdlib handlers with ECS field names."""
        caplog.set_level(logging.INFO)
        configure_logging(level="INFO", json_format=True, service="dockyard-test")
        get_logger("dockyard.tests").info("backup.completed", execution_uuid="e-1")
        assert '"event": "backup.completed"' in caplog.text
        assert '"service.name": "dockyard-test"' in caplog.text
        assert '"log.level": "info"' in caplog.text

    def test_level_filters(self, caplog):
        caplog.set_level(logging.DEBUG)
        configure_logging(level="WARNING", json_format=True)
        get_logger("dockyard.tests").info("monitor.tick")
        assert "monitor.tick" not in caplog.text
