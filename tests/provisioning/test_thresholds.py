"""Tests for dockyard.provisioning.thresholds and the threshold policy model."""

import pydantic
import pytest

from dockyard.provisioning.models import MetricSnapshot, ResourceThresholdPolicy, ServerMetrics
from dockyard.provisioning.thresholds import (
    Breach,
    Metric,
    Severity,
    evaluate,
    latest_snapshot,
    parse_percentage,
    select_critical_reason,
)


class TestParsePercentage:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            (42, 42.0),
            (42.5, 42.5),
            ("42.5", 42.5),
            (" 91% ", 91.0),
            ("N/A", None),
            ("", None),
            (None, None),
            (True, None),
        ],
    )
    def test_values(self, raw, expected):
        assert parse_percentage(raw) == expected


class TestLatestSnapshot:
    def test_uses_last_sample_only(self):
        metrics = ServerMetrics(
            cpu=[[1700000000, 99.0], [1700000060, 12.0]],
            memory=[{"value": 50}, {"percent": "81.5"}],
            disk=["95%", "40"],
        )
        assert latest_snapshot(metrics) == MetricSnapshot(cpu=12.0, memory=81.5, disk=40.0)

    def test_empty_series_is_unknown(self):
        assert latest_snapshot(ServerMetrics()) == MetricSnapshot()


class TestEvaluate:
    def test_boundaries_are_inclusive(self):
        policy = ResourceThresholdPolicy()
        breaches = evaluate(MetricSnapshot(cpu=75, memory=95, disk=79.9), policy)
        assert [(b.metric, b.severity) for b in breaches] == [
            (Metric.CPU, Severity.WARNING),
            (Metric.MEMORY, Severity.CRITICAL),
        ]

    def test_one_breach_per_metric(self):
        (breach,) = evaluate(MetricSnapshot(cpu=99), ResourceThresholdPolicy())
        assert breach.reason == "cpu_critical"
        assert breach.threshold == 90

    def test_unknown_metrics_never_breach(self):
        assert evaluate(MetricSnapshot(), ResourceThresholdPolicy()) == []


class TestCriticalReason:
    def test_cpu_beats_memory_beats_disk(self):
        breaches = [
            Breach(Metric.DISK, Severity.CRITICAL, 99, 95),
            Breach(Metric.MEMORY, Severity.CRITICAL, 99, 95),
        ]
        assert select_critical_reason(breaches) == "memory_critical"
        breaches.append(Breach(Metric.CPU, Severity.CRITICAL, 99, 90))
        assert select_critical_reason(breaches) == "cpu_critical"

    def test_warnings_only(self):
        assert select_critical_reason([Breach(Metric.CPU, Severity.WARNING, 80, 75)]) is None


class TestPolicy:
    def test_defaults(self):
        policy = ResourceThresholdPolicy()
        assert policy.thresholds("disk") == (80, 95)
        assert policy.cooldown_minutes == 360
        assert policy.auto_provision_enabled is False

    def test_warning_above_critical_is_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            ResourceThresholdPolicy(cpu_warning=95, cpu_critical=90)

    def test_percentages_are_bounded(self):
        with pytest.raises(pydantic.ValidationError):
            ResourceThresholdPolicy(disk_critical=120)
