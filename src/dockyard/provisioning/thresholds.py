"""Resource threshold evaluation.

Pure functions: metric series in, breaches out.  Only the latest sample
of each series counts; values are never averaged.  A reading that is not
a number (``"N/A"``, empty, ``None``) is *unknown* and produces no breach.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from dockyard.provisioning.models import MetricSnapshot, ResourceThresholdPolicy, ServerMetrics


class Metric(str, Enum):
    CPU = "cpu"
    MEMORY = "memory"
    DISK = "disk"


# Order of precedence when more than one metric is critical.
METRIC_PRECEDENCE = (Metric.CPU, Metric.MEMORY, Metric.DISK)


class Severity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Breach:
    metric: Metric
    severity: Severity
    value: float
    threshold: float

    @property
    def reason(self) -> str:
        """``cpu_critical``, ``disk_warning``, ..."""
        return f"{self.metric.value}_{self.severity.value}"


def parse_percentage(value: Any) -> float | None:
    """Parse ``42``, ``"42.5"`` or ``"42.5%"``; anything else is unknown."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().rstrip("%").strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _latest(series: list[Any]) -> Any:
    if not series:
        return None
    sample = series[-1]
    # Agent series are [timestamp, value] pairs or bare values.
    if isinstance(sample, (list, tuple)):
        return sample[-1] if sample else None
    if isinstance(sample, dict):
        return sample.get("value", sample.get("percent"))
    return sample


def latest_snapshot(metrics: ServerMetrics) -> MetricSnapshot:
    return MetricSnapshot(
        cpu=parse_percentage(_latest(metrics.cpu)),
        memory=parse_percentage(_latest(metrics.memory)),
        disk=parse_percentage(_latest(metrics.disk)),
    )


def evaluate(snapshot: MetricSnapshot, policy: ResourceThresholdPolicy) -> list[Breach]:
    """Every metric at or above its warning or critical threshold.

    A metric produces at most one breach, the most severe one.
    """
    breaches = []
    for metric in METRIC_PRECEDENCE:
        value = snapshot.get(metric.value)
        if value is None:
            continue
        warning, critical = policy.thresholds(metric.value)
        if value >= critical:
            breaches.append(Breach(metric, Severity.CRITICAL, value, critical))
        elif value >= warning:
            breaches.append(Breach(metric, Severity.WARNING, value, warning))
    return breaches


def select_critical_reason(breaches: list[Breach]) -> str | None:
    """Reason of the highest-precedence critical breach, CPU > memory > disk."""
    for metric in METRIC_PRECEDENCE:
        for breach in breaches:
            if breach.metric == metric and breach.severity == Severity.CRITICAL:
                return breach.reason
    return None


__all__ = [
    "Metric",
    "METRIC_PRECEDENCE",
    "Severity",
    "Breach",
    "parse_percentage",
    "latest_snapshot",
    "evaluate",
    "select_critical_reason",
]
