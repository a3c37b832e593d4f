import uuid
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Mapping, Optional

import structlog

from .models import (
    AlertType, IssueSeverity, PerformanceAlert, PerformanceSnapshot, PerformanceTrend,
    TenantAppKey, TrendDirection
)


logger = structlog.get_logger(__name__)


TREND_ALERT_CHANGE_PCT = 25.0
TREND_ALERT_HIGH_CHANGE_PCT = 50.0

# Metrics whose 24-hour trend is watched for degradation
TREND_ALERT_METRICS = ("response_time", "error_count", "issue_count")


@dataclass(frozen=True)
class AlertThreshold:
    """Warning/critical levels for one snapshot metric"""
    metric_type: str
    label: str
    warning: float
    critical: float
    unit: str = ""
    # quality score alerts when it falls below the level instead of above
    below_is_worse: bool = False

    def breached(self, value: float, level: float) -> bool:
        return value < level if self.below_is_worse else value > level


DEFAULT_ALERT_THRESHOLDS: Dict[str, AlertThreshold] = {
    "response_time_avg": AlertThreshold("response_time_avg", "Average response time", 3000, 10000, "ms"),
    "error_rate": AlertThreshold("error_rate", "Error rate", 5, 15, "%"),
    "issue_rate": AlertThreshold("issue_rate", "Issue rate", 10, 25, "%"),
    "quality_score": AlertThreshold("quality_score", "Quality score", 70, 50, below_is_worse=True),
}

_SNAPSHOT_VALUES: Dict[str, Callable[[PerformanceSnapshot], float]] = {
    "response_time_avg": lambda s: s.response_time.avg,
    "error_rate": lambda s: s.error_rate,
    "issue_rate": lambda s: s.issue_rate,
    "quality_score": lambda s: s.quality_score,
}


class AlertThresholdTable:
    """Global alert thresholds with optional per-key overrides"""

    def __init__(self, defaults: Optional[Mapping[str, AlertThreshold]] = None):
        self.defaults: Dict[str, AlertThreshold] = dict(defaults or DEFAULT_ALERT_THRESHOLDS)
        self._overrides: Dict[TenantAppKey, Dict[str, AlertThreshold]] = {}

    def get(self, key: TenantAppKey) -> Dict[str, AlertThreshold]:
        table = dict(self.defaults)
        table.update(self._overrides.get(key, {}))
        return table

    def set_overrides(self, key: TenantAppKey, overrides: Mapping[str, Mapping[str, float]]):
        """Override warning and/or critical levels for known metrics.

        Example: {"error_rate": {"warning": 2.0}}
        """
        current = self._overrides.setdefault(key, {})
        for metric_type, levels in overrides.items():
            base = current.get(metric_type) or self.defaults.get(metric_type)
            if base is None:
                raise ValueError(f"Unknown alert metric: {metric_type}")

            unknown = set(levels) - {"warning", "critical"}
            if unknown:
                raise ValueError(f"Unknown threshold levels for {metric_type}: {sorted(unknown)}")

            current[metric_type] = replace(base, **{k: float(v) for k, v in levels.items()})

        logger.info("Alert thresholds updated",
                    tenant_id=key[0], app_id=key[1], metrics=list(overrides.keys()))

    def clear_overrides(self, key: TenantAppKey):
        self._overrides.pop(key, None)


def evaluate_snapshot(snapshot: PerformanceSnapshot,
                      thresholds: Mapping[str, AlertThreshold]) -> List[PerformanceAlert]:
    """Threshold alerts for a snapshot; critical wins over warning for the same metric"""
    alerts = []
    for metric_type, threshold in thresholds.items():
        read_value = _SNAPSHOT_VALUES.get(metric_type)
        if read_value is None:
            continue
        value = read_value(snapshot)

        if threshold.breached(value, threshold.critical):
            level_name, level, severity = "critical", threshold.critical, IssueSeverity.CRITICAL
        elif threshold.breached(value, threshold.warning):
            level_name, level, severity = "warning", threshold.warning, IssueSeverity.MEDIUM
        else:
            continue

        direction = "below" if threshold.below_is_worse else "exceeds"
        alerts.append(PerformanceAlert(
            id=_alert_id(metric_type),
            type=AlertType.THRESHOLD_EXCEEDED,
            severity=severity,
            message=(f"{threshold.label} ({value:.1f}{threshold.unit}) "
                     f"{direction} {level_name} threshold of {level:g}{threshold.unit}"),
            metric_type=metric_type,
            current_value=value,
            threshold=level
        ))
    return alerts


def evaluate_trends(trends: Iterable[PerformanceTrend]) -> List[PerformanceAlert]:
    alerts = []
    for trend in trends:
        if trend.trend != TrendDirection.DEGRADING or trend.change_percentage <= TREND_ALERT_CHANGE_PCT:
            continue

        severity = (IssueSeverity.HIGH if trend.change_percentage > TREND_ALERT_HIGH_CHANGE_PCT
                    else IssueSeverity.MEDIUM)
        alerts.append(PerformanceAlert(
            id=_alert_id(f"trend_{trend.metric_type}"),
            type=AlertType.TREND_DEGRADATION,
            severity=severity,
            message=(f"{trend.metric_type} showing degrading trend "
                     f"({trend.change_percentage:.1f}% change over {trend.time_window})"),
            metric_type=trend.metric_type,
            current_value=trend.change_percentage
        ))
    return alerts


def _alert_id(metric_type: str) -> str:
    return f"alert_{metric_type}_{uuid.uuid4().hex[:12]}"
