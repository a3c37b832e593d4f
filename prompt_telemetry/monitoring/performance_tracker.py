"""
Performance tracking for monitored AI applications.

Metrics derived from log entries are buffered per (tenant, app) key and
written to the MetricStore in batches. Snapshots, trends, alerts and the
dashboard are computed from stored metrics only.
"""
import asyncio
import math
import time
from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog

from .alerting import (
    AlertThresholdTable, TREND_ALERT_METRICS, evaluate_snapshot, evaluate_trends
)
from .metrics_buffer import MetricsBuffer
from .models import (
    IssueSeverity, IssueSummary, LogEntry, LogLevel, PerformanceAlert, PerformanceDashboard,
    PerformanceMetric, PerformanceSnapshot, PerformanceTrend, ResponseTimeStats,
    TenantAppKey, TokenUsageStats, TrendDirection, TrendPoint
)
from ..storage.metric_store import MetricStore


logger = structlog.get_logger(__name__)


# Metric types where a rising value means things are getting worse
LOWER_IS_BETTER = ("error_rate", "response_time", "issue_count", "error_count")

TREND_CHANGE_PCT = 10.0
DASHBOARD_TREND_METRICS = ("response_time", "error_count", "issue_count", "token_usage")
SNAPSHOT_METRICS = ("response_time", "token_usage", "error_count", "issue_count", "request_count")
ISSUE_METRIC_PREFIX = "issue_"
MAX_TOP_ISSUES = 5
MAX_RECOMMENDATIONS = 5


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Nearest-rank percentile over an already sorted sequence"""
    if not sorted_values:
        return 0.0
    n = len(sorted_values)
    return sorted_values[min(int(math.floor(n * p)), n - 1)]


def is_lower_better(metric_type: str) -> bool:
    return any(name in metric_type for name in LOWER_IS_BETTER)


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class PerformanceTracker:
    """Derives, buffers and analyses performance metrics"""

    def __init__(self, store: MetricStore,
                 flush_interval_seconds: float = 30.0,
                 flush_threshold: int = 50,
                 alert_thresholds: Optional[AlertThresholdTable] = None):
        self.store = store
        self.flush_interval_seconds = flush_interval_seconds
        self.buffer = MetricsBuffer(store.save_metrics, flush_threshold=flush_threshold)
        self.alert_thresholds = alert_thresholds or AlertThresholdTable()

        self._flush_task: Optional[asyncio.Task] = None
        self._is_running = False

    # ========== Lifecycle ==========

    async def start(self):
        """Start the periodic flush timer"""
        if self._is_running:
            return

        self._is_running = True
        self._flush_task = asyncio.create_task(self._flush_loop())
        logger.info("Performance tracker started", flush_interval=self.flush_interval_seconds)

    async def stop(self):
        """Stop the flush timer and write whatever is still buffered"""
        self._is_running = False
        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        flushed = await self.buffer.flush_all()
        logger.info("Performance tracker stopped",
                    final_flush=flushed,
                    still_buffered=self.buffer.pending_total())

    async def _flush_loop(self):
        while self._is_running:
            try:
                await asyncio.sleep(self.flush_interval_seconds)

                if not self._is_running:
                    break

                await self.buffer.flush_all()

            except asyncio.CancelledError:
                break

    async def flush(self, key: Optional[TenantAppKey] = None) -> int:
        if key is None:
            return await self.buffer.flush_all()
        return await self.buffer.flush(key)

    # ========== Tracking ==========

    async def track_from_log_entry(self, entry: LogEntry, include_issues: bool = True):
        """Derive metrics from a log entry and buffer them.

        Pass include_issues=False for entries left to background detection; their
        issue metrics arrive later through track_detected_issues.
        """
        await self.buffer.add(entry.key, derive_metrics(entry, include_issues=include_issues))

    async def track_detected_issues(self, entry: LogEntry):
        """Buffer issue metrics for an entry whose detection finished after it was tracked"""
        await self.buffer.add(entry.key, derive_metrics(entry, include_usage=False))

    async def track_custom_metric(self, tenant_id: str, app_id: str, metric_type: str,
                                  value: float, metadata: Optional[Dict[str, Any]] = None):
        metric = PerformanceMetric(
            tenant_id=tenant_id,
            app_id=app_id,
            metric_type=metric_type,
            value=value,
            metadata=metadata or {}
        )
        await self.buffer.add(metric.key, [metric])

    def set_alert_thresholds(self, tenant_id: str, app_id: str,
                             overrides: Mapping[str, Mapping[str, float]]):
        self.alert_thresholds.set_overrides((tenant_id, app_id), overrides)

    # ========== Queries ==========

    async def get_performance_snapshot(self, tenant_id: str, app_id: str,
                                       hours: float = 1) -> PerformanceSnapshot:
        now = time.time()
        metrics = await self.store.fetch_metrics(
            tenant_id, app_id, since=now - hours * 3600, metric_types=SNAPSHOT_METRICS
        )

        values: Dict[str, List[float]] = defaultdict(list)
        for metric in metrics:
            values[metric.metric_type].append(metric.value)

        response_times = sorted(values["response_time"])
        token_usage = values["token_usage"]
        requests = sum(values["request_count"])
        errors = sum(values["error_count"])
        issues = sum(values["issue_count"])

        error_rate = errors / requests * 100 if requests else 0.0
        issue_rate = issues / requests * 100 if requests else 0.0

        return PerformanceSnapshot(
            timestamp=now,
            response_time=ResponseTimeStats(
                avg=_mean(response_times),
                p50=percentile(response_times, 0.5),
                p90=percentile(response_times, 0.9),
                p95=percentile(response_times, 0.95),
                p99=percentile(response_times, 0.99)
            ),
            error_rate=error_rate,
            throughput=requests / (hours * 60) if hours else 0.0,
            issue_rate=issue_rate,
            quality_score=max(0.0, 100 - error_rate * 2 - issue_rate * 1.5),
            token_usage=TokenUsageStats(avg=_mean(token_usage), total=sum(token_usage)),
            request_count=requests
        )

    async def get_performance_trends(self, tenant_id: str, app_id: str, metric_type: str,
                                     hours: float = 24, buckets: int = 12) -> PerformanceTrend:
        if buckets < 1:
            raise ValueError(f"buckets must be at least 1, got {buckets}")

        now = time.time()
        window = hours * 3600
        start = now - window
        width = window / buckets

        metrics = await self.store.fetch_metrics(
            tenant_id, app_id, since=start, metric_types=[metric_type]
        )

        bucket_values: List[List[float]] = [[] for _ in range(buckets)]
        for metric in metrics:
            if metric.timestamp > now:
                continue
            # last bucket is closed on the right
            index = min(int((metric.timestamp - start) // width), buckets - 1)
            if index >= 0:
                bucket_values[index].append(metric.value)

        data_points = [
            TrendPoint(timestamp=start + i * width, value=_mean(values))
            for i, values in enumerate(bucket_values)
        ]

        trend = TrendDirection.STABLE
        change = 0.0
        if len(data_points) >= 2:
            middle = len(data_points) // 2
            first_avg = _mean([p.value for p in data_points[:middle]])
            second_avg = _mean([p.value for p in data_points[middle:]])

            if first_avg > 0:
                change = (second_avg - first_avg) / first_avg * 100
                rising_is_worse = is_lower_better(metric_type)
                if change > TREND_CHANGE_PCT:
                    trend = TrendDirection.DEGRADING if rising_is_worse else TrendDirection.IMPROVING
                elif change < -TREND_CHANGE_PCT:
                    trend = TrendDirection.IMPROVING if rising_is_worse else TrendDirection.DEGRADING

        return PerformanceTrend(
            metric_type=metric_type,
            time_window=f"{hours:g} hours",
            data_points=data_points,
            trend=trend,
            change_percentage=abs(change)
        )

    async def check_performance_alerts(self, tenant_id: str, app_id: str) -> List[PerformanceAlert]:
        snapshot = await self.get_performance_snapshot(tenant_id, app_id, hours=1)
        alerts = evaluate_snapshot(snapshot, self.alert_thresholds.get((tenant_id, app_id)))

        trends = await asyncio.gather(*[
            self.get_performance_trends(tenant_id, app_id, metric_type, hours=24)
            for metric_type in TREND_ALERT_METRICS
        ])
        alerts.extend(evaluate_trends(trends))

        if alerts:
            logger.info("Performance alerts raised",
                        tenant_id=tenant_id,
                        app_id=app_id,
                        count=len(alerts),
                        metrics=[a.metric_type for a in alerts])
        return alerts

    async def get_top_issues(self, tenant_id: str, app_id: str,
                             hours: float = 24) -> List[IssueSummary]:
        metrics = await self.store.fetch_metrics(
            tenant_id, app_id, since=time.time() - hours * 3600, prefix=ISSUE_METRIC_PREFIX
        )

        counts: Dict[str, float] = defaultdict(float)
        for metric in metrics:
            if metric.metric_type == "issue_count":
                continue
            counts[metric.metric_type[len(ISSUE_METRIC_PREFIX):]] += metric.value

        ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)[:MAX_TOP_ISSUES]
        return [
            IssueSummary(type=issue_type, count=count, impact=_impact(count))
            for issue_type, count in ranked
        ]

    async def get_performance_dashboard(self, tenant_id: str, app_id: str,
                                        hours: float = 24) -> PerformanceDashboard:
        snapshot, alerts, top_issues, *trends = await asyncio.gather(
            self.get_performance_snapshot(tenant_id, app_id, hours=1),
            self.check_performance_alerts(tenant_id, app_id),
            self.get_top_issues(tenant_id, app_id, hours=hours),
            *[self.get_performance_trends(tenant_id, app_id, metric_type, hours=hours)
              for metric_type in DASHBOARD_TREND_METRICS]
        )

        return PerformanceDashboard(
            snapshot=snapshot,
            trends=list(trends),
            alerts=alerts,
            top_issues=top_issues,
            recommendations=generate_recommendations(snapshot, trends, alerts)
        )


def _impact(count: float) -> str:
    if count > 10:
        return "high"
    if count > 5:
        return "medium"
    return "low"


def generate_recommendations(snapshot: PerformanceSnapshot,
                             trends: Sequence[PerformanceTrend],
                             alerts: Sequence[PerformanceAlert]) -> List[str]:
    recommendations = []

    if snapshot.response_time.avg > 5000:
        recommendations.append("Consider optimizing prompts for faster response times")
    if snapshot.response_time.p95 > snapshot.response_time.avg * 3:
        recommendations.append("High response time variance detected - investigate outliers")
    if snapshot.error_rate > 5:
        recommendations.append("Error rate is elevated - review recent logs for patterns")
    if snapshot.issue_rate > 15:
        recommendations.append("High issue rate detected - review flagged responses and prompts")
    if snapshot.quality_score < 75:
        recommendations.append("Quality score below optimal - consider prompt optimization")
    if snapshot.token_usage.avg > 1500:
        recommendations.append("High token usage - optimize prompts for efficiency")

    for trend in trends:
        if trend.trend == TrendDirection.DEGRADING and trend.change_percentage > 20:
            recommendations.append(f"{trend.metric_type} is degrading - investigate recent changes")

    if any(alert.severity == IssueSeverity.CRITICAL for alert in alerts):
        recommendations.append("Critical alerts detected - immediate attention required")

    return recommendations[:MAX_RECOMMENDATIONS]


def derive_metrics(entry: LogEntry, include_usage: bool = True,
                   include_issues: bool = True) -> List[PerformanceMetric]:
    """Metrics implied by a log entry.

    With include_usage=False only the issue metrics are returned, for entries
    whose usage metrics were already recorded at ingestion. include_issues=False
    leaves out issue_count and the issue_<type> ticks.
    """
    context = entry.context
    metadata: Dict[str, Any] = {}
    if context is not None:
        if context.model:
            metadata["model"] = context.model
        if context.prompt_id:
            metadata["prompt_id"] = context.prompt_id

    def metric(metric_type: str, value: float, extra: Optional[Dict[str, Any]] = None):
        return PerformanceMetric(
            tenant_id=entry.tenant_id,
            app_id=entry.app_id,
            metric_type=metric_type,
            value=value,
            timestamp=entry.timestamp,
            metadata={**metadata, **(extra or {})}
        )

    metrics = []
    if include_usage:
        if context is not None and context.response_time_ms is not None:
            metrics.append(metric("response_time", context.response_time_ms))
        if context is not None and context.token_count is not None:
            metrics.append(metric("token_usage", context.token_count))
        if entry.level == LogLevel.ERROR:
            metrics.append(metric("error_count", 1))

    if include_issues and entry.detected_issues:
        metrics.append(metric("issue_count", len(entry.detected_issues), {
            "issue_types": sorted({issue.type.value for issue in entry.detected_issues})
        }))
        for issue in entry.detected_issues:
            metrics.append(metric(f"{ISSUE_METRIC_PREFIX}{issue.type.value}", 1, {
                "severity": issue.severity.value,
                "confidence": issue.confidence
            }))

    if include_usage:
        metrics.append(metric("request_count", 1))

    return metrics
