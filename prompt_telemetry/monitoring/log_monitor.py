"""
Log ingestion front door.

Every entry is persisted. Entries for keys with real-time processing are
checked before they are stored; other configured keys are queued and
checked by a background drain that updates the stored record afterwards.
"""
import asyncio
import time
from collections import Counter, deque
from typing import Awaitable, Callable, Deque, List, Optional, Sequence

import structlog

from .config_registry import ConfigRegistry
from .events import EventBus, IssuesDetectedEvent
from .exceptions import BatchIngestionError, MetricStoreError
from .issue_detector import IssueDetector
from .models import (
    DetectedIssue, IssueSeverity, IssueStats, LogEntry, LogLevel, MonitoringConfig,
    MonitoringStats, TrendDirection
)
from .notifications import NotificationDispatcher
from ..storage.metric_store import MetricStore


logger = structlog.get_logger(__name__)


ISSUE_TREND_CHANGE_PCT = 10.0

IngestFunction = Callable[[LogEntry], Awaitable[LogEntry]]


class LogMonitor:
    """Ingests execution logs and routes them through issue detection"""

    def __init__(self, store: MetricStore,
                 detector: IssueDetector,
                 notifier: NotificationDispatcher,
                 event_bus: EventBus,
                 registry: Optional[ConfigRegistry] = None,
                 detection_interval_seconds: float = 5.0,
                 detection_batch_size: int = 10):
        self.store = store
        self.detector = detector
        self.notifier = notifier
        self.event_bus = event_bus
        self.registry = registry or ConfigRegistry(store)
        self.detection_interval_seconds = detection_interval_seconds
        self.detection_batch_size = detection_batch_size

        self._queue: Deque[LogEntry] = deque()
        self._drain_task: Optional[asyncio.Task] = None
        self._is_running = False

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    # ========== Configuration ==========

    async def add_monitoring_config(self, config: MonitoringConfig):
        await self.registry.add(config)

    async def remove_monitoring_config(self, tenant_id: str, app_id: str) -> bool:
        return await self.registry.remove(tenant_id, app_id)

    def get_monitoring_config(self, tenant_id: str, app_id: str) -> Optional[MonitoringConfig]:
        return self.registry.get(tenant_id, app_id)

    async def load_configs(self) -> int:
        return await self.registry.load()

    # ========== Lifecycle ==========

    async def start(self):
        if self._is_running:
            return

        self._is_running = True
        self._drain_task = asyncio.create_task(self._drain_loop())
        logger.info("Log monitor started",
                    interval=self.detection_interval_seconds,
                    batch_size=self.detection_batch_size)

    async def stop(self):
        self._is_running = False
        if self._drain_task:
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
            self._drain_task = None

        logger.info("Log monitor stopped", queued=len(self._queue))

    async def _drain_loop(self):
        while self._is_running:
            try:
                await asyncio.sleep(self.detection_interval_seconds)

                if not self._is_running:
                    break

                await self.process_queue()

            except asyncio.CancelledError:
                break

    # ========== Ingestion ==========

    async def ingest_log_entry(self, entry: LogEntry) -> LogEntry:
        """Persist an entry and run or schedule detection for it.

        MetricStoreError propagates; detection and notification failures do not.
        """
        config = self.registry.get(entry.tenant_id, entry.app_id)

        if config is None:
            logger.warning("No monitoring config for app, storing log without detection",
                           tenant_id=entry.tenant_id, app_id=entry.app_id)
            entry.detected_issues = None
            await self.store.save_log(entry)
            return entry

        if config.real_time_processing:
            issues = await self.detector.detect_issues(entry, config.thresholds)
            entry.detected_issues = issues
            await self.store.save_log(entry)
            if issues:
                await self._dispatch(entry, issues, config, source="realtime")
            return entry

        await self.store.save_log(entry)
        self._queue.append(entry)
        logger.debug("Log queued for background detection",
                     tenant_id=entry.tenant_id, app_id=entry.app_id, queued=len(self._queue))
        return entry

    async def ingest_batch(self, entries: Sequence[LogEntry],
                           ingest: Optional[IngestFunction] = None) -> List[LogEntry]:
        """Ingest entries concurrently; every entry is attempted before failures are reported.

        ingest replaces ingest_log_entry for each entry, so callers can attach
        per-entry work that must finish before the batch does.
        """
        ingest = ingest or self.ingest_log_entry
        results = await asyncio.gather(
            *[ingest(entry) for entry in entries],
            return_exceptions=True
        )

        failures = [(index, result) for index, result in enumerate(results)
                    if isinstance(result, Exception)]
        if failures:
            logger.error("Batch ingestion had failures",
                         total=len(entries), failed=len(failures))
            raise BatchIngestionError(failures, succeeded=len(entries) - len(failures))

        return list(results)

    async def process_queue(self) -> int:
        """Run detection for up to one batch of queued entries. Returns how many were checked."""
        processed = 0
        while self._queue and processed < self.detection_batch_size:
            entry = self._queue.popleft()
            config = self.registry.get(entry.tenant_id, entry.app_id)
            if config is None or config.real_time_processing:
                logger.debug("Dropping queued log, config no longer requires background detection",
                             tenant_id=entry.tenant_id, app_id=entry.app_id, log_id=entry.id)
                continue

            processed += 1
            issues = await self.detector.detect_issues(entry, config.thresholds)
            entry.detected_issues = issues
            try:
                await self.store.update_log_issues(entry.id, issues, entry.max_severity)
            except MetricStoreError as e:
                logger.error("Failed to store detection results",
                             tenant_id=entry.tenant_id, log_id=entry.id, error=str(e))
                continue

            if issues:
                await self._dispatch(entry, issues, config, source="background")

        if processed:
            logger.debug("Background detection batch complete",
                         processed=processed, remaining=len(self._queue))
        return processed

    async def _dispatch(self, entry: LogEntry, issues: List[DetectedIssue],
                        config: MonitoringConfig, source: str):
        logger.info("Issues detected",
                    tenant_id=entry.tenant_id,
                    app_id=entry.app_id,
                    log_id=entry.id,
                    count=len(issues),
                    max_severity=entry.max_severity)

        await self.event_bus.publish(IssuesDetectedEvent(
            entry=entry, issues=issues, config=config, source=source
        ))
        await self.notifier.send_notifications(entry, issues, config)

    # ========== Queries ==========

    async def get_recent_logs(self, tenant_id: str, app_id: str, limit: int = 100,
                              since: Optional[float] = None) -> List[LogEntry]:
        return await self.store.fetch_logs(tenant_id, app_id, limit=limit, since=since)

    async def get_logs_with_issues(self, tenant_id: str, app_id: str,
                                   limit: int = 50) -> List[LogEntry]:
        return await self.store.fetch_logs(tenant_id, app_id, limit=limit, with_issues=True)

    async def get_monitoring_stats(self, tenant_id: str, app_id: str,
                                   hours: float = 24) -> MonitoringStats:
        logs = await self.store.fetch_logs(
            tenant_id, app_id, limit=None, since=time.time() - hours * 3600
        )

        with_issues = [log for log in logs if log.detected_issues]
        critical = [log for log in with_issues
                    if any(i.severity == IssueSeverity.CRITICAL for i in log.detected_issues)]
        errors = sum(1 for log in logs if log.level == LogLevel.ERROR)
        response_times = [log.context.response_time_ms for log in logs
                          if log.context and log.context.response_time_ms]

        return MonitoringStats(
            total_logs=len(logs),
            logs_with_issues=len(with_issues),
            critical_issue_logs=len(critical),
            average_response_time_ms=(sum(response_times) / len(response_times)
                                      if response_times else None),
            error_rate=errors / len(logs) * 100 if logs else 0.0
        )

    async def get_issue_stats(self, tenant_id: str, app_id: str, hours: float = 24) -> IssueStats:
        now = time.time()
        window_start = now - hours * 3600
        midpoint = now - hours * 1800
        logs = await self.store.fetch_logs(
            tenant_id, app_id, limit=None, since=window_start, with_issues=True
        )

        by_type: Counter = Counter()
        by_severity: Counter = Counter()
        confidences = []
        first_half = second_half = 0
        for log in logs:
            for issue in log.detected_issues or []:
                by_type[issue.type.value] += 1
                by_severity[issue.severity.value] += 1
                confidences.append(issue.confidence)
                if log.timestamp < midpoint:
                    first_half += 1
                else:
                    second_half += 1

        return IssueStats(
            total_issues=len(confidences),
            by_type=dict(by_type),
            by_severity=dict(by_severity),
            average_confidence=sum(confidences) / len(confidences) if confidences else 0.0,
            trend=_issue_trend(first_half, second_half)
        )


def _issue_trend(first_half: int, second_half: int) -> TrendDirection:
    """Fewer issues in the recent half of the window is an improvement"""
    if first_half == 0:
        return TrendDirection.DEGRADING if second_half > 0 else TrendDirection.STABLE

    change = (second_half - first_half) / first_half * 100
    if change > ISSUE_TREND_CHANGE_PCT:
        return TrendDirection.DEGRADING
    if change < -ISSUE_TREND_CHANGE_PCT:
        return TrendDirection.IMPROVING
    return TrendDirection.STABLE
