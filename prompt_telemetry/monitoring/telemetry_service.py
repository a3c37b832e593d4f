import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import structlog

from .config_registry import ConfigRegistry
from .events import EventBus, ISSUES_DETECTED, IssuesDetectedEvent
from .issue_detector import IssueDetector
from .log_monitor import LogMonitor
from .models import LogEntry, MonitoringConfig
from .notifications import NotificationDispatcher
from .performance_tracker import PerformanceTracker
from ..config.settings import TelemetrySettings
from ..llm.client import LLMClient
from ..llm.models import LLMConfig
from ..storage.metric_store import MetricStore, SQLiteMetricStore


logger = structlog.get_logger(__name__)


class TelemetryService:
    """Composes the telemetry pipeline and owns its lifecycle"""

    def __init__(self, settings: Optional[TelemetrySettings] = None,
                 store: Optional[MetricStore] = None,
                 llm_config: Optional[LLMConfig] = None):
        self.settings = settings or TelemetrySettings()

        if store is None:
            Path(self.settings.db_path).parent.mkdir(parents=True, exist_ok=True)
            store = SQLiteMetricStore(self.settings.db_path)
        self.store = store

        self.llm_client: Optional[LLMClient] = None
        llm_config = llm_config or LLMConfig(timeout=self.settings.model_detection_timeout)
        if self.settings.model_detection_enabled and llm_config.enabled:
            error = llm_config.validate()
            if error:
                logger.warning("Model-assisted detection disabled, invalid LLM config", error=error)
            else:
                self.llm_client = LLMClient(llm_config)

        self.event_bus = EventBus()
        self.notifier = NotificationDispatcher(self.event_bus, timeout=self.settings.notification_timeout)
        self.detector = IssueDetector(self.llm_client, model_timeout=self.settings.model_detection_timeout)
        self.registry = ConfigRegistry(self.store)
        self.log_monitor = LogMonitor(
            self.store,
            self.detector,
            self.notifier,
            self.event_bus,
            registry=self.registry,
            detection_interval_seconds=self.settings.detection_interval_seconds,
            detection_batch_size=self.settings.detection_batch_size
        )
        self.performance_tracker = PerformanceTracker(
            self.store,
            flush_interval_seconds=self.settings.metrics_flush_interval_seconds,
            flush_threshold=self.settings.metrics_flush_threshold
        )

        self.event_bus.subscribe(ISSUES_DETECTED, self._track_background_issues)

        self._is_running = False
        self._start_time = time.time()

        logger.info("Telemetry service initialized",
                    db_path=self.settings.db_path,
                    model_detection=self.llm_client is not None)

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def _track_background_issues(self, event: IssuesDetectedEvent):
        # real-time issues were already counted when the entry was tracked at ingestion
        if event.source == "background":
            await self.performance_tracker.track_detected_issues(event.entry)

    # ========== Lifecycle ==========

    async def start(self):
        if self._is_running:
            return

        logger.info("Starting telemetry service")
        try:
            await self.log_monitor.load_configs()
            for config in self.registry.all():
                self._apply_alert_thresholds(config)

            await self.log_monitor.start()
            await self.performance_tracker.start()

            self._is_running = True
            self._start_time = time.time()
            logger.info("Telemetry service started", configs=len(self.registry))

        except Exception as e:
            logger.error("Failed to start telemetry service", error=str(e))
            await self.stop()
            raise

    async def stop(self):
        logger.info("Stopping telemetry service")

        await self.log_monitor.stop()
        await self.performance_tracker.stop()
        await self.notifier.close()
        if self.llm_client is not None:
            await self.llm_client.close()
        await self.store.close()

        self._is_running = False
        logger.info("Telemetry service stopped")

    # ========== Configuration ==========

    async def add_config(self, config: MonitoringConfig):
        await self.log_monitor.add_monitoring_config(config)
        self._apply_alert_thresholds(config)

    async def remove_config(self, tenant_id: str, app_id: str) -> bool:
        removed = await self.log_monitor.remove_monitoring_config(tenant_id, app_id)
        self.performance_tracker.alert_thresholds.clear_overrides((tenant_id, app_id))
        return removed

    def _apply_alert_thresholds(self, config: MonitoringConfig):
        self.performance_tracker.set_alert_thresholds(
            config.tenant_id, config.app_id,
            {"error_rate": {"warning": config.thresholds.error_rate_threshold_pct}}
        )

    # ========== Ingestion ==========

    async def ingest(self, entry: LogEntry) -> LogEntry:
        """Ingest one log entry and record its performance metrics"""
        # decided before ingestion: a queued entry can get issues from the drain before it is tracked
        config = self.registry.get(entry.tenant_id, entry.app_id)
        background = config is not None and not config.real_time_processing

        stored = await self.log_monitor.ingest_log_entry(entry)
        await self.performance_tracker.track_from_log_entry(stored, include_issues=not background)
        return stored

    async def ingest_batch(self, entries: Sequence[LogEntry]) -> List[LogEntry]:
        """Ingest a batch; each stored entry has its metrics recorded as soon as it is stored.

        Raises BatchIngestionError after every entry was attempted if any failed.
        """
        return await self.log_monitor.ingest_batch(entries, ingest=self.ingest)

    # ========== Status ==========

    async def get_status(self, tenant_id: str, app_id: str, hours: float = 24) -> Dict[str, Any]:
        monitoring_stats = await self.log_monitor.get_monitoring_stats(tenant_id, app_id, hours)
        issue_stats = await self.log_monitor.get_issue_stats(tenant_id, app_id, hours)
        config = self.log_monitor.get_monitoring_config(tenant_id, app_id)

        return {
            "app_id": app_id,
            "configured": config is not None,
            "real_time_processing": config.real_time_processing if config else False,
            "monitoring": monitoring_stats.to_dict(),
            "issues": issue_stats.to_dict(),
            "detection_queue_size": self.log_monitor.queue_size,
            "buffered_metrics": self.performance_tracker.buffer.pending((tenant_id, app_id)),
            "uptime_seconds": time.time() - self._start_time
        }
