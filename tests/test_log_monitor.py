"""
Tests for log ingestion, background detection and monitoring stats
"""

import asyncio
import time

import pytest
from unittest.mock import AsyncMock, patch

from prompt_telemetry.monitoring.config_registry import ConfigRegistry
from prompt_telemetry.monitoring.events import EventBus, ISSUES_DETECTED
from prompt_telemetry.monitoring.exceptions import BatchIngestionError, MetricStoreError
from prompt_telemetry.monitoring.issue_detector import IssueDetector
from prompt_telemetry.monitoring.log_monitor import LogMonitor, _issue_trend
from prompt_telemetry.monitoring.models import (
    DetectedIssue, IssueSeverity, IssueType, LogLevel, MonitoringConfig, TrendDirection
)
from prompt_telemetry.monitoring.notifications import NotificationDispatcher


TENANT = "tenant-1"
APP = "support-bot"
ERROR_CONTENT = "The lookup failed with a timeout."


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def published(event_bus):
    """Collects IssuesDetectedEvents published on the bus"""
    events = []
    event_bus.subscribe(ISSUES_DETECTED, events.append)
    return events


@pytest.fixture
def notifier(event_bus):
    dispatcher = NotificationDispatcher(event_bus)
    with patch.object(dispatcher, "_post", new_callable=AsyncMock) as post:
        dispatcher.post_mock = post
        yield dispatcher


@pytest.fixture
def monitor(mock_store, notifier, event_bus):
    return LogMonitor(mock_store, IssueDetector(), notifier, event_bus,
                      detection_interval_seconds=0.01, detection_batch_size=10)


@pytest.fixture
def sqlite_monitor(sqlite_store, notifier, event_bus):
    return LogMonitor(sqlite_store, IssueDetector(), notifier, event_bus)


class TestUnconfiguredIngestion:
    """Test entries for keys without a monitoring config"""

    @pytest.mark.asyncio
    async def test_batch_without_config(self, monitor, mock_store, notifier, make_entry):
        """Every entry is stored unprocessed and nothing is sent"""
        entries = [make_entry(ERROR_CONTENT) for _ in range(100)]

        stored = await monitor.ingest_batch(entries)

        assert len(stored) == 100
        assert mock_store.save_log.await_count == 100
        assert all(entry.detected_issues is None for entry in stored)
        assert all(entry.id is not None for entry in stored)
        assert monitor.queue_size == 0
        notifier.post_mock.assert_not_awaited()


class TestRealTimeIngestion:
    """Test detection during ingestion"""

    @pytest.mark.asyncio
    async def test_issues_attached_before_storing(self, monitor, mock_store, realtime_config,
                                                  published, make_entry):
        """Detection results are part of the first write"""
        await monitor.add_monitoring_config(realtime_config)

        entry = await monitor.ingest_log_entry(make_entry(ERROR_CONTENT))

        saved = mock_store.save_log.await_args.args[0]
        assert saved is entry
        assert entry.detected_issues[0].type == IssueType.ACCURACY_ISSUE
        assert len(published) == 1
        assert published[0].source == "realtime"
        assert published[0].entry is entry

    @pytest.mark.asyncio
    async def test_clean_entry_has_empty_issues(self, monitor, realtime_config, published, make_entry):
        """A checked entry with no findings stores an empty list"""
        await monitor.add_monitoring_config(realtime_config)

        entry = await monitor.ingest_log_entry(make_entry("Paris is the capital of France."))

        assert entry.detected_issues == []
        assert published == []

    @pytest.mark.asyncio
    async def test_critical_issue_sends_one_webhook(self, mock_store, notifier, event_bus,
                                                    realtime_config, critical_issue, make_entry):
        """A configured webhook receives exactly one POST carrying the issues"""
        detector = AsyncMock(spec=IssueDetector)
        detector.detect_issues.return_value = [critical_issue]
        monitor = LogMonitor(mock_store, detector, notifier, event_bus)
        await monitor.add_monitoring_config(realtime_config)

        await monitor.ingest_log_entry(make_entry("Revenue grew 4000% in 2031."))

        notifier.post_mock.assert_awaited_once()
        url, payload, headers = notifier.post_mock.await_args.args
        assert url == realtime_config.notification.webhook_url
        assert len(payload["issues"]) >= 1
        assert payload["issues"][0]["severity"] == "critical"

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, monitor, mock_store, realtime_config, make_entry):
        """Persistence failures reach the caller"""
        await monitor.add_monitoring_config(realtime_config)
        mock_store.save_log.side_effect = MetricStoreError("database is locked")

        with pytest.raises(MetricStoreError):
            await monitor.ingest_log_entry(make_entry())


class TestBackgroundDetection:
    """Test the queued detection path"""

    @pytest.mark.asyncio
    async def test_entry_queued_then_updated(self, monitor, mock_store, background_config,
                                             published, make_entry):
        """Queued entries are stored first and updated after detection"""
        await monitor.add_monitoring_config(background_config)

        entry = await monitor.ingest_log_entry(make_entry(ERROR_CONTENT))

        assert entry.detected_issues is None
        assert monitor.queue_size == 1
        mock_store.update_log_issues.assert_not_awaited()

        assert await monitor.process_queue() == 1

        log_id, issues, severity = mock_store.update_log_issues.await_args.args
        assert log_id == entry.id
        assert issues == entry.detected_issues
        assert severity == "high"
        assert published[0].source == "background"
        assert monitor.queue_size == 0

    @pytest.mark.asyncio
    async def test_batch_size_limits_one_pass(self, mock_store, notifier, event_bus,
                                              background_config, make_entry):
        monitor = LogMonitor(mock_store, IssueDetector(), notifier, event_bus, detection_batch_size=3)
        await monitor.add_monitoring_config(background_config)
        for _ in range(5):
            await monitor.ingest_log_entry(make_entry())

        assert await monitor.process_queue() == 3
        assert monitor.queue_size == 2

    @pytest.mark.asyncio
    async def test_removed_config_drops_entry(self, monitor, mock_store, background_config, make_entry):
        """Entries whose config disappeared are not checked"""
        await monitor.add_monitoring_config(background_config)
        await monitor.ingest_log_entry(make_entry(ERROR_CONTENT))
        await monitor.remove_monitoring_config(TENANT, APP)

        assert await monitor.process_queue() == 0
        assert monitor.queue_size == 0
        mock_store.update_log_issues.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_failure_is_contained(self, monitor, mock_store, background_config,
                                               published, make_entry):
        """A failed result write skips notification and keeps draining"""
        await monitor.add_monitoring_config(background_config)
        await monitor.ingest_log_entry(make_entry(ERROR_CONTENT))
        mock_store.update_log_issues.side_effect = MetricStoreError("disk I/O error")

        assert await monitor.process_queue() == 1
        assert published == []

    @pytest.mark.asyncio
    async def test_drain_loop(self, monitor, mock_store, background_config, make_entry):
        """The periodic drain processes the queue while running"""
        await monitor.add_monitoring_config(background_config)
        await monitor.ingest_log_entry(make_entry(ERROR_CONTENT))

        await monitor.start()
        for _ in range(50):
            if monitor.queue_size == 0:
                break
            await asyncio.sleep(0.01)
        await monitor.stop()

        assert monitor.queue_size == 0
        mock_store.update_log_issues.assert_awaited_once()


class TestBatchIngestion:
    """Test batch failure reporting"""

    @pytest.mark.asyncio
    async def test_partial_failure(self, monitor, mock_store, make_entry):
        """Every entry is attempted and failures are reported by index"""
        save_log = mock_store.save_log.side_effect

        async def flaky_save(entry):
            if entry.content == "bad":
                raise MetricStoreError("constraint failed")
            return await save_log(entry)

        mock_store.save_log.side_effect = flaky_save
        entries = [make_entry("one"), make_entry("bad"), make_entry("three")]

        with pytest.raises(BatchIngestionError) as exc_info:
            await monitor.ingest_batch(entries)

        assert exc_info.value.succeeded == 2
        assert [index for index, _ in exc_info.value.failures] == [1]
        assert isinstance(exc_info.value.failures[0][1], MetricStoreError)
        assert mock_store.save_log.await_count == 3


class TestConfigRegistry:
    """Test config persistence through the registry"""

    @pytest.mark.asyncio
    async def test_load_from_store(self, sqlite_store, realtime_config):
        registry = ConfigRegistry(sqlite_store)
        await registry.add(realtime_config)

        fresh = ConfigRegistry(sqlite_store)
        assert await fresh.load() == 1
        assert fresh.get(TENANT, APP) == realtime_config
        assert (TENANT, APP) in fresh

    @pytest.mark.asyncio
    async def test_replace_and_remove(self, sqlite_store, realtime_config, background_config):
        """Adding a config for an existing key replaces it"""
        registry = ConfigRegistry(sqlite_store)
        await registry.add(realtime_config)
        await registry.add(background_config)

        assert len(registry) == 1
        assert registry.get(TENANT, APP).real_time_processing is False

        assert await registry.remove(TENANT, APP) is True
        assert await registry.remove(TENANT, APP) is False
        assert registry.all() == []


class TestMonitoringStats:
    """Test stats computed from stored logs"""

    @pytest.mark.asyncio
    async def test_monitoring_stats(self, sqlite_monitor, critical_issue, make_entry):
        """Totals, issue counts and averages over the window"""
        await sqlite_monitor.add_monitoring_config(
            MonitoringConfig(tenant_id=TENANT, app_id=APP, real_time_processing=True)
        )
        await sqlite_monitor.ingest_log_entry(make_entry(ERROR_CONTENT, level=LogLevel.ERROR,
                                                         response_time_ms=300))
        await sqlite_monitor.ingest_log_entry(make_entry("All good.", response_time_ms=100))
        await sqlite_monitor.store.save_log(make_entry("Made up", issues=[critical_issue]))
        await sqlite_monitor.store.save_log(make_entry("Old", timestamp=time.time() - 48 * 3600))

        stats = await sqlite_monitor.get_monitoring_stats(TENANT, APP, hours=24)

        assert stats.total_logs == 3
        assert stats.logs_with_issues == 2
        assert stats.critical_issue_logs == 1
        assert stats.average_response_time_ms == 200.0
        assert stats.error_rate == pytest.approx(100 / 3)

    @pytest.mark.asyncio
    async def test_empty_stats(self, sqlite_monitor):
        stats = await sqlite_monitor.get_monitoring_stats(TENANT, APP)

        assert stats.total_logs == 0
        assert stats.average_response_time_ms is None
        assert stats.error_rate == 0.0

    @pytest.mark.asyncio
    async def test_issue_stats(self, sqlite_monitor, critical_issue, make_entry):
        """Issue counts by type and severity with a half-window trend"""
        now = time.time()
        low = DetectedIssue(IssueType.STRUCTURE_ERROR, IssueSeverity.LOW, "Loose markup", 0.5)
        store = sqlite_monitor.store
        await store.save_log(make_entry("a", timestamp=now - 20 * 3600, issues=[low]))
        await store.save_log(make_entry("b", timestamp=now - 3600, issues=[critical_issue, low]))
        await store.save_log(make_entry("c", timestamp=now - 1800, issues=[critical_issue]))
        await store.save_log(make_entry("d", timestamp=now - 600, issues=[]))

        stats = await sqlite_monitor.get_issue_stats(TENANT, APP, hours=24)

        assert stats.total_issues == 4
        assert stats.by_type == {"structure_error": 2, "hallucination": 2}
        assert stats.by_severity == {"low": 2, "critical": 2}
        assert stats.average_confidence == pytest.approx((0.5 + 0.95 + 0.5 + 0.95) / 4)
        assert stats.trend == TrendDirection.DEGRADING

    @pytest.mark.asyncio
    async def test_logs_with_issues_query(self, sqlite_monitor, critical_issue, make_entry):
        """Unchecked and clean entries are excluded from the issues view"""
        store = sqlite_monitor.store
        await store.save_log(make_entry("unchecked"))
        await store.save_log(make_entry("clean", issues=[]))
        await store.save_log(make_entry("flagged", issues=[critical_issue]))

        logs = await sqlite_monitor.get_logs_with_issues(TENANT, APP)
        recent = await sqlite_monitor.get_recent_logs(TENANT, APP, limit=2)

        assert [log.content for log in logs] == ["flagged"]
        assert len(recent) == 2

    @pytest.mark.parametrize("first, second, expected", [
        (0, 0, TrendDirection.STABLE),
        (0, 3, TrendDirection.DEGRADING),
        (10, 12, TrendDirection.DEGRADING),
        (10, 8, TrendDirection.IMPROVING),
        (10, 10, TrendDirection.STABLE),
    ])
    def test_issue_trend(self, first, second, expected):
        assert _issue_trend(first, second) == expected
