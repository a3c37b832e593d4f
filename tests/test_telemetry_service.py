"""
Tests for the composed telemetry service and its settings
"""

import asyncio

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, patch

from prompt_telemetry import TelemetryService
from prompt_telemetry.config.settings import TelemetrySettings
from prompt_telemetry.monitoring.exceptions import BatchIngestionError, MetricStoreError
from prompt_telemetry.monitoring.models import MonitoringConfig


TENANT = "tenant-1"
APP = "support-bot"
KEY = (TENANT, APP)
ERROR_CONTENT = "The lookup failed with a timeout."


@pytest.fixture
def settings(db_path):
    return TelemetrySettings(db_path=db_path, detection_interval_seconds=60.0,
                             model_detection_enabled=False)


@pytest_asyncio.fixture
async def service(settings):
    telemetry = TelemetryService(settings)
    await telemetry.start()
    yield telemetry
    if telemetry.is_running:
        await telemetry.stop()


class TestTelemetrySettings:
    """Test environment-driven settings"""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("DETECTION_BATCH_SIZE", raising=False)

        settings = TelemetrySettings()

        assert settings.detection_batch_size == 10
        assert settings.validate() is None

    def test_environment_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("DETECTION_BATCH_SIZE", "25")
        monkeypatch.setenv("MODEL_DETECTION_ENABLED", "false")

        settings = TelemetrySettings()

        assert settings.detection_batch_size == 25
        assert settings.model_detection_enabled is False

    def test_explicit_arguments_win(self, monkeypatch):
        monkeypatch.setenv("METRICS_FLUSH_THRESHOLD", "500")

        assert TelemetrySettings(metrics_flush_threshold=20).metrics_flush_threshold == 20

    @pytest.mark.parametrize("kwargs", [
        {"detection_interval_seconds": 0},
        {"detection_batch_size": 0},
        {"metrics_flush_threshold": 0},
        {"notification_timeout": -1},
    ])
    def test_validate(self, kwargs):
        assert TelemetrySettings(**kwargs).validate() is not None


class TestTelemetryService:
    """Test wiring between ingestion, detection and tracking"""

    def test_no_model_client_without_credentials(self, db_path):
        service = TelemetryService(TelemetrySettings(db_path=db_path))
        assert service.llm_client is None
        assert service.detector.llm_client is None

    @pytest.mark.asyncio
    async def test_ingest_tracks_metrics(self, service, make_entry):
        await service.ingest(make_entry(response_time_ms=150))

        assert service.performance_tracker.buffer.pending(KEY) == 2

    @pytest.mark.asyncio
    async def test_background_issues_tracked_once(self, service, background_config, make_entry):
        """Background results add issue metrics without recounting the request"""
        await service.add_config(background_config)
        await service.ingest(make_entry(ERROR_CONTENT))
        assert service.performance_tracker.buffer.pending(KEY) == 1

        await service.log_monitor.process_queue()
        await service.performance_tracker.flush()

        snapshot = await service.performance_tracker.get_performance_snapshot(TENANT, APP)
        assert snapshot.request_count == 1
        assert snapshot.issue_rate == 100.0

    @pytest.mark.asyncio
    async def test_realtime_issues_tracked_at_ingestion(self, service, realtime_config, make_entry):
        with patch.object(service.notifier, "_post", new_callable=AsyncMock):
            await service.add_config(realtime_config)
            await service.ingest(make_entry(ERROR_CONTENT))

        await service.performance_tracker.flush()
        top = await service.performance_tracker.get_top_issues(TENANT, APP)

        assert [(t.type, t.count) for t in top] == [("accuracy_issue", 1)]

    @pytest.mark.asyncio
    async def test_config_sets_error_rate_alert(self, service):
        """A config's error rate threshold becomes its warning level"""
        config = MonitoringConfig(tenant_id=TENANT, app_id=APP)
        config.thresholds.error_rate_threshold_pct = 2.0

        await service.add_config(config)
        assert service.performance_tracker.alert_thresholds.get(KEY)["error_rate"].warning == 2.0

        assert await service.remove_config(TENANT, APP) is True
        assert service.performance_tracker.alert_thresholds.get(KEY)["error_rate"].warning == 5

    @pytest.mark.asyncio
    async def test_configs_survive_restart(self, settings, realtime_config):
        first = TelemetryService(settings)
        await first.start()
        await first.add_config(realtime_config)
        await first.stop()

        second = TelemetryService(settings)
        await second.start()
        try:
            assert second.registry.get(TENANT, APP) == realtime_config
        finally:
            await second.stop()

    @pytest.mark.asyncio
    async def test_partial_batch_still_tracked(self, service, make_entry):
        """Entries stored before a batch failure still record metrics"""
        entries = [make_entry("a"), make_entry("b")]
        real_save = service.store.save_log

        async def save_log(entry):
            if entry.content == "b":
                raise MetricStoreError("database is locked")
            return await real_save(entry)

        with patch.object(service.store, "save_log", side_effect=save_log):
            with pytest.raises(BatchIngestionError) as exc_info:
                await service.ingest_batch(entries)

        assert exc_info.value.succeeded == 1
        assert service.performance_tracker.buffer.pending(KEY) == 1

    @pytest.mark.asyncio
    async def test_drain_during_batch_counts_issues_once(self, service, background_config, make_entry):
        """An entry checked by the drain while its batch is still saving gets one issue_count"""
        await service.add_config(background_config)
        gate = asyncio.Event()
        real_save = service.store.save_log

        async def save_log(entry):
            if entry.content == "slow sibling":
                await gate.wait()
            return await real_save(entry)

        with patch.object(service.store, "save_log", side_effect=save_log):
            batch = asyncio.create_task(
                service.ingest_batch([make_entry(ERROR_CONTENT), make_entry("slow sibling")])
            )
            while service.log_monitor.queue_size == 0:
                await asyncio.sleep(0.01)

            assert await service.log_monitor.process_queue() == 1
            gate.set()
            await batch

        await service.performance_tracker.flush()
        snapshot = await service.performance_tracker.get_performance_snapshot(TENANT, APP)
        top = await service.performance_tracker.get_top_issues(TENANT, APP)

        assert snapshot.request_count == 2
        assert snapshot.issue_rate == 50.0
        assert [(t.type, t.count) for t in top] == [("accuracy_issue", 1)]

    @pytest.mark.asyncio
    async def test_status(self, service, realtime_config, make_entry):
        await service.add_config(realtime_config)

        status = await service.get_status(TENANT, APP)

        assert status["configured"] is True
        assert status["real_time_processing"] is True
        assert status["monitoring"]["total_logs"] == 0
        assert status["detection_queue_size"] == 0
        assert status["uptime_seconds"] >= 0

    @pytest.mark.asyncio
    async def test_stop_flushes_metrics(self, service, make_entry):
        await service.ingest(make_entry())
        await service.stop()

        assert not service.is_running
        assert service.performance_tracker.buffer.pending_total() == 0
