"""
Pytest configuration and shared fixtures for testing
"""

import pytest
import pytest_asyncio
import tempfile
import shutil
import time
from pathlib import Path
from unittest.mock import AsyncMock

from prompt_telemetry.storage.metric_store import MetricStore, SQLiteMetricStore
from prompt_telemetry.monitoring.models import (
    DetectedIssue, DetectionThresholds, IssueSeverity, IssueType, LogContext, LogEntry,
    LogLevel, MonitoringConfig, NotificationSettings
)


TENANT = "tenant-1"
APP = "support-bot"


@pytest.fixture(autouse=True)
def no_llm_credentials(monkeypatch):
    """Keep tests from picking up real model credentials"""
    monkeypatch.setenv("LLM_API_KEY", "")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "")


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests"""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir)


@pytest.fixture
def db_path(temp_dir):
    return str(temp_dir / "telemetry.db")


@pytest_asyncio.fixture
async def sqlite_store(db_path):
    """SQLite-backed metric store in a temp directory"""
    store = SQLiteMetricStore(db_path)
    yield store
    await store.close()


@pytest.fixture
def mock_store():
    """MetricStore double that records calls and assigns sequential log ids"""
    store = AsyncMock(spec=MetricStore)
    counter = {"next_id": 0}

    async def save_log(entry):
        counter["next_id"] += 1
        entry.id = counter["next_id"]
        return entry.id

    store.save_log.side_effect = save_log
    store.load_configs.return_value = []
    store.delete_config.return_value = True
    store.fetch_logs.return_value = []
    store.fetch_metrics.return_value = []
    return store


@pytest.fixture
def thresholds():
    return DetectionThresholds()


@pytest.fixture
def realtime_config():
    return MonitoringConfig(
        tenant_id=TENANT,
        app_id=APP,
        real_time_processing=True,
        notification=NotificationSettings(webhook_url="https://hooks.example.org/telemetry")
    )


@pytest.fixture
def background_config():
    return MonitoringConfig(tenant_id=TENANT, app_id=APP, real_time_processing=False)


@pytest.fixture
def make_entry():
    """Factory for log entries with sensible defaults"""

    def _make(content="The answer is 42.", level=LogLevel.INFO, timestamp=None,
              response_time_ms=None, token_count=None, issues=None,
              tenant_id=TENANT, app_id=APP):
        context = None
        if response_time_ms is not None or token_count is not None:
            context = LogContext(model="claude-3-haiku", response_time_ms=response_time_ms,
                                 token_count=token_count)
        return LogEntry(
            tenant_id=tenant_id,
            app_id=app_id,
            content=content,
            timestamp=timestamp if timestamp is not None else time.time(),
            level=level,
            context=context,
            detected_issues=issues
        )

    return _make


@pytest.fixture
def critical_issue():
    return DetectedIssue(
        type=IssueType.HALLUCINATION,
        severity=IssueSeverity.CRITICAL,
        description="Fabricated citation",
        confidence=0.95
    )
