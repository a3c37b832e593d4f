"""
Tests for the HTTP API
"""

import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, patch

from prompt_telemetry.api.main import create_app
from prompt_telemetry.config.settings import TelemetrySettings
from prompt_telemetry.monitoring.exceptions import BatchIngestionError, MetricStoreError
from prompt_telemetry.monitoring.telemetry_service import TelemetryService


TENANT_HEADERS = {"X-Tenant-ID": "tenant-1"}
APP = "support-bot"


@pytest.fixture
def settings(db_path):
    return TelemetrySettings(
        db_path=db_path,
        detection_interval_seconds=60.0,
        metrics_flush_threshold=1,
        model_detection_enabled=False
    )


@pytest.fixture
def service(settings):
    return TelemetryService(settings)


@pytest.fixture
def client(service):
    """Test client with the service started through the app lifespan"""
    with TestClient(create_app(service), raise_server_exceptions=False) as test_client:
        yield test_client


def _webhook(*contents, **extra):
    return {"app_id": APP, "logs": [{"content": c, **extra} for c in contents]}


def _configure(client, **overrides):
    body = {"app_id": APP, "real_time_processing": True, **overrides}
    return client.post("/monitoring/configs", json=body, headers=TENANT_HEADERS)


class TestRootEndpoints:
    """Test root and health endpoints"""

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["service"] == "Prompt Telemetry"
        assert "X-Request-ID" in response.headers

    def test_caller_request_id_echoed(self, client):
        """A request ID supplied by the caller is kept, including on errors"""
        headers = {"X-Request-ID": "req-42"}
        response = client.post("/monitoring/webhook", json=_webhook("hello"), headers=headers)

        assert response.headers["X-Request-ID"] == "req-42"
        assert response.json()["request_id"] == "req-42"
        assert response.json()["suggestion"]

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["running"] is True
        assert data["configs"] == 0

    def test_webhook_readiness(self, client):
        response = client.get("/monitoring/webhook")

        assert response.json()["status"] == "ready"
        assert response.json()["max_batch_size"] == 100


class TestWebhookIngestion:
    """Test the log ingestion endpoint"""

    def test_missing_tenant_header(self, client):
        """Requests without a tenant are rejected"""
        response = client.post("/monitoring/webhook", json=_webhook("hello"))

        assert response.status_code == 401
        assert response.json()["error_code"] == "UNAUTHORIZED"

    def test_ingest_without_config(self, client):
        """Logs for unconfigured apps are stored without detection"""
        response = client.post("/monitoring/webhook", json=_webhook("one", "two"), headers=TENANT_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["processed"] == 2
        assert len(data["log_ids"]) == 2

        logs = client.get("/monitoring/logs", params={"app_id": APP}, headers=TENANT_HEADERS).json()
        assert logs["count"] == 2
        assert all(log["detected_issues"] is None for log in logs["logs"])

    @pytest.mark.parametrize("sent", ["2025-01-01T00:00:00", "2025-01-01T01:00:00+01:00"])
    def test_timestamps_read_as_utc(self, client, sent):
        """Timestamps without an offset are UTC regardless of the server's timezone"""
        client.post("/monitoring/webhook", json=_webhook("hello", timestamp=sent), headers=TENANT_HEADERS)

        logs = client.get("/monitoring/logs", params={"app_id": APP}, headers=TENANT_HEADERS).json()

        assert logs["logs"][0]["timestamp"] == 1735689600.0

    def test_realtime_detection(self, client):
        """Configured real-time apps get issues attached at ingestion"""
        assert _configure(client).status_code == 200

        response = client.post(
            "/monitoring/webhook",
            json=_webhook("The lookup failed with a timeout.", "Paris is the capital of France."),
            headers=TENANT_HEADERS
        )
        assert response.json()["processed"] == 2

        issues = client.get("/monitoring/logs/issues", params={"app_id": APP}, headers=TENANT_HEADERS).json()
        assert issues["count"] == 1
        assert issues["logs"][0]["detected_issues"][0]["type"] == "accuracy_issue"

    def test_batch_too_large(self, client):
        """More than 100 logs fails validation"""
        response = client.post("/monitoring/webhook", json=_webhook(*["x"] * 101), headers=TENANT_HEADERS)

        assert response.status_code == 422
        data = response.json()
        assert data["error_code"] == "VALIDATION_ERROR"
        assert data["details"][0]["field"] == "logs"

    @pytest.mark.parametrize("body", [
        {"app_id": APP, "logs": []},
        {"app_id": "", "logs": [{"content": "x"}]},
        {"app_id": APP, "logs": [{"content": ""}]},
        {"app_id": APP, "logs": [{"content": "x", "level": "fatal"}]},
        {"app_id": APP, "logs": [{"content": "x", "context": {"response_time_ms": -1}}]},
    ])
    def test_invalid_payloads(self, client, body):
        response = client.post("/monitoring/webhook", json=body, headers=TENANT_HEADERS)
        assert response.status_code == 422

    def test_storage_failure_is_503(self, client, service):
        """A batch where nothing could be stored surfaces the store error"""
        error = BatchIngestionError([(0, MetricStoreError("database is locked"))], succeeded=0)

        with patch.object(service, "ingest_batch", AsyncMock(side_effect=error)):
            response = client.post("/monitoring/webhook", json=_webhook("x"), headers=TENANT_HEADERS)

        assert response.status_code == 503
        assert response.json()["error_code"] == "STORAGE_ERROR"

    def test_partial_failure(self, client, service):
        """Partially stored batches report per-entry errors"""
        error = BatchIngestionError([(1, MetricStoreError("constraint failed"))], succeeded=1)

        with patch.object(service, "ingest_batch", AsyncMock(side_effect=error)):
            response = client.post("/monitoring/webhook", json=_webhook("a", "b"), headers=TENANT_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["processed"] == 1
        assert data["failed"] == 1
        assert data["errors"] == [{"index": 1, "message": "constraint failed"}]


class TestConfigEndpoints:
    """Test monitoring config management"""

    def test_create_config(self, client):
        response = _configure(
            client,
            thresholds={"hallucination_confidence": 0.8},
            notification={"webhook_url": "https://hooks.example.org/telemetry"}
        )

        assert response.status_code == 200
        config = response.json()["config"]
        assert config["tenant_id"] == "tenant-1"
        assert config["thresholds"]["hallucination_confidence"] == 0.8
        assert config["thresholds"]["performance_threshold_ms"] == 5000.0
        assert config["notification"]["webhook_url"].startswith("https://hooks.example.org")
        assert client.get("/health").json()["configs"] == 1

    def test_invalid_config(self, client):
        response = _configure(client, thresholds={"hallucination_confidence": 1.5})
        assert response.status_code == 422

        response = _configure(client, notification={"webhook_url": "not a url"})
        assert response.status_code == 422

    def test_delete_config(self, client):
        _configure(client)

        response = client.delete(f"/monitoring/configs/{APP}", headers=TENANT_HEADERS)
        assert response.status_code == 200
        assert response.json()["success"] is True

        response = client.delete(f"/monitoring/configs/{APP}", headers=TENANT_HEADERS)
        assert response.status_code == 404
        assert response.json()["error_code"] == "RESOURCE_NOT_FOUND"

    def test_configs_are_tenant_scoped(self, client):
        """A tenant cannot delete another tenant's config"""
        _configure(client)

        response = client.delete(f"/monitoring/configs/{APP}", headers={"X-Tenant-ID": "tenant-2"})

        assert response.status_code == 404


class TestQueryEndpoints:
    """Test status and performance queries"""

    def test_status(self, client):
        _configure(client)
        client.post("/monitoring/webhook", json=_webhook("The lookup failed with a timeout."),
                    headers=TENANT_HEADERS)

        response = client.get("/monitoring/status", params={"app_id": APP}, headers=TENANT_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["configured"] is True
        assert data["real_time_processing"] is True
        assert data["monitoring"]["total_logs"] == 1
        assert data["issues"]["total_issues"] >= 1

    def test_status_hours_bounds(self, client):
        response = client.get("/monitoring/status", params={"app_id": APP, "hours": 500},
                              headers=TENANT_HEADERS)
        assert response.status_code == 422

    def test_performance_snapshot(self, client):
        """Ingested logs show up in the snapshot"""
        client.post("/monitoring/webhook",
                    json=_webhook("a", "b", context={"response_time_ms": 200, "token_count": 50}),
                    headers=TENANT_HEADERS)

        response = client.get("/monitoring/performance", params={"app_id": APP, "type": "snapshot"},
                              headers=TENANT_HEADERS)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["request_count"] == 2
        assert data["response_time"]["avg"] == 200
        assert data["token_usage"]["total"] == 100

    @pytest.mark.parametrize("view", ["dashboard", "trends", "alerts"])
    def test_performance_views(self, client, view):
        response = client.get("/monitoring/performance", params={"app_id": APP, "type": view},
                              headers=TENANT_HEADERS)

        assert response.status_code == 200
        assert response.json()["type"] == view

    def test_unknown_performance_view(self, client):
        response = client.get("/monitoring/performance", params={"app_id": APP, "type": "heatmap"},
                              headers=TENANT_HEADERS)
        assert response.status_code == 422


class TestServiceUnavailable:
    """Test behaviour before the service is started"""

    def test_requests_rejected_until_started(self, service):
        client = TestClient(create_app(service), raise_server_exceptions=False)

        response = client.get("/monitoring/logs", params={"app_id": APP}, headers=TENANT_HEADERS)
        health = client.get("/health")

        assert response.status_code == 503
        assert response.json()["error_code"] == "SERVICE_UNAVAILABLE"
        assert health.json()["status"] == "unhealthy"
