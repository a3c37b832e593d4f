from fastapi import APIRouter, Depends, HTTPException, Query, Request
from datetime import datetime, timezone
from typing import Dict, Any, Optional
import time
import structlog

from .models import (
    DeleteConfigResponse, HealthCheckResponse, LogsResponse, MAX_BATCH_SIZE, MAX_CONTENT_LENGTH,
    MonitoringConfigRequest, MonitoringConfigResponse, PerformanceResponse, PerformanceView,
    StatusResponse, WebhookError, WebhookRequest, WebhookResponse
)
from .dependencies import get_telemetry_service, get_tenant_id
from .. import __version__
from ..monitoring.exceptions import BatchIngestionError
from ..monitoring.models import LogEntry
from ..monitoring.telemetry_service import TelemetryService


logger = structlog.get_logger(__name__)

# Create routers
main_router = APIRouter()
monitoring_router = APIRouter(prefix="/monitoring", tags=["monitoring"])


def _epoch_seconds(value: datetime) -> float:
    # timestamps sent without an offset are UTC, not server-local time
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


# Main Routes
@main_router.get("/", response_model=Dict[str, str])
async def root():
    """Root endpoint with API information"""
    return {
        "service": "Prompt Telemetry",
        "version": __version__,
        "description": "Issue detection and performance tracking for AI application logs",
        "docs": "/docs",
        "health": "/health"
    }


@main_router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request):
    """Liveness and readiness of the telemetry service"""
    service: Optional[TelemetryService] = getattr(request.app.state, "telemetry_service", None)
    running = service is not None and service.is_running
    return HealthCheckResponse(
        status="healthy" if running else "unhealthy",
        timestamp=time.time(),
        version=__version__,
        running=running,
        configs=len(service.registry) if service is not None else 0
    )


# Ingestion
@monitoring_router.get("/webhook")
async def webhook_info():
    """Readiness probe for log shippers"""
    return {
        "status": "ready",
        "service": "prompt-telemetry-webhook",
        "max_batch_size": MAX_BATCH_SIZE,
        "max_content_length": MAX_CONTENT_LENGTH
    }


@monitoring_router.post("/webhook", response_model=WebhookResponse)
async def ingest_logs(
    payload: WebhookRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: TelemetryService = Depends(get_telemetry_service)
):
    """Ingest a batch of execution logs"""
    entries = [
        LogEntry(
            tenant_id=tenant_id,
            app_id=payload.app_id,
            content=log.content,
            timestamp=_epoch_seconds(log.timestamp) if log.timestamp else time.time(),
            level=log.level,
            context=log.context.to_context() if log.context else None
        )
        for log in payload.logs
    ]

    logger.info("Webhook batch received",
                tenant_id=tenant_id,
                app_id=payload.app_id,
                batch_id=payload.batch_id,
                size=len(entries))

    try:
        stored = await service.ingest_batch(entries)
    except BatchIngestionError as e:
        if e.succeeded == 0:
            # nothing was stored: surface the underlying failure
            raise e.failures[0][1]

        failed = {index for index, _ in e.failures}
        return WebhookResponse(
            success=False,
            processed=e.succeeded,
            failed=len(e.failures),
            batch_id=payload.batch_id,
            log_ids=[entry.id for index, entry in enumerate(entries)
                     if index not in failed and entry.id is not None],
            errors=[WebhookError(index=index, message=str(error)) for index, error in e.failures]
        )

    return WebhookResponse(
        success=True,
        processed=len(stored),
        batch_id=payload.batch_id,
        log_ids=[entry.id for entry in stored if entry.id is not None]
    )


# Configs
@monitoring_router.post("/configs", response_model=MonitoringConfigResponse)
async def upsert_config(
    request: MonitoringConfigRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: TelemetryService = Depends(get_telemetry_service)
):
    """Create or replace the monitoring config for an app"""
    config = request.to_config(tenant_id)
    await service.add_config(config)
    return MonitoringConfigResponse(config=config.to_dict())


@monitoring_router.delete("/configs/{app_id}", response_model=DeleteConfigResponse)
async def delete_config(
    app_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: TelemetryService = Depends(get_telemetry_service)
):
    """Remove the monitoring config for an app"""
    removed = await service.remove_config(tenant_id, app_id)
    if not removed:
        raise HTTPException(status_code=404, detail=f"No monitoring config for app '{app_id}'")

    return DeleteConfigResponse(success=True, app_id=app_id, message="Monitoring config removed")


# Queries
@monitoring_router.get("/logs", response_model=LogsResponse)
async def recent_logs(
    app_id: str = Query(..., min_length=1),
    limit: int = Query(100, ge=1, le=1000),
    since: Optional[float] = Query(None, description="Epoch seconds lower bound"),
    tenant_id: str = Depends(get_tenant_id),
    service: TelemetryService = Depends(get_telemetry_service)
):
    """Most recent logs for an app, newest first"""
    logs = await service.log_monitor.get_recent_logs(tenant_id, app_id, limit=limit, since=since)
    return LogsResponse(app_id=app_id, count=len(logs), logs=[log.to_dict() for log in logs])


@monitoring_router.get("/logs/issues", response_model=LogsResponse)
async def logs_with_issues(
    app_id: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    service: TelemetryService = Depends(get_telemetry_service)
):
    """Logs for an app that have at least one detected issue"""
    logs = await service.log_monitor.get_logs_with_issues(tenant_id, app_id, limit=limit)
    return LogsResponse(app_id=app_id, count=len(logs), logs=[log.to_dict() for log in logs])


@monitoring_router.get("/status", response_model=StatusResponse)
async def monitoring_status(
    app_id: str = Query(..., min_length=1),
    hours: int = Query(24, ge=1, le=168),
    tenant_id: str = Depends(get_tenant_id),
    service: TelemetryService = Depends(get_telemetry_service)
):
    """Monitoring and issue statistics for an app"""
    status = await service.get_status(tenant_id, app_id, hours=hours)
    return StatusResponse(**status)


@monitoring_router.get("/performance", response_model=PerformanceResponse)
async def performance(
    app_id: str = Query(..., min_length=1),
    hours: int = Query(24, ge=1, le=168),
    type: PerformanceView = Query(PerformanceView.DASHBOARD),
    metric_type: str = Query("response_time", min_length=1),
    tenant_id: str = Depends(get_tenant_id),
    service: TelemetryService = Depends(get_telemetry_service)
):
    """Performance dashboard, snapshot, trends or alerts for an app"""
    tracker = service.performance_tracker

    data: Any
    if type == PerformanceView.SNAPSHOT:
        data = (await tracker.get_performance_snapshot(tenant_id, app_id, hours=hours)).to_dict()
    elif type == PerformanceView.TRENDS:
        data = (await tracker.get_performance_trends(tenant_id, app_id, metric_type, hours=hours)).to_dict()
    elif type == PerformanceView.ALERTS:
        data = [alert.to_dict() for alert in await tracker.check_performance_alerts(tenant_id, app_id)]
    else:
        data = (await tracker.get_performance_dashboard(tenant_id, app_id, hours=hours)).to_dict()

    return PerformanceResponse(app_id=app_id, type=type, hours=hours, data=data)


# Export all routers
all_routers = [main_router, monitoring_router]
