from pydantic import BaseModel, Field, AnyHttpUrl
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum

from ..monitoring.models import (
    DetectionThresholds, LogContext, LogLevel, MonitoringConfig, NotificationSettings
)


MAX_BATCH_SIZE = 100
MAX_CONTENT_LENGTH = 10000


class PerformanceView(str, Enum):
    DASHBOARD = "dashboard"
    SNAPSHOT = "snapshot"
    TRENDS = "trends"
    ALERTS = "alerts"


# ========== Ingestion ==========

class LogContextModel(BaseModel):
    """Execution context sent with a log"""
    model: Optional[str] = Field(None, max_length=200)
    prompt_id: Optional[str] = Field(None, max_length=200)
    request_id: Optional[str] = Field(None, max_length=200)
    response_time_ms: Optional[float] = Field(None, ge=0, description="Model response time in ms")
    token_count: Optional[int] = Field(None, ge=0, description="Tokens used by the request")
    extra: Dict[str, Any] = Field(default_factory=dict)

    def to_context(self) -> LogContext:
        return LogContext(
            model=self.model,
            prompt_id=self.prompt_id,
            request_id=self.request_id,
            response_time_ms=self.response_time_ms,
            token_count=self.token_count,
            extra=self.extra
        )


class WebhookLogModel(BaseModel):
    content: str = Field(..., min_length=1, max_length=MAX_CONTENT_LENGTH, description="AI response text")
    level: LogLevel = Field(LogLevel.INFO, description="Log level")
    timestamp: Optional[datetime] = Field(None, description="When the response was produced")
    context: Optional[LogContextModel] = None


class WebhookRequest(BaseModel):
    """Batch of execution logs pushed by a monitored application"""
    app_id: str = Field(..., min_length=1, max_length=200, description="Monitored application identifier")
    logs: List[WebhookLogModel] = Field(..., min_length=1, max_length=MAX_BATCH_SIZE)
    batch_id: Optional[str] = Field(None, max_length=200, description="Client-side batch identifier")

    model_config = {
        "json_schema_extra": {
            "example": {
                "app_id": "support-bot",
                "logs": [{
                    "content": "According to the 2023 report, revenue grew 15%.",
                    "level": "info",
                    "context": {"model": "claude-3-haiku", "response_time_ms": 1250, "token_count": 320}
                }],
                "batch_id": "batch-42"
            }
        }
    }


class WebhookError(BaseModel):
    index: int
    message: str


class WebhookResponse(BaseModel):
    success: bool
    processed: int
    failed: int = 0
    batch_id: Optional[str] = None
    log_ids: List[int] = Field(default_factory=list)
    errors: List[WebhookError] = Field(default_factory=list)


# ========== Configs ==========

class ThresholdsModel(BaseModel):
    hallucination_confidence: float = Field(0.7, ge=0.0, le=1.0)
    performance_threshold_ms: float = Field(5000.0, gt=0)
    error_rate_threshold_pct: float = Field(5.0, ge=0.0, le=100.0)


class NotificationModel(BaseModel):
    webhook_url: Optional[AnyHttpUrl] = None
    chat_webhook: Optional[AnyHttpUrl] = None
    email_alerts_enabled: bool = False


class MonitoringConfigRequest(BaseModel):
    app_id: str = Field(..., min_length=1, max_length=200)
    real_time_processing: bool = False
    thresholds: ThresholdsModel = Field(default_factory=ThresholdsModel)
    notification: NotificationModel = Field(default_factory=NotificationModel)

    def to_config(self, tenant_id: str) -> MonitoringConfig:
        return MonitoringConfig(
            tenant_id=tenant_id,
            app_id=self.app_id,
            real_time_processing=self.real_time_processing,
            thresholds=DetectionThresholds(**self.thresholds.model_dump()),
            notification=NotificationSettings(
                webhook_url=str(self.notification.webhook_url) if self.notification.webhook_url else None,
                chat_webhook=str(self.notification.chat_webhook) if self.notification.chat_webhook else None,
                email_alerts_enabled=self.notification.email_alerts_enabled
            )
        )


class MonitoringConfigResponse(BaseModel):
    success: bool = True
    config: Dict[str, Any]


class DeleteConfigResponse(BaseModel):
    success: bool
    app_id: str
    message: str


# ========== Queries ==========

class LogsResponse(BaseModel):
    app_id: str
    count: int
    logs: List[Dict[str, Any]]


class StatusResponse(BaseModel):
    app_id: str
    configured: bool
    real_time_processing: bool
    monitoring: Dict[str, Any]
    issues: Dict[str, Any]
    detection_queue_size: int
    buffered_metrics: int
    uptime_seconds: float


class PerformanceResponse(BaseModel):
    app_id: str
    type: PerformanceView
    hours: int
    data: Any


class HealthCheckResponse(BaseModel):
    status: str = Field(..., description="healthy or unhealthy")
    timestamp: float
    version: str
    running: bool
    configs: int
