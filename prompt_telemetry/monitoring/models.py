from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Tuple
from enum import Enum
import time


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class IssueType(str, Enum):
    HALLUCINATION = "hallucination"
    STRUCTURE_ERROR = "structure_error"
    ACCURACY_ISSUE = "accuracy_issue"
    PERFORMANCE_DEGRADATION = "performance_degradation"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    IssueSeverity.LOW: 1,
    IssueSeverity.MEDIUM: 2,
    IssueSeverity.HIGH: 3,
    IssueSeverity.CRITICAL: 4,
}


class TrendDirection(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"


class AlertType(str, Enum):
    THRESHOLD_EXCEEDED = "threshold_exceeded"
    ANOMALY_DETECTED = "anomaly_detected"
    TREND_DEGRADATION = "trend_degradation"


# Metric types whose values may legitimately go negative
DELTA_METRIC_SUFFIXES = ("_delta", "_change_pct")

TenantAppKey = Tuple[str, str]


@dataclass(frozen=True)
class DetectedIssue:
    """A single quality issue found in a log entry"""
    type: IssueType
    severity: IssueSeverity
    description: str
    confidence: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, "type", IssueType(self.type))
        object.__setattr__(self, "severity", IssueSeverity(self.severity))
        object.__setattr__(self, "confidence", min(max(float(self.confidence), 0.0), 1.0))

    @property
    def dedupe_key(self) -> Tuple[str, str]:
        return (self.type.value, self.description)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "confidence": self.confidence,
            "metadata": self.metadata
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectedIssue":
        return cls(
            type=IssueType(data["type"]),
            severity=IssueSeverity(data["severity"]),
            description=data.get("description", ""),
            confidence=data.get("confidence", 0.0),
            metadata=data.get("metadata") or {}
        )


@dataclass
class LogContext:
    """Execution context attached to a log entry by the monitored application"""
    model: Optional[str] = None
    prompt_id: Optional[str] = None
    request_id: Optional[str] = None
    response_time_ms: Optional[float] = None
    token_count: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "model": self.model,
            "prompt_id": self.prompt_id,
            "request_id": self.request_id,
            "response_time_ms": self.response_time_ms,
            "token_count": self.token_count,
        }
        data = {k: v for k, v in data.items() if v is not None}
        if self.extra:
            data["extra"] = self.extra
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["LogContext"]:
        if not data:
            return None
        return cls(
            model=data.get("model"),
            prompt_id=data.get("prompt_id"),
            request_id=data.get("request_id"),
            response_time_ms=data.get("response_time_ms"),
            token_count=data.get("token_count"),
            extra=data.get("extra") or {}
        )


@dataclass
class LogEntry:
    """Execution log record received from a monitored application"""
    tenant_id: str
    app_id: str
    content: str
    timestamp: float = field(default_factory=time.time)
    level: LogLevel = LogLevel.INFO
    context: Optional[LogContext] = None
    detected_issues: Optional[List[DetectedIssue]] = None
    id: Optional[int] = None

    def __post_init__(self):
        self.level = LogLevel(self.level)

    @property
    def key(self) -> TenantAppKey:
        return (self.tenant_id, self.app_id)

    @property
    def max_severity(self) -> str:
        """Highest issue severity, or "info" when nothing was detected"""
        if not self.detected_issues:
            return "info"
        return max(self.detected_issues, key=lambda i: i.severity.rank).severity.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "app_id": self.app_id,
            "content": self.content,
            "timestamp": self.timestamp,
            "level": self.level.value,
            "context": self.context.to_dict() if self.context else None,
            "detected_issues": ([issue.to_dict() for issue in self.detected_issues]
                                if self.detected_issues is not None else None),
        }


@dataclass
class DetectionThresholds:
    """Per-application detection thresholds"""
    hallucination_confidence: float = 0.7
    performance_threshold_ms: float = 5000.0
    error_rate_threshold_pct: float = 5.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hallucination_confidence": self.hallucination_confidence,
            "performance_threshold_ms": self.performance_threshold_ms,
            "error_rate_threshold_pct": self.error_rate_threshold_pct
        }


@dataclass
class NotificationSettings:
    """Where alerts for an application are delivered"""
    webhook_url: Optional[str] = None
    chat_webhook: Optional[str] = None
    email_alerts_enabled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "webhook_url": self.webhook_url,
            "chat_webhook": self.chat_webhook,
            "email_alerts_enabled": self.email_alerts_enabled
        }


@dataclass
class MonitoringConfig:
    """Monitoring configuration for one (tenant, app) key"""
    tenant_id: str
    app_id: str
    real_time_processing: bool = False
    thresholds: DetectionThresholds = field(default_factory=DetectionThresholds)
    notification: NotificationSettings = field(default_factory=NotificationSettings)

    @property
    def key(self) -> TenantAppKey:
        return (self.tenant_id, self.app_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "app_id": self.app_id,
            "real_time_processing": self.real_time_processing,
            "thresholds": self.thresholds.to_dict(),
            "notification": self.notification.to_dict()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MonitoringConfig":
        return cls(
            tenant_id=data["tenant_id"],
            app_id=data["app_id"],
            real_time_processing=bool(data.get("real_time_processing", False)),
            thresholds=DetectionThresholds(**(data.get("thresholds") or {})),
            notification=NotificationSettings(**(data.get("notification") or {}))
        )


@dataclass
class PerformanceMetric:
    """Atomic metric fact, append-only"""
    tenant_id: str
    app_id: str
    metric_type: str
    value: float
    timestamp: float = field(default_factory=time.time)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.value < 0 and not self.metric_type.endswith(DELTA_METRIC_SUFFIXES):
            raise ValueError(f"Metric '{self.metric_type}' cannot be negative: {self.value}")

    @property
    def key(self) -> TenantAppKey:
        return (self.tenant_id, self.app_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "app_id": self.app_id,
            "metric_type": self.metric_type,
            "value": self.value,
            "timestamp": self.timestamp,
            "metadata": self.metadata
        }


@dataclass
class ResponseTimeStats:
    avg: float = 0.0
    p50: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    p99: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"avg": self.avg, "p50": self.p50, "p90": self.p90, "p95": self.p95, "p99": self.p99}


@dataclass
class TokenUsageStats:
    avg: float = 0.0
    total: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"avg": self.avg, "total": self.total}


@dataclass
class PerformanceSnapshot:
    """Point-in-time performance summary over a metric window"""
    timestamp: float = field(default_factory=time.time)
    response_time: ResponseTimeStats = field(default_factory=ResponseTimeStats)
    error_rate: float = 0.0
    throughput: float = 0.0  # requests per minute
    issue_rate: float = 0.0
    quality_score: float = 100.0
    token_usage: TokenUsageStats = field(default_factory=TokenUsageStats)
    request_count: float = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "response_time": self.response_time.to_dict(),
            "error_rate": self.error_rate,
            "throughput": self.throughput,
            "issue_rate": self.issue_rate,
            "quality_score": self.quality_score,
            "token_usage": self.token_usage.to_dict(),
            "request_count": self.request_count
        }


@dataclass
class TrendPoint:
    timestamp: float
    value: float

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, "value": self.value}


@dataclass
class PerformanceTrend:
    """Bucketed history of one metric type"""
    metric_type: str
    time_window: str
    data_points: List[TrendPoint] = field(default_factory=list)
    trend: TrendDirection = TrendDirection.STABLE
    change_percentage: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric_type": self.metric_type,
            "time_window": self.time_window,
            "data_points": [p.to_dict() for p in self.data_points],
            "trend": self.trend.value,
            "change_percentage": self.change_percentage
        }


@dataclass
class PerformanceAlert:
    """Threshold or trend alert; ephemeral, never persisted"""
    id: str
    type: AlertType
    severity: IssueSeverity
    message: str
    metric_type: str
    current_value: float
    threshold: Optional[float] = None
    timestamp: float = field(default_factory=time.time)
    acknowledged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "metric_type": self.metric_type,
            "current_value": self.current_value,
            "threshold": self.threshold,
            "timestamp": self.timestamp,
            "acknowledged": self.acknowledged
        }


@dataclass
class IssueSummary:
    type: str
    count: float
    impact: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "count": self.count, "impact": self.impact}


@dataclass
class PerformanceDashboard:
    snapshot: PerformanceSnapshot
    trends: List[PerformanceTrend] = field(default_factory=list)
    alerts: List[PerformanceAlert] = field(default_factory=list)
    top_issues: List[IssueSummary] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot": self.snapshot.to_dict(),
            "trends": [t.to_dict() for t in self.trends],
            "alerts": [a.to_dict() for a in self.alerts],
            "top_issues": [i.to_dict() for i in self.top_issues],
            "recommendations": self.recommendations
        }


@dataclass
class MonitoringStats:
    """Log volume and health for one key over a time window"""
    total_logs: int = 0
    logs_with_issues: int = 0
    critical_issue_logs: int = 0
    average_response_time_ms: Optional[float] = None
    error_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_logs": self.total_logs,
            "logs_with_issues": self.logs_with_issues,
            "critical_issue_logs": self.critical_issue_logs,
            "average_response_time_ms": self.average_response_time_ms,
            "error_rate": self.error_rate
        }


@dataclass
class IssueStats:
    total_issues: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)
    by_severity: Dict[str, int] = field(default_factory=dict)
    average_confidence: float = 0.0
    trend: TrendDirection = TrendDirection.STABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_issues": self.total_issues,
            "by_type": self.by_type,
            "by_severity": self.by_severity,
            "average_confidence": self.average_confidence,
            "trend": self.trend.value
        }
