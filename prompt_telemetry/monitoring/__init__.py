"""
Monitoring module for the prompt telemetry pipeline

Provides:
- Log ingestion with real-time or background issue detection
- Rule-based and model-assisted issue detection
- Performance metric buffering, snapshots and trends
- Threshold and trend alerting
- Webhook, chat and email notifications
"""

from .models import (
    LogLevel, IssueType, IssueSeverity, TrendDirection, AlertType,
    LogContext, LogEntry, DetectedIssue, DetectionThresholds, NotificationSettings,
    MonitoringConfig, PerformanceMetric, PerformanceSnapshot, PerformanceTrend,
    PerformanceAlert, PerformanceDashboard, IssueSummary, MonitoringStats, IssueStats
)

from .exceptions import (
    TelemetryError, MetricStoreError, BatchIngestionError, DetectionError, NotificationError
)
from .issue_detector import IssueDetector
from .alerting import AlertThreshold, AlertThresholdTable
from .performance_tracker import PerformanceTracker
from .events import EventBus, IssuesDetectedEvent, EmailAlertEvent
from .notifications import NotificationDispatcher
from .config_registry import ConfigRegistry
from .log_monitor import LogMonitor
from .telemetry_service import TelemetryService

__all__ = [
    # Models
    'LogLevel', 'IssueType', 'IssueSeverity', 'TrendDirection', 'AlertType',
    'LogContext', 'LogEntry', 'DetectedIssue', 'DetectionThresholds', 'NotificationSettings',
    'MonitoringConfig', 'PerformanceMetric', 'PerformanceSnapshot', 'PerformanceTrend',
    'PerformanceAlert', 'PerformanceDashboard', 'IssueSummary', 'MonitoringStats', 'IssueStats',

    # Errors
    'TelemetryError', 'MetricStoreError', 'BatchIngestionError', 'DetectionError',
    'NotificationError',

    # Detection
    'IssueDetector',

    # Performance and alerting
    'PerformanceTracker', 'AlertThreshold', 'AlertThresholdTable',

    # Events and notifications
    'EventBus', 'IssuesDetectedEvent', 'EmailAlertEvent', 'NotificationDispatcher',

    # Ingestion
    'ConfigRegistry', 'LogMonitor',

    # Main service
    'TelemetryService'
]
