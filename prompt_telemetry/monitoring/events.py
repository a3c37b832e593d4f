import inspect
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import structlog

from .models import DetectedIssue, LogEntry, MonitoringConfig


logger = structlog.get_logger(__name__)


ISSUES_DETECTED = "issues_detected"
EMAIL_ALERT = "email_alert"


@dataclass
class IssuesDetectedEvent:
    """Published whenever detection attaches at least one issue to a log entry"""
    entry: LogEntry
    issues: List[DetectedIssue]
    config: Optional[MonitoringConfig] = None
    # "realtime" when detected during ingestion, "background" from the drain
    source: str = "realtime"
    timestamp: float = field(default_factory=time.time)
    event_type: str = ISSUES_DETECTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "tenant_id": self.entry.tenant_id,
            "app_id": self.entry.app_id,
            "log_id": self.entry.id,
            "source": self.source,
            "issues": [issue.to_dict() for issue in self.issues]
        }


@dataclass
class EmailAlertEvent:
    """Signal for the external mailer; delivery itself happens outside this package"""
    tenant_id: str
    app_id: str
    issues: List[DetectedIssue]
    log_content: str
    timestamp: float = field(default_factory=time.time)
    event_type: str = EMAIL_ALERT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "tenant_id": self.tenant_id,
            "app_id": self.app_id,
            "issues": [issue.to_dict() for issue in self.issues],
            "log_content": self.log_content
        }


EventCallback = Callable[[Any], Any]


class EventBus:
    """In-process observer list keyed by event type"""

    def __init__(self):
        self._subscribers: Dict[str, List[EventCallback]] = defaultdict(list)

    def subscribe(self, event_type: str, callback: EventCallback):
        self._subscribers[event_type].append(callback)

    def unsubscribe(self, event_type: str, callback: EventCallback):
        if callback in self._subscribers.get(event_type, []):
            self._subscribers[event_type].remove(callback)

    def subscriber_count(self, event_type: str) -> int:
        return len(self._subscribers.get(event_type, []))

    async def publish(self, event) -> int:
        """Deliver an event to every subscriber. Returns the number that succeeded."""
        delivered = 0
        for callback in list(self._subscribers.get(event.event_type, [])):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.error("Event subscriber failed",
                             event_type=event.event_type,
                             callback=getattr(callback, "__name__", repr(callback)),
                             error=str(e))
        return delivered
