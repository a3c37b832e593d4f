"""
Alert delivery for detected issues.

Webhook and chat-relay channels are delivered over HTTP; email is signalled
through the event bus for an external mailer. Channels fail independently
and a delivery failure never reaches the ingestion caller.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp
import structlog
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .events import EmailAlertEvent, EventBus
from .exceptions import NotificationError
from .models import DetectedIssue, IssueSeverity, LogEntry, MonitoringConfig


logger = structlog.get_logger(__name__)


USER_AGENT = "PromptTelemetry-Monitor/1.0"
WEBHOOK_CONTENT_LIMIT = 500

NOTIFY_SEVERITIES = (IssueSeverity.HIGH, IssueSeverity.CRITICAL)


def build_webhook_payload(entry: LogEntry, issues: List[DetectedIssue]) -> Dict[str, Any]:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": "issues_detected",
        "app": entry.app_id,
        "issues": [
            {
                "type": issue.type.value,
                "severity": issue.severity.value,
                "description": issue.description,
                "confidence": issue.confidence
            }
            for issue in issues
        ],
        "logContent": entry.content[:WEBHOOK_CONTENT_LIMIT]
    }


def build_chat_payload(entry: LogEntry, issues: List[DetectedIssue]) -> Dict[str, Any]:
    critical_count = sum(1 for i in issues if i.severity == IssueSeverity.CRITICAL)
    high_count = sum(1 for i in issues if i.severity == IssueSeverity.HIGH)

    return {
        "attachments": [{
            "color": "danger" if critical_count else "warning",
            "title": "Critical AI issues detected" if critical_count else "AI issues detected",
            "fields": [
                {"title": "Application", "value": entry.app_id, "short": True},
                {"title": "Severity", "value": f"{critical_count} Critical, {high_count} High", "short": True},
                {"title": "Issues", "value": "\n".join(f"• {i.description}" for i in issues), "short": False}
            ],
            "ts": int(entry.timestamp)
        }]
    }


class NotificationDispatcher:
    """Pushes high and critical issues to the channels a config enables"""

    def __init__(self, event_bus: EventBus, timeout: float = 10.0):
        self.event_bus = event_bus
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self):
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Content-Type": "application/json"}
            )

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
            self.session = None

    async def send_notifications(self, entry: LogEntry, issues: List[DetectedIssue],
                                 config: MonitoringConfig) -> List[str]:
        """Deliver to every enabled channel. Returns the channels that succeeded."""
        if not any(issue.severity in NOTIFY_SEVERITIES for issue in issues):
            return []

        settings = config.notification
        delivered = []

        if settings.webhook_url:
            if await self._deliver("webhook", settings.webhook_url,
                                   build_webhook_payload(entry, issues),
                                   headers={"User-Agent": USER_AGENT}):
                delivered.append("webhook")

        if settings.chat_webhook:
            if await self._deliver("chat", settings.chat_webhook, build_chat_payload(entry, issues)):
                delivered.append("chat")

        if settings.email_alerts_enabled:
            event = EmailAlertEvent(
                tenant_id=entry.tenant_id,
                app_id=entry.app_id,
                issues=list(issues),
                log_content=entry.content
            )
            await self.event_bus.publish(event)
            delivered.append("email")

        logger.info("Notifications dispatched",
                    tenant_id=entry.tenant_id,
                    app_id=entry.app_id,
                    channels=delivered,
                    issue_count=len(issues))
        return delivered

    async def _deliver(self, channel: str, url: str, payload: Dict[str, Any],
                       headers: Optional[Dict[str, str]] = None) -> bool:
        try:
            await self._post(url, payload, headers or {})
            return True
        except (NotificationError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Notification delivery failed", channel=channel, url=url, error=str(e))
            return False

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type((aiohttp.ClientConnectionError, asyncio.TimeoutError)),
        reraise=True
    )
    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]):
        await self._ensure_session()

        async with self.session.post(url, json=payload, headers=headers) as response:
            if response.status >= 400:
                body = await response.text()
                raise NotificationError(
                    f"{url} responded with {response.status}: {body[:200]}"
                )
