"""
Payflow Hub - Notification Service

Fire-and-forget notifications after approval, rejection and payment, with a
provider that can be swapped without touching the workflow code.

Providers:
- mock: keeps messages in memory and, when a db is given, in the
  `notification_logs` collection
- webhook: posts to Slack and Microsoft Teams incoming webhooks
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional, Dict, List, Any

import httpx

from . import settings
from .records import Record, utc_now
from .workflow_engine import AuditEvent

logger = logging.getLogger(__name__)


class NotificationProvider(str, Enum):
    """Supported notification providers."""
    MOCK = "mock"
    WEBHOOK = "webhook"


@dataclass
class NotificationResult:
    success: bool
    provider: str
    message_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: str = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = utc_now().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def format_transition_message(record: Record, event: AuditEvent) -> str:
    """One-line summary, e.g. 'Invoice abc: pending_manager -> rejected by u1 (reason: ...)'."""
    label = record.kind.replace("_", " ").capitalize()
    text = f"{label} {record.id}: {event.from_status} -> {event.to_status} by {event.actor_id}"
    reason = record.workflow.rejection_reason
    if event.to_status == "rejected" and reason:
        text += f" (reason: {reason})"
    return text


# =============================================================================
# MOCK PROVIDER
# =============================================================================

class MockNotificationProvider:
    """
    Records notifications instead of delivering them.

    Stores them in MongoDB collection 'notification_logs' when a db is given.
    """

    def __init__(self, db=None):
        self.db = db
        self._sent: List[Dict[str, Any]] = []

    async def send(self, text: str, context: Optional[Dict[str, Any]] = None) -> NotificationResult:
        message_id = f"mock_{uuid.uuid4().hex[:12]}"
        entry = {
            "message_id": message_id,
            "provider": NotificationProvider.MOCK.value,
            "text": text,
            "context": context or {},
            "sent_at": utc_now().isoformat(),
        }

        logger.info("[MOCK NOTIFY] %s | ID: %s", text, message_id)
        self._sent.append(entry)

        if self.db is not None:
            try:
                await self.db.notification_logs.insert_one(dict(entry))
            except Exception as e:
                logger.warning("Failed to log notification to MongoDB: %s", e)

        return NotificationResult(success=True, provider=NotificationProvider.MOCK.value, message_id=message_id)

    def get_sent(self) -> List[Dict[str, Any]]:
        return list(self._sent)

    def clear(self):
        self._sent.clear()


# =============================================================================
# WEBHOOK PROVIDER
# =============================================================================

class WebhookNotificationProvider:
    """
    Slack + Teams incoming webhooks. Unconfigured URLs are skipped.

    Both hooks are attempted; the result is a failure only if every
    configured hook failed.
    """

    def __init__(
        self,
        slack_url: Optional[str] = None,
        teams_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.slack_url = slack_url if slack_url is not None else settings.SLACK_WEBHOOK_URL
        self.teams_url = teams_url if teams_url is not None else settings.TEAMS_WEBHOOK_URL
        self.timeout = timeout or settings.WEBHOOK_TIMEOUT_SECONDS
        self._transport = transport

    async def send(self, text: str, context: Optional[Dict[str, Any]] = None) -> NotificationResult:
        targets = []
        if self.slack_url:
            targets.append(("slack", self.slack_url, {"text": text}))
        if self.teams_url:
            targets.append(("teams", self.teams_url, {
                "@type": "MessageCard",
                "summary": "Payflow Notification",
                "text": text,
            }))

        if not targets:
            logger.debug("No webhooks configured, notification dropped: %s", text)
            return NotificationResult(success=True, provider=NotificationProvider.WEBHOOK.value)

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            outcomes = await asyncio.gather(
                *(self._post(client, name, url, body) for name, url, body in targets)
            )

        errors = [error for error in outcomes if error]
        if len(errors) == len(targets):
            return NotificationResult(
                success=False,
                provider=NotificationProvider.WEBHOOK.value,
                error="; ".join(errors),
            )
        return NotificationResult(success=True, provider=NotificationProvider.WEBHOOK.value)

    @staticmethod
    async def _post(client: httpx.AsyncClient, name: str, url: str, body: Dict[str, Any]) -> Optional[str]:
        try:
            resp = await client.post(url, json=body)
        except httpx.HTTPError as e:
            logger.error("%s webhook failed: %s", name, e)
            return f"{name}: {e}"
        if resp.status_code >= 400:
            logger.error("%s webhook failed: %d - %s", name, resp.status_code, resp.text[:200])
            return f"{name}: HTTP {resp.status_code}"
        return None


# =============================================================================
# NOTIFICATION SERVICE (Main Interface)
# =============================================================================

class NotificationService:
    """
    Usage:
        service = NotificationService(db=database)
        await service.notify_transition(record, event)
    """

    def __init__(self, db=None, provider: Optional[NotificationProvider] = None, provider_instance=None):
        self.db = db
        self.provider_type = provider or NotificationProvider(settings.NOTIFICATION_PROVIDER)
        self._provider = provider_instance

    def _get_provider(self):
        if self._provider is None:
            if self.provider_type == NotificationProvider.WEBHOOK:
                self._provider = WebhookNotificationProvider()
            else:
                self._provider = MockNotificationProvider(db=self.db)
        return self._provider

    @property
    def provider(self):
        return self._get_provider()

    async def notify_transition(self, record: Record, event: AuditEvent) -> NotificationResult:
        text = format_transition_message(record, event)
        context = {
            "record_id": record.id,
            "kind": record.kind,
            "event_id": event.id,
            "from_status": event.from_status,
            "to_status": event.to_status,
            "actor_id": event.actor_id,
        }
        result = await self._get_provider().send(text, context)
        if not result.success:
            logger.warning("Notification for %s not delivered: %s", record.id, result.error)
        return result


# Global instance (initialized on startup)
_notification_service: Optional[NotificationService] = None


def get_notification_service() -> Optional[NotificationService]:
    return _notification_service


def set_notification_service(service: NotificationService):
    global _notification_service
    _notification_service = service
