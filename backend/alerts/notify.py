"""
Notification hooks for escalated alerts.

Delivery is pluggable: anything with an async ``notify(notice, recipient)``
method works. ``LoggingNotifier`` is the default; ``RedisAlertPublisher``
publishes to Redis pub/sub for real-time consumers.
"""

import json
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Protocol

import redis.asyncio as aioredis
import structlog

from core.config import get_settings

logger = structlog.get_logger()


@dataclass
class Recipient:
    user_id: uuid.UUID
    username: str
    email: str
    role: str


@dataclass
class EscalationNotice:
    alert_id: uuid.UUID
    alert_type: str
    previous_severity: str
    severity: str
    message: str
    item_id: uuid.UUID | None
    escalation_count: int
    escalated_at: datetime


class NotificationHook(Protocol):
    async def notify(self, notice: EscalationNotice, recipient: Recipient) -> None: ...


class LoggingNotifier:
    """Writes one structured log line per recipient."""

    async def notify(self, notice: EscalationNotice, recipient: Recipient) -> None:
        logger.info(
            "alert.escalation_notified",
            alert_id=str(notice.alert_id),
            alert_type=notice.alert_type,
            previous_severity=notice.previous_severity,
            severity=notice.severity,
            recipient=recipient.username,
            role=recipient.role,
        )


class RedisAlertPublisher:
    """Publishes escalations to ``<channel>:<user_id>``."""

    def __init__(self, redis_url: str | None = None, channel: str = "alerts:escalations"):
        self.redis_url = redis_url or get_settings().redis_url
        self.channel = channel

    async def notify(self, notice: EscalationNotice, recipient: Recipient) -> None:
        payload = json.dumps({"type": "alert_escalated", "payload": asdict(notice)}, default=str)
        redis = aioredis.from_url(self.redis_url)
        try:
            await redis.publish(f"{self.channel}:{recipient.user_id}", payload)
        finally:
            await redis.aclose()


def build_notifier(kind: str | None = None) -> NotificationHook:
    kind = (kind or get_settings().alert_notifier).lower()
    if kind == "redis":
        return RedisAlertPublisher()
    if kind == "logging":
        return LoggingNotifier()
    raise ValueError(f"Unknown alert notifier: {kind!r}")
