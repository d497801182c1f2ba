"""
Alert Escalator — raise the severity of alerts nobody has read.

An unread alert is escalated one step (low → medium → high → critical)
once it has been waiting longer than the threshold since it was created or
last escalated: 24h by default, 6h for alerts already at critical.
Critical alerts stay critical and are re-notified. Active admins and
managers are notified through the configured NotificationHook.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.notify import EscalationNotice, LoggingNotifier, NotificationHook, Recipient
from core.config import get_settings
from db.models import Alert, User

logger = structlog.get_logger()

SEVERITY_LADDER = ("low", "medium", "high", "critical")


def next_severity(severity: str) -> str:
    """One step up the ladder; critical (and unknown values) map to critical."""
    if severity not in SEVERITY_LADDER:
        return "critical"
    index = SEVERITY_LADDER.index(severity)
    return SEVERITY_LADDER[min(index + 1, len(SEVERITY_LADDER) - 1)]


@dataclass
class EscalationResult:
    scanned: int = 0
    escalated: int = 0
    notifications_sent: int = 0
    errors: list[dict] = field(default_factory=list)


class AlertEscalator:
    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationHook | None = None,
        *,
        threshold_hours: float | None = None,
        critical_threshold_hours: float | None = None,
    ):
        settings = get_settings()
        self.db = db
        self.notifier = notifier or LoggingNotifier()
        self.threshold = timedelta(hours=threshold_hours or settings.escalation_threshold_hours)
        self.critical_threshold = timedelta(
            hours=critical_threshold_hours or settings.critical_escalation_threshold_hours
        )

    def _threshold_for(self, severity: str) -> timedelta:
        return self.critical_threshold if severity == "critical" else self.threshold

    async def recipients(self) -> list[Recipient]:
        result = await self.db.execute(
            select(User).where(User.is_active.is_(True), User.role.in_(("admin", "manager")))
        )
        return [Recipient(u.user_id, u.username, u.email, u.role) for u in result.scalars().all()]

    async def process_escalations(self, now: datetime | None = None) -> EscalationResult:
        now = now or datetime.utcnow()
        result = EscalationResult()

        waiting_since = func.coalesce(Alert.last_escalated_at, Alert.created_at)
        cutoff = now - min(self.threshold, self.critical_threshold)
        candidates = await self.db.execute(
            select(Alert.alert_id).where(Alert.is_read.is_(False), waiting_since <= cutoff)
        )
        alert_ids = list(candidates.scalars().all())
        result.scanned = len(alert_ids)
        if not alert_ids:
            return result

        recipients = await self.recipients()
        for alert_id in alert_ids:
            try:
                notice = await self._escalate(alert_id, now)
            except Exception as exc:
                await self.db.rollback()
                logger.error("alert_escalation.failed", alert_id=str(alert_id), error=str(exc), exc_info=True)
                result.errors.append({"alert_id": str(alert_id), "phase": "escalation", "error": str(exc)})
                continue

            if notice is None:
                continue
            result.escalated += 1
            result.notifications_sent += await self._notify(notice, recipients)

        logger.info(
            "alert_escalation.complete",
            scanned=result.scanned,
            escalated=result.escalated,
            notifications=result.notifications_sent,
        )
        return result

    async def _escalate(self, alert_id: uuid.UUID, now: datetime) -> EscalationNotice | None:
        alert = await self.db.get(Alert, alert_id)
        if alert is None or alert.is_read:
            return None

        waiting_since = alert.last_escalated_at or alert.created_at
        if now - waiting_since < self._threshold_for(alert.severity):
            return None

        previous = alert.severity
        alert.severity = next_severity(previous)
        alert.escalation_count = (alert.escalation_count or 0) + 1
        alert.last_escalated_at = now
        notice = EscalationNotice(
            alert_id=alert.alert_id,
            alert_type=alert.alert_type,
            previous_severity=previous,
            severity=alert.severity,
            message=alert.message,
            item_id=alert.item_id,
            escalation_count=alert.escalation_count,
            escalated_at=now,
        )
        await self.db.commit()

        logger.info(
            "alert_escalation.escalated",
            alert_id=str(alert_id),
            previous_severity=previous,
            severity=notice.severity,
        )
        return notice

    async def _notify(self, notice: EscalationNotice, recipients: list[Recipient]) -> int:
        sent = 0
        for recipient in recipients:
            try:
                await self.notifier.notify(notice, recipient)
                sent += 1
            except Exception:
                logger.warning(
                    "alert_escalation.notify_failed",
                    alert_id=str(notice.alert_id),
                    recipient=recipient.username,
                    exc_info=True,
                )
        return sent
