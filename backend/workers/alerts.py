"""
Alert Workers — periodic low-stock / expiry scan and escalation sweep.

Schedule: ALERT_SCAN_SCHEDULE (default every 30 minutes) for the scan.
The escalation sweep also runs as phase 3 of every replenishment cycle;
the task here lets operators run it on its own.
"""

import asyncio
from datetime import datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.alerts.run_alert_scan",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def run_alert_scan(self):
    """Create low-stock and batch-expiry alerts."""
    from alerts.engine import run_alert_pipeline
    from core.config import get_settings

    run_id = self.request.id or "manual"

    async def _scan():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                counts = await run_alert_pipeline(db)

            summary = {
                "status": "success",
                "run_id": run_id,
                "counts": counts,
                "completed_at": datetime.now(timezone.utc).isoformat(),
            }
            logger.info("alert_scan.complete", run_id=run_id, total=counts["total"])
            return summary
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_scan())
    except Exception as exc:  # noqa: BLE001
        logger.error("alert_scan.failed", run_id=run_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.alerts.escalate_alerts",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def escalate_alerts(self):
    """Escalate unread alerts past their threshold."""
    from alerts.escalation import AlertEscalator
    from alerts.notify import build_notifier
    from core.config import get_settings

    async def _escalate():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                escalator = AlertEscalator(
                    db,
                    build_notifier(settings.alert_notifier),
                    threshold_hours=settings.escalation_threshold_hours,
                    critical_threshold_hours=settings.critical_escalation_threshold_hours,
                )
                result = await escalator.process_escalations()
            return {
                "status": "success",
                "scanned": result.scanned,
                "escalated": result.escalated,
                "notifications_sent": result.notifications_sent,
                "errors": result.errors,
            }
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_escalate())
    except Exception as exc:  # noqa: BLE001
        logger.error("alert_escalation.task_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
