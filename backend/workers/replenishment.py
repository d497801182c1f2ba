"""
Replenishment housekeeping worker.

The reorder cycle itself runs in the API process (single scheduler
instance); this task only keeps the reorder queue tidy:
  - entries stuck in ``processing`` after a crash go back to ``pending``
  - completed entries older than 30 days are purged
"""

import asyncio

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.replenishment.maintain_reorder_queue",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def maintain_reorder_queue(self, stuck_after_minutes: int = 30, purge_after_days: int = 30):
    from core.config import get_settings
    from replenishment.queue import purge_completed, reset_stuck_entries

    async def _maintain():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                reset = await reset_stuck_entries(db, older_than_minutes=stuck_after_minutes)
                purged = await purge_completed(db, older_than_days=purge_after_days)

            summary = {"status": "success", "reset": reset, "purged": purged}
            logger.info("reorder_queue.maintenance_complete", **summary)
            return summary
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_maintain())
    except Exception as exc:  # noqa: BLE001
        logger.error("reorder_queue.maintenance_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
