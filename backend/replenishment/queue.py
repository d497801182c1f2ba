"""
Reorder Queue — work items between the scan and requisition generation.

Lifecycle: pending → processing → completed | failed, or cancelled.
Completed, failed and cancelled are terminal; ``retry_failed_entries``
re-opens failed entries explicitly while under the retry limit.
"""

import uuid
from datetime import datetime, timedelta

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ACTIVE_QUEUE_STATUSES, Item, ReorderQueueEntry

logger = structlog.get_logger()

STUCK_AFTER_MINUTES = 30
PURGE_COMPLETED_AFTER_DAYS = 30


async def has_active_entry(db: AsyncSession, item_id: uuid.UUID, warehouse_id: uuid.UUID | None) -> bool:
    """True when a pending or processing entry exists for (item, warehouse)."""
    query = select(func.count(ReorderQueueEntry.queue_id)).where(
        ReorderQueueEntry.item_id == item_id,
        ReorderQueueEntry.status.in_(ACTIVE_QUEUE_STATUSES),
    )
    if warehouse_id is None:
        query = query.where(ReorderQueueEntry.warehouse_id.is_(None))
    else:
        query = query.where(ReorderQueueEntry.warehouse_id == warehouse_id)
    return (await db.execute(query)).scalar_one() > 0


async def next_batch(db: AsyncSession, limit: int, max_retries: int = 3) -> list[ReorderQueueEntry]:
    """Pending entries for active items, highest priority then oldest first."""
    result = await db.execute(
        select(ReorderQueueEntry)
        .join(Item, Item.item_id == ReorderQueueEntry.item_id)
        .where(
            ReorderQueueEntry.status == "pending",
            ReorderQueueEntry.retry_count < max_retries,
            Item.is_active.is_(True),
        )
        .order_by(ReorderQueueEntry.priority_score.desc(), ReorderQueueEntry.created_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


def mark_completed(entry: ReorderQueueEntry, pr_id=None, alert_id=None, skip_reason: str | None = None) -> None:
    entry.status = "completed"
    entry.pr_id = pr_id
    entry.alert_id = alert_id
    entry.skip_reason = skip_reason
    entry.failure_reason = None
    entry.processed_at = datetime.utcnow()


def mark_failed(entry: ReorderQueueEntry, reason: str) -> None:
    entry.status = "failed"
    entry.failure_reason = reason[:2000]
    entry.processed_at = datetime.utcnow()


async def pending_count(db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(ReorderQueueEntry.queue_id)).where(ReorderQueueEntry.status == "pending")
    )
    return result.scalar_one()


async def status_counts(db: AsyncSession) -> dict[str, int]:
    result = await db.execute(
        select(ReorderQueueEntry.status, func.count(ReorderQueueEntry.queue_id)).group_by(ReorderQueueEntry.status)
    )
    return {status: count for status, count in result.all()}


async def reset_stuck_entries(db: AsyncSession, older_than_minutes: int = STUCK_AFTER_MINUTES) -> int:
    """Return entries left in ``processing`` by a crashed run to ``pending``."""
    cutoff = datetime.utcnow() - timedelta(minutes=older_than_minutes)
    result = await db.execute(
        update(ReorderQueueEntry)
        .where(ReorderQueueEntry.status == "processing", ReorderQueueEntry.updated_at < cutoff)
        .values(status="pending", updated_at=datetime.utcnow())
    )
    await db.commit()
    if result.rowcount:
        logger.warning("reorder_queue.stuck_entries_reset", count=result.rowcount)
    return result.rowcount


async def retry_failed_entries(db: AsyncSession, max_retries: int = 3) -> int:
    """Re-open failed entries that still have retries left."""
    result = await db.execute(
        update(ReorderQueueEntry)
        .where(ReorderQueueEntry.status == "failed", ReorderQueueEntry.retry_count < max_retries)
        .values(
            status="pending",
            retry_count=ReorderQueueEntry.retry_count + 1,
            updated_at=datetime.utcnow(),
        )
    )
    await db.commit()
    logger.info("reorder_queue.failed_entries_requeued", count=result.rowcount)
    return result.rowcount


async def cancel_entry(db: AsyncSession, queue_id: uuid.UUID) -> ReorderQueueEntry:
    entry = await db.get(ReorderQueueEntry, queue_id)
    if entry is None:
        raise ValueError(f"Queue entry {queue_id} not found")
    if entry.status != "pending":
        raise ValueError(f"Cannot cancel queue entry in status '{entry.status}'")
    entry.status = "cancelled"
    entry.processed_at = datetime.utcnow()
    await db.commit()
    return entry


async def purge_completed(db: AsyncSession, older_than_days: int = PURGE_COMPLETED_AFTER_DAYS) -> int:
    cutoff = datetime.utcnow() - timedelta(days=older_than_days)
    result = await db.execute(
        delete(ReorderQueueEntry).where(
            ReorderQueueEntry.status == "completed",
            ReorderQueueEntry.processed_at < cutoff,
        )
    )
    await db.commit()
    logger.info("reorder_queue.purged", count=result.rowcount)
    return result.rowcount
