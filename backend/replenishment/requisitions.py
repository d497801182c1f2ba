"""
Requisition Generator — turn queued reorder decisions into PRs.

Drains pending queue entries (priority desc, then oldest first). Each entry
is handled in its own transaction:
  1. Skip when the item already has an open (pending/approved) PR
  2. Choose a supplier (see replenishment.suppliers)
  3. Create PR + line item + reorder alert, stamp the rule, complete the entry
A failure rolls back that entry's transaction, marks it failed and moves on.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime

import structlog
from sqlalchemy import exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import (
    OPEN_PR_STATUSES,
    Alert,
    Item,
    PRItem,
    PurchaseRequisition,
    ReorderQueueEntry,
    ReorderRule,
    User,
)
from replenishment.decision import days_until_stockout
from replenishment.queue import mark_completed, mark_failed, next_batch
from replenishment.suppliers import SupplierDirectory

logger = structlog.get_logger()

PR_NUMBER_ATTEMPTS = 10
AUTO_APPROVE_SCORE = 90


class NoRequestingUserError(ValueError):
    """No active admin or manager exists to own an auto-generated PR."""


@dataclass
class GenerationResult:
    processed: int = 0
    successful: int = 0
    skipped: int = 0
    failed: int = 0
    alerts_created: int = 0
    errors: list[dict] = field(default_factory=list)


def determine_pr_status(rule: ReorderRule | None, priority_score: int) -> str:
    """Approved when the rule waives approval, or for critical rules at score >= 90."""
    if rule is None:
        return "pending"
    if not rule.approval_required:
        return "approved"
    if rule.priority_level == "critical" and priority_score >= AUTO_APPROVE_SCORE:
        return "approved"
    return "pending"


def urgency_severity(priority_score: int, days_left: float | None) -> str:
    """Map priority score and days of cover to an alert severity."""
    days = days_left if days_left is not None else float("inf")
    if priority_score >= 90 or days < 3:
        return "critical"
    if priority_score >= 75 or days < 7:
        return "high"
    if priority_score >= 50 or days < 14:
        return "medium"
    return "low"


async def generate_pr_number(db: AsyncSession, on: date | None = None) -> str:
    """``PR-YYYYMMDD-NNNN`` with a per-day sequence, bumped on collision."""
    day = on or date.today()
    prefix = f"PR-{day:%Y%m%d}-"
    result = await db.execute(
        select(func.count(PurchaseRequisition.pr_id)).where(PurchaseRequisition.pr_number.like(f"{prefix}%"))
    )
    sequence = result.scalar_one() + 1

    for attempt in range(PR_NUMBER_ATTEMPTS):
        candidate = f"{prefix}{sequence + attempt:04d}"
        taken = await db.execute(select(exists().where(PurchaseRequisition.pr_number == candidate)))
        if not taken.scalar():
            return candidate

    fallback = f"PR-AUTO-{datetime.utcnow():%Y%m%d%H%M%S%f}"
    logger.warning("requisition.pr_number_fallback", pr_number=fallback)
    return fallback


class RequisitionGenerator:
    """Process the reorder queue into purchase requisitions."""

    def __init__(self, db: AsyncSession, *, max_retries: int | None = None):
        self.db = db
        self.max_retries = max_retries or get_settings().replenishment_max_retries
        self.suppliers = SupplierDirectory(db)

    async def process_batch(self, limit: int) -> GenerationResult:
        result = GenerationResult()
        entries = await next_batch(self.db, limit, self.max_retries)
        queue_ids = [entry.queue_id for entry in entries]

        for queue_id in queue_ids:
            await self.process_entry(queue_id, result)

        logger.info(
            "requisitions.batch_complete",
            processed=result.processed,
            successful=result.successful,
            skipped=result.skipped,
            failed=result.failed,
        )
        return result

    async def process_entry(self, queue_id: uuid.UUID, result: GenerationResult) -> None:
        entry = await self.db.get(ReorderQueueEntry, queue_id)
        if entry is None or entry.status != "pending":
            return

        item_id = entry.item_id
        entry.status = "processing"
        await self.db.commit()
        result.processed += 1

        try:
            await self._generate(entry, result)
            await self.db.commit()
        except Exception as exc:
            await self.db.rollback()
            logger.error(
                "requisitions.entry_failed",
                queue_id=str(queue_id),
                item_id=str(item_id),
                error=str(exc),
                exc_info=True,
            )
            entry = await self.db.get(ReorderQueueEntry, queue_id)
            mark_failed(entry, str(exc) or type(exc).__name__)
            await self.db.commit()
            result.failed += 1
            result.errors.append(
                {"item_id": str(item_id), "queue_id": str(queue_id), "phase": "generation", "error": str(exc)}
            )

    async def has_open_requisition(self, item_id: uuid.UUID) -> bool:
        query = select(
            exists()
            .where(PRItem.item_id == item_id)
            .where(PRItem.pr_id == PurchaseRequisition.pr_id)
            .where(PurchaseRequisition.status.in_(OPEN_PR_STATUSES))
        )
        return bool((await self.db.execute(query)).scalar())

    async def requesting_user(self) -> User:
        result = await self.db.execute(
            select(User)
            .where(User.is_active.is_(True), User.role.in_(("admin", "manager")))
            .order_by(User.created_at.asc())
            .limit(1)
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise NoRequestingUserError("No active admin or manager available to request the PR")
        return user

    async def _generate(self, entry: ReorderQueueEntry, result: GenerationResult) -> None:
        if await self.has_open_requisition(entry.item_id):
            mark_completed(entry, skip_reason="Open purchase requisition already exists for item")
            result.skipped += 1
            logger.info("requisitions.entry_skipped", queue_id=str(entry.queue_id), item_id=str(entry.item_id))
            return

        requester = await self.requesting_user()
        item = await self.db.get(Item, entry.item_id)
        if item is None:
            raise ValueError(f"Item {entry.item_id} not found")
        rule = await self.db.get(ReorderRule, entry.rule_id) if entry.rule_id else None

        quantity = entry.suggested_quantity
        choice = await self.suppliers.select_supplier(item.item_id, quantity)
        pr_number = await generate_pr_number(self.db)
        status = determine_pr_status(rule, entry.priority_score)
        now = datetime.utcnow()

        pr = PurchaseRequisition(
            pr_id=uuid.uuid4(),
            pr_number=pr_number,
            pr_date=now.date(),
            requested_by=requester.user_id,
            status=status,
            is_auto_generated=True,
            approved_at=now if status == "approved" else None,
            remarks=f"Auto-generated by replenishment (priority {entry.priority_score})",
        )
        line = PRItem(
            pr_id=pr.pr_id,
            item_id=item.item_id,
            requested_qty=quantity,
            supplier_id=choice.candidate.supplier_id if choice else None,
            unit_price=choice.candidate.unit_price if choice else item.unit_price,
            justification=(
                f"Effective stock {float(entry.effective_stock):g} at or below "
                f"reorder point {entry.reorder_point}"
            ),
        )

        days_left = days_until_stockout(float(entry.effective_stock), entry.avg_daily_demand or 0.0)
        severity = urgency_severity(entry.priority_score, days_left)
        cover = f"{days_left:g} days of cover" if days_left is not None else "no recent demand"
        alert = Alert(
            alert_id=uuid.uuid4(),
            alert_type="reorder",
            severity=severity,
            item_id=item.item_id,
            warehouse_id=entry.warehouse_id,
            assigned_to=requester.user_id,
            message=(
                f"{pr_number} raised for {item.sku} ({item.name}): {quantity} units, "
                f"{status}. Effective stock {float(entry.effective_stock):g}, {cover}."
            ),
        )
        self.db.add_all([pr, line, alert])

        if rule is not None:
            rule.last_triggered = now
        mark_completed(entry, pr_id=pr.pr_id, alert_id=alert.alert_id)

        result.successful += 1
        result.alerts_created += 1
        logger.info(
            "requisitions.pr_created",
            pr_number=pr_number,
            sku=item.sku,
            quantity=quantity,
            status=status,
            supplier=choice.candidate.supplier_name if choice else None,
            severity=severity,
        )
