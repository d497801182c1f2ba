"""
Reorder Decision Engine — decide which items need replenishment.

Per active item and scope:
1. Resolve the governing rule; rule overrides beat item reorder point /
   safety stock
2. effective stock = ledger stock + open PR lines + open PO lines
3. needs reorder when effective stock <= reorder point
4. Suggested quantity from the rule's formula (or the no-rule default)
5. Priority score 0-100 (see ``calculate_priority_score``)
6. Enqueue a pending ReorderQueueEntry unless one is already active

Scopes: an item with warehouse-specific rules is evaluated once per such
warehouse; otherwise it is evaluated once globally across all warehouses.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date

import structlog
from sqlalchemy import exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import (
    OPEN_PO_STATUSES,
    OPEN_PR_STATUSES,
    Item,
    POItem,
    PRItem,
    PurchaseOrder,
    PurchaseRequisition,
    ReorderQueueEntry,
    ReorderRule,
    StockLedgerEntry,
    Warehouse,
)
from demand.analysis import DemandAnalysisEngine
from ledger.balance import BalanceCalculator
from replenishment.queue import has_active_entry
from replenishment.rules import (
    OrderInputs,
    calculate_order_quantity,
    default_order_quantity,
    resolve_active_rule,
)
from replenishment.suppliers import SupplierDirectory

logger = structlog.get_logger()

DEFAULT_LEAD_TIME_DAYS = 7

RULE_PRIORITY_POINTS = {"critical": 20, "high": 15, "medium": 10, "low": 5}


@dataclass
class ReorderDecision:
    """Verdict for one (item, scope) evaluation."""

    item_id: uuid.UUID
    warehouse_id: uuid.UUID | None
    rule_id: uuid.UUID | None
    needs_reorder: bool
    auto_generate: bool
    current_stock: float
    pending_quantity: float
    effective_stock: float
    reorder_point: int
    safety_stock: int
    avg_daily_demand: float
    lead_time_days: int
    suggested_quantity: int
    priority_score: int
    days_until_stockout: float | None


@dataclass
class ScanStats:
    items_processed: int = 0
    items_eligible: int = 0
    queued: int = 0
    skipped_existing: int = 0
    skipped_manual: int = 0
    errors: list[dict] = field(default_factory=list)


def calculate_priority_score(
    effective_stock: float,
    reorder_point: int,
    safety_stock: int,
    avg_daily_demand: float,
    priority_level: str | None,
) -> int:
    """Urgency score in [0, 100]; higher is drained from the queue first."""
    score = 50.0

    if reorder_point > 0:
        ratio = effective_stock / reorder_point
        if ratio < 0.5:
            score += 40
        elif ratio < 0.75:
            score += 30
        elif ratio < 1.0:
            score += 20
    elif effective_stock <= 0:
        score += 40
    elif effective_stock < safety_stock:
        score += 30

    if effective_stock < safety_stock:
        score += 20

    if effective_stock <= 0:
        score += 20
    elif avg_daily_demand > 0:
        days_left = effective_stock / avg_daily_demand
        if days_left < 3:
            score += 20
        elif days_left < 7:
            score += 15
        elif days_left < 14:
            score += 10

    score += RULE_PRIORITY_POINTS.get(priority_level or "", 0)
    return int(max(0, min(100, round(score))))


def days_until_stockout(effective_stock: float, avg_daily_demand: float) -> float | None:
    if avg_daily_demand <= 0:
        return None
    return round(max(effective_stock, 0) / avg_daily_demand, 1)


class ReorderDecisionEngine:
    """Evaluate items against their reorder rules and fill the queue."""

    def __init__(self, db: AsyncSession, *, window_days: int | None = None, as_of: date | None = None):
        self.db = db
        self.window_days = window_days or get_settings().consumption_window_days
        self.as_of = as_of
        self.balances = BalanceCalculator(db)
        self.demand = DemandAnalysisEngine(db, as_of=as_of)
        self.suppliers = SupplierDirectory(db)

    # ─── Inputs ─────────────────────────────────────────────────────────

    async def pending_orders(self, item_id: uuid.UUID) -> float:
        """Quantity already on order: open PR lines plus open PO lines.

        PR lines whose requisition already became a live PO are counted
        through the PO only.
        """
        converted = exists().where(
            PurchaseOrder.pr_id == PurchaseRequisition.pr_id,
            PurchaseOrder.status != "cancelled",
        )
        pr_total = await self.db.execute(
            select(func.coalesce(func.sum(PRItem.requested_qty), 0))
            .join(PurchaseRequisition, PurchaseRequisition.pr_id == PRItem.pr_id)
            .where(
                PRItem.item_id == item_id,
                PurchaseRequisition.status.in_(OPEN_PR_STATUSES),
                ~converted,
            )
        )
        po_total = await self.db.execute(
            select(func.coalesce(func.sum(POItem.ordered_qty), 0))
            .join(PurchaseOrder, PurchaseOrder.po_id == POItem.po_id)
            .where(POItem.item_id == item_id, PurchaseOrder.status.in_(OPEN_PO_STATUSES))
        )
        return float(pr_total.scalar_one()) + float(po_total.scalar_one())

    async def scopes_for_item(self, item_id: uuid.UUID) -> list[uuid.UUID | None]:
        """Warehouses with their own rules, else active warehouses holding ledger rows, else global."""
        result = await self.db.execute(
            select(ReorderRule.warehouse_id)
            .where(
                ReorderRule.item_id == item_id,
                ReorderRule.active.is_(True),
                ReorderRule.warehouse_id.is_not(None),
            )
            .distinct()
        )
        warehouses = list(result.scalars().all())
        if warehouses:
            return warehouses

        result = await self.db.execute(
            select(StockLedgerEntry.warehouse_id)
            .join(Warehouse, Warehouse.warehouse_id == StockLedgerEntry.warehouse_id)
            .where(StockLedgerEntry.item_id == item_id, Warehouse.is_active.is_(True))
            .distinct()
        )
        return list(result.scalars().all()) or [None]

    async def _lead_time(self, item: Item) -> int:
        preferred = await self.suppliers.preferred_supplier(item.item_id)
        if preferred is not None and preferred.lead_time_days:
            return preferred.lead_time_days
        return item.lead_time_days or DEFAULT_LEAD_TIME_DAYS

    # ─── Evaluation ─────────────────────────────────────────────────────

    async def check_item(self, item_id: uuid.UUID, warehouse_id: uuid.UUID | None = None) -> ReorderDecision:
        item = await self.db.get(Item, item_id)
        if item is None:
            raise ValueError(f"Item {item_id} not found")

        rule = await resolve_active_rule(self.db, item_id, warehouse_id)
        reorder_point = item.reorder_point or 0
        safety_stock = item.safety_stock or 0
        if rule is not None and rule.custom_reorder_point is not None:
            reorder_point = rule.custom_reorder_point
        if rule is not None and rule.custom_safety_stock is not None:
            safety_stock = rule.custom_safety_stock

        current = float(await self.balances.current_stock(item_id, warehouse_id))
        pending = await self.pending_orders(item_id)
        effective = current + pending
        avg = await self.demand.average_daily_consumption(item_id, warehouse_id, window_days=self.window_days)
        lead_time = await self._lead_time(item)

        has_policy = rule is not None or reorder_point > 0
        needs_reorder = has_policy and effective <= reorder_point

        suggested = 0
        if needs_reorder:
            if rule is not None:
                today = self.as_of or date.today()
                pattern = None
                if rule.reorder_formula == "seasonal":
                    pattern = await self.demand.seasonal_pattern(item_id, warehouse_id)
                suggested = calculate_order_quantity(
                    rule,
                    OrderInputs(
                        reorder_point=reorder_point,
                        safety_stock=safety_stock,
                        current_stock=current,
                        effective_stock=effective,
                        avg_daily_demand=avg,
                        lead_time_days=lead_time,
                        month=today.month,
                        seasonal_pattern=pattern,
                    ),
                )
            else:
                suggested = default_order_quantity(reorder_point, effective, avg)

        return ReorderDecision(
            item_id=item_id,
            warehouse_id=warehouse_id,
            rule_id=rule.rule_id if rule else None,
            needs_reorder=needs_reorder,
            auto_generate=rule.auto_generate_pr if rule else True,
            current_stock=current,
            pending_quantity=pending,
            effective_stock=effective,
            reorder_point=reorder_point,
            safety_stock=safety_stock,
            avg_daily_demand=avg,
            lead_time_days=lead_time,
            suggested_quantity=suggested,
            priority_score=calculate_priority_score(
                effective, reorder_point, safety_stock, avg, rule.priority_level if rule else None
            ),
            days_until_stockout=days_until_stockout(effective, avg),
        )

    async def enqueue(self, decision: ReorderDecision, run_id: uuid.UUID | None = None) -> ReorderQueueEntry:
        entry = ReorderQueueEntry(
            item_id=decision.item_id,
            warehouse_id=decision.warehouse_id,
            rule_id=decision.rule_id,
            current_stock=decision.current_stock,
            effective_stock=decision.effective_stock,
            pending_quantity=decision.pending_quantity,
            reorder_point=decision.reorder_point,
            safety_stock=decision.safety_stock,
            suggested_quantity=decision.suggested_quantity,
            avg_daily_demand=decision.avg_daily_demand,
            priority_score=decision.priority_score,
            status="pending",
            scheduler_run_id=run_id,
        )
        self.db.add(entry)
        await self.db.commit()
        return entry

    async def scan(self, run_id: uuid.UUID | None = None) -> ScanStats:
        """Evaluate every active item and enqueue the ones that need stock."""
        stats = ScanStats()
        result = await self.db.execute(select(Item.item_id, Item.sku).where(Item.is_active.is_(True)))
        items = result.all()

        for item_id, sku in items:
            try:
                scopes = await self.scopes_for_item(item_id)
            except Exception as exc:
                await self.db.rollback()
                self._record_error(stats, item_id, None, exc)
                continue

            for warehouse_id in scopes:
                stats.items_processed += 1
                try:
                    decision = await self.check_item(item_id, warehouse_id)
                    if not decision.needs_reorder:
                        continue
                    if not decision.auto_generate:
                        stats.skipped_manual += 1
                        continue

                    stats.items_eligible += 1
                    if await has_active_entry(self.db, item_id, warehouse_id):
                        stats.skipped_existing += 1
                        continue

                    await self.enqueue(decision, run_id)
                    stats.queued += 1
                    logger.info(
                        "reorder_scan.queued",
                        sku=sku,
                        warehouse_id=str(warehouse_id) if warehouse_id else None,
                        effective_stock=decision.effective_stock,
                        reorder_point=decision.reorder_point,
                        suggested_quantity=decision.suggested_quantity,
                        priority_score=decision.priority_score,
                    )
                except Exception as exc:
                    await self.db.rollback()
                    self._record_error(stats, item_id, warehouse_id, exc)

        logger.info(
            "reorder_scan.complete",
            items_processed=stats.items_processed,
            items_eligible=stats.items_eligible,
            queued=stats.queued,
            skipped_existing=stats.skipped_existing,
            errors=len(stats.errors),
        )
        return stats

    @staticmethod
    def _record_error(stats: ScanStats, item_id, warehouse_id, exc: Exception) -> None:
        logger.error(
            "reorder_scan.item_failed",
            item_id=str(item_id),
            warehouse_id=str(warehouse_id) if warehouse_id else None,
            error=str(exc),
            exc_info=True,
        )
        stats.errors.append(
            {
                "item_id": str(item_id),
                "warehouse_id": str(warehouse_id) if warehouse_id else None,
                "phase": "scan",
                "error": str(exc),
            }
        )
