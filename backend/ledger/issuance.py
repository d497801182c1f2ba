"""
Stock posting — receipts and FEFO issuance against the ledger.

Issuance allocates from batches First-Expiry-First-Out:
1. Batches ordered by expiry date (undated batches last), then creation
2. Each batch gives min(remaining, batch available, batch stock here)
3. One signed ``issue`` ledger row per batch consumed
4. Any remainder comes from unbatched stock in the warehouse
5. Shortfall rolls everything back and raises InsufficientStockError

Concurrent posts for the same item are serialized with an in-process lock
held across read, insert and commit, since batches are shared across
warehouses. Batch rows are also locked with SELECT ... FOR UPDATE where
the database supports it.
"""

import asyncio
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

import structlog
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Batch, StockLedgerEntry
from ledger.balance import BalanceCalculator

logger = structlog.get_logger()

ZERO = Decimal("0")


class InsufficientStockError(ValueError):
    """Requested quantity exceeds the stock available for the dimension."""

    def __init__(self, item_id: uuid.UUID, requested: Decimal, available: Decimal):
        self.item_id = item_id
        self.requested = requested
        self.available = available
        super().__init__(f"Insufficient stock for item {item_id}: requested {requested}, available {available}")


class DimensionLocks:
    """Registry of asyncio locks keyed by item.

    Batches belong to the item, not the warehouse, so every posting for an
    item shares one lock whichever warehouse it touches.
    """

    def __init__(self):
        self._locks: dict[tuple, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def hold(self, item_id: uuid.UUID):
        lock = self._locks[item_id]
        async with lock:
            yield


_default_locks = DimensionLocks()


@dataclass
class BatchAllocation:
    batch_id: uuid.UUID | None
    batch_number: str | None
    expiry_date: date | None
    quantity: Decimal


@dataclass
class PostingResult:
    item_id: uuid.UUID
    warehouse_id: uuid.UUID
    transaction_type: str
    quantity: Decimal
    entry_ids: list[uuid.UUID] = field(default_factory=list)
    allocations: list[BatchAllocation] = field(default_factory=list)


def _as_quantity(value) -> Decimal:
    quantity = Decimal(str(value))
    if quantity <= 0:
        raise ValueError(f"Quantity must be positive, got {value}")
    return quantity


class StockPoster:
    """Writes receipts and issues to the stock ledger."""

    def __init__(self, db: AsyncSession, locks: DimensionLocks | None = None):
        self.db = db
        self.locks = locks or _default_locks
        self.balances = BalanceCalculator(db)

    # ─── Receipts ───────────────────────────────────────────────────────

    async def receive(
        self,
        item_id: uuid.UUID,
        warehouse_id: uuid.UUID,
        quantity,
        *,
        location_id: uuid.UUID | None = None,
        batch_number: str | None = None,
        expiry_date: date | None = None,
        manufacturing_date: date | None = None,
        lot_number: str | None = None,
        reference_type: str | None = None,
        reference_id: str | None = None,
        created_by: uuid.UUID | None = None,
        transaction_date: date | None = None,
    ) -> PostingResult:
        """Post a receipt, creating or topping up the batch when one is named."""
        qty = _as_quantity(quantity)

        async with self.locks.hold(item_id):
            try:
                batch = None
                if batch_number:
                    batch = await self._get_or_create_batch(
                        item_id, batch_number, expiry_date, manufacturing_date, lot_number
                    )
                    batch.quantity = (batch.quantity or ZERO) + qty
                    batch.available_qty = (batch.available_qty or ZERO) + qty
                    if batch.status == "disposed":
                        batch.status = "active"

                batch_id = batch.batch_id if batch else None
                before = await self.balances.current_stock(item_id, warehouse_id, location_id, batch_id)
                entry = self._append_entry(
                    item_id=item_id,
                    warehouse_id=warehouse_id,
                    location_id=location_id,
                    batch_id=batch_id,
                    transaction_type="receipt",
                    quantity=qty,
                    balance_qty=before + qty,
                    reference_type=reference_type,
                    reference_id=reference_id,
                    created_by=created_by,
                    transaction_date=transaction_date,
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info(
            "ledger.receipt_posted",
            item_id=str(item_id),
            warehouse_id=str(warehouse_id),
            quantity=str(qty),
            batch_number=batch_number,
        )
        allocation = BatchAllocation(
            batch_id=batch_id,
            batch_number=batch_number,
            expiry_date=batch.expiry_date if batch else None,
            quantity=qty,
        )
        return PostingResult(
            item_id=item_id,
            warehouse_id=warehouse_id,
            transaction_type="receipt",
            quantity=qty,
            entry_ids=[entry.entry_id],
            allocations=[allocation],
        )

    async def _get_or_create_batch(self, item_id, batch_number, expiry_date, manufacturing_date, lot_number) -> Batch:
        result = await self.db.execute(
            select(Batch)
            .where(Batch.item_id == item_id, Batch.batch_number == batch_number)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        batch = result.scalar_one_or_none()
        if batch is None:
            batch = Batch(
                item_id=item_id,
                batch_number=batch_number,
                lot_number=lot_number,
                manufacturing_date=manufacturing_date,
                expiry_date=expiry_date,
                quantity=ZERO,
                available_qty=ZERO,
            )
            self.db.add(batch)
            await self.db.flush()
        return batch

    # ─── Issues (FEFO) ──────────────────────────────────────────────────

    async def issue(
        self,
        item_id: uuid.UUID,
        warehouse_id: uuid.UUID,
        quantity,
        *,
        location_id: uuid.UUID | None = None,
        reference_type: str | None = None,
        reference_id: str | None = None,
        created_by: uuid.UUID | None = None,
        transaction_date: date | None = None,
    ) -> PostingResult:
        """Issue stock, consuming the earliest-expiring batches first."""
        qty = _as_quantity(quantity)
        result = PostingResult(
            item_id=item_id,
            warehouse_id=warehouse_id,
            transaction_type="issue",
            quantity=qty,
        )
        entry_kwargs = dict(
            item_id=item_id,
            warehouse_id=warehouse_id,
            location_id=location_id,
            transaction_type="issue",
            reference_type=reference_type,
            reference_id=reference_id,
            created_by=created_by,
            transaction_date=transaction_date,
        )

        entries: list[StockLedgerEntry] = []

        async with self.locks.hold(item_id):
            try:
                available = await self.balances.current_stock(item_id, warehouse_id, location_id)
                if available < qty:
                    raise InsufficientStockError(item_id, qty, available)

                remaining = qty
                for batch in await self._batches_for_issue(item_id):
                    if remaining <= 0:
                        break
                    batch_stock = await self.balances.current_stock(
                        item_id, warehouse_id, location_id, batch.batch_id
                    )
                    take = min(remaining, batch.available_qty, batch_stock)
                    if take <= 0:
                        continue

                    batch.available_qty = batch.available_qty - take
                    if batch.available_qty == 0:
                        batch.status = "disposed"
                    entries.append(
                        self._append_entry(
                            batch_id=batch.batch_id,
                            quantity=-take,
                            balance_qty=batch_stock - take,
                            **entry_kwargs,
                        )
                    )
                    result.allocations.append(
                        BatchAllocation(batch.batch_id, batch.batch_number, batch.expiry_date, take)
                    )
                    remaining -= take

                if remaining > 0:
                    unbatched = await self._unbatched_stock(item_id, warehouse_id, location_id)
                    take = min(remaining, unbatched)
                    if take > 0:
                        entries.append(
                            self._append_entry(
                                batch_id=None,
                                quantity=-take,
                                balance_qty=unbatched - take,
                                **entry_kwargs,
                            )
                        )
                        result.allocations.append(BatchAllocation(None, None, None, take))
                        remaining -= take

                if remaining > 0:
                    raise InsufficientStockError(item_id, qty, qty - remaining)

                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        result.entry_ids = [entry.entry_id for entry in entries]
        logger.info(
            "ledger.issue_posted",
            item_id=str(item_id),
            warehouse_id=str(warehouse_id),
            quantity=str(qty),
            batches=len([a for a in result.allocations if a.batch_id]),
        )
        return result

    async def _batches_for_issue(self, item_id: uuid.UUID) -> list[Batch]:
        nulls_last = case((Batch.expiry_date.is_(None), 1), else_=0)
        result = await self.db.execute(
            select(Batch)
            .where(
                Batch.item_id == item_id,
                Batch.status == "active",
                Batch.available_qty > 0,
            )
            .order_by(nulls_last, Batch.expiry_date.asc(), Batch.created_at.asc(), Batch.batch_number.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _unbatched_stock(self, item_id, warehouse_id, location_id) -> Decimal:
        query = select(func.coalesce(func.sum(StockLedgerEntry.quantity), 0)).where(
            StockLedgerEntry.item_id == item_id,
            StockLedgerEntry.warehouse_id == warehouse_id,
            StockLedgerEntry.batch_id.is_(None),
        )
        if location_id is not None:
            query = query.where(StockLedgerEntry.location_id == location_id)
        return Decimal(str((await self.db.execute(query)).scalar_one()))

    def _append_entry(self, *, transaction_date: date | None, **values) -> StockLedgerEntry:
        entry = StockLedgerEntry(transaction_date=transaction_date or date.today(), **values)
        self.db.add(entry)
        return entry
