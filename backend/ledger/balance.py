"""
Balance Calculator — current stock from the append-only ledger.

Stock for any dimension filter is ``COALESCE(SUM(quantity), 0)`` over the
matching ledger rows. The ``balance_qty`` snapshot column is never read.
"""

import uuid
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import StockLedgerEntry


class BalanceCalculator:
    """Read-only stock aggregation over the stock ledger."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def current_stock(
        self,
        item_id: uuid.UUID,
        warehouse_id: uuid.UUID | None = None,
        location_id: uuid.UUID | None = None,
        batch_id: uuid.UUID | None = None,
    ) -> Decimal:
        """Sum of signed ledger quantities matching the given dimensions.

        Omitted dimensions are not filtered on, so ``current_stock(item)``
        is the item's stock across every warehouse.
        """
        query = select(func.coalesce(func.sum(StockLedgerEntry.quantity), 0)).where(
            StockLedgerEntry.item_id == item_id
        )
        if warehouse_id is not None:
            query = query.where(StockLedgerEntry.warehouse_id == warehouse_id)
        if location_id is not None:
            query = query.where(StockLedgerEntry.location_id == location_id)
        if batch_id is not None:
            query = query.where(StockLedgerEntry.batch_id == batch_id)

        result = await self.db.execute(query)
        return Decimal(str(result.scalar_one()))

    async def all_items_stock(self, warehouse_id: uuid.UUID | None = None) -> dict[uuid.UUID, Decimal]:
        query = select(
            StockLedgerEntry.item_id,
            func.coalesce(func.sum(StockLedgerEntry.quantity), 0),
        ).group_by(StockLedgerEntry.item_id)
        if warehouse_id is not None:
            query = query.where(StockLedgerEntry.warehouse_id == warehouse_id)

        result = await self.db.execute(query)
        return {item_id: Decimal(str(total)) for item_id, total in result.all()}
