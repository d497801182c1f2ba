"""
Supplier Selection — pick the supplier for an auto-generated requisition.

Score (0-100) per candidate supplier:
  preferred flag                       30
  cheapest price ÷ candidate price     25
  fastest lead time ÷ candidate lead   20
  performance rating ÷ 5               15
  rating-derived reliability ÷ 5       10

Only active suppliers whose min/max order quantity admits the requested
quantity are scored; if none qualifies, every active supplier is scored.
"""

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Supplier, SupplierItem

DEFAULT_SCORING_LEAD_TIME_DAYS = 30


@dataclass
class SupplierCandidate:
    """One supplier offering an item."""

    supplier_id: UUID
    supplier_name: str
    unit_price: Decimal
    lead_time_days: int | None
    performance_rating: float | None
    is_preferred: bool
    min_order_qty: int = 1
    max_order_qty: int | None = None

    def admits(self, quantity: float) -> bool:
        if quantity < (self.min_order_qty or 1):
            return False
        return self.max_order_qty is None or quantity <= self.max_order_qty


@dataclass
class SupplierChoice:
    candidate: SupplierCandidate
    score: float
    admits_quantity: bool


def score_suppliers(candidates: list[SupplierCandidate], quantity: float) -> list[SupplierChoice]:
    """Score candidates for ``quantity``, best first."""
    eligible = [c for c in candidates if c.admits(quantity)]
    admits = bool(eligible)
    pool = eligible or list(candidates)
    if not pool:
        return []

    prices = [float(c.unit_price) for c in pool if c.unit_price and c.unit_price > 0]
    cheapest = min(prices) if prices else 0.0
    lead_times = [c.lead_time_days or DEFAULT_SCORING_LEAD_TIME_DAYS for c in pool]
    fastest = min(lead_times)

    choices = []
    for candidate, lead_time in zip(pool, lead_times):
        score = 0.0
        if candidate.is_preferred:
            score += 30
        price = float(candidate.unit_price or 0)
        if cheapest > 0 and price > 0:
            score += (cheapest / price) * 25
        score += (fastest / lead_time) * 20
        rating = candidate.performance_rating or 0.0
        score += (rating / 5) * 15
        score += (rating / 5) * 10
        choices.append(SupplierChoice(candidate, round(score, 2), admits))

    return sorted(choices, key=lambda c: c.score, reverse=True)


class SupplierDirectory:
    """Supplier lookups for an item."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def candidates_for_item(self, item_id: UUID) -> list[SupplierCandidate]:
        result = await self.db.execute(
            select(SupplierItem, Supplier)
            .join(Supplier, Supplier.supplier_id == SupplierItem.supplier_id)
            .where(SupplierItem.item_id == item_id, Supplier.is_active.is_(True))
        )
        return [
            SupplierCandidate(
                supplier_id=supplier.supplier_id,
                supplier_name=supplier.name,
                unit_price=supplier_item.unit_price,
                lead_time_days=supplier_item.lead_time_days or supplier.avg_lead_time_days,
                performance_rating=supplier.performance_rating,
                is_preferred=bool(supplier_item.is_preferred),
                min_order_qty=supplier_item.min_order_qty or 1,
                max_order_qty=supplier_item.max_order_qty,
            )
            for supplier_item, supplier in result.all()
        ]

    async def preferred_supplier(self, item_id: UUID) -> SupplierCandidate | None:
        """The item's preferred supplier, else the cheapest one."""
        candidates = await self.candidates_for_item(item_id)
        if not candidates:
            return None
        preferred = [c for c in candidates if c.is_preferred]
        if preferred:
            return preferred[0]
        return min(candidates, key=lambda c: c.unit_price)

    async def select_supplier(self, item_id: UUID, quantity: float) -> SupplierChoice | None:
        ranked = score_suppliers(await self.candidates_for_item(item_id), quantity)
        return ranked[0] if ranked else None
