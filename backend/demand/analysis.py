"""
Demand Analysis — consumption statistics from ledger issue history.

Only ``issue`` ledger rows count as demand; their quantities are negative
in the ledger and are taken as absolute values here.

Statistics:
  Average daily consumption = Σ issued ÷ min(window, days since first issue)
  Variability               = mean, population σ and CV of daily totals
  Seasonal multiplier[m]    = month total ÷ (12-month total / 12)
  Trend                     = second-half vs first-half monthly average
  Lead-time safety stock    = 1.65 × σ × √(lead time)   (95% service level)

Items with no issue history fall back to the average per-item issue rate
of their category over the same window.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta

import numpy as np
import pandas as pd
import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Item, StockLedgerEntry

logger = structlog.get_logger()

MIN_DAYS_FOR_VARIABILITY = 7
MIN_MONTHS_FOR_SEASONALITY = 6
MIN_MONTHS_FOR_TREND = 3
SERVICE_LEVEL_Z = 1.65
DEFAULT_LEAD_TIME_DAYS = 7


@dataclass
class DemandVariability:
    mean: float = 0.0
    standard_deviation: float = 0.0
    coefficient_of_variation: float = 0.0
    days_with_data: int = 0


@dataclass
class DemandForecast:
    forecast_days: int
    avg_daily_demand: float
    total_forecast_demand: float
    confidence: str
    coefficient_of_variation: float


@dataclass
class SeasonalPattern:
    has_pattern: bool
    multipliers: dict[int, float] = field(default_factory=lambda: {m: 1.0 for m in range(1, 13)})
    overall_monthly_average: float = 0.0
    months_with_data: int = 0

    def multiplier_for(self, month: int) -> float:
        return self.multipliers.get(month, 1.0)


@dataclass
class ConsumptionTrend:
    direction: str
    percentage_change: float
    first_half_average: float = 0.0
    second_half_average: float = 0.0
    description: str = ""


@dataclass
class LeadTimeDemand:
    lead_time_days: int
    avg_daily_demand: float
    expected_demand: float
    safety_stock: int
    recommended_reorder_point: int


class DemandAnalysisEngine:
    """Per-item demand statistics over the stock ledger.

    ``as_of`` pins the analysis date (defaults to today).
    """

    def __init__(self, db: AsyncSession, as_of: date | None = None):
        self.db = db
        self.as_of = as_of

    @property
    def today(self) -> date:
        return self.as_of or date.today()

    # ─── Raw history ────────────────────────────────────────────────────

    async def _issue_frame(
        self,
        item_id: uuid.UUID,
        warehouse_id: uuid.UUID | None,
        since: date,
    ) -> pd.DataFrame:
        query = select(StockLedgerEntry.transaction_date, StockLedgerEntry.quantity).where(
            StockLedgerEntry.item_id == item_id,
            StockLedgerEntry.transaction_type == "issue",
            StockLedgerEntry.transaction_date >= since,
            StockLedgerEntry.transaction_date <= self.today,
        )
        if warehouse_id is not None:
            query = query.where(StockLedgerEntry.warehouse_id == warehouse_id)

        rows = (await self.db.execute(query)).all()
        frame = pd.DataFrame(rows, columns=["transaction_date", "quantity"])
        if frame.empty:
            return frame
        frame["quantity"] = frame["quantity"].astype(float).abs()
        frame["transaction_date"] = pd.to_datetime(frame["transaction_date"])
        return frame

    async def daily_consumption(
        self,
        item_id: uuid.UUID,
        warehouse_id: uuid.UUID | None = None,
        window_days: int = 90,
    ) -> pd.Series:
        """Issued quantity per calendar day (days with issues only)."""
        frame = await self._issue_frame(item_id, warehouse_id, self.today - timedelta(days=window_days))
        if frame.empty:
            return pd.Series(dtype=float)
        return frame.groupby(frame["transaction_date"].dt.date)["quantity"].sum().sort_index()

    # ─── Average daily consumption ──────────────────────────────────────

    async def average_daily_consumption(
        self,
        item_id: uuid.UUID,
        warehouse_id: uuid.UUID | None = None,
        window_days: int = 30,
    ) -> float:
        since = self.today - timedelta(days=window_days)
        frame = await self._issue_frame(item_id, warehouse_id, since)
        if frame.empty:
            return await self._category_average(item_id, warehouse_id, since, window_days)

        total = float(frame["quantity"].sum())
        first_issue = frame["transaction_date"].min().date()
        days = max(1, min(window_days, (self.today - first_issue).days))
        return round(total / days, 2)

    async def _category_average(
        self, item_id: uuid.UUID, warehouse_id: uuid.UUID | None, since: date, window_days: int
    ) -> float:
        item = await self.db.get(Item, item_id)
        if item is None or item.category_id is None:
            return 0.0

        query = (
            select(
                func.coalesce(func.sum(func.abs(StockLedgerEntry.quantity)), 0),
                func.count(func.distinct(StockLedgerEntry.item_id)),
            )
            .join(Item, Item.item_id == StockLedgerEntry.item_id)
            .where(
                Item.category_id == item.category_id,
                Item.is_active.is_(True),
                StockLedgerEntry.transaction_type == "issue",
                StockLedgerEntry.transaction_date >= since,
                StockLedgerEntry.transaction_date <= self.today,
            )
        )
        if warehouse_id is not None:
            query = query.where(StockLedgerEntry.warehouse_id == warehouse_id)
        total, item_count = (await self.db.execute(query)).one()
        if not item_count:
            return 0.0

        average = float(total) / item_count / window_days
        logger.debug(
            "demand.category_fallback",
            item_id=str(item_id),
            category_id=str(item.category_id),
            avg_daily_demand=round(average, 2),
        )
        return round(average, 2)

    # ─── Variability & forecast ─────────────────────────────────────────

    async def demand_variability(
        self,
        item_id: uuid.UUID,
        warehouse_id: uuid.UUID | None = None,
        window_days: int = 90,
    ) -> DemandVariability:
        daily = await self.daily_consumption(item_id, warehouse_id, window_days)
        if len(daily) < MIN_DAYS_FOR_VARIABILITY:
            return DemandVariability(days_with_data=len(daily))

        values = daily.to_numpy(dtype=float)
        mean = float(np.mean(values))
        if mean == 0:
            return DemandVariability(days_with_data=len(values))
        std = float(np.std(values))  # population σ
        return DemandVariability(
            mean=round(mean, 2),
            standard_deviation=round(std, 2),
            coefficient_of_variation=round(std / mean, 2),
            days_with_data=len(values),
        )

    async def forecast_demand(
        self,
        item_id: uuid.UUID,
        warehouse_id: uuid.UUID | None = None,
        forecast_days: int = 30,
    ) -> DemandForecast:
        avg = await self.average_daily_consumption(item_id, warehouse_id, window_days=90)
        variability = await self.demand_variability(item_id, warehouse_id, window_days=90)

        cv = variability.coefficient_of_variation
        if cv < 0.3:
            confidence = "high"
        elif cv > 0.7:
            confidence = "low"
        else:
            confidence = "medium"

        return DemandForecast(
            forecast_days=forecast_days,
            avg_daily_demand=avg,
            total_forecast_demand=round(avg * forecast_days, 2),
            confidence=confidence,
            coefficient_of_variation=cv,
        )

    # ─── Seasonality & trend ────────────────────────────────────────────

    async def seasonal_pattern(
        self,
        item_id: uuid.UUID,
        warehouse_id: uuid.UUID | None = None,
    ) -> SeasonalPattern:
        frame = await self._issue_frame(item_id, warehouse_id, self.today - timedelta(days=365))
        if frame.empty:
            return SeasonalPattern(has_pattern=False)

        monthly = frame.groupby(frame["transaction_date"].dt.month)["quantity"].sum()
        if len(monthly) < MIN_MONTHS_FOR_SEASONALITY:
            return SeasonalPattern(has_pattern=False, months_with_data=len(monthly))

        overall = float(monthly.sum()) / 12
        multipliers = {
            month: round(float(monthly.get(month, overall)) / overall, 2) if overall > 0 else 1.0
            for month in range(1, 13)
        }
        has_pattern = any(m > 1.2 or m < 0.8 for m in multipliers.values())
        return SeasonalPattern(
            has_pattern=has_pattern,
            multipliers=multipliers,
            overall_monthly_average=round(overall, 2),
            months_with_data=len(monthly),
        )

    async def consumption_trend(
        self,
        item_id: uuid.UUID,
        warehouse_id: uuid.UUID | None = None,
        months: int = 6,
    ) -> ConsumptionTrend:
        since = (pd.Timestamp(self.today) - pd.DateOffset(months=months)).date()
        frame = await self._issue_frame(item_id, warehouse_id, since)
        if frame.empty:
            return ConsumptionTrend("stable", 0.0, description="Insufficient data")

        monthly = frame.groupby(frame["transaction_date"].dt.to_period("M"))["quantity"].sum().sort_index()
        if len(monthly) < MIN_MONTHS_FOR_TREND:
            return ConsumptionTrend("stable", 0.0, description="Insufficient data")

        values = monthly.to_numpy(dtype=float)
        mid = len(values) // 2
        first_avg = float(np.mean(values[:mid]))
        second_avg = float(np.mean(values[mid:]))

        if first_avg == 0:
            change = 100.0 if second_avg > 0 else 0.0
        else:
            change = (second_avg - first_avg) / first_avg * 100

        if change > 10:
            direction = "increasing"
        elif change < -10:
            direction = "decreasing"
        else:
            direction = "stable"

        return ConsumptionTrend(
            direction=direction,
            percentage_change=round(change, 2),
            first_half_average=round(first_avg, 2),
            second_half_average=round(second_avg, 2),
            description=f"Consumption is {direction} ({change:+.1f}%)",
        )

    # ─── Lead-time demand ───────────────────────────────────────────────

    async def lead_time_demand(
        self,
        item_id: uuid.UUID,
        warehouse_id: uuid.UUID | None = None,
        lead_time_days: int | None = None,
    ) -> LeadTimeDemand:
        """Expected demand over the lead time plus a 95% service-level buffer."""
        item = await self.db.get(Item, item_id)
        if item is None:
            raise ValueError(f"Item {item_id} not found")

        lead_time = lead_time_days or item.lead_time_days or DEFAULT_LEAD_TIME_DAYS
        avg = await self.average_daily_consumption(item_id, warehouse_id, window_days=60)
        variability = await self.demand_variability(item_id, warehouse_id, window_days=60)

        expected = avg * lead_time
        statistical_ss = SERVICE_LEVEL_Z * variability.standard_deviation * math.sqrt(lead_time)
        safety_stock = max(math.ceil(statistical_ss), item.safety_stock or 0)

        return LeadTimeDemand(
            lead_time_days=lead_time,
            avg_daily_demand=avg,
            expected_demand=round(expected, 2),
            safety_stock=safety_stock,
            recommended_reorder_point=math.ceil(expected + safety_stock),
        )
