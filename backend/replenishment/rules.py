"""
Reorder rules — persistence helpers and order-quantity math.

Quantity by formula:
  fixed     → explicit order quantity, else min order qty, else 2 × ROP
  dynamic   → max(avg × (lead time + buffer) + SS − effective stock, min order qty)
  seasonal  → dynamic × seasonal multiplier
  eoq       → √(2 × D × S / H), rounded
Every result is clamped to [min, max] and rounded up to the order multiple.
"""

import math
import uuid
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import case, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Item, ReorderRule
from demand.analysis import SeasonalPattern
from replenishment.formulas import (
    DynamicFormula,
    EOQFormula,
    FixedFormula,
    SeasonalFormula,
    dump_formula,
    parse_formula,
)

logger = structlog.get_logger()

DEFAULT_MIN_ORDER_QUANTITY = 100
PRIORITY_RANK = {"critical": 4, "high": 3, "medium": 2, "low": 1}


class RuleConflictError(ValueError):
    """An active rule already exists for the same item and warehouse scope."""


@dataclass
class OrderInputs:
    """Stock and demand figures the quantity formulas work from."""

    reorder_point: int
    safety_stock: int
    current_stock: float
    effective_stock: float
    avg_daily_demand: float
    lead_time_days: int
    month: int
    seasonal_pattern: SeasonalPattern | None = None


# ─── Persistence ───────────────────────────────────────────────────────────


async def create_reorder_rule(
    db: AsyncSession,
    item_id: uuid.UUID,
    warehouse_id: uuid.UUID | None = None,
    reorder_formula: str = "dynamic",
    formula_params: dict | None = None,
    **fields,
) -> ReorderRule:
    """Create an active rule for (item, warehouse), or a global one.

    ``min_order_quantity`` defaults to twice the item's reorder point
    (or 100 when the item has none).
    """
    item = await db.get(Item, item_id)
    if item is None:
        raise ValueError(f"Item {item_id} not found")

    formula = parse_formula(reorder_formula, formula_params)

    existing = await _active_rule_in_scope(db, item_id, warehouse_id)
    if existing is not None:
        scope = f"warehouse {warehouse_id}" if warehouse_id else "global scope"
        raise RuleConflictError(f"Item {item_id} already has an active reorder rule for {scope}")

    if fields.get("min_order_quantity") is None:
        fields["min_order_quantity"] = item.reorder_point * 2 if item.reorder_point else DEFAULT_MIN_ORDER_QUANTITY

    rule = ReorderRule(
        item_id=item_id,
        warehouse_id=warehouse_id,
        reorder_formula=reorder_formula,
        formula_params=dump_formula(formula),
        **fields,
    )
    db.add(rule)
    await db.commit()

    logger.info(
        "reorder_rule.created",
        rule_id=str(rule.rule_id),
        item_id=str(item_id),
        warehouse_id=str(warehouse_id) if warehouse_id else None,
        formula=reorder_formula,
    )
    return rule


async def update_reorder_rule(db: AsyncSession, rule_id: uuid.UUID, **changes) -> ReorderRule:
    rule = await db.get(ReorderRule, rule_id)
    if rule is None:
        raise ValueError(f"Reorder rule {rule_id} not found")

    if "reorder_formula" in changes or "formula_params" in changes:
        kind = changes.pop("reorder_formula", rule.reorder_formula)
        params = changes.pop("formula_params", rule.formula_params)
        rule.reorder_formula = kind
        rule.formula_params = dump_formula(parse_formula(kind, params))

    for name, value in changes.items():
        if not hasattr(ReorderRule, name):
            raise ValueError(f"Unknown reorder rule field: {name}")
        setattr(rule, name, value)

    rule.validate()
    await db.commit()
    return rule


async def deactivate_reorder_rule(db: AsyncSession, rule_id: uuid.UUID) -> ReorderRule:
    rule = await db.get(ReorderRule, rule_id)
    if rule is None:
        raise ValueError(f"Reorder rule {rule_id} not found")
    rule.active = False
    await db.commit()
    return rule


async def _active_rule_in_scope(db, item_id, warehouse_id) -> ReorderRule | None:
    query = select(ReorderRule).where(ReorderRule.item_id == item_id, ReorderRule.active.is_(True))
    if warehouse_id is None:
        query = query.where(ReorderRule.warehouse_id.is_(None))
    else:
        query = query.where(ReorderRule.warehouse_id == warehouse_id)
    return (await db.execute(query.limit(1))).scalar_one_or_none()


async def resolve_active_rule(
    db: AsyncSession,
    item_id: uuid.UUID,
    warehouse_id: uuid.UUID | None = None,
) -> ReorderRule | None:
    """Pick the rule that governs (item, warehouse).

    Warehouse-specific rules beat global ones; ties go to the higher
    priority level, then the most recently created rule.
    """
    priority_rank = case(PRIORITY_RANK, value=ReorderRule.priority_level, else_=0)
    is_global = case((ReorderRule.warehouse_id.is_(None), 1), else_=0)

    query = select(ReorderRule).where(ReorderRule.item_id == item_id, ReorderRule.active.is_(True))
    if warehouse_id is None:
        query = query.where(ReorderRule.warehouse_id.is_(None))
    else:
        query = query.where((ReorderRule.warehouse_id == warehouse_id) | ReorderRule.warehouse_id.is_(None))

    query = query.order_by(is_global, priority_rank.desc(), ReorderRule.created_at.desc()).limit(1)
    return (await db.execute(query)).scalar_one_or_none()


async def mark_rule_triggered(db: AsyncSession, rule_id: uuid.UUID) -> None:
    """Stamp ``last_triggered``; the caller owns the transaction."""
    rule = await db.get(ReorderRule, rule_id)
    if rule is not None:
        rule.last_triggered = datetime.utcnow()


# ─── Quantity math ─────────────────────────────────────────────────────────


def calculate_eoq(annual_demand: float, ordering_cost: float, holding_cost: float) -> int:
    """Economic Order Quantity, rounded half-up to whole units."""
    if annual_demand <= 0 or ordering_cost <= 0 or holding_cost <= 0:
        raise ValueError("EOQ needs positive annual demand, ordering cost and holding cost")
    eoq = math.sqrt(2 * annual_demand * ordering_cost / holding_cost)
    return math.floor(eoq + 0.5)


def apply_order_constraints(
    quantity: float,
    min_quantity: int | None = None,
    max_quantity: int | None = None,
    order_multiple: int | None = 1,
) -> int:
    """Clamp to [min, max], then round up to the order multiple.

    Never returns less than one order multiple.
    """
    if min_quantity is not None:
        quantity = max(quantity, min_quantity)
    if max_quantity is not None:
        quantity = min(quantity, max_quantity)

    multiple = max(order_multiple or 1, 1)
    units = math.ceil(round(quantity / multiple, 6))
    return max(units, 1) * multiple


def resolve_seasonal_multiplier(rule: ReorderRule, formula: SeasonalFormula, inputs: OrderInputs) -> float:
    """Per-month override, then detected pattern, then the rule's multiplier."""
    if inputs.month in formula.monthly_multipliers:
        return formula.monthly_multipliers[inputs.month]
    pattern = inputs.seasonal_pattern
    if pattern is not None and pattern.has_pattern:
        return pattern.multiplier_for(inputs.month)
    return rule.seasonal_multiplier or 1.0


def _dynamic_quantity(rule: ReorderRule, inputs: OrderInputs) -> float:
    horizon = inputs.lead_time_days + (rule.lead_time_buffer or 0)
    target = inputs.avg_daily_demand * horizon + inputs.safety_stock
    return max(target - inputs.effective_stock, rule.min_order_quantity or 0)


def calculate_order_quantity(rule: ReorderRule, inputs: OrderInputs) -> int:
    """Suggested order quantity for ``rule``, constraints applied."""
    formula = parse_formula(rule.reorder_formula, rule.formula_params)

    if isinstance(formula, FixedFormula):
        quantity = formula.order_quantity or rule.min_order_quantity or inputs.reorder_point * 2
    elif isinstance(formula, DynamicFormula):
        quantity = _dynamic_quantity(rule, inputs)
    elif isinstance(formula, SeasonalFormula):
        quantity = _dynamic_quantity(rule, inputs) * resolve_seasonal_multiplier(rule, formula, inputs)
    elif isinstance(formula, EOQFormula):
        quantity = calculate_eoq(formula.annual_demand, formula.ordering_cost, formula.holding_cost)
    else:  # pragma: no cover - parse_formula only yields the four variants
        raise ValueError(f"Unsupported formula: {rule.reorder_formula}")

    return apply_order_constraints(
        quantity,
        min_quantity=rule.min_order_quantity,
        max_quantity=rule.max_order_quantity,
        order_multiple=rule.order_multiple,
    )


def default_order_quantity(reorder_point: int, current_stock: float, avg_daily_demand: float) -> int:
    """Quantity for items without a reorder rule.

    Refill to twice the reorder point (at least one reorder point's worth),
    and cover 30 days of demand when demand is known.
    """
    base = reorder_point or DEFAULT_MIN_ORDER_QUANTITY
    quantity = max(base * 2 - current_stock, base)
    if avg_daily_demand > 0:
        quantity = max(quantity, avg_daily_demand * 30 - current_stock)
    return apply_order_constraints(quantity)
