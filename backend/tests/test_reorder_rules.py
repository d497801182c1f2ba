"""
Tests for reorder rules and order-quantity math.

Covers:
  - Formula parameter validation at write time
  - Rule scope conflicts and default minimum order quantity
  - Warehouse-specific vs global rule precedence
  - EOQ, dynamic, seasonal and fixed quantities
  - Min/max clamping and order multiples
"""

from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from db.models import Item, ReorderRule, Warehouse
from demand.analysis import SeasonalPattern
from replenishment.formulas import parse_formula
from replenishment.rules import (
    OrderInputs,
    RuleConflictError,
    apply_order_constraints,
    calculate_eoq,
    calculate_order_quantity,
    create_reorder_rule,
    deactivate_reorder_rule,
    default_order_quantity,
    resolve_active_rule,
    update_reorder_rule,
)


def _inputs(**overrides) -> OrderInputs:
    values = dict(
        reorder_point=50,
        safety_stock=20,
        current_stock=30,
        effective_stock=30,
        avg_daily_demand=5.0,
        lead_time_days=5,
        month=6,
    )
    values.update(overrides)
    return OrderInputs(**values)


def _rule(formula="dynamic", params=None, **fields) -> ReorderRule:
    return ReorderRule(reorder_formula=formula, formula_params=params or {}, **fields)


# ── Formula Parameters ─────────────────────────────────────────────────


class TestFormulaParameters:
    def test_eoq_requires_all_inputs(self):
        with pytest.raises(ValidationError):
            parse_formula("eoq", {"annual_demand": 1000, "ordering_cost": 50})

    def test_eoq_rejects_non_positive(self):
        with pytest.raises(ValidationError):
            parse_formula("eoq", {"annual_demand": 1000, "ordering_cost": 50, "holding_cost": 0})

    def test_seasonal_month_out_of_range(self):
        with pytest.raises(ValidationError):
            parse_formula("seasonal", {"monthly_multipliers": {"13": 1.5}})

    def test_seasonal_multiplier_out_of_range(self):
        with pytest.raises(ValidationError):
            parse_formula("seasonal", {"monthly_multipliers": {"3": 25}})

    def test_unknown_kind(self):
        with pytest.raises(ValueError, match="Unknown reorder formula"):
            parse_formula("magic", {})

    def test_unexpected_parameter_rejected(self):
        with pytest.raises(ValidationError):
            parse_formula("dynamic", {"order_quantity": 10})

    def test_json_month_keys_coerced(self):
        formula = parse_formula("seasonal", {"monthly_multipliers": {"12": 2.0}})
        assert formula.monthly_multipliers == {12: 2.0}


# ── Persistence ────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestRulePersistence:
    async def test_default_min_order_quantity(self, test_db, seeded_db):
        rule = await create_reorder_rule(test_db, seeded_db["item"].item_id)
        assert rule.min_order_quantity == 100  # 2 × ROP 50

    async def test_default_min_without_reorder_point(self, test_db, seeded_db):
        bare = Item(sku="BARE-1", name="Bare")
        test_db.add(bare)
        await test_db.commit()

        rule = await create_reorder_rule(test_db, bare.item_id)
        assert rule.min_order_quantity == 100

    async def test_invalid_eoq_params_rejected(self, test_db, seeded_db):
        with pytest.raises(ValueError):
            await create_reorder_rule(
                test_db, seeded_db["item"].item_id, reorder_formula="eoq", formula_params={"annual_demand": 10}
            )

    async def test_max_must_exceed_min(self, test_db, seeded_db):
        with pytest.raises(ValueError, match="max_order_quantity"):
            await create_reorder_rule(
                test_db, seeded_db["item"].item_id, min_order_quantity=100, max_order_quantity=50
            )
        await test_db.rollback()

    async def test_conflicting_active_rule(self, test_db, seeded_db):
        item_id = seeded_db["item"].item_id
        await create_reorder_rule(test_db, item_id)
        with pytest.raises(RuleConflictError):
            await create_reorder_rule(test_db, item_id)

    async def test_deactivated_rule_frees_scope(self, test_db, seeded_db):
        item_id = seeded_db["item"].item_id
        first = await create_reorder_rule(test_db, item_id)
        await deactivate_reorder_rule(test_db, first.rule_id)

        second = await create_reorder_rule(test_db, item_id, priority_level="high")
        assert second.active is True

    async def test_update_revalidates_formula(self, test_db, seeded_db):
        rule = await create_reorder_rule(test_db, seeded_db["item"].item_id)
        with pytest.raises(ValidationError):
            await update_reorder_rule(test_db, rule.rule_id, reorder_formula="eoq", formula_params={})

    async def test_update_changes_formula(self, test_db, seeded_db):
        rule = await create_reorder_rule(test_db, seeded_db["item"].item_id)
        updated = await update_reorder_rule(
            test_db,
            rule.rule_id,
            reorder_formula="fixed",
            formula_params={"order_quantity": 75},
            order_multiple=5,
        )
        assert updated.reorder_formula == "fixed"
        assert updated.formula_params == {"order_quantity": 75.0}
        assert updated.order_multiple == 5


@pytest.mark.asyncio
class TestRuleResolution:
    async def test_warehouse_rule_beats_global(self, test_db, seeded_db):
        item, warehouse = seeded_db["item"], seeded_db["warehouse"]
        global_rule = await create_reorder_rule(test_db, item.item_id, priority_level="critical")
        local_rule = await create_reorder_rule(
            test_db, item.item_id, warehouse_id=warehouse.warehouse_id, priority_level="low"
        )

        resolved = await resolve_active_rule(test_db, item.item_id, warehouse.warehouse_id)
        assert resolved.rule_id == local_rule.rule_id

        resolved_global = await resolve_active_rule(test_db, item.item_id, None)
        assert resolved_global.rule_id == global_rule.rule_id

    async def test_global_rule_applies_to_other_warehouses(self, test_db, seeded_db):
        item = seeded_db["item"]
        other = Warehouse(name="Overflow", code="OVF")
        test_db.add(other)
        await test_db.commit()
        global_rule = await create_reorder_rule(test_db, item.item_id)

        resolved = await resolve_active_rule(test_db, item.item_id, other.warehouse_id)
        assert resolved.rule_id == global_rule.rule_id

    async def test_priority_then_recency_breaks_ties(self, test_db, seeded_db):
        item_id = seeded_db["item"].item_id
        now = datetime.utcnow()
        low = ReorderRule(item_id=item_id, priority_level="low", created_at=now)
        critical = ReorderRule(item_id=item_id, priority_level="critical", created_at=now - timedelta(days=1))
        test_db.add_all([low, critical])
        await test_db.commit()

        resolved = await resolve_active_rule(test_db, item_id)
        assert resolved.rule_id == critical.rule_id

    async def test_inactive_rules_ignored(self, test_db, seeded_db):
        item_id = seeded_db["item"].item_id
        rule = await create_reorder_rule(test_db, item_id)
        await deactivate_reorder_rule(test_db, rule.rule_id)

        assert await resolve_active_rule(test_db, item_id) is None


# ── Quantity Math ──────────────────────────────────────────────────────


class TestEOQ:
    def test_textbook_value(self):
        """√(2 × 1000 × 50 / 2) = 223.6 → 224."""
        assert calculate_eoq(1000, 50, 2) == 224

    def test_rejects_zero_inputs(self):
        with pytest.raises(ValueError):
            calculate_eoq(0, 50, 2)

    def test_eoq_rule_respects_max(self):
        rule = _rule(
            "eoq",
            {"annual_demand": 1000, "ordering_cost": 50, "holding_cost": 2},
            min_order_quantity=10,
            max_order_quantity=200,
        )
        assert calculate_order_quantity(rule, _inputs()) == 200


class TestOrderConstraints:
    def test_min_clamp(self):
        assert apply_order_constraints(5, min_quantity=10) == 10

    def test_max_clamp(self):
        assert apply_order_constraints(250, min_quantity=10, max_quantity=200) == 200

    def test_rounds_up_to_multiple(self):
        assert apply_order_constraints(13, order_multiple=5) == 15

    def test_exact_multiple_unchanged(self):
        assert apply_order_constraints(24, order_multiple=12) == 24

    def test_never_below_one_multiple(self):
        assert apply_order_constraints(0, order_multiple=6) == 6

    def test_result_is_multiple_and_at_least_min(self):
        for quantity in (1, 7, 49, 50, 51, 333):
            result = apply_order_constraints(quantity, min_quantity=40, order_multiple=12)
            assert result % 12 == 0
            assert result >= 40


class TestOrderQuantity:
    def test_dynamic(self):
        """5/day × 5 days + SS 20 − effective 30 = 15."""
        rule = _rule(min_order_quantity=10)
        assert calculate_order_quantity(rule, _inputs()) == 15

    def test_dynamic_uses_lead_time_buffer(self):
        rule = _rule(min_order_quantity=10, lead_time_buffer=2)
        assert calculate_order_quantity(rule, _inputs()) == 25

    def test_dynamic_floor_is_min_order(self):
        rule = _rule(min_order_quantity=100)
        assert calculate_order_quantity(rule, _inputs()) == 100

    def test_dynamic_counts_pending_orders(self):
        rule = _rule(min_order_quantity=1)
        assert calculate_order_quantity(rule, _inputs(effective_stock=40)) == 5

    def test_seasonal_month_override(self):
        rule = _rule("seasonal", {"monthly_multipliers": {"12": 2.0}}, min_order_quantity=10)
        assert calculate_order_quantity(rule, _inputs(month=12)) == 30

    def test_seasonal_detected_pattern(self):
        pattern = SeasonalPattern(has_pattern=True, multipliers={m: 2.0 if m == 6 else 1.0 for m in range(1, 13)})
        rule = _rule("seasonal", {}, min_order_quantity=10, seasonal_multiplier=1.5)
        assert calculate_order_quantity(rule, _inputs(seasonal_pattern=pattern)) == 30

    def test_seasonal_rule_multiplier_fallback(self):
        rule = _rule("seasonal", {}, min_order_quantity=10, seasonal_multiplier=1.5)
        assert calculate_order_quantity(rule, _inputs()) == 23  # 22.5 rounded up

    def test_fixed_with_multiple(self):
        rule = _rule("fixed", {"order_quantity": 120}, order_multiple=25)
        assert calculate_order_quantity(rule, _inputs()) == 125

    def test_fixed_without_quantity_uses_min(self):
        rule = _rule("fixed", {}, min_order_quantity=60)
        assert calculate_order_quantity(rule, _inputs()) == 60


class TestDefaultOrderQuantity:
    def test_refill_to_twice_reorder_point(self):
        assert default_order_quantity(50, 30, 0) == 70

    def test_covers_thirty_days_of_demand(self):
        assert default_order_quantity(50, 30, 10) == 270

    def test_at_least_one_reorder_point(self):
        assert default_order_quantity(50, 80, 0) == 50
