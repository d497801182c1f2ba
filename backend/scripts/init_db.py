"""
Initialise the database schema, optionally with demo data.

Run: python scripts/init_db.py [--seed]
"""

import argparse
import asyncio
import random
from datetime import date, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.config import get_settings
from core.logging import configure_logging
from db.models import (
    Category,
    Item,
    StockLedgerEntry,
    Supplier,
    SupplierItem,
    User,
    Warehouse,
)
from db.session import Base
from replenishment.rules import create_reorder_rule

settings = get_settings()

ITEMS = [
    ("BEV-001", "Sparkling Water 12pk", "Beverages", 60, 20),
    ("BEV-002", "Cold Brew Coffee", "Beverages", 40, 15),
    ("DRY-001", "Basmati Rice 5kg", "Dry Goods", 80, 30),
    ("DRY-002", "Rolled Oats 1kg", "Dry Goods", 50, 20),
    ("CLN-001", "Surface Cleaner 750ml", "Cleaning", 30, 10),
]


async def create_schema(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def seed_demo_data(session_factory) -> None:
    """Warehouse, users, suppliers and 60 days of ledger history."""
    rng = random.Random(42)
    today = date.today()

    async with session_factory() as db:
        warehouse = Warehouse(name="Central DC", code="CDC", city="Minneapolis")
        admin = User(username="admin", email="admin@stockledger.local", full_name="Admin", role="admin")
        manager = User(username="manager", email="manager@stockledger.local", full_name="Ops Manager", role="manager")
        suppliers = [
            Supplier(name="Heartland Distributors", avg_lead_time_days=5, performance_rating=4.5),
            Supplier(name="Prairie Wholesale", avg_lead_time_days=9, performance_rating=3.8),
        ]
        db.add_all([warehouse, admin, manager, *suppliers])
        await db.flush()

        categories: dict[str, Category] = {}
        items = []
        for sku, name, category_name, reorder_point, safety_stock in ITEMS:
            if category_name not in categories:
                categories[category_name] = Category(name=category_name)
                db.add(categories[category_name])
                await db.flush()
            item = Item(
                sku=sku,
                name=name,
                category_id=categories[category_name].category_id,
                reorder_point=reorder_point,
                safety_stock=safety_stock,
                lead_time_days=7,
                unit_price=rng.choice([2.5, 4.0, 6.75, 9.9]),
            )
            db.add(item)
            items.append(item)
        await db.flush()

        for item in items:
            for index, supplier in enumerate(suppliers):
                db.add(
                    SupplierItem(
                        supplier_id=supplier.supplier_id,
                        item_id=item.item_id,
                        unit_price=float(item.unit_price) * (1 + 0.1 * index),
                        min_order_qty=10,
                        is_preferred=index == 0,
                    )
                )

            opening = item.reorder_point * 3
            db.add(
                StockLedgerEntry(
                    item_id=item.item_id,
                    warehouse_id=warehouse.warehouse_id,
                    transaction_type="receipt",
                    quantity=opening,
                    transaction_date=today - timedelta(days=60),
                    reference_type="opening_balance",
                )
            )
            issued = 0
            for days_ago in range(59, 0, -1):
                quantity = rng.randint(0, max(2, item.reorder_point // 15))
                if quantity == 0 or issued + quantity >= opening:
                    continue
                issued += quantity
                db.add(
                    StockLedgerEntry(
                        item_id=item.item_id,
                        warehouse_id=warehouse.warehouse_id,
                        transaction_type="issue",
                        quantity=-quantity,
                        transaction_date=today - timedelta(days=days_ago),
                        reference_type="demo_issue",
                    )
                )
        await db.commit()

        for item in items[:3]:
            await create_reorder_rule(db, item.item_id, reorder_formula="dynamic", priority_level="high")
        await create_reorder_rule(
            db,
            items[3].item_id,
            reorder_formula="eoq",
            formula_params={"annual_demand": 1200, "ordering_cost": 40, "holding_cost": 1.5},
        )

    print(f"Seeded {len(items)} items in {warehouse.name}")


async def main(seed: bool) -> None:
    configure_logging(settings.log_level, settings.log_json)
    engine = create_async_engine(settings.database_url)
    try:
        await create_schema(engine)
        if seed:
            session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            await seed_demo_data(session_factory)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--seed", action="store_true", help="load demo data after creating tables")
    args = parser.parse_args()
    asyncio.run(main(args.seed))
