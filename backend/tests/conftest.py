"""
Test Configuration — Fixtures for async DB, test client, and mock data.

Each test gets its own SQLite file so code that opens several sessions
(the scheduler, concurrent postings) sees one consistent database.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./stockledger_test.db")
os.environ.setdefault("APP_ENV", "test")

from datetime import date, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from api.deps import get_db
from api.main import app
from core.config import Settings
from db.session import Base


@pytest.fixture
async def test_engine(tmp_path):
    """Fresh file-backed SQLite database with all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'stockledger.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite+aiosqlite:///./unused.db",
        replenishment_schedule="0 * * * *",
        replenishment_enabled=True,
        replenishment_batch_size=50,
        scheduler_shutdown_timeout_seconds=5.0,
    )


@pytest.fixture
async def scheduler(session_factory, test_settings):
    from replenishment.scheduler import ReplenishmentScheduler

    instance = ReplenishmentScheduler(session_factory, test_settings)
    yield instance
    await instance.shutdown(timeout=5)


@pytest.fixture
async def client(session_factory, scheduler):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.scheduler = scheduler

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.scheduler = None


@pytest.fixture
def post_ledger(test_db):
    """Write a ledger row dated ``days_ago`` days back (negative quantity = issue)."""
    from db.models import StockLedgerEntry

    async def _post(
        item, warehouse, quantity, *, days_ago=0, transaction_type=None, batch=None, location=None, commit=True
    ):
        entry = StockLedgerEntry(
            item_id=item.item_id,
            warehouse_id=warehouse.warehouse_id,
            location_id=location.location_id if location is not None else None,
            batch_id=batch.batch_id if batch is not None else None,
            transaction_type=transaction_type or ("issue" if quantity < 0 else "receipt"),
            quantity=quantity,
            transaction_date=date.today() - timedelta(days=days_ago),
        )
        test_db.add(entry)
        if commit:
            await test_db.commit()
        return entry

    return _post


@pytest.fixture
async def seeded_db(test_db):
    """Seed the test DB with basic entities for integration tests.

    One warehouse, an admin and a manager, one category and a widget
    (ROP 50, SS 20, lead time 5) with a preferred supplier.
    """
    from db.models import Category, Item, Supplier, SupplierItem, User, Warehouse

    warehouse = Warehouse(name="Central DC", code="CDC", city="Minneapolis")
    admin = User(username="admin", email="admin@test.local", full_name="Admin", role="admin")
    manager = User(username="manager", email="manager@test.local", full_name="Manager", role="manager")
    staff = User(username="picker", email="picker@test.local", full_name="Picker", role="staff")
    category = Category(name="Hardware")
    test_db.add_all([warehouse, admin, manager, staff, category])
    await test_db.flush()

    item = Item(
        sku="WID-001",
        name="Widget",
        category_id=category.category_id,
        unit_price=4.00,
        reorder_point=50,
        safety_stock=20,
        lead_time_days=5,
    )
    supplier = Supplier(name="Acme Supply", avg_lead_time_days=5, performance_rating=4.0)
    test_db.add_all([item, supplier])
    await test_db.flush()

    test_db.add(
        SupplierItem(
            supplier_id=supplier.supplier_id,
            item_id=item.item_id,
            unit_price=4.00,
            min_order_qty=1,
            is_preferred=True,
        )
    )
    await test_db.commit()

    return {
        "warehouse": warehouse,
        "admin": admin,
        "manager": manager,
        "staff": staff,
        "category": category,
        "item": item,
        "supplier": supplier,
    }


@pytest.fixture
async def draining_item(test_db, seeded_db, post_ledger):
    """Widget with 30 on hand after issuing 5/day for the last 30 days."""
    item, warehouse = seeded_db["item"], seeded_db["warehouse"]
    await post_ledger(item, warehouse, 180, days_ago=31, commit=False)
    for days_ago in range(30, 0, -1):
        await post_ledger(item, warehouse, -5, days_ago=days_ago, commit=False)
    await test_db.commit()
    return seeded_db
