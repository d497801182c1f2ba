"""
Alert Engine — low-stock and batch-expiry detection.

Runs periodically (Celery beat, ``workers.alerts``).

Alert Types:
  - low_stock: Stock at or below the item's minimum (or reorder point)
  - critical_stock: Stock below safety stock, or none left
  - expiry_warning_30_days / expiry_warning_7_days: Batch nearing expiry
  - expired: Batch past its expiry date (batch is flagged ``expired``)

Stock alerts are skipped while the item has any unread stock or reorder
alert. An unread expiry alert for a batch is raised to the new tier
instead of a second alert being created.
"""

import uuid
from datetime import date
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Alert, Batch, Item, User
from ledger.balance import BalanceCalculator

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────────────────
# Detection Rules
# ──────────────────────────────────────────────────────────────────────────

EXPIRY_THRESHOLDS = {
    "expiry_warning_7_days": 7,
    "expiry_warning_30_days": 30,
}

STOCK_ALERT_TYPES = ("low_stock", "critical_stock", "reorder")
EXPIRY_ALERT_TYPES = ("expiry_warning_30_days", "expiry_warning_7_days", "expired")
SEVERITY_RANK = {"low": 1, "medium": 2, "high": 3, "critical": 4}


def classify_expiry(days_until_expiry: int) -> tuple[str, str] | None:
    """Map days until expiry to (alert_type, severity), or None when not due."""
    if days_until_expiry < 0:
        return "expired", "critical"
    if days_until_expiry <= EXPIRY_THRESHOLDS["expiry_warning_7_days"]:
        return "expiry_warning_7_days", "high"
    if days_until_expiry <= EXPIRY_THRESHOLDS["expiry_warning_30_days"]:
        return "expiry_warning_30_days", "medium"
    return None


def classify_stock(stock: float, safety_stock: int) -> tuple[str, str]:
    """Map a below-threshold stock level to (alert_type, severity)."""
    if stock <= 0:
        return "critical_stock", "critical"
    if stock < safety_stock:
        return "critical_stock", "high"
    return "low_stock", "medium"


# ──────────────────────────────────────────────────────────────────────────
# Expiry Detection
# ──────────────────────────────────────────────────────────────────────────


async def detect_expiring_batches(db: AsyncSession, today: date | None = None) -> list[dict[str, Any]]:
    """Active batches with stock that are expired or expire within 30 days."""
    today = today or date.today()
    result = await db.execute(
        select(Batch, Item)
        .join(Item, Item.item_id == Batch.item_id)
        .where(
            Batch.status == "active",
            Batch.expiry_date.is_not(None),
            Batch.available_qty > 0,
        )
        .order_by(Batch.expiry_date.asc())
    )

    alerts = []
    for batch, item in result.all():
        days_left = (batch.expiry_date - today).days
        classification = classify_expiry(days_left)
        if classification is None:
            continue

        alert_type, severity = classification
        if alert_type == "expired":
            message = (
                f"Batch {batch.batch_number} of {item.name} ({item.sku}) expired on "
                f"{batch.expiry_date.isoformat()}; {batch.available_qty} units still available."
            )
        else:
            message = (
                f"Batch {batch.batch_number} of {item.name} ({item.sku}) expires in {days_left} days "
                f"({batch.expiry_date.isoformat()}); {batch.available_qty} units available."
            )

        alerts.append(
            {
                "item_id": batch.item_id,
                "batch_id": batch.batch_id,
                "warehouse_id": None,
                "alert_type": alert_type,
                "severity": severity,
                "message": message,
            }
        )
    return alerts


# ──────────────────────────────────────────────────────────────────────────
# Low Stock Detection
# ──────────────────────────────────────────────────────────────────────────


async def detect_low_stock(db: AsyncSession) -> list[dict[str, Any]]:
    """Active items whose total ledger stock is at or below their threshold."""
    stock_by_item = await BalanceCalculator(db).all_items_stock()
    result = await db.execute(select(Item).where(Item.is_active.is_(True)))

    alerts = []
    for item in result.scalars().all():
        threshold = item.min_stock or item.reorder_point or 0
        if threshold <= 0:
            continue

        stock = float(stock_by_item.get(item.item_id, 0))
        if stock > threshold:
            continue

        alert_type, severity = classify_stock(stock, item.safety_stock or 0)
        label = "Critical stock" if alert_type == "critical_stock" else "Low stock"
        alerts.append(
            {
                "item_id": item.item_id,
                "batch_id": None,
                "warehouse_id": None,
                "alert_type": alert_type,
                "severity": severity,
                "message": (
                    f"{label} for {item.name} ({item.sku}). "
                    f"Stock: {stock:g}, minimum: {threshold}, safety stock: {item.safety_stock or 0}"
                ),
            }
        )
    return alerts


# ──────────────────────────────────────────────────────────────────────────
# Alert Deduplication
# ──────────────────────────────────────────────────────────────────────────


async def deduplicate_alerts(
    db: AsyncSession,
    new_alerts: list[dict[str, Any]],
) -> tuple[list[dict[str, Any]], int]:
    """
    Drop alerts already covered by an unread one.

    Returns (alerts to create, number of existing expiry alerts upgraded).
    """
    if not new_alerts:
        return [], 0

    existing = await db.execute(
        select(Alert).where(
            Alert.is_read.is_(False),
            Alert.alert_type.in_(STOCK_ALERT_TYPES + EXPIRY_ALERT_TYPES),
        )
    )
    stock_items: set[uuid.UUID] = set()
    expiry_by_batch: dict[uuid.UUID, Alert] = {}
    for alert in existing.scalars().all():
        if alert.alert_type in STOCK_ALERT_TYPES and alert.item_id is not None:
            stock_items.add(alert.item_id)
        elif alert.alert_type in EXPIRY_ALERT_TYPES and alert.batch_id is not None:
            expiry_by_batch[alert.batch_id] = alert

    to_create = []
    new_batches: set[uuid.UUID] = set()
    upgraded = 0
    for candidate in new_alerts:
        if candidate["alert_type"] in STOCK_ALERT_TYPES:
            if candidate["item_id"] in stock_items:
                continue
            stock_items.add(candidate["item_id"])
            to_create.append(candidate)
            continue

        batch_id = candidate["batch_id"]
        if batch_id in new_batches:
            continue
        current = expiry_by_batch.get(batch_id)
        if current is None:
            new_batches.add(batch_id)
            to_create.append(candidate)
        elif SEVERITY_RANK[candidate["severity"]] > SEVERITY_RANK.get(current.severity, 0):
            current.alert_type = candidate["alert_type"]
            current.severity = candidate["severity"]
            current.message = candidate["message"]
            upgraded += 1

    return to_create, upgraded


# ──────────────────────────────────────────────────────────────────────────
# Alert Creation
# ──────────────────────────────────────────────────────────────────────────


async def default_assignee(db: AsyncSession) -> uuid.UUID | None:
    result = await db.execute(
        select(User.user_id)
        .where(User.is_active.is_(True), User.role.in_(("manager", "admin")))
        .order_by(User.role.desc(), User.created_at.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_alerts(
    db: AsyncSession,
    alerts: list[dict[str, Any]],
    assigned_to: uuid.UUID | None = None,
) -> list[Alert]:
    """Persist alerts to database and return created records."""
    created = []
    for alert_data in alerts:
        alert = Alert(
            item_id=alert_data["item_id"],
            batch_id=alert_data.get("batch_id"),
            warehouse_id=alert_data.get("warehouse_id"),
            alert_type=alert_data["alert_type"],
            severity=alert_data["severity"],
            message=alert_data["message"],
            assigned_to=assigned_to,
        )
        db.add(alert)
        created.append(alert)

    await db.commit()
    return created


async def flag_expired_batches(db: AsyncSession, batch_ids: list[uuid.UUID]) -> int:
    flagged = 0
    for batch_id in batch_ids:
        batch = await db.get(Batch, batch_id)
        if batch is not None and batch.status == "active":
            batch.status = "expired"
            flagged += 1
    return flagged


# ──────────────────────────────────────────────────────────────────────────
# Master Alert Pipeline (run periodically)
# ──────────────────────────────────────────────────────────────────────────


async def run_alert_pipeline(db: AsyncSession, today: date | None = None) -> dict[str, int]:
    """
    Full alert pipeline:
    1. Detect low/critical stock
    2. Detect expiring and expired batches
    3. Deduplicate (upgrading existing expiry alerts)
    4. Flag expired batches
    5. Persist

    Returns counts of alerts created by type.
    """
    stock_alerts = await detect_low_stock(db)
    expiry_alerts = await detect_expiring_batches(db, today)

    unique_alerts, upgraded = await deduplicate_alerts(db, stock_alerts + expiry_alerts)

    expired_batches = [a["batch_id"] for a in expiry_alerts if a["alert_type"] == "expired"]
    flagged = await flag_expired_batches(db, expired_batches)

    assignee = await default_assignee(db)
    created = await create_alerts(db, unique_alerts, assigned_to=assignee)

    counts = {alert_type: 0 for alert_type in STOCK_ALERT_TYPES[:2] + EXPIRY_ALERT_TYPES}
    for alert in created:
        counts[alert.alert_type] += 1
    counts["upgraded"] = upgraded
    counts["batches_expired"] = flagged
    counts["total"] = len(created)

    logger.info("alerts.pipeline_complete", **counts)
    return counts
