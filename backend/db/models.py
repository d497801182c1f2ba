"""
StockLedger Database Models

Tables for the stock ledger and the automated replenishment pipeline.

Tables:
  Catalog & sites (read by the engine, maintained elsewhere):
  1. categories            - Item categories (demand fallback grouping)
  2. warehouses            - Physical warehouses
  3. locations             - Bin/rack locations inside a warehouse
  4. users                 - Operators; admins/managers receive alerts
  5. items                 - Item master (+ reorder point, safety stock)
  6. suppliers             - Suppliers (+ lead time, performance rating)
  7. supplier_items        - Per-supplier price and order limits
  8. batches               - Lot/expiry tracked batches

  Ledger:
  9. stock_ledger          - Append-only signed quantity movements

  Replenishment:
  10. reorder_rules        - Per item (and optionally warehouse) reorder policy
  11. reorder_queue        - Transient work items between scan and PR generation
  12. purchase_requisitions / pr_items
  13. purchase_orders / po_items   - Read for pending quantity only
  14. alerts               - Stock, reorder and expiry alerts
  15. scheduler_runs       - Audit row per replenishment execution
"""

import uuid
from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    event,
    text,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


from sqlalchemy.orm import relationship

from db.session import Base
from replenishment.formulas import (
    PRIORITY_LEVELS,
    SEASONAL_MULTIPLIER_MAX,
    SEASONAL_MULTIPLIER_MIN,
    parse_formula,
)

Quantity = Numeric(12, 2)

TRANSACTION_TYPES = ("receipt", "transfer", "issue", "adjustment", "count")
QUEUE_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
ACTIVE_QUEUE_STATUSES = ("pending", "processing")
PR_STATUSES = ("pending", "approved", "rejected")
OPEN_PR_STATUSES = ("pending", "approved")
PO_STATUSES = ("issued", "in_transit", "completed", "cancelled")
OPEN_PO_STATUSES = ("issued", "in_transit")
ALERT_TYPES = (
    "low_stock",
    "critical_stock",
    "reorder",
    "expiry_warning_30_days",
    "expiry_warning_7_days",
    "expired",
)
SEVERITIES = ("low", "medium", "high", "critical")
RUN_STATUSES = ("running", "success", "failed", "cancelled")


def _in(values) -> str:
    return ", ".join(f"'{v}'" for v in values)


# ─── 1. Categories ─────────────────────────────────────────────────────────


class Category(Base):
    __tablename__ = "categories"

    category_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False, unique=True)
    description = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# ─── 2. Warehouses ─────────────────────────────────────────────────────────


class Warehouse(Base):
    __tablename__ = "warehouses"

    warehouse_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    code = Column(String(50), unique=True)
    city = Column(String(100))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# ─── 3. Locations ──────────────────────────────────────────────────────────


class Location(Base):
    __tablename__ = "locations"

    location_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    warehouse_id = Column(GUID(), ForeignKey("warehouses.warehouse_id"), nullable=False)
    code = Column(String(50), nullable=False)
    aisle = Column(String(20))
    rack = Column(String(20))
    bin = Column(String(20))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (UniqueConstraint("warehouse_id", "code", name="uq_location_code"),)


# ─── 4. Users ──────────────────────────────────────────────────────────────


class User(Base):
    __tablename__ = "users"

    user_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    username = Column(String(100), nullable=False, unique=True)
    email = Column(String(255), nullable=False, unique=True)
    full_name = Column(String(255))
    role = Column(String(20), nullable=False, default="staff")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (CheckConstraint("role IN ('admin', 'manager', 'staff')", name="ck_user_role"),)


# ─── 5. Items ──────────────────────────────────────────────────────────────


class Item(Base):
    __tablename__ = "items"

    item_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    sku = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    category_id = Column(GUID(), ForeignKey("categories.category_id"), nullable=True)
    unit_of_measure = Column(String(20), nullable=False, default="EA")
    unit_price = Column(Numeric(12, 2))
    reorder_point = Column(Integer, nullable=False, default=0)
    safety_stock = Column(Integer, nullable=False, default=0)
    min_stock = Column(Integer)
    max_stock = Column(Integer)
    lead_time_days = Column(Integer)
    is_batch_tracked = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_items_category", "category_id"),
        CheckConstraint("reorder_point >= 0", name="ck_item_reorder_point"),
        CheckConstraint("safety_stock >= 0", name="ck_item_safety_stock"),
    )

    category = relationship("Category")


# ─── 6. Suppliers ──────────────────────────────────────────────────────────


class Supplier(Base):
    __tablename__ = "suppliers"

    supplier_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    contact_email = Column(String(255))
    avg_lead_time_days = Column(Integer, default=7)
    performance_rating = Column(Float)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "performance_rating IS NULL OR (performance_rating >= 0 AND performance_rating <= 5)",
            name="ck_supplier_rating",
        ),
    )


# ─── 7. Supplier items ─────────────────────────────────────────────────────


class SupplierItem(Base):
    __tablename__ = "supplier_items"

    supplier_item_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    supplier_id = Column(GUID(), ForeignKey("suppliers.supplier_id"), nullable=False)
    item_id = Column(GUID(), ForeignKey("items.item_id"), nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    min_order_qty = Column(Integer, nullable=False, default=1)
    max_order_qty = Column(Integer)
    lead_time_days = Column(Integer)
    is_preferred = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("supplier_id", "item_id", name="uq_supplier_item"),
        Index("ix_supplier_items_item", "item_id"),
        CheckConstraint("unit_price >= 0", name="ck_supplier_item_price"),
    )

    supplier = relationship("Supplier")


# ─── 8. Batches ────────────────────────────────────────────────────────────


class Batch(Base):
    __tablename__ = "batches"

    batch_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    item_id = Column(GUID(), ForeignKey("items.item_id"), nullable=False)
    batch_number = Column(String(100), nullable=False)
    lot_number = Column(String(100))
    manufacturing_date = Column(Date)
    expiry_date = Column(Date)
    quantity = Column(Quantity, nullable=False, default=0)
    available_qty = Column(Quantity, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("item_id", "batch_number", name="uq_batch_number"),
        Index("ix_batches_item_expiry", "item_id", "expiry_date"),
        CheckConstraint("available_qty >= 0", name="ck_batch_available_qty"),
        CheckConstraint("status IN ('active', 'expired', 'disposed')", name="ck_batch_status"),
    )


# ─── 9. Stock ledger ───────────────────────────────────────────────────────


class LedgerImmutableError(ValueError):
    """Raised when code tries to change or remove a posted ledger entry."""


class StockLedgerEntry(Base):
    """One signed quantity movement.

    Current stock for any (item, warehouse, location, batch) filter is the
    SUM of ``quantity`` over matching rows. ``balance_qty`` is a snapshot
    written at insert time for reporting and is never read by the engine.
    """

    __tablename__ = "stock_ledger"

    entry_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    item_id = Column(GUID(), ForeignKey("items.item_id"), nullable=False)
    warehouse_id = Column(GUID(), ForeignKey("warehouses.warehouse_id"), nullable=False)
    location_id = Column(GUID(), ForeignKey("locations.location_id"), nullable=True)
    batch_id = Column(GUID(), ForeignKey("batches.batch_id"), nullable=True)
    transaction_type = Column(String(20), nullable=False)
    quantity = Column(Quantity, nullable=False)
    balance_qty = Column(Quantity)
    transaction_date = Column(Date, nullable=False, default=date.today)
    reference_type = Column(String(50))
    reference_id = Column(String(100))
    remarks = Column(Text)
    created_by = Column(GUID(), ForeignKey("users.user_id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_ledger_dimension", "item_id", "warehouse_id", "location_id", "batch_id"),
        Index("ix_ledger_item_type_date", "item_id", "transaction_type", "transaction_date"),
        CheckConstraint(f"transaction_type IN ({_in(TRANSACTION_TYPES)})", name="ck_ledger_transaction_type"),
        CheckConstraint("quantity <> 0", name="ck_ledger_quantity_nonzero"),
    )


@event.listens_for(StockLedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise LedgerImmutableError(f"Stock ledger entry {target.entry_id} is immutable")


@event.listens_for(StockLedgerEntry, "before_delete")
def _reject_ledger_delete(mapper, connection, target):
    raise LedgerImmutableError(f"Stock ledger entry {target.entry_id} cannot be deleted")


# ─── 10. Reorder rules ─────────────────────────────────────────────────────


class ReorderRule(Base):
    __tablename__ = "reorder_rules"

    rule_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    item_id = Column(GUID(), ForeignKey("items.item_id"), nullable=False)
    warehouse_id = Column(GUID(), ForeignKey("warehouses.warehouse_id"), nullable=True)  # NULL = global
    reorder_formula = Column(String(20), nullable=False, default="dynamic")
    formula_params = Column(JSON, nullable=False, default=dict)
    auto_generate_pr = Column(Boolean, nullable=False, default=True)
    approval_required = Column(Boolean, nullable=False, default=True)
    lead_time_buffer = Column(Integer, nullable=False, default=0)
    priority_level = Column(String(20), nullable=False, default="medium")
    min_order_quantity = Column(Integer)
    max_order_quantity = Column(Integer)
    order_multiple = Column(Integer, nullable=False, default=1)
    seasonal_multiplier = Column(Float, nullable=False, default=1.0)
    custom_reorder_point = Column(Integer)
    custom_safety_stock = Column(Integer)
    active = Column(Boolean, nullable=False, default=True)
    last_triggered = Column(DateTime)
    created_by = Column(GUID(), ForeignKey("users.user_id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_reorder_rules_item_active", "item_id", "active"),
        CheckConstraint("reorder_formula IN ('fixed', 'dynamic', 'seasonal', 'eoq')", name="ck_rule_formula"),
        CheckConstraint(f"priority_level IN ({_in(PRIORITY_LEVELS)})", name="ck_rule_priority"),
        CheckConstraint("order_multiple >= 1", name="ck_rule_order_multiple"),
        CheckConstraint("lead_time_buffer >= 0", name="ck_rule_lead_time_buffer"),
        CheckConstraint(
            "max_order_quantity IS NULL OR min_order_quantity IS NULL OR max_order_quantity > min_order_quantity",
            name="ck_rule_order_bounds",
        ),
    )

    def validate(self) -> None:
        """Check parameters that CHECK constraints cannot express.

        Raises ValueError (pydantic ValidationError for formula params).
        """
        parse_formula(self.reorder_formula or "dynamic", self.formula_params)
        if self.priority_level is not None and self.priority_level not in PRIORITY_LEVELS:
            raise ValueError(f"Unknown priority level: {self.priority_level!r}")
        if self.order_multiple is not None and self.order_multiple < 1:
            raise ValueError("order_multiple must be >= 1")
        if self.min_order_quantity is not None and self.min_order_quantity < 0:
            raise ValueError("min_order_quantity must be >= 0")
        if (
            self.min_order_quantity is not None
            and self.max_order_quantity is not None
            and self.max_order_quantity <= self.min_order_quantity
        ):
            raise ValueError("max_order_quantity must be greater than min_order_quantity")
        multiplier = self.seasonal_multiplier
        if multiplier is not None and not SEASONAL_MULTIPLIER_MIN <= multiplier <= SEASONAL_MULTIPLIER_MAX:
            raise ValueError(
                f"seasonal_multiplier must be between {SEASONAL_MULTIPLIER_MIN} and {SEASONAL_MULTIPLIER_MAX}"
            )


@event.listens_for(ReorderRule, "before_insert")
@event.listens_for(ReorderRule, "before_update")
def _validate_reorder_rule(mapper, connection, target):
    target.validate()


# ─── 11. Reorder queue ─────────────────────────────────────────────────────


class ReorderQueueEntry(Base):
    __tablename__ = "reorder_queue"

    queue_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    item_id = Column(GUID(), ForeignKey("items.item_id"), nullable=False)
    warehouse_id = Column(GUID(), ForeignKey("warehouses.warehouse_id"), nullable=True)
    rule_id = Column(GUID(), ForeignKey("reorder_rules.rule_id"), nullable=True)
    current_stock = Column(Quantity, nullable=False)
    effective_stock = Column(Quantity, nullable=False)
    pending_quantity = Column(Quantity, nullable=False, default=0)
    reorder_point = Column(Integer, nullable=False)
    safety_stock = Column(Integer, nullable=False, default=0)
    suggested_quantity = Column(Integer, nullable=False)
    avg_daily_demand = Column(Float, nullable=False, default=0.0)
    priority_score = Column(Integer, nullable=False, default=50)
    status = Column(String(20), nullable=False, default="pending")
    pr_id = Column(GUID(), ForeignKey("purchase_requisitions.pr_id"), nullable=True)
    alert_id = Column(GUID(), ForeignKey("alerts.alert_id"), nullable=True)
    skip_reason = Column(Text)
    failure_reason = Column(Text)
    retry_count = Column(Integer, nullable=False, default=0)
    scheduler_run_id = Column(GUID(), ForeignKey("scheduler_runs.run_id"), nullable=True)
    processed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_reorder_queue_status_priority", "status", "priority_score", "created_at"),
        Index("ix_reorder_queue_item", "item_id", "warehouse_id"),
        CheckConstraint(f"status IN ({_in(QUEUE_STATUSES)})", name="ck_queue_status"),
        CheckConstraint("priority_score >= 0 AND priority_score <= 100", name="ck_queue_priority_score"),
        CheckConstraint("suggested_quantity > 0", name="ck_queue_suggested_quantity"),
    )


# ─── 12. Purchase requisitions ─────────────────────────────────────────────


class PurchaseRequisition(Base):
    __tablename__ = "purchase_requisitions"

    pr_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    pr_number = Column(String(50), nullable=False, unique=True)
    pr_date = Column(Date, nullable=False, default=date.today)
    requested_by = Column(GUID(), ForeignKey("users.user_id"), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    is_auto_generated = Column(Boolean, nullable=False, default=False)
    approved_by = Column(GUID(), ForeignKey("users.user_id"), nullable=True)
    approved_at = Column(DateTime)
    remarks = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_pr_status", "status"),
        CheckConstraint(f"status IN ({_in(PR_STATUSES)})", name="ck_pr_status"),
    )

    items = relationship("PRItem", back_populates="requisition", cascade="all, delete-orphan", lazy="selectin")


class PRItem(Base):
    __tablename__ = "pr_items"

    pr_item_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    pr_id = Column(GUID(), ForeignKey("purchase_requisitions.pr_id"), nullable=False)
    item_id = Column(GUID(), ForeignKey("items.item_id"), nullable=False)
    requested_qty = Column(Quantity, nullable=False)
    supplier_id = Column(GUID(), ForeignKey("suppliers.supplier_id"), nullable=True)
    unit_price = Column(Numeric(12, 2))
    justification = Column(Text)

    __table_args__ = (
        Index("ix_pr_items_item", "item_id"),
        CheckConstraint("requested_qty > 0", name="ck_pr_item_qty"),
    )

    requisition = relationship("PurchaseRequisition", back_populates="items")


# ─── 13. Purchase orders ───────────────────────────────────────────────────


class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"

    po_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    po_number = Column(String(50), nullable=False, unique=True)
    supplier_id = Column(GUID(), ForeignKey("suppliers.supplier_id"), nullable=False)
    pr_id = Column(GUID(), ForeignKey("purchase_requisitions.pr_id"), nullable=True)
    status = Column(String(20), nullable=False, default="issued")
    expected_delivery_date = Column(Date)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_po_status", "status"),
        CheckConstraint(f"status IN ({_in(PO_STATUSES)})", name="ck_po_status"),
    )

    items = relationship("POItem", back_populates="purchase_order", cascade="all, delete-orphan", lazy="selectin")


class POItem(Base):
    __tablename__ = "po_items"

    po_item_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    po_id = Column(GUID(), ForeignKey("purchase_orders.po_id"), nullable=False)
    item_id = Column(GUID(), ForeignKey("items.item_id"), nullable=False)
    ordered_qty = Column(Quantity, nullable=False)
    unit_price = Column(Numeric(12, 2))

    __table_args__ = (Index("ix_po_items_item", "item_id"),)

    purchase_order = relationship("PurchaseOrder", back_populates="items")


# ─── 14. Alerts ────────────────────────────────────────────────────────────


class Alert(Base):
    __tablename__ = "alerts"

    alert_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    alert_type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False)
    item_id = Column(GUID(), ForeignKey("items.item_id"), nullable=True)
    batch_id = Column(GUID(), ForeignKey("batches.batch_id"), nullable=True)
    warehouse_id = Column(GUID(), ForeignKey("warehouses.warehouse_id"), nullable=True)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    assigned_to = Column(GUID(), ForeignKey("users.user_id"), nullable=True)
    escalation_count = Column(Integer, nullable=False, default=0)
    last_escalated_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    read_at = Column(DateTime)

    __table_args__ = (
        Index("ix_alerts_unread", "is_read", "created_at"),
        Index("ix_alerts_item_type", "item_id", "alert_type"),
        CheckConstraint(f"alert_type IN ({_in(ALERT_TYPES)})", name="ck_alert_type"),
        CheckConstraint(f"severity IN ({_in(SEVERITIES)})", name="ck_alert_severity"),
    )


# ─── 15. Scheduler runs ────────────────────────────────────────────────────


class SchedulerRun(Base):
    __tablename__ = "scheduler_runs"

    run_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    job_name = Column(String(100), nullable=False, default="reorder-check")
    status = Column(String(20), nullable=False, default="running")
    items_processed = Column(Integer, nullable=False, default=0)
    items_eligible = Column(Integer, nullable=False, default=0)
    prs_generated = Column(Integer, nullable=False, default=0)
    alerts_created = Column(Integer, nullable=False, default=0)
    alerts_escalated = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    error_stack = Column(Text)
    execution_time_ms = Column(Integer)
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime)
    triggered_by = Column(String(20), nullable=False, default="scheduler")
    triggered_by_user_id = Column(GUID(), nullable=True)
    run_metadata = Column("metadata", JSON, default=dict)

    __table_args__ = (
        Index("ix_scheduler_runs_job_started", "job_name", "started_at"),
        Index("ix_scheduler_runs_status", "status"),
        CheckConstraint(f"status IN ({_in(RUN_STATUSES)})", name="ck_scheduler_run_status"),
        CheckConstraint("triggered_by IN ('scheduler', 'manual')", name="ck_scheduler_run_trigger"),
    )
