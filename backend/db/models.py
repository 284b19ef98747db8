"""
StockPulse Database Models

Tables for the real-time inventory core.

Tables:
  1. inventory_rows    - Current stock per (product, warehouse); locked for every mutation
  2. cost_layers       - Unconsumed receipt batches for FIFO/LIFO/average costing
  3. ledger_entries    - Append-only stock movement ledger (audit source of truth)
  4. reservations      - Stock held against an external reference
  5. reorder_alerts    - Throttled low-stock / out-of-stock alerts
  6. stock_transfers   - Completed warehouse-to-warehouse moves
  7. incidents         - Consistency failures that must survive rollback

Product and warehouse ids are foreign references owned by the catalog
services; no FK constraints are declared against them.
"""

import uuid
from decimal import Decimal

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from core.clock import utcnow
from db.session import Base
from inventory.costing import quantize_cost


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


class DecimalType(TypeDecorator):
    """Exact decimal with 6 fractional digits.

    NUMERIC(18, 6) on PostgreSQL; a decimal string on SQLite, which has no
    exact numeric storage.
    """

    impl = types.Numeric(18, 6)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(types.String(40))
        return dialect.type_descriptor(types.Numeric(18, 6, asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        value = quantize_cost(value)
        if dialect.name == "sqlite":
            return str(value)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return quantize_cost(Decimal(str(value)))


# Integer autoincrement ids: BIGSERIAL on PostgreSQL, rowid alias on SQLite.
BigIntId = BigInteger().with_variant(Integer, "sqlite")


# ─── 1. Inventory Rows ──────────────────────────────────────────────────────


class InventoryRow(Base):
    __tablename__ = "inventory_rows"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    pid = Column(GUID(), nullable=False)
    wid = Column(GUID(), nullable=False)
    on_hand = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)
    available = Column(Integer, nullable=False, default=0)
    weighted_avg_cost = Column(DecimalType(), nullable=False, default=Decimal("0"))
    reorder_point = Column(Integer, nullable=False, default=0)
    reorder_quantity = Column(Integer, nullable=False, default=0)
    max_stock = Column(Integer)
    cost_method = Column(String(10), nullable=False, default="FIFO")
    last_movement_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("pid", "wid", name="uq_inventory_pid_wid"),
        Index("ix_inventory_wid", "wid"),
        CheckConstraint("on_hand >= 0", name="ck_inventory_on_hand_nonneg"),
        CheckConstraint("reserved >= 0", name="ck_inventory_reserved_nonneg"),
        CheckConstraint("reserved <= on_hand", name="ck_inventory_reserved_le_on_hand"),
        CheckConstraint("available = on_hand - reserved", name="ck_inventory_available"),
        CheckConstraint("cost_method IN ('FIFO', 'LIFO', 'AVERAGE')", name="ck_inventory_cost_method"),
    )

    @property
    def key(self) -> tuple[uuid.UUID, uuid.UUID]:
        return (self.pid, self.wid)


# ─── 2. Cost Layers ─────────────────────────────────────────────────────────


class CostLayer(Base):
    __tablename__ = "cost_layers"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    pid = Column(GUID(), nullable=False)
    wid = Column(GUID(), nullable=False)
    received_at = Column(DateTime, nullable=False, default=utcnow)
    original_qty = Column(Integer, nullable=False)
    remaining_qty = Column(Integer, nullable=False)
    unit_cost = Column(DecimalType(), nullable=False)
    source_ledger_id = Column(BigIntId)

    __table_args__ = (
        Index("ix_cost_layers_pid_wid_received", "pid", "wid", "received_at"),
        CheckConstraint("original_qty > 0", name="ck_cost_layer_original_positive"),
        CheckConstraint("remaining_qty >= 0", name="ck_cost_layer_remaining_nonneg"),
        CheckConstraint("remaining_qty <= original_qty", name="ck_cost_layer_remaining_le_original"),
    )


# ─── 3. Ledger Entries ──────────────────────────────────────────────────────


class LedgerEntry(Base):
    """Append-only. Rows are inserted once and never updated."""

    __tablename__ = "ledger_entries"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    at = Column(DateTime, nullable=False, default=utcnow)
    pid = Column(GUID(), nullable=False)
    wid = Column(GUID(), nullable=False)
    kind = Column(String(20), nullable=False)
    qty_delta = Column(Integer, nullable=False)
    unit_cost_applied = Column(DecimalType())
    total_cost = Column(DecimalType())
    cost_method = Column(String(10))
    on_hand_before = Column(Integer, nullable=False)
    on_hand_after = Column(Integer, nullable=False)
    reference = Column(String(255))
    related_entry_id = Column(BigIntId)
    reservation_id = Column(GUID())
    cost_detail = Column(JSON, default=list)
    actor = Column(String(255), nullable=False, default="system")
    reason = Column(String(500))

    __table_args__ = (
        Index("ix_ledger_pid_wid_at", "pid", "wid", "at"),
        Index("ix_ledger_reference", "reference"),
        CheckConstraint(
            "kind IN ('receive', 'issue', 'adjust+', 'adjust-', "
            "'transfer-out', 'transfer-in', 'reserve', 'release')",
            name="ck_ledger_kind",
        ),
        CheckConstraint("qty_delta <> 0", name="ck_ledger_nonzero_delta"),
    )


# ─── 4. Reservations ────────────────────────────────────────────────────────


class Reservation(Base):
    __tablename__ = "reservations"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    pid = Column(GUID(), nullable=False)
    wid = Column(GUID(), nullable=False)
    qty = Column(Integer, nullable=False)
    reference = Column(String(255), nullable=False)
    reason = Column(String(500))
    status = Column(String(20), nullable=False, default="active")
    actor = Column(String(255), nullable=False, default="system")
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime)
    closed_at = Column(DateTime)

    __table_args__ = (
        Index("ix_reservations_status_expires", "status", "expires_at"),
        Index("ix_reservations_pid_wid", "pid", "wid"),
        Index("ix_reservations_reference", "reference"),
        CheckConstraint("qty > 0", name="ck_reservation_qty_positive"),
        CheckConstraint(
            "status IN ('active', 'released', 'consumed', 'expired')",
            name="ck_reservation_status",
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != "active"


# ─── 5. Reorder Alerts ──────────────────────────────────────────────────────


class ReorderAlert(Base):
    __tablename__ = "reorder_alerts"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    pid = Column(GUID(), nullable=False)
    wid = Column(GUID(), nullable=False)
    observed_on_hand = Column(Integer, nullable=False)
    observed_available = Column(Integer, nullable=False)
    threshold = Column(Integer, nullable=False)
    suggested_qty = Column(Integer, nullable=False, default=0)
    severity = Column(String(10), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    raised_at = Column(DateTime, nullable=False, default=utcnow)
    last_suppressed_until = Column(DateTime)
    acknowledged_at = Column(DateTime)
    acknowledged_by = Column(String(255))
    resolved_at = Column(DateTime)
    notes = Column(Text)

    __table_args__ = (
        Index("ix_reorder_alerts_pid_wid_status", "pid", "wid", "status"),
        CheckConstraint("severity IN ('low', 'critical', 'out')", name="ck_alert_severity"),
        CheckConstraint("status IN ('pending', 'acknowledged', 'resolved')", name="ck_alert_status"),
    )


# ─── 6. Stock Transfers ─────────────────────────────────────────────────────


class StockTransfer(Base):
    """Completed warehouse-to-warehouse inventory movements."""

    __tablename__ = "stock_transfers"

    transfer_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    pid = Column(GUID(), nullable=False)
    from_wid = Column(GUID(), nullable=False)
    to_wid = Column(GUID(), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_cost = Column(DecimalType(), nullable=False)
    total_cost = Column(DecimalType(), nullable=False)
    out_entry_id = Column(BigIntId, ForeignKey("ledger_entries.id"), nullable=False)
    in_entry_id = Column(BigIntId, ForeignKey("ledger_entries.id"), nullable=False)
    reference = Column(String(255))
    reason = Column(String(500))
    actor = Column(String(255), nullable=False, default="system")
    completed_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_transfers_pid", "pid"),
        CheckConstraint("quantity > 0", name="ck_transfer_quantity_positive"),
        CheckConstraint("from_wid <> to_wid", name="ck_transfer_distinct_warehouses"),
    )


# ─── 7. Incidents ───────────────────────────────────────────────────────────


class Incident(Base):
    __tablename__ = "incidents"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    at = Column(DateTime, nullable=False, default=utcnow)
    kind = Column(String(50), nullable=False)
    pid = Column(GUID())
    wid = Column(GUID())
    detail = Column(JSON, default=dict)

    __table_args__ = (Index("ix_incidents_at", "at"),)
