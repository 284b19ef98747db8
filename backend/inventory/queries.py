"""
Inventory read surface: current rows with status, ledger, valuation, summary.

Status classification (per row, from available stock):
  out_of_stock   available == 0
  low_stock      available <= reorder_point
  overstocked    on_hand > max_stock, or available > 3 x reorder_point
  normal         everything else
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import CostLayer, InventoryRow, LedgerEntry, ReorderAlert, Reservation
from inventory import ledger
from inventory.costing import ZERO, CostMethod, layer_value, parse_method, quantize_cost

OVERSTOCK_FACTOR = 3


class InventoryStatus(str, Enum):
    OUT_OF_STOCK = "out_of_stock"
    LOW_STOCK = "low_stock"
    OVERSTOCKED = "overstocked"
    NORMAL = "normal"


def classify(row: InventoryRow) -> InventoryStatus:
    reorder_point = row.reorder_point or 0
    if row.available <= 0:
        return InventoryStatus.OUT_OF_STOCK
    if row.available <= reorder_point:
        return InventoryStatus.LOW_STOCK
    if row.max_stock is not None and row.on_hand > row.max_stock:
        return InventoryStatus.OVERSTOCKED
    if reorder_point > 0 and row.available > reorder_point * OVERSTOCK_FACTOR:
        return InventoryStatus.OVERSTOCKED
    return InventoryStatus.NORMAL


@dataclass
class InventoryFilter:
    pid: uuid.UUID | None = None
    wid: uuid.UUID | None = None
    low_stock_only: bool = False
    status: InventoryStatus | None = None


async def read_inventory(
    session: AsyncSession,
    filters: InventoryFilter | None = None,
    offset: int = 0,
    limit: int = 100,
) -> list[tuple[InventoryRow, InventoryStatus]]:
    """Rows with their status, most recently moved first."""
    filters = filters or InventoryFilter()
    query = select(InventoryRow)
    if filters.pid is not None:
        query = query.where(InventoryRow.pid == filters.pid)
    if filters.wid is not None:
        query = query.where(InventoryRow.wid == filters.wid)
    if filters.low_stock_only:
        query = query.where(InventoryRow.available <= InventoryRow.reorder_point)

    query = query.order_by(InventoryRow.last_movement_at.desc(), InventoryRow.id)
    if filters.status is None:
        query = query.offset(offset).limit(limit)
    result = await session.execute(query)

    rows = [(row, classify(row)) for row in result.scalars().all()]
    if filters.status is not None:
        rows = [item for item in rows if item[1] == filters.status][offset : offset + limit]
    return rows


async def read_ledger(
    session: AsyncSession,
    filters: ledger.LedgerFilter,
    offset: int = 0,
    limit: int = 100,
) -> list[LedgerEntry]:
    return await ledger.search(session, filters, offset=offset, limit=limit)


# ─── Valuation ──────────────────────────────────────────────────────────────


@dataclass
class ValuationLine:
    pid: uuid.UUID
    wid: uuid.UUID
    on_hand: int
    reserved: int
    available: int
    unit_cost: Decimal
    total_cost: Decimal


@dataclass
class Valuation:
    method: CostMethod
    lines: list[ValuationLine] = field(default_factory=list)

    @property
    def total_quantity(self) -> int:
        return sum(line.on_hand for line in self.lines)

    @property
    def total_cost(self) -> Decimal:
        return quantize_cost(sum((line.total_cost for line in self.lines), ZERO))


async def read_valuation(
    session: AsyncSession,
    wid: uuid.UUID | None = None,
    method: str | CostMethod | None = None,
) -> Valuation:
    """
    Stock value per (pid, wid).

    FIFO/LIFO value is Σ remaining_qty × unit_cost over live layers (both
    methods value what remains the same way). AVERAGE is on_hand × weighted
    average cost.
    """
    method = parse_method(method, CostMethod.FIFO)
    row_query = select(InventoryRow).where(InventoryRow.on_hand > 0)
    if wid is not None:
        row_query = row_query.where(InventoryRow.wid == wid)
    rows = (await session.execute(row_query.order_by(InventoryRow.pid, InventoryRow.wid))).scalars().all()

    layers_by_key: dict[tuple[uuid.UUID, uuid.UUID], list[CostLayer]] = defaultdict(list)
    if method != CostMethod.AVERAGE:
        layer_query = select(CostLayer).where(CostLayer.remaining_qty > 0)
        if wid is not None:
            layer_query = layer_query.where(CostLayer.wid == wid)
        for layer in (await session.execute(layer_query)).scalars().all():
            layers_by_key[(layer.pid, layer.wid)].append(layer)

    valuation = Valuation(method=method)
    for row in rows:
        if method == CostMethod.AVERAGE:
            total = quantize_cost(Decimal(row.on_hand) * row.weighted_avg_cost)
        else:
            total = layer_value(layers_by_key.get((row.pid, row.wid), []))
        unit = quantize_cost(total / Decimal(row.on_hand)) if row.on_hand else ZERO
        valuation.lines.append(
            ValuationLine(
                pid=row.pid,
                wid=row.wid,
                on_hand=row.on_hand,
                reserved=row.reserved,
                available=row.available,
                unit_cost=unit,
                total_cost=total,
            )
        )
    return valuation


# ─── Summary ────────────────────────────────────────────────────────────────


async def status_summary(session: AsyncSession, wid: uuid.UUID | None = None) -> dict:
    """Counts per status plus stock totals; feeds the dashboard metrics topic."""
    query = select(InventoryRow)
    if wid is not None:
        query = query.where(InventoryRow.wid == wid)
    rows = (await session.execute(query)).scalars().all()

    by_status = {status.value: 0 for status in InventoryStatus}
    for row in rows:
        by_status[classify(row).value] += 1

    reservation_query = select(func.count()).select_from(Reservation).where(Reservation.status == "active")
    alert_query = (
        select(func.count())
        .select_from(ReorderAlert)
        .where(ReorderAlert.status.in_(("pending", "acknowledged")))
    )
    if wid is not None:
        reservation_query = reservation_query.where(Reservation.wid == wid)
        alert_query = alert_query.where(ReorderAlert.wid == wid)

    return {
        "total_items": len(rows),
        "total_on_hand": sum(row.on_hand for row in rows),
        "total_reserved": sum(row.reserved for row in rows),
        "total_available": sum(row.available for row in rows),
        "by_status": by_status,
        "active_reservations": (await session.execute(reservation_query)).scalar_one(),
        "open_alerts": (await session.execute(alert_query)).scalar_one(),
    }
