"""
Cost Engine — cost layers for a locked inventory row.

Runs inside the Stock Engine transaction after the row lock is held. Owns
the cost_layers table; the Stock Engine applies the returned weighted
average cost to the row.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import InsufficientLayers
from db.models import CostLayer, InventoryRow
from inventory.costing import (
    ZERO,
    ConsumptionPlan,
    CostMethod,
    order_layers,
    plan_consumption,
    quantize_cost,
    receive_average,
    recompute_average,
)

logger = structlog.get_logger()


@dataclass
class ReceiptResult:
    layers: list[CostLayer]
    slices: list[tuple[int, Decimal]]
    total_cost: Decimal
    weighted_avg_cost: Decimal

    @property
    def qty(self) -> int:
        return sum(qty for qty, _ in self.slices)

    @property
    def unit_cost(self) -> Decimal:
        if self.qty == 0:
            return ZERO
        return quantize_cost(self.total_cost / Decimal(self.qty))


@dataclass
class ConsumptionResult:
    plan: ConsumptionPlan
    weighted_avg_cost: Decimal

    @property
    def total_cost(self) -> Decimal:
        return self.plan.total_cost

    @property
    def unit_cost(self) -> Decimal:
        return self.plan.unit_cost

    @property
    def slices(self) -> list[tuple[int, Decimal]]:
        return self.plan.cost_slices()


async def load_layers(session: AsyncSession, row: InventoryRow) -> list[CostLayer]:
    """Live layers for the row in FIFO order."""
    result = await session.execute(
        select(CostLayer)
        .where(CostLayer.pid == row.pid, CostLayer.wid == row.wid, CostLayer.remaining_qty > 0)
        .order_by(CostLayer.received_at, CostLayer.id)
    )
    return list(result.scalars().all())


async def receive(
    session: AsyncSession,
    row: InventoryRow,
    slices: Sequence[tuple[int, Decimal]],
    at: datetime,
) -> ReceiptResult:
    """
    Create one layer per (qty, unit_cost) slice.

    A plain receipt is a single slice. Transfer-in receipts carry one slice
    per layer consumed at the source so the destination keeps source costs.
    """
    slices = [(int(qty), quantize_cost(cost)) for qty, cost in slices if qty > 0]
    layers = []
    for qty, unit_cost in slices:
        layer = CostLayer(
            pid=row.pid,
            wid=row.wid,
            received_at=at,
            original_qty=qty,
            remaining_qty=qty,
            unit_cost=unit_cost,
        )
        session.add(layer)
        layers.append(layer)
    await session.flush()

    total_cost = quantize_cost(sum((Decimal(qty) * cost for qty, cost in slices), ZERO))
    new_wac = receive_average(row.on_hand, row.weighted_avg_cost or ZERO, slices)
    return ReceiptResult(layers=layers, slices=slices, total_cost=total_cost, weighted_avg_cost=new_wac)


async def consume(
    session: AsyncSession,
    row: InventoryRow,
    qty: int,
    method: CostMethod,
) -> ConsumptionResult:
    """
    Draw ``qty`` units from the row's layers.

    FIFO/LIFO cost is the sum of the drawn layers and the average is
    recomputed from what remains. AVERAGE costs at the current average and
    leaves it unchanged. Raises InsufficientLayers when the layers cannot
    cover ``qty``; the caller treats that as an incident.
    """
    layers = await load_layers(session, row)
    wac = row.weighted_avg_cost or ZERO
    try:
        plan = plan_consumption(layers, qty, method, wac)
    except InsufficientLayers as exc:
        exc.details.update(pid=str(row.pid), wid=str(row.wid), on_hand=row.on_hand, method=method.value)
        raise

    by_id = {layer.id: layer for layer in layers}
    for draw in plan.draws:
        layer = by_id[draw.layer_id]
        layer.remaining_qty -= draw.qty
        if layer.remaining_qty == 0:
            await session.delete(layer)

    remaining = [layer for layer in order_layers(layers, CostMethod.FIFO) if layer.remaining_qty > 0]
    if method == CostMethod.AVERAGE:
        new_wac = wac
    else:
        new_wac = recompute_average(remaining, wac)

    logger.debug(
        "cost.consumed",
        pid=str(row.pid),
        wid=str(row.wid),
        method=method.value,
        qty=qty,
        total_cost=str(plan.total_cost),
        layers_touched=len(plan.draws),
    )
    return ConsumptionResult(plan=plan, weighted_avg_cost=new_wac)
