"""
Costing: pure cost-layer arithmetic for FIFO, LIFO and weighted average.

No I/O. Used by the Cost Engine against persisted layers and by ledger
replay against in-memory layers, so both paths produce identical numbers.

Layer ordering:
  FIFO:    (received_at, id) ascending
  LIFO:    (received_at, id) descending
  AVERAGE: units are drawn oldest-first for bookkeeping only; the cost
           applied is the row's weighted average cost.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Protocol, Sequence

from core.errors import InsufficientLayers, UnknownMethod

COST_QUANTUM = Decimal("0.000001")
ZERO = Decimal("0")


class CostMethod(str, Enum):
    FIFO = "FIFO"
    LIFO = "LIFO"
    AVERAGE = "AVERAGE"


def parse_method(value: str | CostMethod | None, default: str | CostMethod = CostMethod.FIFO) -> CostMethod:
    """Normalize a method name; raises UnknownMethod for anything unsupported."""
    if value is None or value == "":
        value = default
    if isinstance(value, CostMethod):
        return value
    try:
        return CostMethod(str(value).strip().upper())
    except ValueError:
        raise UnknownMethod(f"Unknown costing method '{value}'", method=str(value)) from None


def quantize_cost(value: Decimal | int | str | float) -> Decimal:
    """Round a monetary amount to the published precision (6 fractional digits)."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


def weighted_average(old_qty: int, old_wac: Decimal, qty: int, unit_cost: Decimal) -> Decimal:
    """Weighted average cost after receiving ``qty`` units at ``unit_cost``."""
    total_qty = old_qty + qty
    if total_qty <= 0:
        return quantize_cost(unit_cost)
    total_value = Decimal(old_qty) * old_wac + Decimal(qty) * unit_cost
    return quantize_cost(total_value / Decimal(total_qty))


def receive_average(old_qty: int, old_wac: Decimal, slices: Sequence[tuple[int, Decimal]]) -> Decimal:
    """Weighted average after a receipt made of one or more (qty, unit_cost) slices."""
    if len(slices) == 1:
        qty, unit_cost = slices[0]
        return weighted_average(old_qty, old_wac, qty, unit_cost)
    total_qty = old_qty + sum(qty for qty, _ in slices)
    if total_qty <= 0:
        return old_wac
    total_value = Decimal(old_qty) * old_wac + sum((Decimal(qty) * cost for qty, cost in slices), ZERO)
    return quantize_cost(total_value / Decimal(total_qty))


def encode_slices(slices: Sequence[tuple[int, Decimal]]) -> list[list]:
    """JSON form stored in LedgerEntry.cost_detail."""
    return [[int(qty), str(quantize_cost(cost))] for qty, cost in slices]


def decode_slices(detail: Sequence[Sequence] | None) -> list[tuple[int, Decimal]]:
    return [(int(qty), quantize_cost(Decimal(str(cost)))) for qty, cost in (detail or [])]


class LayerLike(Protocol):
    id: int
    received_at: datetime
    remaining_qty: int
    unit_cost: Decimal


@dataclass(frozen=True)
class LayerDraw:
    """Units taken from one layer by a consumption."""

    layer_id: int
    qty: int
    unit_cost: Decimal

    @property
    def cost(self) -> Decimal:
        return Decimal(self.qty) * self.unit_cost


@dataclass(frozen=True)
class ConsumptionPlan:
    method: CostMethod
    qty: int
    draws: tuple[LayerDraw, ...]
    total_cost: Decimal

    @property
    def unit_cost(self) -> Decimal:
        if self.qty == 0:
            return ZERO
        return quantize_cost(self.total_cost / Decimal(self.qty))

    def cost_slices(self) -> list[tuple[int, Decimal]]:
        """(qty, unit_cost) slices in the order they were drawn, merging equal costs."""
        slices: list[tuple[int, Decimal]] = []
        for draw in self.draws:
            unit = draw.unit_cost if self.method != CostMethod.AVERAGE else self.unit_cost
            if slices and slices[-1][1] == unit:
                slices[-1] = (slices[-1][0] + draw.qty, unit)
            else:
                slices.append((draw.qty, unit))
        return slices


def order_layers(layers: Sequence[LayerLike], method: CostMethod) -> list[LayerLike]:
    live = [layer for layer in layers if layer.remaining_qty > 0]
    ordered = sorted(live, key=lambda layer: (layer.received_at, layer.id))
    if method == CostMethod.LIFO:
        ordered.reverse()
    return ordered


def plan_consumption(
    layers: Sequence[LayerLike],
    qty: int,
    method: CostMethod,
    weighted_avg_cost: Decimal = ZERO,
) -> ConsumptionPlan:
    """
    Decide which layers to draw ``qty`` units from.

    Does not mutate the layers; the caller applies the draws.
    Raises InsufficientLayers when the layers hold fewer than ``qty`` units.
    """
    if qty <= 0:
        raise ValueError("consumption quantity must be positive")

    available = sum(layer.remaining_qty for layer in layers if layer.remaining_qty > 0)
    if available < qty:
        raise InsufficientLayers(
            f"Cost layers hold {available} units, {qty} requested",
            layer_units=available,
            requested=qty,
        )

    # AVERAGE books units against the oldest layers.
    walk_method = CostMethod.FIFO if method == CostMethod.AVERAGE else method
    draws: list[LayerDraw] = []
    outstanding = qty
    for layer in order_layers(layers, walk_method):
        if outstanding == 0:
            break
        take = min(layer.remaining_qty, outstanding)
        draws.append(LayerDraw(layer_id=layer.id, qty=take, unit_cost=layer.unit_cost))
        outstanding -= take

    if method == CostMethod.AVERAGE:
        total = quantize_cost(Decimal(qty) * weighted_avg_cost)
    else:
        total = quantize_cost(sum((draw.cost for draw in draws), ZERO))

    return ConsumptionPlan(method=method, qty=qty, draws=tuple(draws), total_cost=total)


def layer_value(layers: Sequence[LayerLike]) -> Decimal:
    """Σ remaining_qty × unit_cost."""
    return quantize_cost(sum((Decimal(layer.remaining_qty) * layer.unit_cost for layer in layers), ZERO))


def recompute_average(layers: Sequence[LayerLike], fallback: Decimal) -> Decimal:
    """Weighted average of the remaining layers; ``fallback`` when nothing remains."""
    units = sum(layer.remaining_qty for layer in layers if layer.remaining_qty > 0)
    if units <= 0:
        return fallback
    return quantize_cost(layer_value(layers) / Decimal(units))
