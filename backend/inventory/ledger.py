"""
Ledger — append-only record of every stock movement.

Entries are written inside the mutating transaction and never updated. The
ledger is the recovery oracle: ``replay`` rebuilds a row's on-hand, reserved,
weighted average cost and cost layers from nothing, using the same costing
functions as the Cost Engine.

Kinds:
  receive, adjust+, transfer-in    inbound, qty_delta > 0, creates layers
  issue, adjust-, transfer-out     outbound, qty_delta < 0, consumes layers
  reserve, release                 qty_delta is the signed change of reserved
"""

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import LedgerEntry
from inventory.costing import (
    ZERO,
    CostMethod,
    decode_slices,
    encode_slices,
    plan_consumption,
    receive_average,
    recompute_average,
)


class MovementKind(str, Enum):
    RECEIVE = "receive"
    ISSUE = "issue"
    ADJUST_UP = "adjust+"
    ADJUST_DOWN = "adjust-"
    TRANSFER_OUT = "transfer-out"
    TRANSFER_IN = "transfer-in"
    RESERVE = "reserve"
    RELEASE = "release"


INBOUND_KINDS = frozenset({MovementKind.RECEIVE, MovementKind.ADJUST_UP, MovementKind.TRANSFER_IN})
OUTBOUND_KINDS = frozenset({MovementKind.ISSUE, MovementKind.ADJUST_DOWN, MovementKind.TRANSFER_OUT})
RESERVATION_KINDS = frozenset({MovementKind.RESERVE, MovementKind.RELEASE})


async def append(
    session: AsyncSession,
    *,
    pid: uuid.UUID,
    wid: uuid.UUID,
    kind: MovementKind,
    qty_delta: int,
    on_hand_before: int,
    on_hand_after: int,
    at: datetime,
    actor: str = "system",
    unit_cost: Decimal | None = None,
    total_cost: Decimal | None = None,
    cost_method: str | None = None,
    cost_slices: Sequence[tuple[int, Decimal]] = (),
    reference: str | None = None,
    reason: str | None = None,
    related_entry_id: int | None = None,
    reservation_id: uuid.UUID | None = None,
) -> LedgerEntry:
    """Insert one entry in the current transaction; the id is assigned at flush."""
    entry = LedgerEntry(
        at=at,
        pid=pid,
        wid=wid,
        kind=MovementKind(kind).value,
        qty_delta=qty_delta,
        unit_cost_applied=unit_cost,
        total_cost=total_cost,
        cost_method=cost_method,
        on_hand_before=on_hand_before,
        on_hand_after=on_hand_after,
        reference=reference,
        related_entry_id=related_entry_id,
        reservation_id=reservation_id,
        cost_detail=encode_slices(cost_slices),
        actor=actor,
        reason=reason,
    )
    session.add(entry)
    await session.flush()
    return entry


# ─── Queries ────────────────────────────────────────────────────────────────


@dataclass
class LedgerFilter:
    pid: uuid.UUID | None = None
    wid: uuid.UUID | None = None
    kind: str | None = None
    reference: str | None = None
    actor: str | None = None
    start: datetime | None = None
    end: datetime | None = None


async def by_product(
    session: AsyncSession,
    pid: uuid.UUID,
    wid: uuid.UUID,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[LedgerEntry]:
    """Entries for one (pid, wid) in commit order."""
    query = select(LedgerEntry).where(LedgerEntry.pid == pid, LedgerEntry.wid == wid)
    if start is not None:
        query = query.where(LedgerEntry.at >= start)
    if end is not None:
        query = query.where(LedgerEntry.at <= end)
    result = await session.execute(query.order_by(LedgerEntry.id))
    return list(result.scalars().all())


async def by_reference(session: AsyncSession, reference: str) -> list[LedgerEntry]:
    result = await session.execute(
        select(LedgerEntry).where(LedgerEntry.reference == reference).order_by(LedgerEntry.id)
    )
    return list(result.scalars().all())


async def search(
    session: AsyncSession,
    filters: LedgerFilter,
    offset: int = 0,
    limit: int = 100,
) -> list[LedgerEntry]:
    """Newest first."""
    query = select(LedgerEntry)
    if filters.pid is not None:
        query = query.where(LedgerEntry.pid == filters.pid)
    if filters.wid is not None:
        query = query.where(LedgerEntry.wid == filters.wid)
    if filters.kind:
        query = query.where(LedgerEntry.kind == filters.kind)
    if filters.reference:
        query = query.where(LedgerEntry.reference == filters.reference)
    if filters.actor:
        query = query.where(LedgerEntry.actor == filters.actor)
    if filters.start is not None:
        query = query.where(LedgerEntry.at >= filters.start)
    if filters.end is not None:
        query = query.where(LedgerEntry.at <= filters.end)
    result = await session.execute(query.order_by(LedgerEntry.id.desc()).offset(offset).limit(limit))
    return list(result.scalars().all())


# ─── Replay ─────────────────────────────────────────────────────────────────


@dataclass
class ReplayLayer:
    id: int
    received_at: datetime
    remaining_qty: int
    unit_cost: Decimal


@dataclass
class ReplayState:
    on_hand: int = 0
    reserved: int = 0
    weighted_avg_cost: Decimal = ZERO
    layers: list[ReplayLayer] = field(default_factory=list)
    last_entry_id: int | None = None

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved

    def layer_tuples(self) -> list[tuple[int, Decimal]]:
        ordered = sorted(self.layers, key=lambda layer: (layer.received_at, layer.id))
        return [(layer.remaining_qty, layer.unit_cost) for layer in ordered]


def replay(entries: Iterable[LedgerEntry]) -> ReplayState:
    """
    Rebuild one row's state from its entries, oldest first.

    Raises InsufficientLayers if the entries consume more than they received,
    which means the ledger itself is inconsistent.
    """
    state = ReplayState()
    next_layer_id = 1

    for entry in sorted(entries, key=lambda e: e.id):
        kind = MovementKind(entry.kind)
        state.last_entry_id = entry.id

        if kind in RESERVATION_KINDS:
            state.reserved += entry.qty_delta
            continue

        if kind in INBOUND_KINDS:
            slices = decode_slices(entry.cost_detail)
            if not slices:
                slices = [(entry.qty_delta, entry.unit_cost_applied or ZERO)]
            state.weighted_avg_cost = receive_average(state.on_hand, state.weighted_avg_cost, slices)
            for qty, unit_cost in slices:
                state.layers.append(ReplayLayer(next_layer_id, entry.at, qty, unit_cost))
                next_layer_id += 1
            state.on_hand += entry.qty_delta
            continue

        method = CostMethod(entry.cost_method or CostMethod.FIFO.value)
        plan = plan_consumption(state.layers, -entry.qty_delta, method, state.weighted_avg_cost)
        by_id = {layer.id: layer for layer in state.layers}
        for draw in plan.draws:
            by_id[draw.layer_id].remaining_qty -= draw.qty
        state.layers = [layer for layer in state.layers if layer.remaining_qty > 0]
        if method != CostMethod.AVERAGE:
            state.weighted_avg_cost = recompute_average(state.layers, state.weighted_avg_cost)
        state.on_hand += entry.qty_delta

    return state
