"""
Stock Engine — the only writer of inventory rows.

Every mutation follows the same path:

    lock row -> read -> validate -> Cost Engine -> update row
    -> append ledger -> commit -> publish StockChanged + MovementLogged

Serialization comes from the store's row lock alone. A ConcurrencyConflict
(lock timeout, deadlock, unique-key race) retries the whole transaction
with exponential backoff; other errors surface immediately.

Issues draw on ``available`` only. Reserved units leave through
ReservationManager.consume.
"""

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, TypeVar

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.clock import SystemClock, utcnow
from core.config import Settings
from core.errors import (
    ConcurrencyConflict,
    InsufficientLayers,
    InsufficientStock,
    InvalidDelta,
    InventoryError,
    UnknownRow,
)
from db.models import InventoryRow, LedgerEntry, Reservation
from db.store import Store, create_row, lock_row, lock_rows
from inventory import cost_engine, ledger
from inventory.cost_engine import ConsumptionResult
from inventory.costing import CostMethod, parse_method, quantize_cost
from inventory.ledger import MovementKind
from realtime.bus import ChangeBus
from realtime.events import ChangeEvent, MovementLogged, ReservationChanged, StockChanged

logger = structlog.get_logger()

T = TypeVar("T")

Work = Callable[[AsyncSession, list[ChangeEvent]], Awaitable[T]]


@dataclass
class BulkItem:
    pid: uuid.UUID
    wid: uuid.UUID
    delta: int
    kind: str
    unit_cost: Decimal | None = None
    reference: str | None = None
    reason: str | None = None
    cost_method: str | None = None


@dataclass
class BulkResult:
    index: int
    pid: uuid.UUID
    wid: uuid.UUID
    success: bool
    entry: LedgerEntry | None = None
    error: dict[str, Any] | None = None


# ─── Event builders ─────────────────────────────────────────────────────────


def stock_changed(row: InventoryRow, ledger_id: int | None, kind: str | None = None) -> StockChanged:
    return StockChanged(
        pid=row.pid,
        wid=row.wid,
        ledger_id=ledger_id,
        at=(row.last_movement_at if ledger_id is not None else None) or utcnow(),
        on_hand=row.on_hand,
        reserved=row.reserved,
        available=row.available,
        weighted_avg_cost=row.weighted_avg_cost,
        reorder_point=row.reorder_point or 0,
        reorder_quantity=row.reorder_quantity or 0,
        max_stock=row.max_stock,
        kind=kind,
    )


def movement_logged(entry: LedgerEntry) -> MovementLogged:
    return MovementLogged(
        pid=entry.pid,
        wid=entry.wid,
        ledger_id=entry.id,
        at=entry.at,
        kind=entry.kind,
        qty_delta=entry.qty_delta,
        on_hand_before=entry.on_hand_before,
        on_hand_after=entry.on_hand_after,
        unit_cost=entry.unit_cost_applied,
        total_cost=entry.total_cost,
        reference=entry.reference,
        related_entry_id=entry.related_entry_id,
        actor=entry.actor,
    )


def reservation_changed(row: InventoryRow, reservation: Reservation, ledger_id: int | None) -> ReservationChanged:
    return ReservationChanged(
        pid=row.pid,
        wid=row.wid,
        ledger_id=ledger_id,
        reservation_id=reservation.id,
        status=reservation.status,
        qty=reservation.qty,
        reference=reservation.reference,
        reserved=row.reserved,
        available=row.available,
    )


# ─── Validation ─────────────────────────────────────────────────────────────


def _check_quantity(value: Any, name: str = "delta") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidDelta(f"{name} must be an integer", value=repr(value))
    return value


def _check_cost(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        cost = quantize_cost(value)
    except (InvalidOperation, ValueError):
        raise InvalidDelta("unit_cost must be a decimal amount", unit_cost=repr(value)) from None
    if cost < 0:
        raise InvalidDelta("unit_cost must not be negative", unit_cost=str(cost))
    return cost


def validate_movement(delta: Any, kind: str | MovementKind) -> MovementKind:
    """Check the delta/kind pairing accepted by apply_delta."""
    delta = _check_quantity(delta)
    try:
        kind = MovementKind(kind)
    except ValueError:
        raise InvalidDelta(f"Unknown movement kind '{kind}'", kind=str(kind)) from None

    if delta == 0:
        raise InvalidDelta("delta must be non-zero")
    if delta > 0 and kind not in (MovementKind.RECEIVE, MovementKind.ADJUST_UP):
        raise InvalidDelta(f"Positive delta is not valid for '{kind.value}'", kind=kind.value, delta=delta)
    if delta < 0 and kind not in (MovementKind.ISSUE, MovementKind.ADJUST_DOWN):
        raise InvalidDelta(f"Negative delta is not valid for '{kind.value}'", kind=kind.value, delta=delta)
    return kind


class StockEngine:
    """Applies stock movements under a row lock and publishes them after commit."""

    def __init__(self, store: Store, bus: ChangeBus, settings: Settings, clock=None):
        self.store = store
        self.bus = bus
        self.settings = settings
        self.clock = clock or SystemClock()

    # ── Transaction runner ──────────────────────────────────────────

    async def transact(self, operation: str, work: Work, **context: Any) -> T:
        """
        Run ``work(session, events)`` in one transaction, retrying conflicts.

        Events collected by ``work`` are published only after commit.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.concurrency_max_retries + 1),
            wait=wait_exponential(
                multiplier=self.settings.concurrency_backoff_base_seconds,
                max=self.settings.concurrency_backoff_max_seconds,
            ),
            retry=retry_if_exception_type(ConcurrencyConflict),
            before_sleep=self._log_retry(operation, context),
            reraise=True,
        )
        events: list[ChangeEvent] = []
        try:
            async for attempt in retrying:
                with attempt:
                    events = []
                    async with self.store.begin() as session:
                        value = await work(session, events)
        except InsufficientLayers as exc:
            logger.critical("cost.layers_exhausted", operation=operation, **exc.details)
            detail = {k: v for k, v in exc.details.items() if k not in ("pid", "wid")}
            await self.store.record_incident(
                "insufficient_layers",
                pid=_as_uuid(exc.details.get("pid")),
                wid=_as_uuid(exc.details.get("wid")),
                operation=operation,
                message=exc.message,
                **detail,
            )
            raise
        except ConcurrencyConflict:
            logger.warning("stock.conflict_exhausted", operation=operation, **_log_safe(context))
            raise

        self.bus.publish_all(events)
        return value

    @staticmethod
    def _log_retry(operation: str, context: dict[str, Any]) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            logger.info(
                "stock.retrying",
                operation=operation,
                attempt=retry_state.attempt_number,
                **_log_safe(context),
            )

        return before_sleep

    # ── Public operations ───────────────────────────────────────────

    async def apply_delta(
        self,
        pid: uuid.UUID,
        wid: uuid.UUID,
        delta: int,
        kind: str | MovementKind,
        unit_cost: Decimal | None = None,
        reference: str | None = None,
        actor: str = "system",
        reason: str | None = None,
        cost_method: str | None = None,
    ) -> LedgerEntry:
        kind = validate_movement(delta, kind)
        unit_cost = _check_cost(unit_cost)
        method = parse_method(cost_method) if cost_method else None
        if kind == MovementKind.RECEIVE and unit_cost is None:
            raise InvalidDelta("unit_cost is required for receipts")

        async def work(session: AsyncSession, events: list[ChangeEvent]) -> LedgerEntry:
            return await self._apply_locked(
                session, events, pid, wid, delta, kind, unit_cost, reference, actor, reason, method
            )

        entry = await self.transact("apply_delta", work, pid=pid, wid=wid, delta=delta, kind=kind.value)
        logger.info(
            "stock.applied",
            pid=str(pid),
            wid=str(wid),
            kind=kind.value,
            delta=delta,
            ledger_id=entry.id,
            on_hand=entry.on_hand_after,
            actor=actor,
        )
        return entry

    async def set_on_hand(
        self,
        pid: uuid.UUID,
        wid: uuid.UUID,
        new_qty: int,
        unit_cost: Decimal | None = None,
        reason: str | None = None,
        actor: str = "system",
        reference: str | None = None,
    ) -> LedgerEntry | None:
        """Physical count. Applies the difference as adjust+/adjust-; None when nothing changed."""
        new_qty = _check_quantity(new_qty, "new_qty")
        if new_qty < 0:
            raise InvalidDelta("Counted quantity must not be negative", new_qty=new_qty)
        unit_cost = _check_cost(unit_cost)

        async def work(session: AsyncSession, events: list[ChangeEvent]) -> LedgerEntry | None:
            row = await lock_row(session, pid, wid)
            if row is None:
                if new_qty == 0:
                    return None
                row = await create_row(session, pid, wid, self._default_method().value)

            delta = new_qty - row.on_hand
            if delta == 0:
                return None
            if delta > 0:
                cost = unit_cost if unit_cost is not None else row.weighted_avg_cost
                return await self.receive_locked(
                    session, events, row, [(delta, cost)], MovementKind.ADJUST_UP,
                    actor=actor, reference=reference, reason=reason or "physical count",
                )

            shortfall = -delta - row.available
            if shortfall > 0:
                if not self.settings.allow_adjust_into_reserved:
                    raise InsufficientStock(
                        f"Count of {new_qty} is below reserved quantity {row.reserved}",
                        requested=-delta,
                        available=row.available,
                        reserved=row.reserved,
                    )
                await self._shrink_reservations(session, events, row, shortfall, actor)
            return await self.consume_locked(
                session, events, row, -delta, MovementKind.ADJUST_DOWN,
                actor=actor, reference=reference, reason=reason or "physical count",
            )

        entry = await self.transact("set_on_hand", work, pid=pid, wid=wid, new_qty=new_qty)
        if entry is not None:
            logger.info(
                "stock.counted",
                pid=str(pid),
                wid=str(wid),
                new_qty=new_qty,
                delta=entry.qty_delta,
                ledger_id=entry.id,
                actor=actor,
            )
        return entry

    async def set_policy(
        self,
        pid: uuid.UUID,
        wid: uuid.UUID,
        reorder_point: int | None = None,
        reorder_quantity: int | None = None,
        max_stock: int | None = None,
        cost_method: str | None = None,
        actor: str = "system",
    ) -> InventoryRow:
        """Update reorder policy and costing method, creating the row if needed."""
        for name, value in (
            ("reorder_point", reorder_point),
            ("reorder_quantity", reorder_quantity),
            ("max_stock", max_stock),
        ):
            if value is not None and _check_quantity(value, name) < 0:
                raise InvalidDelta(f"{name} must not be negative", **{name: value})
        method = parse_method(cost_method) if cost_method else None

        async def work(session: AsyncSession, events: list[ChangeEvent]) -> InventoryRow:
            row = await lock_row(session, pid, wid)
            if row is None:
                row = await create_row(session, pid, wid, self._default_method().value)
            if reorder_point is not None:
                row.reorder_point = reorder_point
            if reorder_quantity is not None:
                row.reorder_quantity = reorder_quantity
            if max_stock is not None:
                row.max_stock = max_stock
            if method is not None:
                row.cost_method = method.value
            await session.flush()
            events.append(stock_changed(row, None, kind="policy"))
            return row

        row = await self.transact("set_policy", work, pid=pid, wid=wid)
        logger.info(
            "stock.policy_updated",
            pid=str(pid),
            wid=str(wid),
            reorder_point=row.reorder_point,
            reorder_quantity=row.reorder_quantity,
            max_stock=row.max_stock,
            cost_method=row.cost_method,
            actor=actor,
        )
        return row

    async def bulk_apply(self, updates: list[BulkItem], actor: str = "system", atomic: bool = False) -> list[BulkResult]:
        """
        Apply many movements.

        Non-atomic: each item is its own transaction and failures are
        reported per item. Atomic: one transaction that locks every row in
        (pid, wid) order up front; any failure rolls back the batch.
        """
        if not atomic:
            results = []
            for index, item in enumerate(updates):
                try:
                    entry = await self.apply_delta(
                        item.pid, item.wid, item.delta, item.kind, item.unit_cost,
                        item.reference, actor, item.reason, item.cost_method,
                    )
                    results.append(BulkResult(index, item.pid, item.wid, True, entry=entry))
                except InventoryError as exc:
                    results.append(BulkResult(index, item.pid, item.wid, False, error=exc.to_dict()))
            logger.info(
                "stock.bulk_applied",
                atomic=False,
                total=len(results),
                failed=sum(1 for r in results if not r.success),
                actor=actor,
            )
            return results

        prepared = []
        for item in updates:
            kind = validate_movement(item.delta, item.kind)
            unit_cost = _check_cost(item.unit_cost)
            if kind == MovementKind.RECEIVE and unit_cost is None:
                raise InvalidDelta("unit_cost is required for receipts", pid=str(item.pid), wid=str(item.wid))
            method = parse_method(item.cost_method) if item.cost_method else None
            prepared.append((item, kind, unit_cost, method))

        async def work(session: AsyncSession, events: list[ChangeEvent]) -> list[BulkResult]:
            await lock_rows(session, [(item.pid, item.wid) for item in updates])
            results = []
            for index, (item, kind, unit_cost, method) in enumerate(prepared):
                entry = await self._apply_locked(
                    session, events, item.pid, item.wid, item.delta, kind,
                    unit_cost, item.reference, actor, item.reason, method,
                )
                results.append(BulkResult(index, item.pid, item.wid, True, entry=entry))
            return results

        results = await self.transact("bulk_apply", work, items=len(updates))
        logger.info("stock.bulk_applied", atomic=True, total=len(results), actor=actor)
        return results

    # ── Locked-row building blocks ──────────────────────────────────
    # Callers hold the row lock inside an open transaction.

    async def receive_locked(
        self,
        session: AsyncSession,
        events: list[ChangeEvent],
        row: InventoryRow,
        slices: list[tuple[int, Decimal]],
        kind: MovementKind,
        actor: str = "system",
        reference: str | None = None,
        reason: str | None = None,
        related_entry_id: int | None = None,
    ) -> LedgerEntry:
        now = self.clock.now()
        receipt = await cost_engine.receive(session, row, slices, now)
        before = row.on_hand
        row.on_hand = before + receipt.qty
        row.available = row.on_hand - row.reserved
        row.weighted_avg_cost = receipt.weighted_avg_cost
        row.last_movement_at = now

        entry = await ledger.append(
            session,
            pid=row.pid,
            wid=row.wid,
            kind=kind,
            qty_delta=receipt.qty,
            on_hand_before=before,
            on_hand_after=row.on_hand,
            at=now,
            actor=actor,
            unit_cost=receipt.unit_cost,
            total_cost=receipt.total_cost,
            cost_slices=receipt.slices,
            reference=reference,
            reason=reason,
            related_entry_id=related_entry_id,
        )
        for layer in receipt.layers:
            layer.source_ledger_id = entry.id
        events.append(stock_changed(row, entry.id, kind=entry.kind))
        events.append(movement_logged(entry))
        return entry

    async def consume_locked(
        self,
        session: AsyncSession,
        events: list[ChangeEvent],
        row: InventoryRow,
        qty: int,
        kind: MovementKind,
        method: CostMethod | None = None,
        actor: str = "system",
        reference: str | None = None,
        reason: str | None = None,
        reservation_id: uuid.UUID | None = None,
    ) -> LedgerEntry:
        entry, _ = await self.consume_locked_with_cost(
            session, events, row, qty, kind, method, actor, reference, reason, reservation_id
        )
        return entry

    async def consume_locked_with_cost(
        self,
        session: AsyncSession,
        events: list[ChangeEvent],
        row: InventoryRow,
        qty: int,
        kind: MovementKind,
        method: CostMethod | None = None,
        actor: str = "system",
        reference: str | None = None,
        reason: str | None = None,
        reservation_id: uuid.UUID | None = None,
    ) -> tuple[LedgerEntry, ConsumptionResult]:
        if qty > row.available:
            raise InsufficientStock(
                f"Requested {qty} units but only {row.available} available",
                pid=str(row.pid),
                wid=str(row.wid),
                requested=qty,
                available=row.available,
            )
        method = method or parse_method(row.cost_method, self.settings.default_cost_method)
        now = self.clock.now()
        consumed = await cost_engine.consume(session, row, qty, method)
        before = row.on_hand
        row.on_hand = before - qty
        row.available = row.on_hand - row.reserved
        row.weighted_avg_cost = consumed.weighted_avg_cost
        row.last_movement_at = now

        entry = await ledger.append(
            session,
            pid=row.pid,
            wid=row.wid,
            kind=kind,
            qty_delta=-qty,
            on_hand_before=before,
            on_hand_after=row.on_hand,
            at=now,
            actor=actor,
            unit_cost=consumed.unit_cost,
            total_cost=consumed.total_cost,
            cost_method=method.value,
            cost_slices=consumed.slices,
            reference=reference,
            reason=reason,
            reservation_id=reservation_id,
        )
        events.append(stock_changed(row, entry.id, kind=entry.kind))
        events.append(movement_logged(entry))
        return entry, consumed

    async def _apply_locked(
        self,
        session: AsyncSession,
        events: list[ChangeEvent],
        pid: uuid.UUID,
        wid: uuid.UUID,
        delta: int,
        kind: MovementKind,
        unit_cost: Decimal | None,
        reference: str | None,
        actor: str,
        reason: str | None,
        method: CostMethod | None,
    ) -> LedgerEntry:
        row = await lock_row(session, pid, wid)
        if row is None:
            if delta < 0:
                raise UnknownRow("No inventory row for product in warehouse", pid=str(pid), wid=str(wid))
            row = await create_row(session, pid, wid, (method or self._default_method()).value)

        if delta > 0:
            cost = unit_cost if unit_cost is not None else row.weighted_avg_cost
            return await self.receive_locked(
                session, events, row, [(delta, cost)], kind,
                actor=actor, reference=reference, reason=reason,
            )
        return await self.consume_locked(
            session, events, row, -delta, kind, method,
            actor=actor, reference=reference, reason=reason,
        )

    async def _shrink_reservations(
        self,
        session: AsyncSession,
        events: list[ChangeEvent],
        row: InventoryRow,
        shortfall: int,
        actor: str,
    ) -> None:
        """Release ``shortfall`` reserved units, newest reservations first."""
        result = await session.execute(
            select(Reservation)
            .where(Reservation.pid == row.pid, Reservation.wid == row.wid, Reservation.status == "active")
            .order_by(Reservation.created_at.desc())
            .with_for_update()
        )
        now = self.clock.now()
        for reservation in result.scalars().all():
            if shortfall <= 0:
                break
            take = min(reservation.qty, shortfall)
            shortfall -= take
            if take == reservation.qty:
                reservation.status = "released"
                reservation.closed_at = now
            else:
                reservation.qty -= take
            row.reserved -= take
            row.available = row.on_hand - row.reserved
            entry = await ledger.append(
                session,
                pid=row.pid,
                wid=row.wid,
                kind=MovementKind.RELEASE,
                qty_delta=-take,
                on_hand_before=row.on_hand,
                on_hand_after=row.on_hand,
                at=now,
                actor=actor,
                reference=reservation.reference,
                reason="count below reserved quantity",
                reservation_id=reservation.id,
            )
            events.append(reservation_changed(row, reservation, entry.id))
            logger.warning(
                "reservation.shrunk_by_count",
                reservation_id=str(reservation.id),
                released=take,
                status=reservation.status,
            )

    def _default_method(self) -> CostMethod:
        return parse_method(self.settings.default_cost_method)


def _as_uuid(value: Any) -> uuid.UUID | None:
    if value is None:
        return None
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _log_safe(context: dict[str, Any]) -> dict[str, Any]:
    return {k: str(v) if isinstance(v, uuid.UUID) else v for k, v in context.items()}
