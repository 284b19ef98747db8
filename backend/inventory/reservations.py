"""
Reservation Manager — holds stock against an external reference.

Lifecycle:
  active -> released   (release, or a physical count below reserved)
  active -> consumed   (consume: release + issue in one transaction)
  active -> expired    (expiry sweep once expires_at has passed)

Lock order is always the inventory row first, then the reservation.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import (
    AlreadyTerminal,
    InsufficientAvailable,
    InvalidDelta,
    InventoryError,
    NotFound,
    UnknownRow,
)
from db.models import InventoryRow, LedgerEntry, Reservation
from db.store import lock_row
from inventory import ledger
from inventory.ledger import MovementKind
from inventory.stock_engine import StockEngine, reservation_changed, stock_changed
from realtime.events import ChangeEvent

logger = structlog.get_logger()


@dataclass
class ReleaseResult:
    reservation: Reservation
    released: bool


class ReservationManager:
    def __init__(self, engine: StockEngine):
        self.engine = engine
        self.store = engine.store
        self.settings = engine.settings
        self.clock = engine.clock

    async def reserve(
        self,
        pid: uuid.UUID,
        wid: uuid.UUID,
        qty: int,
        reference: str,
        expires_at: datetime | None = None,
        reason: str | None = None,
        actor: str = "system",
    ) -> Reservation:
        if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
            raise InvalidDelta("Reservation quantity must be a positive integer", qty=repr(qty))
        if not reference:
            raise InvalidDelta("Reservation reference is required")
        if expires_at is None and self.settings.reservation_default_ttl_seconds:
            expires_at = self.clock.now() + timedelta(seconds=self.settings.reservation_default_ttl_seconds)

        async def work(session: AsyncSession, events: list[ChangeEvent]) -> Reservation:
            row = await lock_row(session, pid, wid)
            if row is None:
                raise UnknownRow("No inventory row for product in warehouse", pid=str(pid), wid=str(wid))
            if qty > row.available:
                raise InsufficientAvailable(
                    f"Cannot reserve {qty} units, only {row.available} available",
                    requested=qty,
                    available=row.available,
                )

            now = self.clock.now()
            row.reserved += qty
            row.available = row.on_hand - row.reserved
            reservation = Reservation(
                id=uuid.uuid4(),
                pid=pid,
                wid=wid,
                qty=qty,
                reference=reference,
                reason=reason,
                status="active",
                actor=actor,
                created_at=now,
                expires_at=expires_at,
            )
            session.add(reservation)
            entry = await ledger.append(
                session,
                pid=pid,
                wid=wid,
                kind=MovementKind.RESERVE,
                qty_delta=qty,
                on_hand_before=row.on_hand,
                on_hand_after=row.on_hand,
                at=now,
                actor=actor,
                reference=reference,
                reason=reason,
                reservation_id=reservation.id,
            )
            events.append(reservation_changed(row, reservation, entry.id))
            events.append(stock_changed(row, entry.id, kind=entry.kind))
            return reservation

        reservation = await self.engine.transact("reserve", work, pid=pid, wid=wid, qty=qty)
        logger.info(
            "reservation.created",
            reservation_id=str(reservation.id),
            pid=str(pid),
            wid=str(wid),
            qty=qty,
            reference=reference,
            expires_at=expires_at.isoformat() if expires_at else None,
            actor=actor,
        )
        return reservation

    async def release(self, reservation_id: uuid.UUID, actor: str = "system") -> ReleaseResult:
        """Return reserved units to available. Terminal reservations are left alone."""

        async def work(session: AsyncSession, events: list[ChangeEvent]) -> ReleaseResult:
            row, reservation = await self._lock(session, reservation_id)
            if reservation.is_terminal:
                return ReleaseResult(reservation, released=False)
            await self._close(session, events, row, reservation, "released", actor, "reservation released")
            return ReleaseResult(reservation, released=True)

        result = await self.engine.transact("release", work, reservation_id=reservation_id)
        logger.info(
            "reservation.released",
            reservation_id=str(reservation_id),
            released=result.released,
            status=result.reservation.status,
            actor=actor,
        )
        return result

    async def consume(self, reservation_id: uuid.UUID, actor: str = "system", reason: str | None = None) -> LedgerEntry:
        """Convert a reservation into an issue of the reserved quantity."""

        async def work(session: AsyncSession, events: list[ChangeEvent]) -> LedgerEntry:
            row, reservation = await self._lock(session, reservation_id)
            if reservation.is_terminal:
                raise AlreadyTerminal(
                    f"Reservation is already {reservation.status}",
                    reservation_id=str(reservation_id),
                    status=reservation.status,
                )
            # Events carry the post-issue state only; the state between the
            # release and the issue is never published.
            released = await self._close(session, [], row, reservation, "consumed", actor, reason)
            mark = len(events)
            entry = await self.engine.consume_locked(
                session,
                events,
                row,
                reservation.qty,
                MovementKind.ISSUE,
                actor=actor,
                reference=reservation.reference,
                reason=reason or "reservation consumed",
                reservation_id=reservation.id,
            )
            events.insert(mark, reservation_changed(row, reservation, released.id))
            return entry

        entry = await self.engine.transact("consume", work, reservation_id=reservation_id)
        logger.info(
            "reservation.consumed",
            reservation_id=str(reservation_id),
            ledger_id=entry.id,
            qty=-entry.qty_delta,
            actor=actor,
        )
        return entry

    async def expire_due(self, now: datetime | None = None) -> int:
        """Expire every active reservation past its deadline, one transaction each."""
        now = now or self.clock.now()
        async with self.store.begin() as session:
            result = await session.execute(
                select(Reservation.id)
                .where(
                    Reservation.status == "active",
                    Reservation.expires_at.isnot(None),
                    Reservation.expires_at <= now,
                )
                .order_by(Reservation.expires_at)
            )
            due = list(result.scalars().all())

        expired = 0
        for reservation_id in due:

            async def work(session: AsyncSession, events: list[ChangeEvent], reservation_id=reservation_id) -> bool:
                row, reservation = await self._lock(session, reservation_id)
                # Released or consumed since the scan.
                if reservation.is_terminal or reservation.expires_at is None or reservation.expires_at > now:
                    return False
                await self._close(session, events, row, reservation, "expired", "system", "reservation expired")
                return True

            if await self.engine.transact("expire", work, reservation_id=reservation_id):
                expired += 1

        if due:
            logger.info("reservation.expired_sweep", due=len(due), expired=expired)
        return expired

    async def get(self, reservation_id: uuid.UUID) -> Reservation:
        async with self.store.begin() as session:
            reservation = await session.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFound("Reservation not found", reservation_id=str(reservation_id))
        return reservation

    # ── Internals ───────────────────────────────────────────────────

    async def _lock(self, session: AsyncSession, reservation_id: uuid.UUID) -> tuple[InventoryRow, Reservation]:
        reservation = await session.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFound("Reservation not found", reservation_id=str(reservation_id))
        row = await lock_row(session, reservation.pid, reservation.wid)
        if row is None:
            raise UnknownRow(
                "Reservation points at a missing inventory row",
                pid=str(reservation.pid),
                wid=str(reservation.wid),
            )
        result = await session.execute(
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return row, result.scalar_one()

    async def _close(
        self,
        session: AsyncSession,
        events: list[ChangeEvent],
        row: InventoryRow,
        reservation: Reservation,
        status: str,
        actor: str,
        reason: str | None,
    ) -> LedgerEntry:
        now = self.clock.now()
        row.reserved -= reservation.qty
        row.available = row.on_hand - row.reserved
        reservation.status = status
        reservation.closed_at = now
        entry = await ledger.append(
            session,
            pid=row.pid,
            wid=row.wid,
            kind=MovementKind.RELEASE,
            qty_delta=-reservation.qty,
            on_hand_before=row.on_hand,
            on_hand_after=row.on_hand,
            at=now,
            actor=actor,
            reference=reservation.reference,
            reason=reason,
            reservation_id=reservation.id,
        )
        events.append(reservation_changed(row, reservation, entry.id))
        events.append(stock_changed(row, entry.id, kind=entry.kind))
        return entry
