"""
Transfer Coordinator — warehouse-to-warehouse stock moves.

A transfer is one transaction over two inventory rows:

1. Lock source and destination rows in (pid, wid) order (destination is
   created on first use)
2. Consume at the source (ledger kind transfer-out)
3. Receive at the destination one layer per consumed cost slice, so the
   units keep their source cost (transfer-in, referencing the transfer-out)
4. Record a StockTransfer audit row
5. Commit, then publish StockChanged for each side and two MovementLogged

Either both legs commit or neither does. Σ on_hand across warehouses for
the product is unchanged.
"""

import uuid
from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import InvalidDelta, SameWarehouse, UnknownRow
from db.models import LedgerEntry, StockTransfer
from db.store import create_row, lock_rows
from inventory.costing import parse_method
from inventory.ledger import MovementKind
from inventory.stock_engine import StockEngine
from realtime.events import ChangeEvent

logger = structlog.get_logger()


@dataclass
class TransferResult:
    transfer: StockTransfer
    out_entry: LedgerEntry
    in_entry: LedgerEntry

    @property
    def entry_ids(self) -> tuple[int, int]:
        return (self.out_entry.id, self.in_entry.id)


class TransferCoordinator:
    def __init__(self, engine: StockEngine):
        self.engine = engine

    async def transfer(
        self,
        pid: uuid.UUID,
        from_wid: uuid.UUID,
        to_wid: uuid.UUID,
        qty: int,
        actor: str = "system",
        reason: str | None = None,
        reference: str | None = None,
        cost_method: str | None = None,
    ) -> TransferResult:
        if from_wid == to_wid:
            raise SameWarehouse("Source and destination warehouse must differ", wid=str(from_wid))
        if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
            raise InvalidDelta("Transfer quantity must be a positive integer", qty=repr(qty))
        method = parse_method(cost_method) if cost_method else None

        async def work(session: AsyncSession, events: list[ChangeEvent]) -> TransferResult:
            rows = await lock_rows(session, [(pid, from_wid), (pid, to_wid)])
            source = rows[(pid, from_wid)]
            if source is None:
                raise UnknownRow("No inventory row for product in source warehouse", pid=str(pid), wid=str(from_wid))
            destination = rows[(pid, to_wid)]
            if destination is None:
                destination = await create_row(session, pid, to_wid, source.cost_method)

            out_entry, consumed = await self.engine.consume_locked_with_cost(
                session,
                events,
                source,
                qty,
                MovementKind.TRANSFER_OUT,
                method,
                actor=actor,
                reference=reference,
                reason=reason,
            )
            in_entry = await self.engine.receive_locked(
                session,
                events,
                destination,
                consumed.slices,
                MovementKind.TRANSFER_IN,
                actor=actor,
                reference=reference,
                reason=reason,
                related_entry_id=out_entry.id,
            )

            transfer = StockTransfer(
                pid=pid,
                from_wid=from_wid,
                to_wid=to_wid,
                quantity=qty,
                unit_cost=consumed.unit_cost,
                total_cost=consumed.total_cost,
                out_entry_id=out_entry.id,
                in_entry_id=in_entry.id,
                reference=reference,
                reason=reason,
                actor=actor,
                completed_at=in_entry.at,
            )
            session.add(transfer)
            await session.flush()
            return TransferResult(transfer=transfer, out_entry=out_entry, in_entry=in_entry)

        result = await self.engine.transact(
            "transfer", work, pid=pid, from_wid=from_wid, to_wid=to_wid, qty=qty
        )
        logger.info(
            "transfer.completed",
            transfer_id=str(result.transfer.transfer_id),
            pid=str(pid),
            from_wid=str(from_wid),
            to_wid=str(to_wid),
            quantity=qty,
            total_cost=str(result.transfer.total_cost),
            out_entry_id=result.out_entry.id,
            in_entry_id=result.in_entry.id,
            actor=actor,
        )
        return result
