"""
StockPulse Store — transactional access with per-row locking.

Every mutation in the inventory core runs inside ``Store.begin()``:

    async with store.begin() as session:
        row = await lock_row(session, pid, wid)
        ...

The block commits on normal exit and rolls back on any exception. Driver
errors are translated into the core taxonomy on the way out:

  lock timeout / deadlock / "database is locked" / unique-key race
      -> ConcurrencyConflict (retryable)
  any other DBAPI error
      -> StoreError
"""

import uuid
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from core.errors import ConcurrencyConflict, InventoryError, StoreError
from db.models import Incident, InventoryRow
from db.session import Base, build_engine

logger = structlog.get_logger()

# SQLSTATEs: lock_not_available, deadlock_detected, serialization_failure
_CONFLICT_SQLSTATES = {"55P03", "40P01", "40001"}
_CONFLICT_MARKERS = (
    "database is locked",
    "lock timeout",
    "deadlock",
    "could not obtain lock",
    "could not serialize",
)
_UNIQUE_MARKERS = ("unique", "duplicate key")


def translate_error(exc: SQLAlchemyError) -> InventoryError:
    """Map a SQLAlchemy/driver error onto ConcurrencyConflict or StoreError."""
    orig = getattr(exc, "orig", None) or exc
    message = str(orig).lower()
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)

    if isinstance(exc, IntegrityError):
        if any(marker in message for marker in _UNIQUE_MARKERS):
            return ConcurrencyConflict("Concurrent insert of the same row", cause=str(orig))
        return StoreError("Store rejected the write", cause=str(orig))

    if isinstance(exc, DBAPIError):
        if sqlstate in _CONFLICT_SQLSTATES or any(marker in message for marker in _CONFLICT_MARKERS):
            return ConcurrencyConflict("Row lock not acquired", cause=str(orig))

    return StoreError("Store operation failed", cause=str(orig))


class Store:
    """Transactional relational store shared by every core component."""

    def __init__(self, engine: AsyncEngine, lock_timeout_seconds: float = 5.0):
        self.engine = engine
        self.lock_timeout_seconds = lock_timeout_seconds
        self.session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False, lock_timeout_seconds: float = 5.0) -> "Store":
        engine = build_engine(database_url, echo=echo, lock_timeout_seconds=lock_timeout_seconds)
        return cls(engine, lock_timeout_seconds=lock_timeout_seconds)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def begin(self) -> AsyncIterator[AsyncSession]:
        """One transaction: commit on exit, rollback on exception."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    if self.dialect == "postgresql":
                        timeout_ms = int(self.lock_timeout_seconds * 1000)
                        await session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))
                    yield session
        except SQLAlchemyError as exc:
            raise translate_error(exc) from exc

    async def record_incident(
        self,
        kind: str,
        pid: uuid.UUID | None = None,
        wid: uuid.UUID | None = None,
        **detail: Any,
    ) -> None:
        """
        Persist a consistency incident in its own transaction.

        Must be called after the failing transaction has rolled back; the
        incident row is what survives it.
        """
        try:
            async with self.begin() as session:
                session.add(Incident(kind=kind, pid=pid, wid=wid, detail=_jsonable(detail)))
        except InventoryError as exc:
            logger.error("incident.record_failed", kind=kind, pid=str(pid), wid=str(wid), error=exc.message)


async def lock_row(session: AsyncSession, pid: uuid.UUID, wid: uuid.UUID) -> InventoryRow | None:
    """SELECT ... FOR UPDATE on one inventory row. None if the row does not exist."""
    result = await session.execute(
        select(InventoryRow)
        .where(InventoryRow.pid == pid, InventoryRow.wid == wid)
        .with_for_update()
    )
    return result.scalar_one_or_none()


async def lock_rows(
    session: AsyncSession,
    keys: Iterable[tuple[uuid.UUID, uuid.UUID]],
) -> dict[tuple[uuid.UUID, uuid.UUID], InventoryRow | None]:
    """Lock several rows, always in ascending (pid, wid) order."""
    locked: dict[tuple[uuid.UUID, uuid.UUID], InventoryRow | None] = {}
    for pid, wid in sorted(set(keys), key=lambda key: (str(key[0]), str(key[1]))):
        locked[(pid, wid)] = await lock_row(session, pid, wid)
    return locked


async def create_row(
    session: AsyncSession,
    pid: uuid.UUID,
    wid: uuid.UUID,
    cost_method: str = "FIFO",
) -> InventoryRow:
    """Insert an empty row; a concurrent insert surfaces as ConcurrencyConflict at flush."""
    row = InventoryRow(
        pid=pid,
        wid=wid,
        on_hand=0,
        reserved=0,
        available=0,
        weighted_avg_cost=Decimal("0"),
        reorder_point=0,
        reorder_quantity=0,
        cost_method=cost_method,
    )
    session.add(row)
    await session.flush()
    logger.info("inventory.row_created", pid=str(pid), wid=str(wid))
    return row


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)
