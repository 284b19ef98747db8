"""
StockPulse runtime container.

``InventoryCore`` is built once per process and handed to the HTTP layer
(``app.state.core``), the push channel and background workers. It owns the
store, the change bus and every component wired to them, so there is no
module-level bus or engine singleton.

Background loops started by ``start()``:
  - reorder watcher (always)
  - reservation expiry sweep      (background_loops_enabled), which also
    clears alerts for rows that recovered outside this process
  - dashboard metrics snapshots   (background_loops_enabled)
"""

import asyncio
import uuid
from datetime import datetime

import structlog
from sqlalchemy import func, select

from alerts.service import AlertService
from alerts.watcher import ReorderWatcher
from core.clock import SystemClock
from core.config import Settings
from core.errors import InventoryError
from db.models import LedgerEntry, ReorderAlert, Reservation
from db.store import Store
from inventory import queries
from inventory.ledger import LedgerFilter
from inventory.queries import InventoryFilter, Valuation
from inventory.reservations import ReleaseResult, ReservationManager
from inventory.stock_engine import BulkItem, BulkResult, StockEngine
from realtime.bus import ChangeBus
from realtime.events import MetricsSnapshot
from realtime.websocket import PushHub
from supply_chain.transfers import TransferCoordinator, TransferResult

logger = structlog.get_logger()


class InventoryCore:
    def __init__(self, settings: Settings, store: Store | None = None, clock=None):
        self.settings = settings
        self.clock = clock or SystemClock()
        self.store = store or Store.from_url(
            settings.database_url,
            echo=settings.database_echo,
            lock_timeout_seconds=settings.lock_timeout_seconds,
        )
        self.bus = ChangeBus(default_maxsize=settings.change_bus_queue_size)
        self.stock = StockEngine(self.store, self.bus, settings, self.clock)
        self.reservations = ReservationManager(self.stock)
        self.transfers = TransferCoordinator(self.stock)
        self.watcher = ReorderWatcher(self.store, self.bus, settings, self.clock)
        self.alerts = AlertService(self.store, self.bus, self.clock)
        self.push_hub = PushHub(self.bus, settings)
        self._tasks: list[asyncio.Task] = []

        # Subscribe before any mutation so no StockChanged is missed.
        self.watcher.start()

    # ── Lifecycle ───────────────────────────────────────────────────

    async def start(self, background_loops: bool | None = None) -> None:
        if self.settings.database_create_all:
            await self.store.create_all()
        if background_loops is None:
            background_loops = self.settings.background_loops_enabled

        self._tasks.append(asyncio.create_task(self.watcher.run(), name="reorder-watcher"))
        if background_loops:
            self._tasks.append(asyncio.create_task(self.run_sweep_loop(), name="reservation-sweep"))
            self._tasks.append(asyncio.create_task(self.run_metrics_loop(), name="metrics-snapshot"))
        logger.info("core.started", background_loops=background_loops, tasks=len(self._tasks))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self.watcher.stop()
        await self.store.dispose()
        logger.info("core.stopped")

    # ── Mutations ───────────────────────────────────────────────────

    async def apply_delta(self, *args, **kwargs) -> LedgerEntry:
        return await self.stock.apply_delta(*args, **kwargs)

    async def set_on_hand(self, *args, **kwargs) -> LedgerEntry | None:
        return await self.stock.set_on_hand(*args, **kwargs)

    async def set_policy(self, *args, **kwargs):
        return await self.stock.set_policy(*args, **kwargs)

    async def bulk_apply(self, updates: list[BulkItem], actor: str = "system", atomic: bool = False) -> list[BulkResult]:
        return await self.stock.bulk_apply(updates, actor=actor, atomic=atomic)

    async def transfer(self, *args, **kwargs) -> TransferResult:
        return await self.transfers.transfer(*args, **kwargs)

    async def reserve(self, *args, **kwargs) -> Reservation:
        return await self.reservations.reserve(*args, **kwargs)

    async def release(self, reservation_id: uuid.UUID, actor: str = "system") -> ReleaseResult:
        return await self.reservations.release(reservation_id, actor=actor)

    async def consume(self, reservation_id: uuid.UUID, actor: str = "system", reason: str | None = None) -> LedgerEntry:
        return await self.reservations.consume(reservation_id, actor=actor, reason=reason)

    async def expire_due(self, now: datetime | None = None) -> int:
        return await self.reservations.expire_due(now)

    async def sweep_reservations(self, now: datetime | None = None) -> int:
        expired = await self.reservations.expire_due(now)
        await self.watcher.resolve_recovered()
        return expired

    async def ack_alert(self, alert_id: uuid.UUID, actor: str = "system") -> ReorderAlert:
        return await self.alerts.ack_alert(alert_id, actor=actor)

    async def resolve_alert(self, alert_id: uuid.UUID, actor: str = "system", notes: str | None = None) -> ReorderAlert:
        return await self.alerts.resolve_alert(alert_id, actor=actor, notes=notes)

    # ── Reads ───────────────────────────────────────────────────────

    async def read_inventory(self, filters: InventoryFilter | None = None, offset: int = 0, limit: int = 100):
        async with self.store.begin() as session:
            return await queries.read_inventory(session, filters, offset=offset, limit=limit)

    async def read_ledger(self, filters: LedgerFilter, offset: int = 0, limit: int = 100) -> list[LedgerEntry]:
        async with self.store.begin() as session:
            return await queries.read_ledger(session, filters, offset=offset, limit=limit)

    async def read_valuation(self, wid: uuid.UUID | None = None, method: str | None = None) -> Valuation:
        async with self.store.begin() as session:
            return await queries.read_valuation(session, wid=wid, method=method)

    async def read_alerts(self, **filters) -> list[ReorderAlert]:
        return await self.alerts.list_alerts(**filters)

    async def status_summary(self, wid: uuid.UUID | None = None) -> dict:
        async with self.store.begin() as session:
            return await queries.status_summary(session, wid=wid)

    # ── Dashboard metrics ───────────────────────────────────────────

    async def publish_metrics(self) -> MetricsSnapshot:
        async with self.store.begin() as session:
            summary = await queries.status_summary(session)
            last_ledger_id = (await session.execute(select(func.max(LedgerEntry.id)))).scalar_one_or_none()
        summary["push"] = self.push_hub.stats()
        snapshot = MetricsSnapshot(ledger_id=last_ledger_id, at=self.clock.now(), metrics=summary)
        self.bus.publish(snapshot)
        return snapshot

    async def run_sweep_loop(self, interval_seconds: float | None = None) -> None:
        interval = interval_seconds or self.settings.reservation_sweep_interval_seconds
        logger.info("reservation.sweep_started", interval_seconds=interval)
        while True:
            try:
                await self.sweep_reservations()
            except InventoryError as exc:
                logger.error("reservation.sweep_failed", code=exc.code, error=exc.message)
            await asyncio.sleep(interval)

    async def run_metrics_loop(self, interval_seconds: float | None = None) -> None:
        interval = interval_seconds or self.settings.metrics_snapshot_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.publish_metrics()
            except InventoryError as exc:
                logger.error("metrics.snapshot_failed", code=exc.code, error=exc.message)
