"""
Reorder Watcher — turns StockChanged events into throttled reorder alerts.

Severity for a row (reorder point treated as 0 when unset):
  out        on_hand == 0
  critical   available <= reorder_point / 2
  low        available <= reorder_point
  (none)     otherwise

Throttle against the row's active alert (pending or acknowledged):
  no active alert                      -> create pending alert, AlertRaised
  new severity higher than active      -> upgrade in place, AlertRaised
  same/lower, inside suppression window -> nothing
  same/lower, window elapsed           -> re-notify, AlertRaised
  stock recovered                      -> resolve, AlertCleared

A GapNotice means events were dropped; every row is re-evaluated from the
store.
A StockChanged older than the last one seen for its row is ignored.
"""

import asyncio
import uuid
from datetime import timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.email import send_alert_email
from core.clock import SystemClock
from core.config import Settings
from core.errors import InventoryError
from db.models import InventoryRow, ReorderAlert
from db.store import Store
from realtime.bus import ChangeBus, Subscription
from realtime.events import AlertCleared, AlertRaised, ChangeEvent, GapNotice, StockChanged

logger = structlog.get_logger()

SEVERITY_RANK = {"low": 1, "critical": 2, "out": 3}
ACTIVE_STATUSES = ("pending", "acknowledged")


def classify_severity(on_hand: int, available: int, reorder_point: int | None) -> str | None:
    reorder_point = reorder_point or 0
    if on_hand <= 0:
        return "out"
    if available <= reorder_point / 2:
        return "critical"
    if available <= reorder_point:
        return "low"
    return None


def suggested_quantity(available: int, reorder_point: int | None, reorder_quantity: int | None) -> int:
    if reorder_quantity:
        return reorder_quantity
    return max((reorder_point or 0) * 2 - available, 0)


async def active_alert(session: AsyncSession, pid: uuid.UUID, wid: uuid.UUID) -> ReorderAlert | None:
    result = await session.execute(
        select(ReorderAlert)
        .where(
            ReorderAlert.pid == pid,
            ReorderAlert.wid == wid,
            ReorderAlert.status.in_(ACTIVE_STATUSES),
        )
        .order_by(ReorderAlert.raised_at.desc())
        .limit(1)
        .with_for_update()
    )
    return result.scalar_one_or_none()


class ReorderWatcher:
    def __init__(self, store: Store, bus: ChangeBus, settings: Settings, clock=None):
        self.store = store
        self.bus = bus
        self.settings = settings
        self.clock = clock or SystemClock()
        self.window = timedelta(seconds=settings.alert_suppression_window_seconds)
        self.subscription: Subscription | None = None
        self._last_ledger: dict[tuple[uuid.UUID, uuid.UUID], int] = {}

    def start(self) -> Subscription:
        if self.subscription is None:
            self.subscription = self.bus.subscribe(
                lambda event: isinstance(event, StockChanged),
                maxsize=self.settings.change_bus_queue_size,
                name="reorder-watcher",
            )
        return self.subscription

    def stop(self) -> None:
        if self.subscription is not None:
            self.subscription.close()
            self.subscription = None

    async def run(self) -> None:
        subscription = self.start()
        logger.info("watcher.started")
        async for event in subscription:
            try:
                await self.handle(event)
            except InventoryError as exc:
                logger.error("watcher.evaluation_failed", code=exc.code, error=exc.message, pid=str(event.pid))

    async def process_pending(self) -> int:
        """Handle everything queued right now without waiting for more."""
        subscription = self.start()
        handled = 0
        for event in subscription.drain():
            await self.handle(event)
            handled += 1
        return handled

    async def handle(self, event: ChangeEvent) -> list[ChangeEvent]:
        if isinstance(event, GapNotice):
            logger.warning("watcher.gap", dropped=event.dropped)
            return await self.reconcile()
        if isinstance(event, StockChanged):
            if self._is_stale(event):
                logger.debug("watcher.stale_event", pid=str(event.pid), ledger_id=event.ledger_id)
                return []
            return await self.evaluate(
                event.pid,
                event.wid,
                event.on_hand,
                event.available,
                event.reorder_point,
                event.reorder_quantity,
                ledger_id=event.ledger_id,
            )
        return []

    def _is_stale(self, event: StockChanged) -> bool:
        # Publishing happens after commit, so two writers on one row can
        # deliver their events in the opposite order to their commits.
        if event.ledger_id is None:
            return False
        key = (event.pid, event.wid)
        last = self._last_ledger.get(key)
        if last is not None and event.ledger_id <= last:
            return True
        self._last_ledger[key] = event.ledger_id
        return False

    async def reconcile(self) -> list[ChangeEvent]:
        """Re-evaluate every row from current store state."""
        async with self.store.begin() as session:
            result = await session.execute(select(InventoryRow))
            rows = [
                (row.pid, row.wid, row.on_hand, row.available, row.reorder_point, row.reorder_quantity)
                for row in result.scalars().all()
            ]
        emitted: list[ChangeEvent] = []
        for pid, wid, on_hand, available, reorder_point, reorder_quantity in rows:
            emitted.extend(await self.evaluate(pid, wid, on_hand, available, reorder_point, reorder_quantity))
        return emitted

    async def resolve_recovered(self) -> list[ChangeEvent]:
        """
        Clear active alerts whose row has recovered.

        Stock released by another process (the celery expiry task, for one)
        publishes on that process's bus, so this watcher never sees it.
        """
        has_active_alert = (
            select(ReorderAlert.id)
            .where(
                ReorderAlert.pid == InventoryRow.pid,
                ReorderAlert.wid == InventoryRow.wid,
                ReorderAlert.status.in_(ACTIVE_STATUSES),
            )
            .exists()
        )
        async with self.store.begin() as session:
            result = await session.execute(select(InventoryRow).where(has_active_alert))
            rows = [
                (row.pid, row.wid, row.on_hand, row.available, row.reorder_point, row.reorder_quantity)
                for row in result.scalars().all()
            ]
        emitted: list[ChangeEvent] = []
        for pid, wid, on_hand, available, reorder_point, reorder_quantity in rows:
            if classify_severity(on_hand, available, reorder_point) is None:
                emitted.extend(await self.evaluate(pid, wid, on_hand, available, reorder_point, reorder_quantity))
        return emitted

    async def evaluate(
        self,
        pid: uuid.UUID,
        wid: uuid.UUID,
        on_hand: int,
        available: int,
        reorder_point: int | None,
        reorder_quantity: int | None = None,
        ledger_id: int | None = None,
    ) -> list[ChangeEvent]:
        severity = classify_severity(on_hand, available, reorder_point)
        events: list[ChangeEvent] = []

        async with self.store.begin() as session:
            alert = await active_alert(session, pid, wid)
            now = self.clock.now()

            if severity is None:
                if alert is not None:
                    alert.status = "resolved"
                    alert.resolved_at = now
                    alert.observed_on_hand = on_hand
                    alert.observed_available = available
                    events.append(
                        AlertCleared(
                            pid=pid,
                            wid=wid,
                            ledger_id=ledger_id,
                            at=now,
                            alert_id=alert.id,
                            severity=alert.severity,
                            observed_on_hand=on_hand,
                            observed_available=available,
                        )
                    )
            else:
                upgraded = False
                if alert is None:
                    alert = ReorderAlert(id=uuid.uuid4(), pid=pid, wid=wid, status="pending", severity=severity)
                    session.add(alert)
                elif SEVERITY_RANK[severity] > SEVERITY_RANK[alert.severity]:
                    alert.severity = severity
                    upgraded = True
                elif now < alert.raised_at + self.window:
                    logger.debug("alert.suppressed", alert_id=str(alert.id), severity=severity, pid=str(pid))
                    alert = None
                else:
                    alert.severity = severity

                if alert is not None:
                    alert.observed_on_hand = on_hand
                    alert.observed_available = available
                    alert.threshold = reorder_point or 0
                    alert.suggested_qty = suggested_quantity(available, reorder_point, reorder_quantity)
                    alert.raised_at = now
                    alert.last_suppressed_until = now + self.window
                    await session.flush()
                    events.append(
                        AlertRaised(
                            pid=pid,
                            wid=wid,
                            ledger_id=ledger_id,
                            at=now,
                            alert_id=alert.id,
                            severity=alert.severity,
                            observed_on_hand=on_hand,
                            observed_available=available,
                            threshold=alert.threshold,
                            suggested_qty=alert.suggested_qty,
                            upgraded=upgraded,
                        )
                    )

        self.bus.publish_all(events)
        for event in events:
            if isinstance(event, AlertRaised):
                logger.info(
                    "alert.raised",
                    alert_id=str(event.alert_id),
                    pid=str(pid),
                    wid=str(wid),
                    severity=event.severity,
                    available=available,
                    upgraded=event.upgraded,
                )
                await self._notify(event)
            else:
                logger.info("alert.cleared", alert_id=str(event.alert_id), pid=str(pid), wid=str(wid))
        return events

    async def _notify(self, event: AlertRaised) -> None:
        minimum = SEVERITY_RANK.get(self.settings.alert_email_min_severity, SEVERITY_RANK["critical"])
        if SEVERITY_RANK[event.severity] < minimum:
            return
        if not self.settings.sendgrid_api_key or not self.settings.alert_recipients:
            return
        results = await asyncio.gather(
            *(send_alert_email(self.settings, recipient, event) for recipient in self.settings.alert_recipients)
        )
        logger.info("alert.emailed", alert_id=str(event.alert_id), sent=sum(results), recipients=len(results))
