"""
Audit Worker — nightly ledger integrity check and reservation expiry.

For every inventory row the ledger is replayed from the first entry and the
result compared with the stored row and its live cost layers:
  - on_hand and reserved must match exactly
  - weighted average cost must match to the published precision
  - remaining layers (qty, unit_cost in FIFO order) must match

Any mismatch is written to the incidents table; the row itself is never
modified by the audit.

Schedule: crontab(hour=2, minute=15), nightly
Queue: audit
"""

import asyncio
from dataclasses import dataclass, field

import structlog
from sqlalchemy import select

from core.errors import InsufficientLayers
from db.models import CostLayer, InventoryRow
from db.store import Store
from inventory import ledger
from workers.celery_app import celery_app

logger = structlog.get_logger()


@dataclass
class AuditReport:
    rows_checked: int = 0
    mismatches: list[dict] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.mismatches


async def audit_row(store: Store, row: InventoryRow) -> dict | None:
    """Replay one row's ledger; the mismatch detail, or None when consistent."""
    async with store.begin() as session:
        entries = await ledger.by_product(session, row.pid, row.wid)
        result = await session.execute(
            select(CostLayer)
            .where(CostLayer.pid == row.pid, CostLayer.wid == row.wid, CostLayer.remaining_qty > 0)
            .order_by(CostLayer.received_at, CostLayer.id)
        )
        live_layers = [(layer.remaining_qty, layer.unit_cost) for layer in result.scalars().all()]

    try:
        state = ledger.replay(entries)
    except InsufficientLayers as exc:
        return {"reason": "replay_failed", "error": exc.message, "entries": len(entries)}

    diffs = {}
    if state.on_hand != row.on_hand:
        diffs["on_hand"] = {"row": row.on_hand, "ledger": state.on_hand}
    if state.reserved != row.reserved:
        diffs["reserved"] = {"row": row.reserved, "ledger": state.reserved}
    if state.weighted_avg_cost != row.weighted_avg_cost:
        diffs["weighted_avg_cost"] = {"row": str(row.weighted_avg_cost), "ledger": str(state.weighted_avg_cost)}
    if state.layer_tuples() != live_layers:
        diffs["layers"] = {
            "row": [[qty, str(cost)] for qty, cost in live_layers],
            "ledger": [[qty, str(cost)] for qty, cost in state.layer_tuples()],
        }
    if not diffs:
        return None
    return {"reason": "state_mismatch", "last_entry_id": state.last_entry_id, **diffs}


async def audit_rows(store: Store) -> AuditReport:
    """Check every row and record an incident per inconsistent one."""
    async with store.begin() as session:
        rows = (await session.execute(select(InventoryRow).order_by(InventoryRow.id))).scalars().all()

    report = AuditReport()
    for row in rows:
        report.rows_checked += 1
        mismatch = await audit_row(store, row)
        if mismatch is None:
            continue
        logger.critical("audit.ledger_mismatch", pid=str(row.pid), wid=str(row.wid), **mismatch)
        await store.record_incident("ledger_mismatch", pid=row.pid, wid=row.wid, **mismatch)
        report.mismatches.append({"pid": str(row.pid), "wid": str(row.wid), **mismatch})
    return report


@celery_app.task(
    name="workers.audit.audit_ledger_integrity",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def audit_ledger_integrity(self):
    """Nightly job: replay every row's ledger and record mismatches as incidents."""
    run_id = self.request.id or "manual"
    logger.info("audit.started", run_id=run_id)

    async def _audit():
        from core.config import get_settings

        settings = get_settings()
        store = Store.from_url(settings.database_url, lock_timeout_seconds=settings.lock_timeout_seconds)
        try:
            return await audit_rows(store)
        finally:
            await store.dispose()

    try:
        report = asyncio.run(_audit())
    except Exception as exc:
        logger.error("audit.failed", run_id=run_id, error=str(exc))
        raise self.retry(exc=exc)

    logger.info(
        "audit.completed",
        run_id=run_id,
        rows_checked=report.rows_checked,
        mismatches=len(report.mismatches),
    )
    return {"status": "success", "rows_checked": report.rows_checked, "mismatches": report.mismatches}


@celery_app.task(
    name="workers.audit.expire_reservations",
    bind=True,
    max_retries=1,
    default_retry_delay=60,
)
def expire_reservations(self):
    """
    Expire overdue reservations for deployments that run without in-process loops.

    Events from this task go to a private bus that nothing subscribes to, so
    API processes do not push them and their watchers do not see the freed
    stock. Alerts on rows that recovered are cleared by the next
    ``InventoryCore.sweep_reservations`` or a watcher reconcile.
    """
    run_id = self.request.id or "manual"

    async def _expire():
        from core.clock import SystemClock
        from core.config import get_settings
        from inventory.reservations import ReservationManager
        from inventory.stock_engine import StockEngine
        from realtime.bus import ChangeBus

        settings = get_settings()
        store = Store.from_url(settings.database_url, lock_timeout_seconds=settings.lock_timeout_seconds)
        try:
            engine = StockEngine(store, ChangeBus(), settings, SystemClock())
            return await ReservationManager(engine).expire_due()
        finally:
            await store.dispose()

    try:
        expired = asyncio.run(_expire())
    except Exception as exc:
        logger.error("reservation.expire_task_failed", run_id=run_id, error=str(exc))
        raise self.retry(exc=exc)

    logger.info("reservation.expire_task_completed", run_id=run_id, expired=expired)
    return {"status": "success", "expired": expired}
