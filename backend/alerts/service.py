"""
Alert Service — operator actions on reorder alerts.

State machine:
  pending -> acknowledged -> resolved
  pending -> resolved
  resolved is terminal
"""

import uuid

import structlog
from sqlalchemy import select

from core.clock import SystemClock
from core.errors import AlreadyTerminal, NotFound
from db.models import ReorderAlert
from db.store import Store
from realtime.bus import ChangeBus
from realtime.events import AlertCleared

logger = structlog.get_logger()


class AlertService:
    def __init__(self, store: Store, bus: ChangeBus, clock=None):
        self.store = store
        self.bus = bus
        self.clock = clock or SystemClock()

    async def list_alerts(
        self,
        status: str | None = None,
        severity: str | None = None,
        pid: uuid.UUID | None = None,
        wid: uuid.UUID | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[ReorderAlert]:
        query = select(ReorderAlert)
        if status:
            query = query.where(ReorderAlert.status == status)
        if severity:
            query = query.where(ReorderAlert.severity == severity)
        if pid is not None:
            query = query.where(ReorderAlert.pid == pid)
        if wid is not None:
            query = query.where(ReorderAlert.wid == wid)
        query = query.order_by(ReorderAlert.raised_at.desc()).offset(offset).limit(limit)
        async with self.store.begin() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def ack_alert(self, alert_id: uuid.UUID, actor: str = "system") -> ReorderAlert:
        """Acknowledge a pending alert; an acknowledged alert is returned unchanged."""
        async with self.store.begin() as session:
            alert = await self._lock(session, alert_id)
            if alert.status == "resolved":
                raise AlreadyTerminal("Alert is already resolved", alert_id=str(alert_id))
            if alert.status == "pending":
                alert.status = "acknowledged"
                alert.acknowledged_at = self.clock.now()
                alert.acknowledged_by = actor
                logger.info("alert.acknowledged", alert_id=str(alert_id), actor=actor)
        return alert

    async def resolve_alert(self, alert_id: uuid.UUID, actor: str = "system", notes: str | None = None) -> ReorderAlert:
        async with self.store.begin() as session:
            alert = await self._lock(session, alert_id)
            if alert.status == "resolved":
                raise AlreadyTerminal("Alert is already resolved", alert_id=str(alert_id))
            now = self.clock.now()
            alert.status = "resolved"
            alert.resolved_at = now
            if notes:
                alert.notes = notes
            event = AlertCleared(
                pid=alert.pid,
                wid=alert.wid,
                at=now,
                alert_id=alert.id,
                severity=alert.severity,
                observed_on_hand=alert.observed_on_hand,
                observed_available=alert.observed_available,
            )
        self.bus.publish(event)
        logger.info("alert.resolved", alert_id=str(alert_id), actor=actor)
        return alert

    async def _lock(self, session, alert_id: uuid.UUID) -> ReorderAlert:
        result = await session.execute(select(ReorderAlert).where(ReorderAlert.id == alert_id).with_for_update())
        alert = result.scalar_one_or_none()
        if alert is None:
            raise NotFound("Alert not found", alert_id=str(alert_id))
        return alert
