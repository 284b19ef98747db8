"""
Change events published on the Change Bus after a commit.

Each event is an immutable record of committed post-state. ``ledger_id`` is
the id of the ledger entry that produced it so clients can merge
idempotently; events not tied to a single entry carry None.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar

from core.clock import utcnow


class EventType(str, Enum):
    STOCK_CHANGED = "stock_changed"
    RESERVATION_CHANGED = "reservation_changed"
    ALERT_RAISED = "alert_raised"
    ALERT_CLEARED = "alert_cleared"
    MOVEMENT_LOGGED = "movement_logged"
    METRICS_SNAPSHOT = "metrics_snapshot"
    GAP_NOTICE = "gap_notice"


@dataclass(frozen=True, kw_only=True)
class ChangeEvent:
    event_type: ClassVar[EventType]

    pid: uuid.UUID | None = None
    wid: uuid.UUID | None = None
    ledger_id: int | None = None
    at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> tuple[uuid.UUID | None, uuid.UUID | None]:
        return (self.pid, self.wid)

    def to_payload(self) -> dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass(frozen=True, kw_only=True)
class StockChanged(ChangeEvent):
    event_type: ClassVar[EventType] = EventType.STOCK_CHANGED

    on_hand: int
    reserved: int
    available: int
    weighted_avg_cost: Decimal
    reorder_point: int = 0
    reorder_quantity: int = 0
    max_stock: int | None = None
    kind: str | None = None


@dataclass(frozen=True, kw_only=True)
class MovementLogged(ChangeEvent):
    event_type: ClassVar[EventType] = EventType.MOVEMENT_LOGGED

    kind: str
    qty_delta: int
    on_hand_before: int
    on_hand_after: int
    unit_cost: Decimal | None = None
    total_cost: Decimal | None = None
    reference: str | None = None
    related_entry_id: int | None = None
    actor: str = "system"


@dataclass(frozen=True, kw_only=True)
class ReservationChanged(ChangeEvent):
    event_type: ClassVar[EventType] = EventType.RESERVATION_CHANGED

    reservation_id: uuid.UUID
    status: str
    qty: int
    reference: str
    reserved: int
    available: int


@dataclass(frozen=True, kw_only=True)
class AlertRaised(ChangeEvent):
    event_type: ClassVar[EventType] = EventType.ALERT_RAISED

    alert_id: uuid.UUID
    severity: str
    observed_on_hand: int
    observed_available: int
    threshold: int
    suggested_qty: int
    upgraded: bool = False


@dataclass(frozen=True, kw_only=True)
class AlertCleared(ChangeEvent):
    event_type: ClassVar[EventType] = EventType.ALERT_CLEARED

    alert_id: uuid.UUID
    severity: str
    observed_on_hand: int
    observed_available: int


@dataclass(frozen=True, kw_only=True)
class MetricsSnapshot(ChangeEvent):
    event_type: ClassVar[EventType] = EventType.METRICS_SNAPSHOT

    metrics: dict[str, Any]


@dataclass(frozen=True, kw_only=True)
class GapNotice(ChangeEvent):
    """Delivered by the bus in place of events dropped from a full queue."""

    event_type: ClassVar[EventType] = EventType.GAP_NOTICE

    dropped: int


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value
