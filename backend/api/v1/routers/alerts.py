"""
Alerts Router — reorder alert management endpoints.
"""

from datetime import datetime
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field

from api.deps import get_actor, get_core, get_current_user, require_operator
from core.runtime import InventoryCore

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class AlertResponse(BaseModel):
    id: UUID
    pid: UUID
    wid: UUID
    severity: str
    status: str
    observed_on_hand: int
    observed_available: int
    threshold: int
    suggested_qty: int
    raised_at: datetime
    last_suppressed_until: datetime | None
    acknowledged_at: datetime | None
    acknowledged_by: str | None
    resolved_at: datetime | None
    notes: str | None

    model_config = {"from_attributes": True}


class AlertResolveRequest(BaseModel):
    notes: str | None = Field(None, max_length=1000)


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[AlertResponse])
async def list_alerts(
    status: Literal["pending", "acknowledged", "resolved"] | None = None,
    severity: Literal["low", "critical", "out"] | None = None,
    pid: UUID | None = None,
    wid: UUID | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    core: InventoryCore = Depends(get_core),
    _: dict = Depends(get_current_user),
):
    """Reorder alerts, newest first."""
    return await core.read_alerts(
        status=status,
        severity=severity,
        pid=pid,
        wid=wid,
        offset=skip,
        limit=limit,
    )


@router.patch("/{alert_id}/acknowledge", response_model=AlertResponse)
async def acknowledge_alert(
    alert_id: UUID,
    core: InventoryCore = Depends(get_core),
    _: dict = Depends(require_operator),
    actor: str = Depends(get_actor),
):
    return await core.ack_alert(alert_id, actor=actor)


@router.patch("/{alert_id}/resolve", response_model=AlertResponse)
async def resolve_alert(
    alert_id: UUID,
    body: AlertResolveRequest | None = Body(None),
    core: InventoryCore = Depends(get_core),
    _: dict = Depends(require_operator),
    actor: str = Depends(get_actor),
):
    """Close the alert and push an alert-cleared event."""
    return await core.resolve_alert(alert_id, actor=actor, notes=body.notes if body else None)
