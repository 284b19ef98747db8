"""
Reservations Router — hold, release and consume stock.
"""

from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Body, Depends, status
from pydantic import BaseModel, Field

from api.deps import get_actor, get_core, get_current_user, require_operator
from api.v1.routers.inventory import LedgerEntryResponse
from core.runtime import InventoryCore

router = APIRouter(prefix="/api/v1/inventory/reservations", tags=["reservations"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class ReservationRequest(BaseModel):
    pid: UUID
    wid: UUID
    quantity: int = Field(..., gt=0)
    reference: str = Field(..., min_length=1, max_length=255)
    expires_at: datetime | None = None
    reason: str | None = Field(None, max_length=500)


class ReservationResponse(BaseModel):
    id: UUID
    pid: UUID
    wid: UUID
    qty: int
    reference: str
    reason: str | None
    status: str
    actor: str
    created_at: datetime
    expires_at: datetime | None
    closed_at: datetime | None

    model_config = {"from_attributes": True}


class ReleaseResponse(BaseModel):
    released: bool
    reservation: ReservationResponse


class ConsumeRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("", response_model=ReservationResponse, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    body: ReservationRequest,
    core: InventoryCore = Depends(get_core),
    _: dict = Depends(require_operator),
    actor: str = Depends(get_actor),
):
    """Reserve available stock against a reference (order, job, ...)."""
    if body.expires_at is not None and body.expires_at.tzinfo is not None:
        body.expires_at = body.expires_at.astimezone(timezone.utc).replace(tzinfo=None)
    return await core.reserve(
        body.pid,
        body.wid,
        body.quantity,
        body.reference,
        expires_at=body.expires_at,
        reason=body.reason,
        actor=actor,
    )


@router.get("/{reservation_id}", response_model=ReservationResponse)
async def get_reservation(
    reservation_id: UUID,
    core: InventoryCore = Depends(get_core),
    _: dict = Depends(get_current_user),
):
    return await core.reservations.get(reservation_id)


@router.delete("/{reservation_id}", response_model=ReleaseResponse)
async def release_reservation(
    reservation_id: UUID,
    core: InventoryCore = Depends(get_core),
    _: dict = Depends(require_operator),
    actor: str = Depends(get_actor),
):
    """Release a reservation. Releasing a closed reservation is a no-op."""
    result = await core.release(reservation_id, actor=actor)
    return ReleaseResponse(
        released=result.released,
        reservation=ReservationResponse.model_validate(result.reservation),
    )


@router.post("/{reservation_id}/consume", response_model=LedgerEntryResponse)
async def consume_reservation(
    reservation_id: UUID,
    body: ConsumeRequest | None = Body(None),
    core: InventoryCore = Depends(get_core),
    _: dict = Depends(require_operator),
    actor: str = Depends(get_actor),
):
    """Issue the reserved quantity and close the reservation."""
    return await core.consume(reservation_id, actor=actor, reason=body.reason if body else None)
