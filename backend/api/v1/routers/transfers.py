"""
Transfers Router: warehouse-to-warehouse moves.
"""

from decimal import Decimal
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from api.deps import get_actor, get_core, require_operator
from api.v1.routers.inventory import LedgerEntryResponse
from core.runtime import InventoryCore

router = APIRouter(prefix="/api/v1/inventory", tags=["transfers"])


class TransferRequest(BaseModel):
    pid: UUID
    from_wid: UUID
    to_wid: UUID
    quantity: int = Field(..., gt=0)
    reason: str | None = Field(None, max_length=500)
    reference: str | None = Field(None, max_length=255)
    cost_method: Literal["FIFO", "LIFO", "AVERAGE"] | None = None


class TransferResponse(BaseModel):
    transfer_id: UUID
    quantity: int
    unit_cost: Decimal
    total_cost: Decimal
    out_entry: LedgerEntryResponse
    in_entry: LedgerEntryResponse


@router.post("/transfers", response_model=TransferResponse, status_code=status.HTTP_201_CREATED)
async def create_transfer(
    body: TransferRequest,
    core: InventoryCore = Depends(get_core),
    _: dict = Depends(require_operator),
    actor: str = Depends(get_actor),
):
    """Move stock between warehouses; both legs commit together."""
    result = await core.transfer(
        body.pid,
        body.from_wid,
        body.to_wid,
        body.quantity,
        actor=actor,
        reason=body.reason,
        reference=body.reference,
        cost_method=body.cost_method,
    )
    return TransferResponse(
        transfer_id=result.transfer.transfer_id,
        quantity=result.transfer.quantity,
        unit_cost=result.transfer.unit_cost,
        total_cost=result.transfer.total_cost,
        out_entry=LedgerEntryResponse.model_validate(result.out_entry),
        in_entry=LedgerEntryResponse.model_validate(result.in_entry),
    )
