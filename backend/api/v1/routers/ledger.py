"""
Ledger Router: movement history and stock valuation.
"""

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from api.deps import get_core, get_current_user
from api.v1.routers.inventory import LedgerEntryResponse
from core.runtime import InventoryCore
from inventory.ledger import LedgerFilter

router = APIRouter(prefix="/api/v1/inventory", tags=["ledger"])


class ValuationLineResponse(BaseModel):
    pid: UUID
    wid: UUID
    on_hand: int
    reserved: int
    available: int
    unit_cost: Decimal
    total_cost: Decimal

    model_config = {"from_attributes": True}


class ValuationResponse(BaseModel):
    method: str
    total_quantity: int
    total_cost: Decimal
    lines: list[ValuationLineResponse]


@router.get("/ledger", response_model=list[LedgerEntryResponse])
async def list_ledger(
    pid: UUID | None = None,
    wid: UUID | None = None,
    kind: str | None = None,
    reference: str | None = None,
    actor: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    core: InventoryCore = Depends(get_core),
    _: dict = Depends(get_current_user),
):
    """Ledger entries, newest first."""
    filters = LedgerFilter(
        pid=pid,
        wid=wid,
        kind=kind,
        reference=reference,
        actor=actor,
        start=start,
        end=end,
    )
    return await core.read_ledger(filters, offset=skip, limit=limit)


@router.get("/valuation", response_model=ValuationResponse)
async def get_valuation(
    wid: UUID | None = None,
    method: Literal["FIFO", "LIFO", "AVERAGE"] = "FIFO",
    core: InventoryCore = Depends(get_core),
    _: dict = Depends(get_current_user),
):
    valuation = await core.read_valuation(wid=wid, method=method)
    return ValuationResponse(
        method=valuation.method.value,
        total_quantity=valuation.total_quantity,
        total_cost=valuation.total_cost,
        lines=[ValuationLineResponse.model_validate(line) for line in valuation.lines],
    )
