"""
Inventory Router — stock movements, counts, policy and current levels.
"""

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from api.deps import get_actor, get_core, get_current_user, require_operator
from core.runtime import InventoryCore
from inventory.queries import InventoryFilter, InventoryStatus
from inventory.stock_engine import BulkItem

router = APIRouter(prefix="/api/v1/inventory", tags=["inventory"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class LedgerEntryResponse(BaseModel):
    id: int
    at: datetime
    pid: UUID
    wid: UUID
    kind: str
    qty_delta: int
    unit_cost_applied: Decimal | None
    total_cost: Decimal | None
    cost_method: str | None
    on_hand_before: int
    on_hand_after: int
    reference: str | None
    related_entry_id: int | None
    reservation_id: UUID | None
    actor: str
    reason: str | None

    model_config = {"from_attributes": True}


class InventoryRowResponse(BaseModel):
    pid: UUID
    wid: UUID
    on_hand: int
    reserved: int
    available: int
    weighted_avg_cost: Decimal
    reorder_point: int
    reorder_quantity: int
    max_stock: int | None
    cost_method: str
    last_movement_at: datetime | None
    updated_at: datetime | None
    status: str | None = None

    model_config = {"from_attributes": True}


class MovementRequest(BaseModel):
    pid: UUID
    wid: UUID
    delta: int
    kind: Literal["receive", "issue", "adjust+", "adjust-"]
    unit_cost: Decimal | None = Field(None, ge=0)
    reference: str | None = Field(None, max_length=255)
    reason: str | None = Field(None, max_length=500)
    cost_method: Literal["FIFO", "LIFO", "AVERAGE"] | None = None


class AdjustmentRequest(BaseModel):
    pid: UUID
    wid: UUID
    adjustment_type: Literal["increase", "decrease"]
    quantity: int = Field(..., gt=0)
    unit_cost: Decimal | None = Field(None, ge=0)
    reason: str = Field(..., min_length=1, max_length=500)
    reference: str | None = Field(None, max_length=255)


class CountRequest(BaseModel):
    pid: UUID
    wid: UUID
    counted_qty: int = Field(..., ge=0)
    unit_cost: Decimal | None = Field(None, ge=0)
    reason: str | None = Field(None, max_length=500)
    reference: str | None = Field(None, max_length=255)


class CountResponse(BaseModel):
    changed: bool
    entry: LedgerEntryResponse | None = None


class PolicyRequest(BaseModel):
    pid: UUID
    wid: UUID
    reorder_point: int | None = Field(None, ge=0)
    reorder_quantity: int | None = Field(None, ge=0)
    max_stock: int | None = Field(None, ge=0)
    cost_method: Literal["FIFO", "LIFO", "AVERAGE"] | None = None


class BulkRequest(BaseModel):
    updates: list[MovementRequest] = Field(..., min_length=1, max_length=100)
    atomic: bool = False


class BulkItemResult(BaseModel):
    index: int
    pid: UUID
    wid: UUID
    success: bool
    entry: LedgerEntryResponse | None = None
    error: dict | None = None


class BulkResponse(BaseModel):
    succeeded: int
    failed: int
    results: list[BulkItemResult]


class InventorySummary(BaseModel):
    total_items: int
    total_on_hand: int
    total_reserved: int
    total_available: int
    by_status: dict[str, int]
    active_reservations: int
    open_alerts: int


def row_response(row, status_value: InventoryStatus | None = None) -> InventoryRowResponse:
    response = InventoryRowResponse.model_validate(row)
    if status_value is not None:
        response.status = status_value.value
    return response


# ─── Mutations ──────────────────────────────────────────────────────────────


@router.post("/movements", response_model=LedgerEntryResponse, status_code=status.HTTP_201_CREATED)
async def apply_movement(
    body: MovementRequest,
    core: InventoryCore = Depends(get_core),
    _: dict = Depends(require_operator),
    actor: str = Depends(get_actor),
):
    """Apply a receipt, issue or adjustment to one (product, warehouse)."""
    return await core.apply_delta(
        body.pid,
        body.wid,
        body.delta,
        body.kind,
        unit_cost=body.unit_cost,
        reference=body.reference,
        actor=actor,
        reason=body.reason,
        cost_method=body.cost_method,
    )


@router.post("/adjustments", response_model=LedgerEntryResponse, status_code=status.HTTP_201_CREATED)
async def adjust_stock(
    body: AdjustmentRequest,
    core: InventoryCore = Depends(get_core),
    _: dict = Depends(require_operator),
    actor: str = Depends(get_actor),
):
    """Manual increase/decrease with a mandatory reason."""
    increase = body.adjustment_type == "increase"
    return await core.apply_delta(
        body.pid,
        body.wid,
        body.quantity if increase else -body.quantity,
        "adjust+" if increase else "adjust-",
        unit_cost=body.unit_cost,
        reference=body.reference,
        actor=actor,
        reason=body.reason,
    )


@router.post("/counts", response_model=CountResponse)
async def record_count(
    body: CountRequest,
    core: InventoryCore = Depends(get_core),
    _: dict = Depends(require_operator),
    actor: str = Depends(get_actor),
):
    """Set on-hand to a physical count."""
    entry = await core.set_on_hand(
        body.pid,
        body.wid,
        body.counted_qty,
        unit_cost=body.unit_cost,
        reason=body.reason,
        actor=actor,
        reference=body.reference,
    )
    return CountResponse(
        changed=entry is not None,
        entry=LedgerEntryResponse.model_validate(entry) if entry is not None else None,
    )


@router.put("/policy", response_model=InventoryRowResponse)
async def update_policy(
    body: PolicyRequest,
    core: InventoryCore = Depends(get_core),
    _: dict = Depends(require_operator),
    actor: str = Depends(get_actor),
):
    """Reorder point, reorder quantity, max stock and costing method."""
    row = await core.set_policy(
        body.pid,
        body.wid,
        reorder_point=body.reorder_point,
        reorder_quantity=body.reorder_quantity,
        max_stock=body.max_stock,
        cost_method=body.cost_method,
        actor=actor,
    )
    return row_response(row)


@router.post("/bulk", response_model=BulkResponse)
async def bulk_update(
    body: BulkRequest,
    core: InventoryCore = Depends(get_core),
    _: dict = Depends(require_operator),
    actor: str = Depends(get_actor),
):
    """Apply up to 100 movements, per item or all-or-nothing."""
    items = [
        BulkItem(
            pid=update.pid,
            wid=update.wid,
            delta=update.delta,
            kind=update.kind,
            unit_cost=update.unit_cost,
            reference=update.reference,
            reason=update.reason,
            cost_method=update.cost_method,
        )
        for update in body.updates
    ]
    results = await core.bulk_apply(items, actor=actor, atomic=body.atomic)
    succeeded = sum(1 for result in results if result.success)
    return BulkResponse(
        succeeded=succeeded,
        failed=len(results) - succeeded,
        results=[
            BulkItemResult(
                index=result.index,
                pid=result.pid,
                wid=result.wid,
                success=result.success,
                entry=LedgerEntryResponse.model_validate(result.entry) if result.entry is not None else None,
                error=result.error,
            )
            for result in results
        ],
    )


# ─── Reads ──────────────────────────────────────────────────────────────────


@router.get("/summary", response_model=InventorySummary)
async def get_inventory_summary(
    wid: UUID | None = None,
    core: InventoryCore = Depends(get_core),
    _: dict = Depends(get_current_user),
):
    """Status counts and stock totals."""
    return await core.status_summary(wid=wid)


@router.get("/realtime/health")
async def realtime_health(
    core: InventoryCore = Depends(get_core),
    _: dict = Depends(get_current_user),
):
    """Push channel and change bus status."""
    return {"status": "healthy", **core.push_hub.stats()}


@router.get("/", response_model=list[InventoryRowResponse])
async def list_inventory(
    pid: UUID | None = None,
    wid: UUID | None = None,
    low_stock_only: bool = False,
    status: InventoryStatus | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    core: InventoryCore = Depends(get_core),
    _: dict = Depends(get_current_user),
):
    """Current rows with real-time status."""
    rows = await core.read_inventory(
        InventoryFilter(pid=pid, wid=wid, low_stock_only=low_stock_only, status=status),
        offset=skip,
        limit=limit,
    )
    return [row_response(row, row_status) for row, row_status in rows]
