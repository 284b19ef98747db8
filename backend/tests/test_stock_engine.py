"""
Tests for the Stock Engine: movements, costing, counts, bulk and concurrency.
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import delete, func, select

from core.errors import (
    InsufficientLayers,
    InsufficientStock,
    InvalidDelta,
    UnknownMethod,
    UnknownRow,
)
from db.models import CostLayer, Incident, LedgerEntry
from inventory.ledger import LedgerFilter
from inventory.queries import InventoryFilter
from inventory.stock_engine import BulkItem
from realtime.events import MovementLogged, StockChanged


async def get_row(core, pid, wid):
    rows = await core.read_inventory(InventoryFilter(pid=pid, wid=wid))
    assert len(rows) == 1
    return rows[0][0]


async def get_layers(core, pid, wid):
    async with core.store.begin() as session:
        result = await session.execute(
            select(CostLayer)
            .where(CostLayer.pid == pid, CostLayer.wid == wid)
            .order_by(CostLayer.received_at, CostLayer.id)
        )
        return list(result.scalars().all())


async def ledger_count(core) -> int:
    async with core.store.begin() as session:
        return (await session.execute(select(func.count()).select_from(LedgerEntry))).scalar_one()


class TestReceiptsAndIssues:
    async def test_fifo_consumption_across_layers(self, core, pid, wid):
        await core.apply_delta(pid, wid, 100, "receive", unit_cost=Decimal("10"))
        await core.apply_delta(pid, wid, 50, "receive", unit_cost=Decimal("12"))
        entry = await core.apply_delta(pid, wid, -120, "issue", cost_method="FIFO")

        assert entry.total_cost == Decimal("1240")
        assert entry.on_hand_before == 150
        assert entry.on_hand_after == 30

        row = await get_row(core, pid, wid)
        assert row.on_hand == 30
        assert row.available == 30
        assert row.weighted_avg_cost == Decimal("12")

        layers = await get_layers(core, pid, wid)
        assert [(layer.remaining_qty, layer.unit_cost) for layer in layers] == [(30, Decimal("12"))]

    async def test_lifo_consumption(self, core, pid, wid):
        await core.apply_delta(pid, wid, 100, "receive", unit_cost=Decimal("10"))
        await core.apply_delta(pid, wid, 50, "receive", unit_cost=Decimal("12"))
        entry = await core.apply_delta(pid, wid, -60, "issue", cost_method="LIFO")

        assert entry.total_cost == Decimal("700")
        assert entry.cost_method == "LIFO"
        row = await get_row(core, pid, wid)
        assert row.weighted_avg_cost == Decimal("10")

    async def test_average_consumption_keeps_wac(self, core, pid, wid):
        await core.set_policy(pid, wid, cost_method="AVERAGE")
        await core.apply_delta(pid, wid, 100, "receive", unit_cost=Decimal("10"))
        await core.apply_delta(pid, wid, 50, "receive", unit_cost=Decimal("12"))
        entry = await core.apply_delta(pid, wid, -30, "issue")

        row = await get_row(core, pid, wid)
        assert row.weighted_avg_cost == Decimal("10.666667")
        assert entry.unit_cost_applied == Decimal("10.666667")
        assert entry.total_cost == Decimal("320.000010")

    async def test_over_consumption_rejected(self, core, pid, wid):
        await core.apply_delta(pid, wid, 5, "receive", unit_cost=Decimal("1"))
        entries_before = await ledger_count(core)

        with pytest.raises(InsufficientStock) as exc_info:
            await core.apply_delta(pid, wid, -10, "issue")
        assert exc_info.value.details["available"] == 5

        row = await get_row(core, pid, wid)
        assert row.on_hand == 5
        assert await ledger_count(core) == entries_before

    async def test_issue_cannot_touch_reserved_units(self, core, stocked):
        pid, wid = stocked
        await core.reserve(pid, wid, 95, "ORDER-1")
        with pytest.raises(InsufficientStock):
            await core.apply_delta(pid, wid, -6, "issue")

    async def test_receive_requires_unit_cost(self, core, pid, wid):
        with pytest.raises(InvalidDelta):
            await core.apply_delta(pid, wid, 10, "receive")

    @pytest.mark.parametrize(
        "delta,kind",
        [(0, "receive"), (5, "issue"), (-5, "receive"), (-5, "transfer-out"), (5, "bogus"), (2.5, "adjust+")],
    )
    async def test_invalid_movements(self, core, pid, wid, delta, kind):
        with pytest.raises(InvalidDelta):
            await core.apply_delta(pid, wid, delta, kind, unit_cost=Decimal("1"))

    async def test_issue_on_missing_row(self, core, pid, wid):
        with pytest.raises(UnknownRow):
            await core.apply_delta(pid, wid, -1, "issue")

    async def test_unknown_cost_method(self, core, stocked):
        pid, wid = stocked
        with pytest.raises(UnknownMethod):
            await core.apply_delta(pid, wid, -1, "issue", cost_method="HIFO")

    async def test_adjust_up_without_cost_uses_wac(self, core, stocked):
        pid, wid = stocked
        entry = await core.apply_delta(pid, wid, 10, "adjust+", reason="found on shelf")
        assert entry.unit_cost_applied == Decimal("5")
        row = await get_row(core, pid, wid)
        assert row.on_hand == 110
        assert row.weighted_avg_cost == Decimal("5")

    async def test_exhausted_layer_is_removed(self, core, stocked):
        pid, wid = stocked
        await core.apply_delta(pid, wid, -100, "issue")
        assert await get_layers(core, pid, wid) == []
        row = await get_row(core, pid, wid)
        assert row.on_hand == 0
        assert row.weighted_avg_cost == Decimal("5")


class TestEvents:
    async def test_events_published_after_commit(self, core, pid, wid):
        subscription = core.bus.subscribe(name="test")
        entry = await core.apply_delta(pid, wid, 10, "receive", unit_cost=Decimal("2"))

        events = subscription.drain()
        assert [type(event) for event in events] == [StockChanged, MovementLogged]
        assert all(event.ledger_id == entry.id for event in events)
        assert events[0].on_hand == 10
        assert events[0].available == 10
        assert events[1].qty_delta == 10

    async def test_failed_mutation_publishes_nothing(self, core, pid, wid):
        await core.apply_delta(pid, wid, 1, "receive", unit_cost=Decimal("2"))
        subscription = core.bus.subscribe(name="test")
        with pytest.raises(InsufficientStock):
            await core.apply_delta(pid, wid, -2, "issue")
        assert subscription.drain() == []


class TestLedgerInvariants:
    async def test_on_hand_chain_matches_row(self, core, stocked):
        pid, wid = stocked
        await core.apply_delta(pid, wid, -30, "issue")
        await core.apply_delta(pid, wid, 20, "receive", unit_cost=Decimal("6"))
        await core.apply_delta(pid, wid, -5, "adjust-", reason="damaged")

        entries = sorted(await core.read_ledger(LedgerFilter(pid=pid, wid=wid)), key=lambda e: e.id)
        running = 0
        for entry in entries:
            assert entry.on_hand_before == running
            assert entry.on_hand_after == running + entry.qty_delta
            running = entry.on_hand_after

        row = await get_row(core, pid, wid)
        assert row.on_hand == running == 85
        assert row.available == row.on_hand - row.reserved

    async def test_layers_sum_to_on_hand(self, core, stocked):
        pid, wid = stocked
        await core.apply_delta(pid, wid, 40, "receive", unit_cost=Decimal("7"))
        await core.apply_delta(pid, wid, -110, "issue")
        layers = await get_layers(core, pid, wid)
        row = await get_row(core, pid, wid)
        assert sum(layer.remaining_qty for layer in layers) == row.on_hand == 30


class TestCounts:
    async def test_count_down_writes_adjustment(self, core, stocked):
        pid, wid = stocked
        entry = await core.set_on_hand(pid, wid, 90, reason="cycle count")
        assert entry.kind == "adjust-"
        assert entry.qty_delta == -10
        assert (await get_row(core, pid, wid)).on_hand == 90

    async def test_count_up_costs_at_wac(self, core, stocked):
        pid, wid = stocked
        entry = await core.set_on_hand(pid, wid, 104)
        assert entry.kind == "adjust+"
        assert entry.unit_cost_applied == Decimal("5")

    async def test_unchanged_count_is_noop(self, core, stocked):
        pid, wid = stocked
        before = await ledger_count(core)
        assert await core.set_on_hand(pid, wid, 100) is None
        assert await ledger_count(core) == before

    async def test_count_below_reserved_rejected(self, core, stocked):
        pid, wid = stocked
        await core.reserve(pid, wid, 80, "ORDER-1")
        with pytest.raises(InsufficientStock):
            await core.set_on_hand(pid, wid, 50)

    async def test_count_below_reserved_shrinks_reservations(self, core, stocked):
        pid, wid = stocked
        core.settings.allow_adjust_into_reserved = True
        older = await core.reserve(pid, wid, 40, "ORDER-1")
        core.clock.advance(minutes=1)
        newer = await core.reserve(pid, wid, 40, "ORDER-2")

        await core.set_on_hand(pid, wid, 50)

        row = await get_row(core, pid, wid)
        assert row.on_hand == 50
        assert row.reserved == 50
        assert row.available == 0
        assert (await core.reservations.get(newer.id)).qty == 10
        assert (await core.reservations.get(older.id)).qty == 40

    async def test_negative_count_rejected(self, core, pid, wid):
        with pytest.raises(InvalidDelta):
            await core.set_on_hand(pid, wid, -1)


class TestPolicy:
    async def test_policy_creates_row(self, core, pid, wid):
        row = await core.set_policy(pid, wid, reorder_point=10, reorder_quantity=25, max_stock=200, cost_method="lifo")
        assert row.on_hand == 0
        assert row.reorder_point == 10
        assert row.reorder_quantity == 25
        assert row.max_stock == 200
        assert row.cost_method == "LIFO"

    async def test_negative_policy_rejected(self, core, pid, wid):
        with pytest.raises(InvalidDelta):
            await core.set_policy(pid, wid, reorder_point=-1)


class TestBulk:
    async def test_non_atomic_reports_per_item(self, core, stocked, wid2):
        pid, wid = stocked
        results = await core.bulk_apply(
            [
                BulkItem(pid=pid, wid=wid, delta=-10, kind="issue"),
                BulkItem(pid=pid, wid=wid2, delta=-1, kind="issue"),
                BulkItem(pid=pid, wid=wid2, delta=5, kind="receive", unit_cost=Decimal("3")),
            ]
        )
        assert [result.success for result in results] == [True, False, True]
        assert results[1].error["code"] == "INVENTORY_ROW_NOT_FOUND"
        assert (await get_row(core, pid, wid)).on_hand == 90
        assert (await get_row(core, pid, wid2)).on_hand == 5

    async def test_atomic_rolls_back_everything(self, core, stocked, wid2):
        pid, wid = stocked
        before = await ledger_count(core)
        with pytest.raises(InsufficientStock):
            await core.bulk_apply(
                [
                    BulkItem(pid=pid, wid=wid2, delta=5, kind="receive", unit_cost=Decimal("3")),
                    BulkItem(pid=pid, wid=wid, delta=-200, kind="issue"),
                ],
                atomic=True,
            )
        assert (await get_row(core, pid, wid)).on_hand == 100
        assert await core.read_inventory(InventoryFilter(pid=pid, wid=wid2)) == []
        assert await ledger_count(core) == before

    async def test_atomic_validates_before_locking(self, core, stocked):
        pid, wid = stocked
        with pytest.raises(InvalidDelta):
            await core.bulk_apply([BulkItem(pid=pid, wid=wid, delta=3, kind="issue")], atomic=True)


class TestConcurrency:
    async def test_concurrent_decrements_never_go_negative(self, core, pid, wid):
        await core.apply_delta(pid, wid, 5, "receive", unit_cost=Decimal("1"))

        results = await asyncio.gather(
            core.apply_delta(pid, wid, -3, "issue", reference="W1"),
            core.apply_delta(pid, wid, -3, "issue", reference="W2"),
            return_exceptions=True,
        )

        committed = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, Exception)]
        assert len(committed) == 1
        assert len(rejected) == 1
        assert isinstance(rejected[0], InsufficientStock)
        assert committed[0].on_hand_after == 2
        assert (await get_row(core, pid, wid)).on_hand == 2

    async def test_many_concurrent_receipts_all_apply(self, core, pid, wid):
        await core.apply_delta(pid, wid, 1, "receive", unit_cost=Decimal("1"))
        await asyncio.gather(
            *(core.apply_delta(pid, wid, 1, "receive", unit_cost=Decimal("1")) for _ in range(10))
        )
        row = await get_row(core, pid, wid)
        assert row.on_hand == 11
        entries = await core.read_ledger(LedgerFilter(pid=pid, wid=wid))
        assert sorted(entry.on_hand_after for entry in entries) == list(range(1, 12))


class TestCostIncidents:
    async def test_missing_layers_recorded_as_incident(self, core, stocked):
        pid, wid = stocked
        async with core.store.begin() as session:
            await session.execute(delete(CostLayer).where(CostLayer.pid == pid, CostLayer.wid == wid))

        with pytest.raises(InsufficientLayers):
            await core.apply_delta(pid, wid, -10, "issue")

        assert (await get_row(core, pid, wid)).on_hand == 100
        async with core.store.begin() as session:
            incidents = list((await session.execute(select(Incident))).scalars().all())
        assert len(incidents) == 1
        assert incidents[0].kind == "insufficient_layers"
        assert incidents[0].pid == pid
        assert incidents[0].detail["operation"] == "apply_delta"
