"""
Tests for the in-process change bus.
"""

import asyncio
import uuid
from decimal import Decimal

from realtime.bus import ChangeBus
from realtime.events import GapNotice, MovementLogged, StockChanged


def stock_event(on_hand: int, pid=None, wid=None, ledger_id: int | None = None) -> StockChanged:
    return StockChanged(
        pid=pid or uuid.uuid4(),
        wid=wid or uuid.uuid4(),
        ledger_id=ledger_id,
        on_hand=on_hand,
        reserved=0,
        available=on_hand,
        weighted_avg_cost=Decimal("1"),
    )


class TestPublish:
    def test_fan_out_in_publish_order(self):
        bus = ChangeBus()
        first = bus.subscribe(name="a")
        second = bus.subscribe(name="b")
        events = [stock_event(n, ledger_id=n) for n in range(3)]

        bus.publish_all(events)

        assert first.drain() == events
        assert second.drain() == events

    def test_predicate_filters(self):
        bus = ChangeBus()
        pid = uuid.uuid4()
        subscription = bus.subscribe(lambda event: event.pid == pid)

        bus.publish(stock_event(1))
        matching = stock_event(2, pid=pid)
        bus.publish(matching)

        assert subscription.drain() == [matching]

    def test_failing_predicate_is_skipped(self):
        bus = ChangeBus()

        def broken(event):
            raise RuntimeError("boom")

        broken_sub = bus.subscribe(broken, name="broken")
        healthy = bus.subscribe(name="healthy")
        event = stock_event(1)

        bus.publish(event)

        assert broken_sub.drain() == []
        assert healthy.drain() == [event]

    def test_closed_subscription_receives_nothing(self):
        bus = ChangeBus()
        subscription = bus.subscribe()
        assert bus.subscriber_count == 1

        subscription.close()
        bus.publish(stock_event(1))

        assert bus.subscriber_count == 0
        assert subscription.drain() == []


class TestOverflow:
    def test_drops_oldest_and_reports_gap(self):
        bus = ChangeBus()
        subscription = bus.subscribe(maxsize=2)
        events = [stock_event(n, ledger_id=n) for n in range(5)]

        bus.publish_all(events)

        assert subscription.pending_gap == 3
        drained = subscription.drain()
        assert isinstance(drained[0], GapNotice)
        assert drained[0].dropped == 3
        assert drained[1:] == events[3:]
        assert subscription.pending_gap == 0

    def test_slow_subscriber_does_not_affect_others(self):
        bus = ChangeBus()
        slow = bus.subscribe(maxsize=1, name="slow")
        fast = bus.subscribe(maxsize=100, name="fast")
        events = [stock_event(n) for n in range(10)]

        bus.publish_all(events)

        assert fast.drain() == events
        assert len(slow.drain()) == 2


class TestAsyncConsumption:
    async def test_get_waits_for_publish(self):
        bus = ChangeBus()
        subscription = bus.subscribe()
        event = stock_event(7)

        waiter = asyncio.create_task(subscription.get())
        await asyncio.sleep(0)
        assert not waiter.done()

        bus.publish(event)
        assert await asyncio.wait_for(waiter, timeout=1) == event

    async def test_iteration_stops_on_close(self):
        bus = ChangeBus()
        subscription = bus.subscribe()
        events = [stock_event(1), stock_event(2)]
        bus.publish_all(events)

        async def collect():
            return [event async for event in subscription]

        task = asyncio.create_task(collect())
        await asyncio.sleep(0)
        subscription.close()

        assert await asyncio.wait_for(task, timeout=1) == events


def test_event_payload_is_json_ready():
    pid, wid = uuid.uuid4(), uuid.uuid4()
    event = MovementLogged(
        pid=pid,
        wid=wid,
        ledger_id=4,
        kind="issue",
        qty_delta=-2,
        on_hand_before=5,
        on_hand_after=3,
        unit_cost=Decimal("1.5"),
        total_cost=Decimal("3"),
    )
    payload = event.to_payload()
    assert payload["pid"] == str(pid)
    assert payload["unit_cost"] == "1.5"
    assert payload["qty_delta"] == -2
    assert isinstance(payload["at"], str)
