"""
Change Bus: in-process publish/subscribe for committed changes.

One ChangeBus per process, owned by the InventoryCore container.

``publish`` is synchronous and never blocks: it appends the event to every
matching subscriber's bounded queue in call order, so per (pid, wid) order
is the commit order. When a queue is full the oldest undelivered event is
dropped and the subscriber receives a GapNotice(dropped=n) before the
remaining events; it must reconcile from the store on receipt.
"""

import asyncio
from collections import deque
from collections.abc import Callable

import structlog

from realtime.events import ChangeEvent, GapNotice

logger = structlog.get_logger()

Predicate = Callable[[ChangeEvent], bool]


class Subscription:
    """A subscriber's bounded queue. Iterate with ``async for`` or call ``get``."""

    def __init__(self, bus: "ChangeBus", predicate: Predicate | None, maxsize: int, name: str):
        self._bus = bus
        self.predicate = predicate
        self.maxsize = max(1, maxsize)
        self.name = name
        self._queue: deque[ChangeEvent] = deque()
        self._ready = asyncio.Event()
        self._dropped = 0
        self.closed = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def pending_gap(self) -> int:
        return self._dropped

    def offer(self, event: ChangeEvent) -> None:
        if self.closed:
            return
        if len(self._queue) >= self.maxsize:
            self._queue.popleft()
            self._dropped += 1
        self._queue.append(event)
        self._ready.set()

    def get_nowait(self) -> ChangeEvent | None:
        """Next event, a GapNotice if events were dropped, or None when empty."""
        if self._dropped:
            dropped, self._dropped = self._dropped, 0
            logger.warning("bus.gap", subscriber=self.name, dropped=dropped)
            return GapNotice(dropped=dropped)
        if self._queue:
            return self._queue.popleft()
        return None

    async def get(self) -> ChangeEvent | None:
        """Wait for the next event. None once the subscription is closed and drained."""
        while True:
            event = self.get_nowait()
            if event is not None:
                return event
            if self.closed:
                return None
            self._ready.clear()
            await self._ready.wait()

    def drain(self) -> list[ChangeEvent]:
        events = []
        while (event := self.get_nowait()) is not None:
            events.append(event)
        return events

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus._remove(self)
        self._ready.set()

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class ChangeBus:
    def __init__(self, default_maxsize: int = 1000):
        self.default_maxsize = default_maxsize
        self._subscriptions: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        predicate: Predicate | None = None,
        maxsize: int | None = None,
        name: str = "anonymous",
    ) -> Subscription:
        subscription = Subscription(self, predicate, maxsize or self.default_maxsize, name)
        self._subscriptions.append(subscription)
        logger.debug("bus.subscribed", subscriber=name, subscribers=len(self._subscriptions))
        return subscription

    def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions):
            if subscription.predicate is not None:
                try:
                    matched = subscription.predicate(event)
                except Exception:
                    logger.exception(
                        "bus.predicate_failed",
                        subscriber=subscription.name,
                        event_type=event.event_type.value,
                    )
                    continue
                if not matched:
                    continue
            subscription.offer(event)

    def publish_all(self, events: list[ChangeEvent]) -> None:
        for event in events:
            self.publish(event)

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
