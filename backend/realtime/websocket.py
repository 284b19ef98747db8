"""
Push Channel — WebSocket fan-out of Change Bus events.

Connect: ws://host/ws/inventory?token=<jwt>   (or Authorization: Bearer <jwt>)

Client -> server:
    {"type": "subscribe", "topic": "...", "filters": {"wid": "...", "pid": "..."}}
    {"type": "unsubscribe", "topic": "..."}
    {"type": "ping"} / {"type": "pong"}

Server -> client:
    connection_established, subscription_confirmed, subscription_error,
    unsubscription_confirmed, ping, pong, error, gap_notice, and
    {"type": <topic>, "ledger_id": ..., "data": {...}, "timestamp": ...}

Each session owns a bus subscription (its write queue) and three tasks:
receiver, sender and keep-alive. Any client frame counts as liveness; a
session silent for longer than ws_pong_timeout_seconds is closed with 4408.
"""

import asyncio
import json
import time
import uuid
from collections import Counter
from typing import Any, Literal

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError

from core.clock import utcnow
from core.config import Settings, get_settings
from core.errors import PushSendError
from core.security import decode_access_token, role_from_claims
from realtime.bus import ChangeBus
from realtime.events import ChangeEvent, EventType, GapNotice

logger = structlog.get_logger()
router = APIRouter()

CLOSE_UNAUTHORIZED = 4001
CLOSE_KEEPALIVE_TIMEOUT = 4408

_OPERATIONS_ROLES = frozenset({"admin", "manager", "warehouse_staff"})

TOPIC_ROLES: dict[str, frozenset[str]] = {
    "inventory_updates": _OPERATIONS_ROLES,
    "stock_movements": _OPERATIONS_ROLES,
    "reservation_updates": _OPERATIONS_ROLES,
    "low_stock_alerts": _OPERATIONS_ROLES | {"purchaser"},
    "dashboard_metrics": frozenset({"admin", "manager"}),
}

EVENT_TOPICS: dict[EventType, str] = {
    EventType.STOCK_CHANGED: "inventory_updates",
    EventType.MOVEMENT_LOGGED: "stock_movements",
    EventType.RESERVATION_CHANGED: "reservation_updates",
    EventType.ALERT_RAISED: "low_stock_alerts",
    EventType.ALERT_CLEARED: "low_stock_alerts",
    EventType.METRICS_SNAPSHOT: "dashboard_metrics",
}


# ─── Frames ─────────────────────────────────────────────────────────────────


class TopicFilters(BaseModel):
    wid: uuid.UUID | None = None
    pid: uuid.UUID | None = None

    def matches(self, event: ChangeEvent) -> bool:
        if self.wid is not None and event.wid is not None and event.wid != self.wid:
            return False
        if self.pid is not None and event.pid is not None and event.pid != self.pid:
            return False
        return True


class ClientFrame(BaseModel):
    type: Literal["subscribe", "unsubscribe", "ping", "pong"]
    topic: str | None = None
    filters: TopicFilters = Field(default_factory=TopicFilters)


def can_subscribe(role: str | None, topic: str) -> bool:
    return role in TOPIC_ROLES.get(topic, frozenset())


def event_frame(topic: str, event: ChangeEvent) -> dict[str, Any]:
    return {
        "type": topic,
        "event": event.event_type.value,
        "ledger_id": event.ledger_id,
        "data": event.to_payload(),
        "timestamp": event.at.isoformat(),
    }


def _control_frame(frame_type: str, **fields: Any) -> dict[str, Any]:
    return {"type": frame_type, **fields, "timestamp": utcnow().isoformat()}


# ─── Sessions ───────────────────────────────────────────────────────────────


class PushSession:
    def __init__(self, websocket: WebSocket, user: dict, bus: ChangeBus, settings: Settings):
        self.id = uuid.uuid4()
        self.websocket = websocket
        self.user_id = str(user.get("sub", "unknown"))
        self.role = role_from_claims(user)
        self.settings = settings
        self.topics: dict[str, TopicFilters] = {}
        self.subscription = bus.subscribe(self.wants, maxsize=settings.change_bus_queue_size, name=f"ws:{self.id}")
        self.last_seen = time.monotonic()

    def wants(self, event: ChangeEvent) -> bool:
        topic = EVENT_TOPICS.get(event.event_type)
        filters = self.topics.get(topic) if topic else None
        return filters is not None and filters.matches(event)

    def frames_for(self, event: ChangeEvent) -> list[dict[str, Any]]:
        if isinstance(event, GapNotice):
            return [_control_frame("gap_notice", dropped=event.dropped)]
        # Subscriptions may have changed since the event was queued.
        if not self.wants(event):
            return []
        return [event_frame(EVENT_TOPICS[event.event_type], event)]

    def handle_frame(self, raw: Any) -> dict[str, Any] | None:
        """Apply one client frame and return the reply, if any."""
        self.last_seen = time.monotonic()
        try:
            frame = ClientFrame.model_validate(raw)
        except ValidationError as exc:
            return _control_frame(
                "error",
                message="Invalid message format",
                detail=[f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()],
            )

        if frame.type == "ping":
            return _control_frame("pong")
        if frame.type == "pong":
            return None

        topic = frame.topic or ""
        if frame.type == "unsubscribe":
            self.topics.pop(topic, None)
            logger.debug("push.unsubscribed", session_id=str(self.id), topic=topic)
            return _control_frame("unsubscription_confirmed", topic=topic)

        if topic not in TOPIC_ROLES:
            return _control_frame("subscription_error", topic=topic, message=f"Unknown topic '{topic}'")
        if not can_subscribe(self.role, topic):
            logger.info("push.subscription_denied", session_id=str(self.id), topic=topic, role=self.role)
            return _control_frame(
                "subscription_error",
                topic=topic,
                message="Insufficient permissions for subscription",
            )
        self.topics[topic] = frame.filters
        logger.debug("push.subscribed", session_id=str(self.id), topic=topic, role=self.role)
        return _control_frame(
            "subscription_confirmed",
            topic=topic,
            filters=frame.filters.model_dump(mode="json", exclude_none=True),
        )

    async def send(self, frame: dict[str, Any]) -> None:
        try:
            await self.websocket.send_json(frame)
        except (WebSocketDisconnect, RuntimeError) as exc:
            raise PushSendError("Push frame could not be sent", session_id=str(self.id), cause=str(exc)) from exc

    async def receiver(self) -> None:
        while True:
            text = await self.websocket.receive_text()
            try:
                raw = json.loads(text)
            except ValueError:
                self.last_seen = time.monotonic()
                await self.send(_control_frame("error", message="Invalid JSON message"))
                continue
            reply = self.handle_frame(raw)
            if reply is not None:
                await self.send(reply)

    async def sender(self) -> None:
        async for event in self.subscription:
            for frame in self.frames_for(event):
                await self.send(frame)

    async def keepalive(self) -> None:
        interval = self.settings.ws_ping_interval_seconds
        timeout = self.settings.ws_pong_timeout_seconds
        next_ping = time.monotonic() + interval
        while True:
            now = time.monotonic()
            deadline = self.last_seen + timeout
            if now >= deadline:
                logger.info("push.keepalive_timeout", session_id=str(self.id), user_id=self.user_id)
                await self.websocket.close(code=CLOSE_KEEPALIVE_TIMEOUT, reason="Keep-alive timeout")
                return
            if now >= next_ping:
                await self.send(_control_frame("ping"))
                next_ping = now + interval
            await asyncio.sleep(max(0.0, min(next_ping, deadline) - now))

    async def run(self) -> None:
        tasks = [
            asyncio.create_task(self.receiver(), name=f"ws-recv:{self.id}"),
            asyncio.create_task(self.sender(), name=f"ws-send:{self.id}"),
            asyncio.create_task(self.keepalive(), name=f"ws-keepalive:{self.id}"),
        ]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is None or isinstance(exc, WebSocketDisconnect):
                continue
            if isinstance(exc, PushSendError):
                logger.warning("push.send_failed", session_id=str(self.id), cause=exc.details.get("cause"))
                continue
            logger.error("push.session_failed", session_id=str(self.id), error=repr(exc))

    def close(self) -> None:
        self.subscription.close()


class PushHub:
    """Tracks live push sessions."""

    def __init__(self, bus: ChangeBus, settings: Settings):
        self.bus = bus
        self.settings = settings
        self.sessions: dict[uuid.UUID, PushSession] = {}

    async def serve(self, websocket: WebSocket, user: dict) -> None:
        session = PushSession(websocket, user, self.bus, self.settings)
        self.sessions[session.id] = session
        logger.info("push.connected", session_id=str(session.id), user_id=session.user_id, role=session.role)
        try:
            await session.send(
                _control_frame(
                    "connection_established",
                    session_id=str(session.id),
                    user_id=session.user_id,
                    role=session.role,
                    topics=sorted(topic for topic in TOPIC_ROLES if can_subscribe(session.role, topic)),
                )
            )
            await session.run()
        except PushSendError:
            logger.warning("push.send_failed", session_id=str(session.id))
        finally:
            self.sessions.pop(session.id, None)
            session.close()
            logger.info("push.disconnected", session_id=str(session.id), user_id=session.user_id)

    def stats(self) -> dict[str, Any]:
        topic_counts: Counter[str] = Counter()
        for session in self.sessions.values():
            topic_counts.update(session.topics.keys())
        return {
            "connected_clients": len(self.sessions),
            "subscriptions": {topic: topic_counts.get(topic, 0) for topic in TOPIC_ROLES},
            "bus_subscribers": self.bus.subscriber_count,
        }


# ─── Endpoint ───────────────────────────────────────────────────────────────


def authenticate_ws(token: str | None) -> dict | None:
    """Validate the handshake token. Returns claims or None."""
    settings = get_settings()
    if settings.debug:
        return {"sub": "dev-user", "email": "dev@stockpulse.local", "role": "admin"}
    if not token:
        return None
    return decode_access_token(token)


def _bearer_token(websocket: WebSocket) -> str | None:
    header = websocket.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return None


@router.websocket("/ws/inventory")
async def inventory_socket(websocket: WebSocket, token: str | None = Query(None)):
    user = authenticate_ws(token or _bearer_token(websocket))
    if user is None:
        await websocket.close(code=CLOSE_UNAUTHORIZED, reason="Unauthorized")
        return

    await websocket.accept()
    hub: PushHub = websocket.app.state.core.push_hub
    await hub.serve(websocket, user)
