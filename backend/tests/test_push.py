"""
Tests for the WebSocket push channel: topic ACL, client frames, and the
end-to-end handshake/subscribe/deliver flow.
"""

import uuid
from decimal import Decimal

import pytest
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from api.main import create_app
from core.security import create_access_token, role_from_claims
from realtime.bus import ChangeBus
from realtime.events import AlertRaised, GapNotice, MetricsSnapshot, StockChanged
from realtime.websocket import (
    CLOSE_UNAUTHORIZED,
    PushHub,
    PushSession,
    can_subscribe,
    event_frame,
)


def make_session(settings, role="warehouse_staff", bus=None):
    return PushSession(websocket=None, user={"sub": "user-1", "role": role}, bus=bus or ChangeBus(), settings=settings)


def alert(wid, severity="low"):
    return AlertRaised(
        pid=uuid.uuid4(),
        wid=wid,
        ledger_id=9,
        alert_id=uuid.uuid4(),
        severity=severity,
        observed_on_hand=3,
        observed_available=3,
        threshold=10,
        suggested_qty=17,
    )


class TestTopicAccess:
    @pytest.mark.parametrize(
        "role,topic,allowed",
        [
            ("warehouse_staff", "inventory_updates", True),
            ("warehouse_staff", "dashboard_metrics", False),
            ("manager", "dashboard_metrics", True),
            ("purchaser", "low_stock_alerts", True),
            ("purchaser", "stock_movements", False),
            (None, "inventory_updates", False),
            ("admin", "no_such_topic", False),
        ],
    )
    def test_can_subscribe(self, role, topic, allowed):
        assert can_subscribe(role, topic) is allowed

    def test_role_from_claims(self):
        assert role_from_claims({"role": "manager"}) == "manager"
        assert role_from_claims({"roles": ["purchaser", "viewer"]}) == "purchaser"
        assert role_from_claims({"sub": "x"}) is None


class TestClientFrames:
    def test_ping(self, settings):
        session = make_session(settings)
        assert session.handle_frame({"type": "ping"})["type"] == "pong"
        assert session.handle_frame({"type": "pong"}) is None

    def test_invalid_frame(self, settings):
        session = make_session(settings)
        reply = session.handle_frame({"type": "shout", "topic": "inventory_updates"})
        assert reply["type"] == "error"
        assert reply["detail"]

    def test_unknown_topic(self, settings):
        session = make_session(settings)
        reply = session.handle_frame({"type": "subscribe", "topic": "gossip"})
        assert reply["type"] == "subscription_error"
        assert "Unknown topic" in reply["message"]

    def test_insufficient_role(self, settings):
        session = make_session(settings, role="purchaser")
        reply = session.handle_frame({"type": "subscribe", "topic": "inventory_updates"})
        assert reply["type"] == "subscription_error"
        assert reply["message"] == "Insufficient permissions for subscription"
        assert session.topics == {}

    def test_subscribe_with_filters(self, settings):
        session = make_session(settings, role="purchaser")
        wid = uuid.uuid4()
        reply = session.handle_frame({"type": "subscribe", "topic": "low_stock_alerts", "filters": {"wid": str(wid)}})
        assert reply["type"] == "subscription_confirmed"
        assert reply["filters"] == {"wid": str(wid)}

        assert session.wants(alert(wid)) is True
        assert session.wants(alert(uuid.uuid4())) is False

    def test_unsubscribe(self, settings):
        session = make_session(settings)
        session.handle_frame({"type": "subscribe", "topic": "low_stock_alerts"})
        reply = session.handle_frame({"type": "unsubscribe", "topic": "low_stock_alerts"})
        assert reply["type"] == "unsubscription_confirmed"
        assert session.wants(alert(uuid.uuid4())) is False


class TestDelivery:
    def test_only_subscribed_events_are_queued(self, settings):
        bus = ChangeBus()
        session = make_session(settings, bus=bus)
        session.handle_frame({"type": "subscribe", "topic": "low_stock_alerts"})

        raised = alert(uuid.uuid4())
        bus.publish(raised)
        bus.publish(MetricsSnapshot(metrics={"total_items": 1}))

        queued = session.subscription.drain()
        assert queued == [raised]
        frames = session.frames_for(raised)
        assert frames[0]["type"] == "low_stock_alerts"
        assert frames[0]["event"] == "alert_raised"
        assert frames[0]["ledger_id"] == 9
        assert frames[0]["data"]["suggested_qty"] == 17

    def test_gap_notice_frame(self, settings):
        session = make_session(settings)
        frames = session.frames_for(GapNotice(dropped=4))
        assert frames[0]["type"] == "gap_notice"
        assert frames[0]["dropped"] == 4

    def test_event_frame_shape(self):
        event = StockChanged(
            pid=uuid.uuid4(),
            wid=uuid.uuid4(),
            ledger_id=12,
            on_hand=5,
            reserved=1,
            available=4,
            weighted_avg_cost=Decimal("2.5"),
        )
        frame = event_frame("inventory_updates", event)
        assert frame["type"] == "inventory_updates"
        assert frame["data"]["available"] == 4
        assert frame["data"]["weighted_avg_cost"] == "2.5"
        assert frame["timestamp"] == event.at.isoformat()

    def test_hub_stats(self, settings):
        bus = ChangeBus()
        hub = PushHub(bus, settings)
        session = make_session(settings, bus=bus)
        session.handle_frame({"type": "subscribe", "topic": "inventory_updates"})
        hub.sessions[session.id] = session

        stats = hub.stats()
        assert stats["connected_clients"] == 1
        assert stats["subscriptions"]["inventory_updates"] == 1
        assert stats["subscriptions"]["dashboard_metrics"] == 0
        assert stats["bus_subscribers"] == 1


class TestWebSocketEndpoint:
    def test_rejects_invalid_token(self, settings):
        app = create_app(settings)
        with TestClient(app) as client:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with client.websocket_connect("/ws/inventory?token=not-a-jwt"):
                    pass
        assert exc_info.value.code == CLOSE_UNAUTHORIZED

    def test_rejects_missing_token(self, settings):
        app = create_app(settings)
        with TestClient(app) as client:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with client.websocket_connect("/ws/inventory"):
                    pass
        assert exc_info.value.code == CLOSE_UNAUTHORIZED

    def test_subscribe_and_receive_stock_change(self, settings):
        token = create_access_token({"sub": "picker-1", "email": "picker@stockpulse.local", "role": "warehouse_staff"})
        headers = {"Authorization": f"Bearer {token}"}
        pid, wid = uuid.uuid4(), uuid.uuid4()

        app = create_app(settings)
        with TestClient(app) as client:
            with client.websocket_connect(f"/ws/inventory?token={token}") as ws:
                hello = ws.receive_json()
                assert hello["type"] == "connection_established"
                assert hello["role"] == "warehouse_staff"
                assert "dashboard_metrics" not in hello["topics"]

                ws.send_json({"type": "ping"})
                assert ws.receive_json()["type"] == "pong"

                ws.send_json({"type": "subscribe", "topic": "inventory_updates", "filters": {"wid": str(wid)}})
                assert ws.receive_json()["type"] == "subscription_confirmed"

                resp = client.post(
                    "/api/v1/inventory/movements",
                    json={"pid": str(pid), "wid": str(wid), "delta": 5, "kind": "receive", "unit_cost": "2.00"},
                    headers=headers,
                )
                assert resp.status_code == 201

                frame = ws.receive_json()
                assert frame["type"] == "inventory_updates"
                assert frame["ledger_id"] == resp.json()["id"]
                assert frame["data"]["pid"] == str(pid)
                assert frame["data"]["on_hand"] == 5
                assert frame["data"]["available"] == 5

                health = client.get("/api/v1/inventory/realtime/health", headers=headers).json()
                assert health["connected_clients"] == 1
                assert health["subscriptions"]["inventory_updates"] == 1
