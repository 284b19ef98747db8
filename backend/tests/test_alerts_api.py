"""
API Integration Tests: reorder alert endpoints.
"""

import uuid
from decimal import Decimal

import pytest
from httpx import AsyncClient


@pytest.fixture
async def pending_alert(core, pid, wid):
    await core.apply_delta(pid, wid, 3, "receive", unit_cost=Decimal("1"))
    await core.set_policy(pid, wid, reorder_point=10, reorder_quantity=30)
    await core.watcher.process_pending()
    alerts = await core.read_alerts(pid=pid)
    assert len(alerts) == 1
    return alerts[0]


class TestAlertsAPI:
    async def test_list_alerts(self, client: AsyncClient, pending_alert):
        resp = await client.get("/api/v1/alerts/")
        assert resp.status_code == 200
        data = resp.json()
        assert len(data) == 1
        assert data[0]["id"] == str(pending_alert.id)
        assert data[0]["severity"] == "critical"
        assert data[0]["status"] == "pending"
        assert data[0]["suggested_qty"] == 30

    async def test_filter_by_status(self, client: AsyncClient, pending_alert):
        resp = await client.get("/api/v1/alerts/", params={"status": "resolved"})
        assert resp.json() == []

    async def test_acknowledge_then_resolve(self, client: AsyncClient, pending_alert):
        resp = await client.patch(f"/api/v1/alerts/{pending_alert.id}/acknowledge")
        assert resp.status_code == 200
        assert resp.json()["status"] == "acknowledged"
        assert resp.json()["acknowledged_by"] == "test@stockpulse.local"

        resp = await client.patch(f"/api/v1/alerts/{pending_alert.id}/resolve", json={"notes": "PO-77 placed"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "resolved"
        assert resp.json()["notes"] == "PO-77 placed"

        resp = await client.patch(f"/api/v1/alerts/{pending_alert.id}/acknowledge")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "ALREADY_TERMINAL"

    async def test_unknown_alert(self, client: AsyncClient):
        resp = await client.patch(f"/api/v1/alerts/{uuid.uuid4()}/resolve")
        assert resp.status_code == 404
