"""
Test Configuration: Fixtures for the inventory core, test client, and ids.

Each test gets its own SQLite file so concurrent transactions see real
write-lock serialization (BEGIN IMMEDIATE) instead of a shared in-memory
connection.
"""

import uuid
from datetime import datetime
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from api.deps import get_current_user
from api.main import create_app
from core.clock import FrozenClock
from core.config import Settings
from core.runtime import InventoryCore
from db.store import Store

T0 = datetime(2024, 1, 1, 9, 0, 0)


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'stockpulse.db'}"


@pytest.fixture
def settings(database_url):
    """Fast retries, no background loops, no email."""
    return Settings(
        app_env="test",
        debug=False,
        database_url=database_url,
        database_create_all=True,
        lock_timeout_seconds=10.0,
        concurrency_max_retries=5,
        concurrency_backoff_base_seconds=0.001,
        concurrency_backoff_max_seconds=0.01,
        alert_suppression_window_seconds=3600,
        background_loops_enabled=False,
        sendgrid_api_key="",
        alert_recipients=[],
    )


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
async def store(settings):
    store = Store.from_url(settings.database_url, lock_timeout_seconds=settings.lock_timeout_seconds)
    await store.create_all()
    yield store
    await store.dispose()


@pytest.fixture
async def core(settings, store, clock):
    """Inventory core without background tasks; tests drive the watcher with process_pending()."""
    core = InventoryCore(settings, store=store, clock=clock)
    yield core
    core.watcher.stop()


@pytest.fixture
def pid():
    return uuid.uuid4()


@pytest.fixture
def wid():
    return uuid.uuid4()


@pytest.fixture
def wid2():
    return uuid.uuid4()


@pytest.fixture
async def stocked(core, pid, wid):
    """100 units received at 5.00 in the primary warehouse."""
    await core.apply_delta(pid, wid, 100, "receive", unit_cost=Decimal("5.00"), reference="PO-1")
    return pid, wid


@pytest.fixture
def mock_user():
    """Mock authenticated warehouse operator."""
    return {
        "sub": "auth0|test-user-id",
        "email": "test@stockpulse.local",
        "role": "warehouse_staff",
    }


@pytest.fixture
def app(settings, core):
    return create_app(settings, core=core)


@pytest.fixture
async def client(app, mock_user):
    """Async test client bound to the test core."""

    def override_get_current_user():
        return mock_user

    app.dependency_overrides[get_current_user] = override_get_current_user

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
