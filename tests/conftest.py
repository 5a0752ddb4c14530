"""Pytest configuration and fixtures."""

import time

import httpx
import pytest
from fastapi.testclient import TestClient

from tixgate import config
from tixgate.infra import timings
from tixgate.infra.sql import make_async_engine
from tixgate.mockpay import MockPay
from tixgate.model import inventory, orders
from tixgate.model.db import create_schema
from tixgate.model.ledger import new_ledger
from tixgate.reconciler import PaymentReconciler


@pytest.fixture(autouse=True)
def _clean_timings():
    timings.reset()
    yield
    timings.reset()


@pytest.fixture
async def db(tmp_path):
    """A fresh SQLite file per test, so concurrent transactions are real."""
    database = make_async_engine(f"sqlite:///{tmp_path / 'tixgate.db'}")
    async with database.engine.begin() as conn:
        await create_schema(conn)
    yield database
    await database.dispose()


@pytest.fixture
def adapter() -> MockPay:
    return MockPay(secret="test-secret", base_url="http://testserver")


@pytest.fixture
def ledger(db):
    return new_ledger(db=db, backend="sql")


@pytest.fixture
def reconciler(db, ledger, adapter) -> PaymentReconciler:
    return PaymentReconciler(
        db, ledger, adapter,
        grace_seconds=45 * 60,
        max_age_seconds=24 * 3600,
        tolerance=1,
    )


@pytest.fixture
def make_pool(db):
    async def _make(**kw):
        kw.setdefault("total_capacity", 10)
        kw.setdefault("price", 2500)
        return await inventory.create_pool(db, **kw)
    return _make


@pytest.fixture
def backdate(db):
    """Move an order's created_at into the past."""
    from sqlalchemy import text

    async def _backdate(order_id: str, seconds_ago: float):
        async with db.transaction() as session:
            await session.execute(text(
                "UPDATE orders SET created_at = :t WHERE id = :id"
            ), {"t": time.time() - seconds_ago, "id": order_id})
        return await orders.get_order(db, order_id)
    return _backdate


@pytest.fixture
def client(tmp_path, monkeypatch):
    """Service under test, backed by its own SQLite file."""
    monkeypatch.setattr(
        config, "DATABASE_URL", f"sqlite:///{tmp_path / 'server.db'}"
    )
    monkeypatch.setattr(
        config, "MOCK_WEBHOOK_URL", "http://testserver/payments/webhook"
    )
    from tixgate.server import app

    with TestClient(app) as test_client:
        # deliver mock gateway webhooks in-process
        test_client.portal.call(app.state.http.aclose)
        app.state.http = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url="http://testserver",
        )
        yield test_client
