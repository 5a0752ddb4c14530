"""Tests for the webhook idempotency ledger (SQL and Redis backends)."""

import asyncio

import pytest
from fakeredis import aioredis

from tixgate.model.ledger import (
    RedisWebhookLedger, SqlWebhookLedger, new_ledger,
)


@pytest.fixture
async def fake_redis():
    r = aioredis.FakeRedis(decode_responses=True)
    yield r
    await r.aclose()


@pytest.fixture(params=["sql", "redis"])
def any_ledger(request, db, fake_redis):
    return new_ledger(db=db, r=fake_redis, backend=request.param)


async def test_factory_picks_backend(db, fake_redis):
    assert isinstance(new_ledger(db=db, backend="sql"), SqlWebhookLedger)
    assert isinstance(
        new_ledger(r=fake_redis, backend="redis"), RedisWebhookLedger
    )
    with pytest.raises(RuntimeError):
        new_ledger(backend="redis")
    with pytest.raises(RuntimeError):
        new_ledger(backend="sql")


async def test_first_mark_wins(any_ledger):
    assert await any_ledger.mark_event_seen("evt_1", "succeeded")
    assert not await any_ledger.mark_event_seen("evt_1", "succeeded")
    assert await any_ledger.mark_event_seen("evt_2")


async def test_concurrent_marks(any_ledger):
    results = await asyncio.gather(*[
        any_ledger.mark_event_seen("evt_race") for _ in range(12)
    ])
    assert results.count(True) == 1


async def test_forget_allows_retry(any_ledger):
    assert await any_ledger.mark_event_seen("evt_1")
    await any_ledger.forget("evt_1")
    assert await any_ledger.mark_event_seen("evt_1")


async def test_empty_id_rejected(any_ledger):
    with pytest.raises(ValueError):
        await any_ledger.mark_event_seen("")


async def test_redis_entries_expire(fake_redis):
    ledger = RedisWebhookLedger(r=fake_redis, ttl_seconds=60)
    await ledger.mark_event_seen("evt_ttl")
    assert 0 < await fake_redis.ttl("webhook:evt_ttl") <= 60


async def test_sql_prune(db):
    ledger = SqlWebhookLedger(db=db)
    await ledger.mark_event_seen("evt_a")
    await ledger.mark_event_seen("evt_b")
    assert await ledger.prune(older_than=0) == 0
    assert await ledger.prune(older_than=float("inf")) == 2
