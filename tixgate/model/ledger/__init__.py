# model/ledger/__init__.py
"""
Webhook idempotency ledger: one entry per provider event id. The first
`mark_event_seen` for an id returns True, every later one False, no matter
how many deliveries race each other.
"""
from typing import Optional
import redis.asyncio as redis

from ... import config
from ...infra.sql import Database
from ._sql import WebhookLedger as SqlWebhookLedger
from ._redis import WebhookLedger as RedisWebhookLedger

BACKEND = config.LEDGER_BACKEND  # 'sql' | 'redis'


# Factory keeps server.py simple and constructor-agnostic:
def new_ledger(*, db: Optional[Database] = None,
               r: Optional[redis.Redis] = None,
               backend: Optional[str] = None):
    backend = (backend or BACKEND).lower()
    if backend == "redis":
        if r is None:
            raise RuntimeError(
                "WebhookLedger(redis) requires r=redis.Redis"
            )
        return RedisWebhookLedger(
            r=r, ttl_seconds=config.WEBHOOK_RETENTION_SECONDS
        )
    if db is None:
        raise RuntimeError("WebhookLedger(sql) requires db=Database")
    return SqlWebhookLedger(db=db)


WebhookLedger = SqlWebhookLedger | RedisWebhookLedger
__all__ = [
    "WebhookLedger", "SqlWebhookLedger", "RedisWebhookLedger",
    "new_ledger", "BACKEND",
]
