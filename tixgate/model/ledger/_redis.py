from __future__ import annotations
from typing import Optional
import redis.asyncio as redis

from ...infra.timings import timeit


# ---- keys
def k_event(evt: str) -> str: return f"webhook:{evt}"


class WebhookLedger:
    """SET NX gate per event id; expiry does the retention pruning."""

    def __init__(self, *, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def mark_event_seen(
        self, event_id: str, kind: Optional[str] = None
    ) -> bool:
        if not event_id:
            raise ValueError("event_id is required")
        async with timeit("ledger.mark_event_seen"):
            ok = await self.r.set(
                k_event(event_id), kind or "1", nx=True, ex=self.ttl
            )
        return bool(ok)

    async def forget(self, event_id: str) -> None:
        await self.r.delete(k_event(event_id))

    async def prune(self, older_than: float) -> int:
        # keys expire on their own
        return 0
