from __future__ import annotations
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import now_ts
from ...infra.sql import Database, atomically
from ...infra.timings import timeit


class WebhookLedger:
    """Ledger rows live in `webhook_events`; the primary key is the gate."""

    def __init__(self, *, db: Database) -> None:
        self.db = db

    async def mark_event_seen(
        self, event_id: str, kind: Optional[str] = None
    ) -> bool:
        if not event_id:
            raise ValueError("event_id is required")

        async def _insert(session: AsyncSession) -> bool:
            row = (await session.execute(text("""
              INSERT INTO webhook_events(event_id, kind, received_at)
              VALUES(:k, :kind, :now)
              ON CONFLICT (event_id) DO NOTHING
              RETURNING event_id
            """), {"k": event_id, "kind": kind, "now": now_ts()})).first()
            return row is not None

        async with timeit("ledger.mark_event_seen"):
            return await atomically(self.db, _insert)

    async def forget(self, event_id: str) -> None:
        """Undo a mark whose processing failed, so a redelivery can retry."""
        async def _delete(session: AsyncSession) -> None:
            await session.execute(text(
                "DELETE FROM webhook_events WHERE event_id = :k"
            ), {"k": event_id})

        await atomically(self.db, _delete)

    async def prune(self, older_than: float) -> int:
        async def _prune(session: AsyncSession) -> int:
            rows = (await session.execute(text("""
              DELETE FROM webhook_events
              WHERE received_at < :t
              RETURNING event_id
            """), {"t": older_than})).all()
            return len(rows)

        return await atomically(self.db, _prune)
