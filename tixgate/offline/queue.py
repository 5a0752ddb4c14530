# tixgate/offline/queue.py
"""
Device-local queue of scans taken without connectivity.

Each record is written to a local SQLite file at scan time and survives
restarts. A record is either still unsynced (retried, up to a bound) or
synced, with or without a conflict reason; synced records are never
replayed again.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import orjson
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, AsyncConnection

from .. import config
from ..helpers import new_id, now_ts
from ..infra.sql import Database, atomically, make_async_engine

SCAN_TICKET = "ticket"
SCAN_OFFER = "offer"
SCAN_TYPES = (SCAN_TICKET, SCAN_OFFER)


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_OFFLINE_SCANS = r"""
CREATE TABLE IF NOT EXISTS offline_scans (
  id              TEXT PRIMARY KEY,
  scan_type       TEXT NOT NULL,
  qr_data         TEXT NOT NULL,
  business_id     TEXT,
  scanned_at      DOUBLE PRECISION NOT NULL,
  synced          BOOLEAN NOT NULL DEFAULT 0,
  sync_attempts   INTEGER NOT NULL DEFAULT 0,
  last_sync_error TEXT,
  conflict_reason TEXT,
  server_result   TEXT,
  synced_at       DOUBLE PRECISION
);
"""

SQL_CREATE_IDX_PENDING = r"""
CREATE INDEX IF NOT EXISTS idx_offline_scans_pending
  ON offline_scans (synced, scanned_at);
"""

SQL_CREATE_IDX_BUSINESS = r"""
CREATE INDEX IF NOT EXISTS idx_offline_scans_business
  ON offline_scans (business_id, scanned_at);
"""


async def create_schema(conn: AsyncSession | AsyncConnection) -> None:
    exec_ = conn.execute
    await exec_(text(SQL_CREATE_OFFLINE_SCANS))
    await exec_(text(SQL_CREATE_IDX_PENDING))
    await exec_(text(SQL_CREATE_IDX_BUSINESS))


@dataclass
class OfflineScan:
    id: str
    scan_type: str
    qr_data: str
    business_id: Optional[str]
    scanned_at: float
    synced: bool = False
    sync_attempts: int = 0
    last_sync_error: Optional[str] = None
    conflict_reason: Optional[str] = None
    server_result: Optional[Dict[str, Any]] = None
    synced_at: Optional[float] = None

    @classmethod
    def from_row(cls, row) -> "OfflineScan":
        d = dict(row)
        d["synced"] = bool(d["synced"])
        raw = d.get("server_result")
        d["server_result"] = orjson.loads(raw) if raw else None
        return cls(**d)

    @property
    def has_conflict(self) -> bool:
        return self.synced and self.conflict_reason is not None


_COLUMNS = """
    id, scan_type, qr_data, business_id, scanned_at, synced, sync_attempts,
    last_sync_error, conflict_reason, server_result, synced_at
"""


class ScanQueue:
    def __init__(self, db: Database) -> None:
        self.db = db

    @classmethod
    async def open(cls, database_url: Optional[str] = None) -> "ScanQueue":
        db = make_async_engine(database_url or config.OFFLINE_DATABASE_URL)
        async with db.engine.begin() as conn:
            await create_schema(conn)
        return cls(db)

    async def close(self) -> None:
        await self.db.dispose()

    async def enqueue(
        self,
        scan_type: str,
        qr_data: str,
        business_id: Optional[str] = None,
        scanned_at: Optional[float] = None,
    ) -> OfflineScan:
        if scan_type not in SCAN_TYPES:
            raise ValueError(f"scan_type must be one of {SCAN_TYPES}")
        if not qr_data:
            raise ValueError("qr_data is required")
        scan = OfflineScan(
            id=new_id(),
            scan_type=scan_type,
            qr_data=qr_data,
            business_id=business_id,
            scanned_at=now_ts() if scanned_at is None else scanned_at,
        )

        async def _insert(session: AsyncSession) -> None:
            await session.execute(text("""
                INSERT INTO offline_scans(
                    id, scan_type, qr_data, business_id, scanned_at,
                    synced, sync_attempts
                ) VALUES (:id, :t, :q, :b, :at, :synced, 0)
            """), {
                "id": scan.id, "t": scan.scan_type, "q": scan.qr_data,
                "b": scan.business_id, "at": scan.scanned_at,
                "synced": False,
            })

        await atomically(self.db, _insert)
        return scan

    async def get(self, scan_id: str) -> Optional[OfflineScan]:
        async with self.db.transaction() as session:
            row = (await session.execute(text(
                f"SELECT {_COLUMNS} FROM offline_scans WHERE id = :id"
            ), {"id": scan_id})).mappings().first()
        return OfflineScan.from_row(row) if row else None

    async def pending(self, max_attempts: int) -> List[OfflineScan]:
        """Unsynced records still under the attempt bound, oldest first."""
        async with self.db.transaction() as session:
            rows = (await session.execute(text(f"""
                SELECT {_COLUMNS} FROM offline_scans
                WHERE NOT synced AND sync_attempts < :max
                ORDER BY scanned_at, id
            """), {"max": max_attempts})).mappings().all()
        return [OfflineScan.from_row(r) for r in rows]

    async def pending_count(self, max_attempts: Optional[int] = None) -> int:
        where = "WHERE NOT synced"
        params: Dict[str, Any] = {}
        if max_attempts is not None:
            where += " AND sync_attempts < :max"
            params["max"] = max_attempts
        async with self.db.transaction() as session:
            n = (await session.execute(text(
                f"SELECT COUNT(*) FROM offline_scans {where}"
            ), params)).scalar_one()
        return int(n)

    async def _finish(
        self, scan_id: str, *, conflict_reason: Optional[str],
        server_result: Optional[Dict[str, Any]],
    ) -> bool:
        async def _update(session: AsyncSession) -> bool:
            row = (await session.execute(text("""
                UPDATE offline_scans
                SET synced = :synced,
                    sync_attempts = sync_attempts + 1,
                    conflict_reason = :reason,
                    server_result = :result,
                    last_sync_error = NULL,
                    synced_at = :now
                WHERE id = :id AND NOT synced
                RETURNING id
            """), {
                "id": scan_id, "synced": True, "reason": conflict_reason,
                "result": (
                    orjson.dumps(server_result).decode()
                    if server_result is not None else None
                ),
                "now": now_ts(),
            })).first()
            return row is not None

        return await atomically(self.db, _update)

    async def mark_synced(
        self, scan_id: str, server_result: Optional[Dict[str, Any]] = None
    ) -> bool:
        return await self._finish(
            scan_id, conflict_reason=None, server_result=server_result
        )

    async def mark_conflict(
        self, scan_id: str, reason: str,
        server_result: Optional[Dict[str, Any]] = None,
    ) -> bool:
        # terminal: a replay cannot change the server's answer
        return await self._finish(
            scan_id, conflict_reason=reason or "conflict",
            server_result=server_result,
        )

    async def mark_failed(self, scan_id: str, error: str) -> int:
        """Count a failed attempt. Returns the new attempt count."""
        async def _update(session: AsyncSession) -> int:
            row = (await session.execute(text("""
                UPDATE offline_scans
                SET sync_attempts = sync_attempts + 1,
                    last_sync_error = :err
                WHERE id = :id AND NOT synced
                RETURNING sync_attempts
            """), {"id": scan_id, "err": error})).first()
            return int(row[0]) if row else 0

        return await atomically(self.db, _update)

    async def business_scans(
        self, business_id: str, limit: int = 100
    ) -> List[OfflineScan]:
        async with self.db.transaction() as session:
            rows = (await session.execute(text(f"""
                SELECT {_COLUMNS} FROM offline_scans
                WHERE business_id = :b
                ORDER BY scanned_at DESC, id
                LIMIT :limit
            """), {"b": business_id, "limit": limit})).mappings().all()
        return [OfflineScan.from_row(r) for r in rows]

    async def clean_old(
        self, *, retention_seconds: float, now: Optional[float] = None
    ) -> int:
        """Delete synced records older than the retention period."""
        cutoff = (now_ts() if now is None else now) - retention_seconds

        async def _delete(session: AsyncSession) -> int:
            rows = (await session.execute(text("""
                DELETE FROM offline_scans
                WHERE synced AND scanned_at < :cutoff
                RETURNING id
            """), {"cutoff": cutoff})).all()
            return len(rows)

        return await atomically(self.db, _delete)
