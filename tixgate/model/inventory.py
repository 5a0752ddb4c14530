# model/inventory.py
"""
Inventory pools: remaining capacity for one sellable unit type (a ticket
tier, an offer's party-size pool, a reservation slot pool).

`remaining` is shared mutable state. It is only ever changed by the two
conditional statements below (claim / release); nothing reads it, decides,
and writes it back.
"""

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import PoolNotFound
from ..helpers import new_id, now_ts
from ..infra.sql import Database, atomically
from ..infra.timings import timeit
from .db import (
    C_CANCELLED, C_VALID, K_TICKET, O_EXPIRED, O_PENDING, POOL_KINDS,
)

INSUFFICIENT = "INSUFFICIENT"


@dataclass
class ClaimResult:
    success: bool
    # None for unlimited pools
    remaining: Optional[int] = None
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


SQL_CLAIM = text("""
    UPDATE inventory_pools
    SET remaining = remaining - :q
    WHERE id = :id
      AND NOT unlimited
      AND remaining >= :q
    RETURNING remaining
""")

SQL_RELEASE = text("""
    UPDATE inventory_pools
    SET remaining = CASE
        WHEN remaining + :q > total_capacity THEN total_capacity
        ELSE remaining + :q
    END
    WHERE id = :id
      AND NOT unlimited
    RETURNING remaining
""")

SQL_POOL_STATE = text("""
    SELECT unlimited, remaining FROM inventory_pools WHERE id = :id
""")


def _check_quantity(quantity: int) -> None:
    if not isinstance(quantity, int) or isinstance(quantity, bool):
        raise ValueError("quantity must be an integer")
    if quantity < 1:
        raise ValueError("quantity must be >= 1")


# UN-GATED internal function
async def _claim(
    session: AsyncSession, pool_id: str, quantity: int
) -> ClaimResult:
    """
    Decrement `remaining` by `quantity` only if enough is left, in a single
    statement. Runs inside the caller's transaction.
    """
    _check_quantity(quantity)
    row = (await session.execute(
        SQL_CLAIM, {"id": pool_id, "q": quantity}
    )).first()
    if row is not None:
        return ClaimResult(success=True, remaining=int(row[0]))

    # Nothing updated: unknown pool, unlimited pool, or not enough left.
    state = (await session.execute(
        SQL_POOL_STATE, {"id": pool_id}
    )).first()
    if state is None:
        raise PoolNotFound(pool_id)
    if state[0]:
        return ClaimResult(success=True)
    return ClaimResult(
        success=False, remaining=int(state[1]), reason=INSUFFICIENT
    )


# UN-GATED internal function
async def _release(
    session: AsyncSession, pool_id: str, quantity: int
) -> Optional[int]:
    """
    Give `quantity` back, capped at total capacity. Returns the new
    remaining count, or None for unlimited / deleted pools.
    """
    _check_quantity(quantity)
    row = (await session.execute(
        SQL_RELEASE, {"id": pool_id, "q": quantity}
    )).first()
    return int(row[0]) if row is not None else None


# UN-GATED internal function
async def _get_pool(
    session: AsyncSession, pool_id: str
) -> Optional[Dict[str, Any]]:
    row = (await session.execute(text("""
        SELECT id, kind, business_id, name, total_capacity, remaining,
               unlimited, price, currency, max_per_order, active, created_at
        FROM inventory_pools WHERE id = :id
    """), {"id": pool_id})).mappings().first()
    return _pool_dict(row) if row else None


def _pool_dict(row) -> Dict[str, Any]:
    d = dict(row)
    d["unlimited"] = bool(d["unlimited"])
    d["active"] = bool(d["active"])
    d["sold_out"] = (not d["unlimited"]) and d["remaining"] <= 0
    return d


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def claim(db: Database, pool_id: str, quantity: int) -> ClaimResult:
    async with timeit("inventory.claim"):
        return await atomically(db, _claim, pool_id, quantity)


async def release(
    db: Database, pool_id: str, quantity: int
) -> Optional[int]:
    async with timeit("inventory.release"):
        return await atomically(db, _release, pool_id, quantity)


async def create_pool(
    db: Database,
    *,
    total_capacity: int = 0,
    kind: str = K_TICKET,
    unlimited: bool = False,
    price: int = 0,
    currency: str = "eur",
    business_id: Optional[str] = None,
    name: str = "",
    max_per_order: Optional[int] = None,
    pool_id: Optional[str] = None,
) -> Dict[str, Any]:
    if kind not in POOL_KINDS:
        raise ValueError(f"kind must be one of {', '.join(POOL_KINDS)}")
    if total_capacity < 0:
        raise ValueError("total_capacity must be >= 0")
    if price < 0:
        raise ValueError("price must be >= 0")
    if max_per_order is not None and max_per_order < 1:
        raise ValueError("max_per_order must be >= 1")

    pool_id = pool_id or new_id()

    async def _insert(session: AsyncSession) -> Dict[str, Any]:
        await session.execute(text("""
            INSERT INTO inventory_pools(
                id, kind, business_id, name, total_capacity, remaining,
                unlimited, price, currency, max_per_order, active, created_at
            ) VALUES (
                :id, :kind, :business_id, :name, :cap, :cap,
                :unlimited, :price, :currency, :max_per_order, :active, :c
            )
        """), {
            "id": pool_id,
            "kind": kind,
            "business_id": business_id,
            "name": name,
            "cap": int(total_capacity),
            "unlimited": bool(unlimited),
            "price": int(price),
            "currency": currency.lower(),
            "max_per_order": max_per_order,
            "active": True,
            "c": now_ts(),
        })
        return await _get_pool(session, pool_id)

    return await atomically(db, _insert)


async def get_pool(db: Database, pool_id: str) -> Optional[Dict[str, Any]]:
    async with db.transaction() as session:
        return await _get_pool(session, pool_id)


async def add_capacity(db: Database, pool_id: str, extra: int) -> int:
    """Explicitly grow a pool. Returns the new remaining count."""
    _check_quantity(extra)

    async def _grow(session: AsyncSession) -> int:
        row = (await session.execute(text("""
            UPDATE inventory_pools
            SET total_capacity = total_capacity + :n,
                remaining = remaining + :n
            WHERE id = :id
            RETURNING remaining
        """), {"id": pool_id, "n": extra})).first()
        if row is None:
            raise PoolNotFound(pool_id)
        return int(row[0])

    return await atomically(db, _grow)


async def delete_pool(db: Database, pool_id: str) -> int:
    """
    Delete a pool. Pending orders holding a line from it are expired and
    their other lines released; every still-valid credential sold from it is
    cancelled so it can no longer be redeemed. Returns how many credentials
    were cancelled.
    """
    async def _delete(session: AsyncSession) -> int:
        now = now_ts()
        expired = (await session.execute(text("""
            UPDATE orders
            SET status = :expired, updated_at = :now
            WHERE status = :pending
              AND id IN (SELECT order_id FROM order_items WHERE pool_id = :id)
            RETURNING id
        """), {
            "id": pool_id, "now": now,
            "expired": O_EXPIRED, "pending": O_PENDING,
        })).scalars().all()
        for order_id in expired:
            lines = (await session.execute(text("""
                SELECT pool_id, quantity FROM order_items
                WHERE order_id = :o AND pool_id <> :id
            """), {"o": order_id, "id": pool_id})).all()
            for other_pool, qty in lines:
                await _release(session, other_pool, int(qty))

        cancelled = (await session.execute(text("""
            UPDATE credentials
            SET status = :cancelled, updated_at = :now
            WHERE pool_id = :id AND status = :valid
            RETURNING id
        """), {
            "id": pool_id, "now": now,
            "cancelled": C_CANCELLED, "valid": C_VALID,
        })).all()
        row = (await session.execute(text(
            "DELETE FROM inventory_pools WHERE id = :id RETURNING id"
        ), {"id": pool_id})).first()
        if row is None:
            raise PoolNotFound(pool_id)
        return len(cancelled)

    return await atomically(db, _delete)


async def inventory_snapshot(db: Database) -> List[Dict[str, Any]]:
    async with db.transaction() as session:
        rows = (await session.execute(text("""
            SELECT id, kind, business_id, name, total_capacity, remaining,
                   unlimited, price, currency, max_per_order, active,
                   created_at
            FROM inventory_pools
            ORDER BY created_at
        """))).mappings().all()
    return [_pool_dict(r) for r in rows]
