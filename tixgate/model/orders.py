# model/orders.py
"""
Orders: one checkout attempt.

    pending -> completed -> refunded
    pending -> expired

Capacity is already claimed when an order is created. `completed` is
reached at most once (guarded UPDATE); `expired` hands the claimed capacity
back to the pools in the same transaction.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, to_iso
from ..infra.sql import Database, atomically
from ..infra.timings import timeit
from .db import O_COMPLETED, O_EXPIRED, O_PENDING, O_REFUNDED, C_REFUNDED
from .inventory import _release
from .redemption import _issue_credentials, _void_credentials

logger = logging.getLogger(__name__)


@dataclass
class FinalizeResult:
    finalized: bool
    status: Optional[str] = None
    credentials: List[Dict[str, Any]] = field(default_factory=list)


# UN-GATED internal function
async def _insert_order(
    session: AsyncSession, order: Dict[str, Any], items: Dict[str, int]
) -> None:
    await session.execute(text("""
        INSERT INTO orders(
            id, buyer_id, kind, status, idempotency_key, external_payment_ref,
            amount, currency, created_at, updated_at
        ) VALUES (
            :id, :buyer_id, :kind, :status, :idempotency_key, NULL,
            :amount, :currency, :created_at, :created_at
        )
    """), order)
    for pool_id, quantity in items.items():
        await session.execute(text("""
            INSERT INTO order_items(order_id, pool_id, quantity)
            VALUES (:o, :p, :q)
        """), {"o": order["id"], "p": pool_id, "q": quantity})


# UN-GATED internal function
async def _get_order(
    session: AsyncSession, order_id: str
) -> Optional[Dict[str, Any]]:
    row = (await session.execute(text("""
        SELECT id, buyer_id, kind, status, idempotency_key,
               external_payment_ref, amount, currency, created_at,
               completed_at, updated_at
        FROM orders WHERE id = :id
    """), {"id": order_id})).mappings().first()
    return dict(row) if row else None


# UN-GATED internal function
async def _find_by_idempotency(
    session: AsyncSession, buyer_id: str, key: str
) -> Optional[Dict[str, Any]]:
    row = (await session.execute(text("""
        SELECT id FROM orders
        WHERE buyer_id = :b AND idempotency_key = :k
    """), {"b": buyer_id, "k": key})).first()
    return await _get_order(session, row[0]) if row else None


async def _order_items(
    session: AsyncSession, order_id: str
) -> List[Dict[str, Any]]:
    rows = (await session.execute(text("""
        SELECT i.pool_id, i.quantity, p.kind
        FROM order_items AS i
        LEFT JOIN inventory_pools AS p ON p.id = i.pool_id
        WHERE i.order_id = :id
        ORDER BY i.pool_id
    """), {"id": order_id})).mappings().all()
    return [dict(r) for r in rows]


# UN-GATED internal function
async def _finalize(
    session: AsyncSession, order_id: str
) -> FinalizeResult:
    """
    pending -> completed plus credential issuance, or nothing at all.
    A second call for the same order finds it no longer pending and issues
    nothing.
    """
    now = now_ts()
    row = (await session.execute(text("""
        UPDATE orders
        SET status = :completed, completed_at = :now, updated_at = :now
        WHERE id = :id AND status = :pending
          AND NOT EXISTS (
            SELECT 1 FROM order_items AS i
            LEFT JOIN inventory_pools AS p ON p.id = i.pool_id
            WHERE i.order_id = orders.id AND p.id IS NULL
          )
        RETURNING kind
    """), {
        "id": order_id, "now": now,
        "completed": O_COMPLETED, "pending": O_PENDING,
    })).first()

    if row is None:
        current = await _get_order(session, order_id)
        if current is not None and current["status"] == O_PENDING:
            # a line's pool was deleted; nothing left to issue from
            logger.warning(
                "order %s references a deleted pool, expiring it", order_id
            )
            await _expire(session, order_id)
            return FinalizeResult(finalized=False, status=O_EXPIRED)
        return FinalizeResult(
            finalized=False,
            status=current["status"] if current else None,
        )

    order_kind = row[0]
    lines = [
        (it["pool_id"], int(it["quantity"]), it["kind"] or order_kind)
        for it in await _order_items(session, order_id)
    ]
    creds = await _issue_credentials(session, order_id, lines, now)
    return FinalizeResult(
        finalized=True, status=O_COMPLETED, credentials=creds
    )


# UN-GATED internal function
async def _expire(session: AsyncSession, order_id: str) -> bool:
    row = (await session.execute(text("""
        UPDATE orders
        SET status = :expired, updated_at = :now
        WHERE id = :id AND status = :pending
        RETURNING id
    """), {
        "id": order_id, "now": now_ts(),
        "expired": O_EXPIRED, "pending": O_PENDING,
    })).first()
    if row is None:
        return False
    for it in await _order_items(session, order_id):
        await _release(session, it["pool_id"], int(it["quantity"]))
    return True


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def get_order(
    db: Database, order_id: str, *, with_credentials: bool = False
) -> Optional[Dict[str, Any]]:
    async with db.transaction() as session:
        order = await _get_order(session, order_id)
        if order is None:
            return None
        order["items"] = [
            {"pool_id": it["pool_id"], "quantity": it["quantity"]}
            for it in await _order_items(session, order_id)
        ]
        if with_credentials:
            rows = (await session.execute(text("""
                SELECT id, pool_id, qr_token, status, quantity,
                       checked_in_at, checked_in_by
                FROM credentials WHERE order_id = :id
                ORDER BY created_at, id
            """), {"id": order_id})).mappings().all()
            order["credentials"] = [dict(r) for r in rows]
    return order


async def set_payment_ref(db: Database, order_id: str, ref: str) -> None:
    async def _set(session: AsyncSession) -> None:
        await session.execute(text("""
            UPDATE orders
            SET external_payment_ref = :ref, updated_at = :now
            WHERE id = :id
        """), {"id": order_id, "ref": ref, "now": now_ts()})

    await atomically(db, _set)


async def finalize_order(db: Database, order_id: str) -> FinalizeResult:
    async with timeit("orders.finalize"):
        res = await atomically(db, _finalize, order_id)
    if res.finalized:
        logger.info(
            "order %s completed, %d credential(s) issued",
            order_id, len(res.credentials),
        )
    return res


async def expire_order(db: Database, order_id: str) -> bool:
    """pending -> expired and release everything it claimed."""
    async with timeit("orders.expire"):
        expired = await atomically(db, _expire, order_id)
    if expired:
        logger.info("order %s expired, capacity released", order_id)
    return expired


async def refund_order(db: Database, order_id: str) -> Optional[int]:
    """
    completed -> refunded. Still-valid credentials become refunded and their
    capacity returns to the pools; already-used ones stay used.
    Returns the number of credentials refunded, None if the order was not
    completed.
    """
    async def _refund(session: AsyncSession) -> Optional[int]:
        row = (await session.execute(text("""
            UPDATE orders
            SET status = :refunded, updated_at = :now
            WHERE id = :id AND status = :completed
            RETURNING id
        """), {
            "id": order_id, "now": now_ts(),
            "refunded": O_REFUNDED, "completed": O_COMPLETED,
        })).first()
        if row is None:
            return None
        voided = await _void_credentials(
            session, column="order_id", value=order_id,
            new_status=C_REFUNDED, release=True,
        )
        return len(voided)

    return await atomically(db, _refund)


async def list_stale_pending(
    db: Database, *, older_than: float, newer_than: float
) -> List[Dict[str, Any]]:
    """Pending orders with newer_than < created_at < older_than."""
    async with db.transaction() as session:
        rows = (await session.execute(text("""
            SELECT id, buyer_id, kind, status, external_payment_ref, amount,
                   currency, created_at
            FROM orders
            WHERE status = :pending
              AND created_at < :older_than
              AND created_at > :newer_than
            ORDER BY created_at
        """), {
            "pending": O_PENDING,
            "older_than": older_than,
            "newer_than": newer_than,
        })).mappings().all()
    return [dict(r) for r in rows]


def order_view(order: Dict[str, Any]) -> Dict[str, Any]:
    """JSON shape for API responses."""
    out = {
        "order_id": order["id"],
        "buyer_id": order["buyer_id"],
        "kind": order["kind"],
        "status": order["status"],
        "amount": order["amount"],
        "currency": order["currency"],
        "created_at": to_iso(order["created_at"]),
        "completed_at": to_iso(order.get("completed_at")),
        "items": order.get("items", []),
    }
    if "credentials" in order:
        out["credentials"] = [
            {
                "id": c["id"],
                "pool_id": c["pool_id"],
                "qr_token": c["qr_token"],
                "status": c["status"],
                "quantity": c["quantity"],
                "checked_in_at": to_iso(c["checked_in_at"]),
                "checked_in_by": c["checked_in_by"],
            }
            for c in order["credentials"]
        ]
    return out
