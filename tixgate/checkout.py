# tixgate/checkout.py
"""
Checkout: claim every cart line, record a pending order, open a payment
session.

Claims and the order row are written in one transaction, pools touched in
sorted id order. If any line is short the transaction rolls back, which
hands back every line claimed before it; a crash mid-way leaves nothing
claimed either.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import (
    CheckoutRejected, InsufficientInventory, PaymentGatewayError, PoolNotFound,
)
from .helpers import new_id, now_ts
from .infra.sql import Database, atomically
from .infra.timings import timeit
from .mockpay import PaymentAdapter
from .model.db import O_COMPLETED, O_PENDING
from .model.inventory import _claim, _get_pool
from .model.orders import (
    _find_by_idempotency, _insert_order, expire_order, finalize_order,
    set_payment_ref,
)

logger = logging.getLogger(__name__)


@dataclass
class CartItem:
    pool_id: str
    quantity: int = 1


def _merge(
    items: Iterable[Union[CartItem, Mapping[str, Any]]]
) -> Dict[str, int]:
    merged: Dict[str, int] = {}
    for it in items:
        if isinstance(it, CartItem):
            pool_id, qty = it.pool_id, it.quantity
        else:
            pool_id, qty = it.get("pool_id"), it.get("quantity", 1)
        if not pool_id:
            raise CheckoutRejected("every item needs a pool_id")
        if not isinstance(qty, int) or isinstance(qty, bool) or qty < 1:
            raise CheckoutRejected(
                f"quantity for pool {pool_id} must be a positive integer"
            )
        merged[pool_id] = merged.get(pool_id, 0) + qty
    if not merged:
        raise CheckoutRejected("cart is empty")
    return merged


async def _load_pools(
    db: Database, cart: Dict[str, int]
) -> List[Dict[str, Any]]:
    async with db.transaction() as session:
        pools = [await _get_pool(session, pid) for pid in sorted(cart)]

    for pid, pool in zip(sorted(cart), pools):
        if pool is None:
            raise CheckoutRejected(f"unknown inventory pool: {pid}")
        if not pool["active"]:
            raise CheckoutRejected(f"pool {pid} is not on sale")
        limit = pool["max_per_order"]
        if limit is not None and cart[pid] > limit:
            raise CheckoutRejected(
                f"at most {limit} per order from pool {pid}"
            )
    if len({p["kind"] for p in pools}) > 1:
        raise CheckoutRejected("cannot mix tickets, offers and reservations")
    if len({p["currency"] for p in pools}) > 1:
        raise CheckoutRejected("cannot mix currencies in one order")
    return pools


def _result(order: Dict[str, Any], redirect_url: Optional[str],
            **extra) -> Dict[str, Any]:
    out = {
        "order_id": order["id"],
        "status": order["status"],
        "redirect_url": redirect_url,
        "amount": order["amount"],
        "currency": order["currency"],
    }
    out.update(extra)
    return out


async def _existing(
    db: Database, buyer_id: str, key: str
) -> Optional[Dict[str, Any]]:
    async with db.transaction() as session:
        return await _find_by_idempotency(session, buyer_id, key)


async def checkout(
    db: Database,
    adapter: PaymentAdapter,
    buyer_id: str,
    items: Iterable[Union[CartItem, Mapping[str, Any]]],
    idempotency_hint: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Raises CheckoutRejected (bad cart), InsufficientInventory (sold out),
    LockTimeout (contention outlasted retries) or PaymentGatewayError.
    """
    if not buyer_id:
        raise CheckoutRejected("buyer_id is required")
    cart = _merge(items)

    if idempotency_hint:
        prior = await _existing(db, buyer_id, idempotency_hint)
        if prior is not None:
            return _result(prior, None, idempotent=True,
                           payment_session_id=prior["external_payment_ref"])

    pools = await _load_pools(db, cart)
    amount = sum(int(p["price"]) * cart[p["id"]] for p in pools)
    order = {
        "id": new_id(),
        "buyer_id": buyer_id,
        "kind": pools[0]["kind"],
        "status": O_PENDING,
        "idempotency_key": idempotency_hint,
        "amount": amount,
        "currency": pools[0]["currency"],
        "created_at": now_ts(),
    }

    async def _reserve(session: AsyncSession) -> None:
        for pool_id in sorted(cart):
            res = await _claim(session, pool_id, cart[pool_id])
            if not res.success:
                # rollback releases the lines claimed so far
                raise InsufficientInventory(
                    pool_id, cart[pool_id], res.remaining
                )
        await _insert_order(session, order, cart)

    try:
        async with timeit("checkout.reserve"):
            await atomically(db, _reserve)
    except PoolNotFound as exc:
        raise CheckoutRejected(str(exc)) from exc
    except IntegrityError:
        # a concurrent request with the same hint won the insert
        if not idempotency_hint:
            raise
        prior = await _existing(db, buyer_id, idempotency_hint)
        if prior is None:
            raise
        return _result(prior, None, idempotent=True,
                       payment_session_id=prior["external_payment_ref"])

    if amount == 0:
        res = await finalize_order(db, order["id"])
        order["status"] = res.status or O_COMPLETED
        logger.info("free order %s completed at checkout", order["id"])
        return _result(order, None, credentials=[
            {"id": c["id"], "pool_id": c["pool_id"],
             "qr_token": c["qr_token"], "quantity": c["quantity"]}
            for c in res.credentials
        ])

    try:
        async with timeit("gateway.create_session"):
            session = await adapter.create_session(
                order_id=order["id"], amount=amount,
                currency=order["currency"],
            )
    except Exception as exc:
        logger.warning(
            "payment session creation failed for order %s: %s",
            order["id"], exc,
        )
        await expire_order(db, order["id"])
        raise PaymentGatewayError(str(exc)) from exc

    psid = session["payment_session_id"]
    await set_payment_ref(db, order["id"], psid)
    logger.info(
        "order %s pending: %d line(s), %d %s, session %s",
        order["id"], len(cart), amount, order["currency"], psid,
    )
    return _result(order, session["redirect_url"], payment_session_id=psid)
