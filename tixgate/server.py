from __future__ import annotations
import logging
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse

from . import config
from .boostwindow import compute_boost_window, is_active
from .checkout import checkout
from .errors import (
    CheckoutRejected, InsufficientInventory, LockTimeout,
    PaymentGatewayError, PoolNotFound,
)
from .infra.sql import Database, make_async_engine
from .infra.timings import aggregates, timeit
from .mockpay import MockPay, PaymentAdapter
from .model import inventory, orders, redemption
from .model.db import create_schema
from .model.inventory import INSUFFICIENT
from .model.ledger import new_ledger, BACKEND as LEDGER_BACKEND
from .reconciler import PaymentReconciler

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="tixgate",
    default_response_class=ORJSONResponse,
)


def get_db() -> Database:
    db = getattr(app.state, "db", None)
    if db is None:
        raise RuntimeError("database not initialized")
    return db


def get_adapter() -> PaymentAdapter:
    return app.state.adapter


def get_reconciler() -> PaymentReconciler:
    return app.state.reconciler


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    print('\n' * 3)
    print('=' * 50)
    D = 'PostgreSQL' if 'postgres' in config.DATABASE_URL else 'SQLite'
    L = 'Redis' if LEDGER_BACKEND == 'redis' else D
    print('tixgate is starting up...')
    print(f'   - System of record: {D}')
    print(f'   - Webhook ledger:   {L}')
    print('=' * 50)
    print('\n' * 3)


@app.on_event("startup")
async def _db_init():
    db = make_async_engine(config.DATABASE_URL)
    async with db.engine.begin() as conn:
        await create_schema(conn)
    app.state.db = db


@app.on_event("startup")
async def _redis_start():
    app.state.redis = None
    if LEDGER_BACKEND == 'redis':
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            max_connections=config.REDIS_MAX_CONN,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=512, max_keepalive_connections=512
        ),
    )


@app.on_event("startup")
async def _services_start():
    db = app.state.db
    app.state.adapter = MockPay()
    app.state.ledger = new_ledger(db=db, r=app.state.redis)
    app.state.reconciler = PaymentReconciler(
        db, app.state.ledger, app.state.adapter
    )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    db = getattr(app.state, "db", None)
    if db is not None:
        await db.dispose()
        app.state.db = None


# ----------------------------
# Error mapping
# ----------------------------
@app.exception_handler(InsufficientInventory)
async def _insufficient(request: Request, exc: InsufficientInventory):
    return ORJSONResponse(status_code=409, content={
        "success": False,
        "error": INSUFFICIENT,
        "pool_id": exc.pool_id,
        "remaining": exc.remaining,
    })


@app.exception_handler(LockTimeout)
async def _lock_timeout(request: Request, exc: LockTimeout):
    return ORJSONResponse(
        status_code=503,
        content={"error": "LOCK_TIMEOUT", "detail": "busy, try again"},
        headers={"Retry-After": "1"},
    )


@app.exception_handler(CheckoutRejected)
async def _rejected(request: Request, exc: CheckoutRejected):
    return ORJSONResponse(
        status_code=400, content={"error": "REJECTED", "detail": str(exc)}
    )


@app.exception_handler(PoolNotFound)
async def _pool_not_found(request: Request, exc: PoolNotFound):
    return ORJSONResponse(
        status_code=404, content={"detail": "pool not found"}
    )


@app.exception_handler(PaymentGatewayError)
async def _gateway(request: Request, exc: PaymentGatewayError):
    return ORJSONResponse(
        status_code=502,
        content={"error": "PAYMENT_GATEWAY", "detail": str(exc)},
    )


def _positive_int(payload: dict, key: str, default: int = 1) -> int:
    value = payload.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise HTTPException(400, detail=f"{key} must be a positive integer")
    return value


# ----------------------------
# API: Inventory pools
# ----------------------------
@app.post("/api/pools")
async def create_pool(payload: dict, db: Database = Depends(get_db)):
    try:
        return await inventory.create_pool(
            db,
            total_capacity=int(payload.get("total_capacity", 0)),
            kind=payload.get("kind", "ticket"),
            unlimited=bool(payload.get("unlimited", False)),
            price=int(payload.get("price", 0)),
            currency=payload.get("currency", "eur"),
            business_id=payload.get("business_id"),
            name=payload.get("name", ""),
            max_per_order=payload.get("max_per_order"),
            pool_id=payload.get("id"),
        )
    except (TypeError, ValueError) as e:
        raise HTTPException(400, detail=str(e))


@app.get("/api/pools/{pool_id}")
async def get_pool(pool_id: str, db: Database = Depends(get_db)):
    pool = await inventory.get_pool(db, pool_id)
    if pool is None:
        raise HTTPException(404, detail="pool not found")
    return pool


@app.delete("/api/pools/{pool_id}")
async def delete_pool(pool_id: str, db: Database = Depends(get_db)):
    cancelled = await inventory.delete_pool(db, pool_id)
    return {"ok": True, "credentials_cancelled": cancelled}


@app.post("/api/pools/{pool_id}/capacity")
async def add_capacity(
    pool_id: str, payload: dict, db: Database = Depends(get_db)
):
    extra = _positive_int(payload, "extra")
    return {"pool_id": pool_id,
            "remaining": await inventory.add_capacity(db, pool_id, extra)}


@app.get("/api/inventory")
async def get_inventory(db: Database = Depends(get_db)):
    return {"items": await inventory.inventory_snapshot(db)}


@app.post("/api/pools/{pool_id}/claim")
async def claim(pool_id: str, payload: dict, db: Database = Depends(get_db)):
    qty = _positive_int(payload, "quantity")
    res = await inventory.claim(db, pool_id, qty)
    if not res.success:
        raise InsufficientInventory(pool_id, qty, res.remaining)
    return res.as_dict()


@app.post("/api/pools/{pool_id}/release")
async def release(
    pool_id: str, payload: dict, db: Database = Depends(get_db)
):
    qty = _positive_int(payload, "quantity")
    remaining = await inventory.release(db, pool_id, qty)
    return {"success": True, "remaining": remaining}


# ----------------------------
# API: Checkout & orders
# ----------------------------
@app.post("/api/checkout")
async def create_checkout(
    payload: dict,
    db: Database = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    items = payload.get("items")
    if not isinstance(items, list):
        raise HTTPException(400, detail="items must be a list")
    async with timeit("api.checkout"):
        return await checkout(
            db, adapter,
            (payload.get("buyer_id") or "").strip(),
            items,
            idempotency_hint=payload.get("idempotency_hint"),
        )


@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, db: Database = Depends(get_db)):
    order = await orders.get_order(db, order_id, with_credentials=True)
    if order is None:
        raise HTTPException(404, detail="order not found")
    return orders.order_view(order)


@app.post("/api/orders/{order_id}/refund")
async def refund_order(order_id: str, db: Database = Depends(get_db)):
    refunded = await orders.refund_order(db, order_id)
    if refunded is None:
        raise HTTPException(409, detail="only completed orders can be "
                                        "refunded")
    return {"ok": True, "credentials_refunded": refunded}


# ----------------------------
# API: Redemption
# ----------------------------
@app.post("/api/checkin")
async def checkin(payload: dict, db: Database = Depends(get_db)):
    qr_token = payload.get("qr_token")
    credential_id = payload.get("credential_id")
    staff_id = (payload.get("staff_id") or "").strip()
    if not staff_id:
        raise HTTPException(400, detail="staff_id is required")
    if bool(qr_token) == bool(credential_id):
        raise HTTPException(
            400, detail="pass exactly one of qr_token / credential_id"
        )
    scanned_at = payload.get("scanned_at")
    if scanned_at is not None and not isinstance(scanned_at, (int, float)):
        raise HTTPException(400, detail="scanned_at must be epoch seconds")

    res = await redemption.check_in(
        db, staff_id,
        qr_token=qr_token or None,
        credential_id=credential_id or None,
        business_id=payload.get("business_id"),
        source="offline" if payload.get("source") == "offline" else "online",
        scanned_at=scanned_at,
    )
    return res.as_dict()


@app.get("/api/credentials/{qr_token}")
async def inspect_credential(qr_token: str, db: Database = Depends(get_db)):
    cred = await redemption.inspect(db, qr_token)
    if cred is None:
        raise HTTPException(404, detail="credential not found")
    cred["scans"] = await redemption.scan_log(db, cred["id"])
    return cred


# ----------------------------
# Webhook endpoint
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    adapter: PaymentAdapter = Depends(get_adapter),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = adapter.verify_webhook(payload, headers)
    _, event_id = adapter.event_ids(event)
    if not event_id:
        raise HTTPException(400, detail="missing event id")

    async with timeit("api.webhook"):
        return await reconciler.handle_event(event)


# ----------------------------
# Ops
# ----------------------------
@app.post("/api/reconcile")
async def reconcile(
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    report = await reconciler.sweep()
    return report.as_dict()


@app.post("/api/boosts/active")
async def boost_active(payload: dict):
    record = payload.get("boost", payload)
    if not isinstance(record, dict):
        raise HTTPException(400, detail="boost must be an object")
    window = compute_boost_window(record)
    return {
        "active": is_active(window, payload.get("now")),
        "window": window.as_dict() if window else None,
    }


@app.get("/api/ops/anomalies")
async def list_anomalies(
    limit: int = 100, include_resolved: bool = False,
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    items = await reconciler.list_anomalies(
        limit=limit, unresolved_only=not include_resolved
    )
    return {"items": items, "limit": limit}


@app.get("/api/ops/timings")
async def timings():
    return {"items": aggregates()}


# ----------------------------
# MockPay
# ----------------------------
@app.get("/mockpay/{psid}")
async def mockpay_screen(
    psid: str, adapter: PaymentAdapter = Depends(get_adapter),
):
    session = await adapter.retrieve_session(psid)
    if session is None:
        raise HTTPException(404, "payment session not found")
    return {
        "psid": psid,
        "order_id": session["metadata"].get("order_id"),
        "amount": session["amount_total"],
        "currency": session["currency"],
        "status": session["status"],
        "payment_status": session["payment_status"],
        "webhook_url": config.MOCK_WEBHOOK_URL,
    }


@app.post("/mockpay/{psid}/emit")
async def mockpay_emit(
    psid: str, payload: Optional[dict] = None,
    adapter: PaymentAdapter = Depends(get_adapter),
):
    kind = (payload or {}).get("t")  # succeeded|failed|canceled|expired
    if kind not in {"succeeded", "failed", "canceled", "expired"}:
        raise HTTPException(400, detail="invalid kind")
    if not isinstance(adapter, MockPay):
        raise HTTPException(404, detail="mock gateway disabled")
    try:
        event = adapter.settle(psid, kind)
    except KeyError:
        raise HTTPException(404, "payment session not found")

    body, headers = adapter.signed(event)
    client_http: httpx.AsyncClient = app.state.http
    delivered = False
    try:
        resp = await client_http.post(
            config.MOCK_WEBHOOK_URL, content=body, headers=headers,
        )
        delivered = resp.status_code < 300
    except httpx.HTTPError as e:
        # the provider redelivers in real life; here the caller can retry
        logger.warning("webhook delivery failed: %r", e)

    return {
        "ok": True,
        "event_id": event["id"],
        "order_id": event["metadata"].get("order_id"),
        "delivered": delivered,
    }
