# tixgate/reconciler.py
"""
Payment reconciliation.

Two ways an order leaves `pending`:

  - a provider event (webhook), deduplicated by event id through the
    ledger, validated against the order, then applied;
  - the periodic sweep, which looks at pending orders older than the grace
    window (and younger than the max age), asks the provider what happened
    and either finalizes or expires them.

A confirmation that does not match its order is never finalized. It is
recorded in `payment_anomalies` for someone to look at.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from sqlalchemy import text

from . import config
from .helpers import now_ts, to_iso
from .infra.sql import Database, atomically
from .infra.timings import timeit
from .mockpay import PaymentAdapter
from .model.db import K_OFFER, K_RESERVATION, K_TICKET, O_COMPLETED, O_PENDING
from .model.orders import (
    expire_order, finalize_order, get_order, list_stale_pending,
)

logger = logging.getLogger(__name__)

EXPIRING_KINDS = ("failed", "canceled", "expired")


@dataclass
class ReconcileReport:
    tickets_reconciled: int = 0
    reservations_reconciled: int = 0
    offers_reconciled: int = 0
    expired_released: int = 0
    errors: List[str] = field(default_factory=list)

    def count(self, kind: str) -> None:
        if kind == K_TICKET:
            self.tickets_reconciled += 1
        elif kind == K_RESERVATION:
            self.reservations_reconciled += 1
        elif kind == K_OFFER:
            self.offers_reconciled += 1

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PaymentReconciler:
    def __init__(
        self,
        db: Database,
        ledger,
        adapter: PaymentAdapter,
        *,
        grace_seconds: Optional[int] = None,
        max_age_seconds: Optional[int] = None,
        tolerance: Optional[int] = None,
        ledger_retention_seconds: Optional[int] = None,
    ) -> None:
        self.db = db
        self.ledger = ledger
        self.adapter = adapter
        self.grace = (
            config.RECONCILE_GRACE_SECONDS
            if grace_seconds is None else grace_seconds
        )
        self.max_age = (
            config.RECONCILE_MAX_AGE_SECONDS
            if max_age_seconds is None else max_age_seconds
        )
        self.tolerance = (
            config.AMOUNT_TOLERANCE_MINOR if tolerance is None else tolerance
        )
        self.ledger_retention = (
            config.WEBHOOK_RETENTION_SECONDS
            if ledger_retention_seconds is None
            else ledger_retention_seconds
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate(
        self,
        order: Optional[Dict[str, Any]],
        *,
        amount: Optional[int],
        currency: Optional[str],
        psid: Optional[str] = None,
    ) -> Optional[str]:
        """None if the confirmation may finalize `order`, else the reason."""
        if order is None:
            return "metadata references an unknown order"
        if order["status"] != O_PENDING:
            return f"order is {order['status']}, not pending"
        if amount is None:
            return "confirmation carries no amount"
        if abs(int(amount) - int(order["amount"])) > self.tolerance:
            return (
                f"amount mismatch: paid {amount}, "
                f"order {order['amount']}"
            )
        if (currency or "").lower() != (order["currency"] or "").lower():
            return (
                f"currency mismatch: paid {currency}, "
                f"order {order['currency']}"
            )
        ref = order.get("external_payment_ref")
        if psid and ref and psid != ref:
            return f"payment session {psid} does not belong to this order"
        return None

    async def record_anomaly(
        self, *, order_id: Optional[str], event_id: Optional[str],
        source: str, reason: str, once_per_order: bool = False,
    ) -> bool:
        """
        Store an anomaly for manual review. With `once_per_order`, nothing is
        stored while an unresolved anomaly from the same source is open for
        the order. Returns whether a row was written.
        """
        guard = ""
        if once_per_order:
            guard = """
                WHERE NOT EXISTS (
                    SELECT 1 FROM payment_anomalies
                    WHERE order_id = :o AND source = :s AND NOT resolved
                )
            """

        async def _insert(session) -> bool:
            row = (await session.execute(text(f"""
                INSERT INTO payment_anomalies(
                    order_id, event_id, source, reason, created_at, resolved
                )
                SELECT CAST(:o AS TEXT), CAST(:e AS TEXT), CAST(:s AS TEXT),
                       CAST(:r AS TEXT), CAST(:now AS FLOAT),
                       CAST(:resolved AS BOOLEAN)
                {guard}
                RETURNING id
            """), {
                "o": order_id, "e": event_id, "s": source, "r": reason,
                "now": now_ts(), "resolved": False,
            })).first()
            return row is not None

        recorded = await atomically(self.db, _insert)
        if recorded:
            logger.warning(
                "payment anomaly (%s) order=%s event=%s: %s",
                source, order_id, event_id, reason,
            )
        return recorded

    async def list_anomalies(
        self, *, limit: int = 100, unresolved_only: bool = True
    ) -> List[Dict[str, Any]]:
        where = "WHERE NOT resolved" if unresolved_only else ""
        async with self.db.transaction() as session:
            rows = (await session.execute(text(f"""
                SELECT id, order_id, event_id, source, reason, created_at,
                       resolved
                FROM payment_anomalies
                {where}
                ORDER BY id DESC
                LIMIT :limit
            """), {"limit": max(1, min(limit, 500))})).mappings().all()
        items = []
        for r in rows:
            d = dict(r)
            d["resolved"] = bool(d["resolved"])
            d["created_at"] = to_iso(d["created_at"])
            items.append(d)
        return items

    # ------------------------------------------------------------------
    # Webhook events
    # ------------------------------------------------------------------
    async def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        kind = self.adapter.event_kind(event)
        psid, event_id = self.adapter.event_ids(event)
        if not event_id:
            raise ValueError("event has no id")

        if not await self.ledger.mark_event_seen(event_id, kind):
            return {"ok": True, "idempotent": True}

        try:
            async with timeit("reconciler.apply_event"):
                return await self._apply(kind, psid, event_id, event)
        except Exception:
            # processing never happened; let a redelivery try again
            await self.ledger.forget(event_id)
            raise

    async def _apply(
        self, kind: str, psid: str, event_id: str, event: Dict[str, Any]
    ) -> Dict[str, Any]:
        amount, currency, order_id = self.adapter.event_payment(event)
        order = await get_order(self.db, order_id) if order_id else None

        if kind == "succeeded":
            if order is not None and order["status"] == O_COMPLETED:
                # a second confirmation (new event id) for a paid order
                return {"ok": True, "order_status": O_COMPLETED,
                        "idempotent": True}
            reason = self.validate(
                order, amount=amount, currency=currency, psid=psid
            )
            if reason is not None:
                await self.record_anomaly(
                    order_id=order_id, event_id=event_id,
                    source="webhook", reason=reason,
                )
                return {"ok": True, "anomaly": reason}
            res = await finalize_order(self.db, order_id)
            return {
                "ok": True,
                "order_status": res.status,
                "idempotent": not res.finalized,
            }

        if kind in EXPIRING_KINDS:
            if order is None:
                await self.record_anomaly(
                    order_id=order_id, event_id=event_id, source="webhook",
                    reason=f"{kind} event for an unknown order",
                )
                return {"ok": True, "anomaly": "unknown order"}
            expired = await expire_order(self.db, order_id)
            current = await get_order(self.db, order_id)
            return {
                "ok": True,
                "order_status": current["status"] if current else None,
                "idempotent": not expired,
            }

        logger.info("ignoring payment event %s of kind %r", event_id, kind)
        return {"ok": True, "ignored": kind}

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------
    async def sweep(self, now: Optional[float] = None) -> ReconcileReport:
        now = now_ts() if now is None else now
        report = ReconcileReport()

        stale = await list_stale_pending(
            self.db,
            older_than=now - self.grace,
            newer_than=now - self.max_age,
        )
        for order in stale:
            try:
                await self._reconcile_one(order, report)
            except Exception as exc:
                logger.exception("reconciling order %s failed", order["id"])
                report.errors.append(f"{order['id']}: {exc}")

        try:
            pruned = await self.ledger.prune(now - self.ledger_retention)
        except Exception as exc:
            logger.exception("pruning the webhook ledger failed")
            report.errors.append(f"ledger prune: {exc}")
        else:
            if pruned:
                logger.info("pruned %d webhook ledger entries", pruned)

        logger.info(
            "reconcile sweep: %d stale, tickets=%d reservations=%d "
            "offers=%d expired=%d errors=%d",
            len(stale), report.tickets_reconciled,
            report.reservations_reconciled, report.offers_reconciled,
            report.expired_released, len(report.errors),
        )
        return report

    async def _reconcile_one(
        self, order: Dict[str, Any], report: ReconcileReport
    ) -> None:
        psid = order.get("external_payment_ref")
        info = None
        if psid:
            async with timeit("gateway.retrieve_session"):
                info = await self.adapter.retrieve_session(psid)

        if info is not None and info.get("payment_status") == "paid":
            reason = self.validate(
                order,
                amount=info.get("amount_total"),
                currency=info.get("currency"),
                psid=info.get("id"),
            )
            if reason is not None:
                if await self.record_anomaly(
                    order_id=order["id"], event_id=None,
                    source="sweep", reason=reason, once_per_order=True,
                ):
                    report.errors.append(f"{order['id']}: {reason}")
                return
            res = await finalize_order(self.db, order["id"])
            if res.finalized:
                report.count(order["kind"])
            return

        if await expire_order(self.db, order["id"]):
            report.expired_released += 1
