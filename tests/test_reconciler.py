"""Tests for webhook handling and the reconciliation sweep."""

import asyncio

import pytest
from sqlalchemy import text

from tixgate.checkout import CartItem, checkout
from tixgate.model import inventory, orders


@pytest.fixture
def pending_order(db, adapter, make_pool):
    async def _make(kind="ticket", quantity=1, price=2500, capacity=5):
        pool = await make_pool(
            kind=kind, price=price, total_capacity=capacity
        )
        res = await checkout(
            db, adapter, "buyer-1", [CartItem(pool["id"], quantity)]
        )
        return pool, res
    return _make


async def credential_count(db, order_id):
    async with db.transaction() as session:
        return (await session.execute(text(
            "SELECT COUNT(*) FROM credentials WHERE order_id = :id"
        ), {"id": order_id})).scalar_one()


class TestWebhook:
    async def test_success_finalizes(self, db, adapter, reconciler,
                                     pending_order):
        _, res = await pending_order(quantity=2)
        event = adapter.settle(res["payment_session_id"], "succeeded")

        out = await reconciler.handle_event(event)

        assert out == {"ok": True, "order_status": "completed",
                       "idempotent": False}
        order = await orders.get_order(db, res["order_id"])
        assert order["status"] == "completed"
        assert await credential_count(db, res["order_id"]) == 2

    async def test_concurrent_duplicate_deliveries(
        self, db, adapter, reconciler, pending_order
    ):
        _, res = await pending_order(quantity=3)
        event = adapter.settle(res["payment_session_id"], "succeeded")

        outs = await asyncio.gather(*[
            reconciler.handle_event(dict(event)) for _ in range(6)
        ])

        processed = [o for o in outs if not o.get("idempotent")]
        assert len(processed) == 1
        assert await credential_count(db, res["order_id"]) == 3

    async def test_replay_with_new_event_id_is_noop(
        self, db, adapter, reconciler, pending_order
    ):
        _, res = await pending_order()
        psid = res["payment_session_id"]
        await reconciler.handle_event(adapter.settle(psid, "succeeded"))

        again = await reconciler.handle_event(
            adapter.settle(psid, "succeeded")
        )
        assert again["idempotent"]
        assert await credential_count(db, res["order_id"]) == 1
        assert await reconciler.list_anomalies() == []

    async def test_rounding_within_tolerance(
        self, db, adapter, reconciler, pending_order
    ):
        _, res = await pending_order(price=1000)
        event = adapter.settle(
            res["payment_session_id"], "succeeded", amount=999
        )
        out = await reconciler.handle_event(event)
        assert out["order_status"] == "completed"

    @pytest.mark.parametrize("override, reason", [
        ({"amount": 2400}, "amount mismatch"),
        ({"currency": "usd"}, "currency mismatch"),
        ({"metadata": {"order_id": "ghost"}}, "unknown order"),
    ])
    async def test_mismatch_is_an_anomaly(
        self, db, adapter, reconciler, pending_order, override, reason
    ):
        _, res = await pending_order(price=2500)
        event = adapter.settle(
            res["payment_session_id"], "succeeded", **override
        )

        out = await reconciler.handle_event(event)

        assert reason in out["anomaly"]
        order = await orders.get_order(db, res["order_id"])
        assert order["status"] == "pending"
        assert await credential_count(db, res["order_id"]) == 0

        anomalies = await reconciler.list_anomalies()
        assert len(anomalies) == 1
        assert anomalies[0]["event_id"] == event["id"]
        assert anomalies[0]["source"] == "webhook"

    async def test_success_for_expired_order_is_an_anomaly(
        self, db, adapter, reconciler, pending_order
    ):
        _, res = await pending_order()
        await orders.expire_order(db, res["order_id"])
        out = await reconciler.handle_event(
            adapter.settle(res["payment_session_id"], "succeeded")
        )
        assert "not pending" in out["anomaly"]

    @pytest.mark.parametrize("kind", ["failed", "canceled", "expired"])
    async def test_failure_releases(
        self, db, adapter, reconciler, pending_order, kind
    ):
        pool, res = await pending_order(quantity=2, capacity=2)
        assert (await inventory.get_pool(db, pool["id"]))["remaining"] == 0

        out = await reconciler.handle_event(
            adapter.settle(res["payment_session_id"], kind)
        )

        assert out["order_status"] == "expired"
        assert (await inventory.get_pool(db, pool["id"]))["remaining"] == 2

    async def test_failed_processing_can_be_redelivered(
        self, db, adapter, ledger, reconciler, pending_order, monkeypatch
    ):
        _, res = await pending_order()
        event = adapter.settle(res["payment_session_id"], "succeeded")

        async def boom(*a, **kw):
            raise RuntimeError("database went away")

        monkeypatch.setattr("tixgate.reconciler.finalize_order", boom)
        with pytest.raises(RuntimeError):
            await reconciler.handle_event(event)
        monkeypatch.undo()

        out = await reconciler.handle_event(event)
        assert out["order_status"] == "completed"


class TestSweep:
    async def test_grace_window(self, db, reconciler, pending_order,
                                backdate):
        pool, young = await pending_order(capacity=2)
        _, old = await pending_order(capacity=2)
        await backdate(young["order_id"], 10 * 60)
        await backdate(old["order_id"], 50 * 60)
        old_pool = (await orders.get_order(db, old["order_id"]))["items"][0]

        report = await reconciler.sweep()

        assert report.expired_released == 1
        assert report.errors == []
        assert (await orders.get_order(db, young["order_id"]))["status"] \
            == "pending"
        assert (await orders.get_order(db, old["order_id"]))["status"] \
            == "expired"
        released = await inventory.get_pool(db, old_pool["pool_id"])
        assert released["remaining"] == 2
        assert (await inventory.get_pool(db, pool["id"]))["remaining"] == 1

    async def test_max_age(self, db, reconciler, pending_order, backdate):
        _, ancient = await pending_order()
        await backdate(ancient["order_id"], 25 * 3600)

        report = await reconciler.sweep()

        assert report.expired_released == 0
        assert (await orders.get_order(db, ancient["order_id"]))["status"] \
            == "pending"

    async def test_paid_but_webhook_lost(
        self, db, adapter, reconciler, pending_order, backdate
    ):
        _, ticket = await pending_order(kind="ticket")
        _, offer = await pending_order(kind="offer")
        _, resv = await pending_order(kind="reservation")
        for res in (ticket, offer, resv):
            adapter.settle(res["payment_session_id"], "succeeded")
            await backdate(res["order_id"], 60 * 60)

        report = await reconciler.sweep()

        assert report.as_dict() == {
            "tickets_reconciled": 1,
            "reservations_reconciled": 1,
            "offers_reconciled": 1,
            "expired_released": 0,
            "errors": [],
        }
        for res in (ticket, offer, resv):
            order = await orders.get_order(db, res["order_id"])
            assert order["status"] == "completed"

    async def test_gateway_lookup_failure_is_reported(
        self, db, adapter, reconciler, pending_order, backdate, monkeypatch
    ):
        _, res = await pending_order()
        await backdate(res["order_id"], 60 * 60)

        async def down(psid):
            raise ConnectionError("gateway unreachable")

        monkeypatch.setattr(adapter, "retrieve_session", down)
        report = await reconciler.sweep()

        assert len(report.errors) == 1
        assert res["order_id"] in report.errors[0]
        assert (await orders.get_order(db, res["order_id"]))["status"] \
            == "pending"

    async def test_sweep_prunes_ledger(self, db, ledger, reconciler):
        assert await ledger.mark_event_seen("evt_old")
        async with db.transaction() as session:
            await session.execute(text(
                "UPDATE webhook_events SET received_at = 0"
            ))
        await reconciler.sweep()
        assert await ledger.mark_event_seen("evt_old")

    async def test_mismatched_paid_session_recorded_once(
        self, db, adapter, reconciler, pending_order, backdate
    ):
        _, res = await pending_order(price=2500)
        adapter.settle(res["payment_session_id"], "succeeded")
        adapter.session(res["payment_session_id"])["amount_total"] = 900
        await backdate(res["order_id"], 60 * 60)

        first = await reconciler.sweep()
        second = await reconciler.sweep()

        assert len(first.errors) == 1
        assert second.errors == []
        anomalies = await reconciler.list_anomalies()
        assert [a["order_id"] for a in anomalies] == [res["order_id"]]
        assert anomalies[0]["source"] == "sweep"
        assert (await orders.get_order(db, res["order_id"]))["status"] \
            == "pending"
