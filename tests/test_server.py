"""HTTP-level tests for the tixgate service."""

import json

import pytest

from tixgate.mockpay import sign
from tixgate import config


def make_pool(client, **kw):
    body = {"name": "GA", "total_capacity": 3, "price": 1500}
    body.update(kw)
    resp = client.post("/api/pools", json=body)
    assert resp.status_code == 200, resp.text
    return resp.json()


def buy(client, pool_id, quantity=1, buyer="buyer-1", **extra):
    return client.post("/api/checkout", json={
        "buyer_id": buyer,
        "items": [{"pool_id": pool_id, "quantity": quantity}],
        **extra,
    })


def post_event(client, event):
    payload = json.dumps(event).encode()
    return client.post(
        "/payments/webhook",
        content=payload,
        headers={
            "x-mockpay-signature": sign(payload, config.MOCK_SECRET),
            "content-type": "application/json",
        },
    )


class TestPools:
    def test_create_and_get(self, client):
        pool = make_pool(client, kind="offer", business_id="biz-1")
        got = client.get(f"/api/pools/{pool['id']}").json()
        assert got["kind"] == "offer"
        assert got["remaining"] == 3
        assert not got["sold_out"]

        items = client.get("/api/inventory").json()["items"]
        assert [p["id"] for p in items] == [pool["id"]]

    def test_bad_pool(self, client):
        resp = client.post("/api/pools", json={"total_capacity": -3})
        assert resp.status_code == 400
        assert client.get("/api/pools/nope").status_code == 404

    def test_claim_release(self, client):
        pool = make_pool(client, total_capacity=2)
        url = f"/api/pools/{pool['id']}"

        assert client.post(f"{url}/claim", json={"quantity": 2}).json() == {
            "success": True, "remaining": 0,
        }
        short = client.post(f"{url}/claim", json={"quantity": 1})
        assert short.status_code == 409
        assert short.json()["error"] == "INSUFFICIENT"

        assert client.post(
            f"{url}/release", json={"quantity": 1}
        ).json()["remaining"] == 1
        assert client.post(
            f"{url}/claim", json={"quantity": 0}
        ).status_code == 400
        assert client.post(
            "/api/pools/nope/claim", json={"quantity": 1}
        ).status_code == 404

    def test_add_capacity_and_delete(self, client):
        pool = make_pool(client, total_capacity=1)
        url = f"/api/pools/{pool['id']}"
        assert client.post(
            f"{url}/capacity", json={"extra": 4}
        ).json()["remaining"] == 5
        assert client.delete(url).json() == {
            "ok": True, "credentials_cancelled": 0,
        }
        assert client.delete(url).status_code == 404


class TestCheckoutFlow:
    def test_pay_through_mockpay(self, client):
        pool = make_pool(client)
        co = buy(client, pool["id"], 2)
        assert co.status_code == 200, co.text
        order = co.json()
        assert order["status"] == "pending"
        psid = order["payment_session_id"]

        screen = client.get(f"/mockpay/{psid}").json()
        assert screen["order_id"] == order["order_id"]
        assert screen["amount"] == 3000

        emitted = client.post(f"/mockpay/{psid}/emit", json={"t": "succeeded"})
        assert emitted.json()["delivered"]

        view = client.get(f"/api/orders/{order['order_id']}").json()
        assert view["status"] == "completed"
        assert len(view["credentials"]) == 2
        assert view["completed_at"] is not None

    def test_sold_out(self, client):
        pool = make_pool(client, total_capacity=1)
        assert buy(client, pool["id"]).status_code == 200
        resp = buy(client, pool["id"], buyer="buyer-2")
        assert resp.status_code == 409
        assert resp.json()["error"] == "INSUFFICIENT"

    def test_rejected_cart(self, client):
        pool = make_pool(client, max_per_order=1)
        resp = buy(client, pool["id"], 2)
        assert resp.status_code == 400
        assert resp.json()["error"] == "REJECTED"
        assert client.post(
            "/api/checkout", json={"buyer_id": "b", "items": "x"}
        ).status_code == 400

    def test_idempotency_hint(self, client):
        pool = make_pool(client)
        a = buy(client, pool["id"], idempotency_hint="k1").json()
        b = buy(client, pool["id"], idempotency_hint="k1").json()
        assert a["order_id"] == b["order_id"]
        assert client.get(
            f"/api/pools/{pool['id']}"
        ).json()["remaining"] == 2

    def test_failed_payment_releases(self, client):
        pool = make_pool(client, total_capacity=1)
        order = buy(client, pool["id"]).json()
        client.post(
            f"/mockpay/{order['payment_session_id']}/emit",
            json={"t": "failed"},
        )
        assert client.get(
            f"/api/orders/{order['order_id']}"
        ).json()["status"] == "expired"
        assert client.get(
            f"/api/pools/{pool['id']}"
        ).json()["remaining"] == 1

    def test_refund(self, client):
        pool = make_pool(client, price=0)
        order = buy(client, pool["id"], 2).json()
        assert order["status"] == "completed"

        resp = client.post(f"/api/orders/{order['order_id']}/refund")
        assert resp.json() == {"ok": True, "credentials_refunded": 2}
        again = client.post(f"/api/orders/{order['order_id']}/refund")
        assert again.status_code == 409
        assert client.get("/api/orders/missing").status_code == 404


class TestWebhook:
    def test_bad_signature(self, client):
        resp = client.post(
            "/payments/webhook",
            content=b'{"id": "evt_1"}',
            headers={"x-mockpay-signature": "forged"},
        )
        assert resp.status_code == 400

    def test_duplicate_delivery(self, client):
        pool = make_pool(client)
        order = buy(client, pool["id"]).json()
        event = {
            "id": "evt_dup",
            "type": "payment.succeeded",
            "payment_session_id": order["payment_session_id"],
            "amount": order["amount"],
            "currency": "eur",
            "metadata": {"order_id": order["order_id"]},
        }
        first = post_event(client, event).json()
        second = post_event(client, event).json()
        assert first["order_status"] == "completed"
        assert second == {"ok": True, "idempotent": True}

    def test_amount_mismatch_shows_up_for_operators(self, client):
        pool = make_pool(client)
        order = buy(client, pool["id"]).json()
        resp = post_event(client, {
            "id": "evt_cheap",
            "type": "payment.succeeded",
            "payment_session_id": order["payment_session_id"],
            "amount": 1,
            "currency": "eur",
            "metadata": {"order_id": order["order_id"]},
        })
        assert resp.status_code == 200
        assert "amount mismatch" in resp.json()["anomaly"]

        items = client.get("/api/ops/anomalies").json()["items"]
        assert [a["event_id"] for a in items] == ["evt_cheap"]
        assert client.get(
            f"/api/orders/{order['order_id']}"
        ).json()["status"] == "pending"


class TestCheckin:
    @pytest.fixture
    def qr(self, client):
        pool = make_pool(client, price=0, business_id="biz-1")
        order = buy(client, pool["id"]).json()
        return order["credentials"][0]["qr_token"]

    def test_checkin_once(self, client, qr):
        ok = client.post(
            "/api/checkin", json={"qr_token": qr, "staff_id": "alice"}
        )
        assert ok.status_code == 200
        assert ok.json()["success"]

        again = client.post(
            "/api/checkin", json={"qr_token": qr, "staff_id": "bob"}
        )
        assert again.status_code == 200
        body = again.json()
        assert body["error"] == "ALREADY_USED"
        assert body["checked_in_by"] == "alice"
        assert body["checked_in_at"].endswith("+00:00")

    def test_checkin_validation(self, client, qr):
        assert client.post(
            "/api/checkin", json={"qr_token": qr}
        ).status_code == 400
        assert client.post(
            "/api/checkin", json={"staff_id": "s"}
        ).status_code == 400

    def test_inspect(self, client, qr):
        info = client.get(f"/api/credentials/{qr}").json()
        assert info["redeemable"]
        assert info["scans"] == []

        client.post("/api/checkin", json={"qr_token": qr, "staff_id": "s"})
        info = client.get(f"/api/credentials/{qr}").json()
        assert not info["redeemable"]
        assert [s["result"] for s in info["scans"]] == ["ok"]
        assert client.get("/api/credentials/nope").status_code == 404


class TestOps:
    def test_reconcile_endpoint(self, client):
        report = client.post("/api/reconcile").json()
        assert report == {
            "tickets_reconciled": 0,
            "reservations_reconciled": 0,
            "offers_reconciled": 0,
            "expired_released": 0,
            "errors": [],
        }

    def test_boost_active(self, client):
        resp = client.post("/api/boosts/active", json={
            "boost": {
                "durationMode": "hourly",
                "createdAt": "2025-06-01T10:00:00Z",
                "durationHours": 2,
            },
            "now": "2025-06-01T11:00:00Z",
        }).json()
        assert resp["active"]
        assert resp["window"]["end"] == "2025-06-01T12:00:00.000Z"

        resp = client.post("/api/boosts/active", json={
            "startDate": "2025-06-03", "endDate": "2025-06-01",
        }).json()
        assert resp == {"active": False, "window": None}

    def test_timings(self, client):
        pool = make_pool(client)
        client.post(f"/api/pools/{pool['id']}/claim", json={"quantity": 1})
        kinds = {t["kind"] for t in client.get("/api/ops/timings").json()[
            "items"
        ]}
        assert "inventory.claim" in kinds
