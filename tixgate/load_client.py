#!/usr/bin/env python3
"""
tixgate load client (async)

Two modes, both against a running server:

  checkout  creates a ticket pool of --capacity units, then fires --total
            concurrent single-unit checkouts at it. Every checkout that got
            a unit is settled through the mock gateway
            (POST /mockpay/{psid}/emit) and polled until it leaves
            `pending`. Expect exactly --capacity successes.

  checkin   creates one free credential, then fires --total concurrent
            check-ins of its QR token. Expect exactly one success, the
            rest ALREADY_USED.

Usage:
  python -m tixgate.load_client checkout --base http://localhost:8000 \
                                --total 200 --capacity 50 --concurrency 50

  python -m tixgate.load_client checkin --total 100 --concurrency 100
"""

import asyncio
import random
import time
import argparse
import uuid
from dataclasses import dataclass, field
from typing import Optional, List, Dict

import httpx

DONE = ("completed", "expired")


@dataclass
class Result:
    ok: bool
    # COMPLETED/EXPIRED/SOLD_OUT/CHECKED_IN/ALREADY_USED/NOT_VALID/
    # TIMEOUT/ERROR
    outcome: str
    t_request: float = 0.0
    t_observed: float = 0.0
    err: Optional[str] = None


def pct(values: List[float], p: float) -> float:
    if not values:
        return 0.0
    x = sorted(values)
    k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
    return x[k]


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for r in self.results:
            out[r.outcome] = out.get(r.outcome, 0) + 1
        return out

    def summary(self) -> Dict[str, float]:
        lat = [r.t_request for r in self.results if r.t_request > 0]
        return {
            "total": len(self.results),
            "ok": sum(1 for r in self.results if r.ok),
            "p50_s": pct(lat, 50),
            "p90_s": pct(lat, 90),
            "p99_s": pct(lat, 99),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Load Summary ===")
        print(f"Total: {int(s['total'])}   OK: {int(s['ok'])}")
        print("Outcomes: " + "   ".join(
            f"{k}: {v}" for k, v in sorted(self.counts().items())
        ))
        print(
            f"Latency (request): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} ops/s"
        )


async def create_pool(client: httpx.AsyncClient, base: str,
                      capacity: int, price: int) -> str:
    resp = await client.post(f"{base}/api/pools", json={
        "name": f"load-{uuid.uuid4().hex[:6]}",
        "kind": "ticket",
        "total_capacity": capacity,
        "price": price,
        "currency": "eur",
    })
    resp.raise_for_status()
    return resp.json()["id"]


async def one_checkout(
    client: httpx.AsyncClient,
    base: str,
    pool_id: str,
    emit_kind: str,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Result:
    r = Result(ok=False, outcome="ERROR")

    # 1) checkout
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/checkout",
            json={
                "buyer_id": f"buyer-{uuid.uuid4().hex[:12]}",
                "items": [{"pool_id": pool_id, "quantity": 1}],
            },
            timeout=30.0,
        )
    except Exception as e:
        r.err = f"checkout: {e}"
        return r
    r.t_request = time.perf_counter() - t0
    if resp.status_code == 409:
        r.ok = True
        r.outcome = "SOLD_OUT"
        return r
    if resp.status_code >= 400:
        r.err = f"checkout HTTP {resp.status_code}"
        return r
    j = resp.json()
    order_id = j["order_id"]
    psid = j.get("payment_session_id")
    if not psid:
        r.err = f"no payment session for order {order_id}"
        return r

    # 2) settle through the mock gateway
    try:
        resp = await client.post(
            f"{base}/mockpay/{psid}/emit", json={"t": emit_kind},
            timeout=30.0,
        )
        if resp.status_code >= 400:
            r.err = f"emit HTTP {resp.status_code}"
            return r
    except Exception as e:
        r.err = f"emit: {e}"
        return r

    # 3) poll order status until it leaves pending or timeout
    t2 = time.perf_counter()
    deadline = t2 + poll_timeout_s
    status = "pending"
    try:
        while time.perf_counter() < deadline:
            g = await client.get(f"{base}/api/orders/{order_id}", timeout=10.0)
            if g.status_code == 200:
                status = g.json().get("status", status)
                if status in DONE:
                    break
            await asyncio.sleep(poll_interval_s)
    except Exception as e:
        r.err = f"poll: {e}"
        return r

    r.t_observed = time.perf_counter() - t2
    r.ok = True
    r.outcome = status.upper() if status in DONE else "TIMEOUT"
    return r


async def one_checkin(
    client: httpx.AsyncClient, base: str, qr_token: str, n: int
) -> Result:
    r = Result(ok=False, outcome="ERROR")
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/checkin",
            json={"qr_token": qr_token, "staff_id": f"staff-{n}"},
            timeout=30.0,
        )
        resp.raise_for_status()
        j = resp.json()
    except Exception as e:
        r.err = f"checkin: {e}"
        return r
    r.t_request = time.perf_counter() - t0
    r.ok = True
    r.outcome = "CHECKED_IN" if j.get("success") else j.get("error", "ERROR")
    return r


async def run_checkout_load(
    base: str,
    total: int,
    capacity: int,
    concurrency: int,
    fail_rate: float,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "TixgateLoad/1.0"}
    ) as client:
        pool_id = await create_pool(client, base, capacity, price=1500)

        async def worker(n: int):
            async with sem:
                emit_kind = (
                    "failed" if random.random() < fail_rate else "succeeded"
                )
                stats.add(await one_checkout(
                    client, base, pool_id, emit_kind,
                    poll_interval_s, poll_timeout_s
                ))

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

    return stats


async def run_checkin_load(base: str, total: int, concurrency: int) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "TixgateLoad/1.0"}
    ) as client:
        # a free order is completed at checkout and carries its credential
        pool_id = await create_pool(client, base, capacity=1, price=0)
        resp = await client.post(f"{base}/api/checkout", json={
            "buyer_id": "load-client",
            "items": [{"pool_id": pool_id, "quantity": 1}],
        })
        resp.raise_for_status()
        qr_token = resp.json()["credentials"][0]["qr_token"]

        async def worker(n: int):
            async with sem:
                stats.add(await one_checkin(client, base, qr_token, n))

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

    return stats


def main():
    ap = argparse.ArgumentParser(description="tixgate load client")
    ap.add_argument("mode", choices=["checkout", "checkin"])
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--total", type=int, default=100,
                    help="Total requests to fire")
    ap.add_argument("--capacity", type=int, default=20,
                    help="Pool capacity (checkout mode)")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of payments to mark as failed")
    ap.add_argument("--poll-interval", type=float, default=0.05,
                    help="Seconds between status polls")
    ap.add_argument("--poll-timeout", type=float, default=10.0,
                    help="Max seconds to wait for an order to settle")
    args = ap.parse_args()

    t_start = time.perf_counter()
    if args.mode == "checkout":
        stats = asyncio.run(run_checkout_load(
            base=args.base,
            total=args.total,
            capacity=args.capacity,
            concurrency=args.concurrency,
            fail_rate=args.fail_rate,
            poll_interval_s=args.poll_interval,
            poll_timeout_s=args.poll_timeout,
        ))
    else:
        stats = asyncio.run(run_checkin_load(
            base=args.base,
            total=args.total,
            concurrency=args.concurrency,
        ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)


if __name__ == "__main__":
    main()
