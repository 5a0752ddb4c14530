# tixgate/infra/timings.py
"""
In-process latency recorder, read by GET /api/ops/timings.

The server runs for days, so each kind keeps only its most recent samples;
`n` still counts every sample ever recorded.
"""
from __future__ import annotations
import os
import time
import statistics
from collections import deque
from typing import Deque, Dict, List

WINDOW = int(os.getenv("TIMINGS_WINDOW", "4096"))

# ------------ hot path: append only ------------
# single-threaded event loop, no locks
_SAMPLES: Dict[str, Deque[float]] = {}
_COUNTS: Dict[str, int] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    buf = _SAMPLES.get(kind)
    if buf is None:
        buf = _SAMPLES[kind] = deque(maxlen=WINDOW)
    buf.append(float(value))
    _COUNTS[kind] = _COUNTS.get(kind, 0) + 1


class timeit:
    """async usage:
        async with timeit("inventory.claim"):
            await fn()

    Failed blocks are recorded too; contention shows up as latency.
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, now_ts() - self._t0)


# ------------ stats only when asked ------------

def _percentile(ordered: List[float], p: float) -> float:
    if not ordered:
        return 0.0
    k = round(p / 100 * (len(ordered) - 1))
    return ordered[max(0, min(len(ordered) - 1, k))]


def aggregates() -> List[Dict[str, float]]:
    """
    One record per kind, in seconds over the recent window:
    {"kind", "n", "mean", "std", "p50", "p99", "max"}
    """
    out = []
    for kind in sorted(_SAMPLES):
        vals = sorted(_SAMPLES[kind])
        out.append({
            "kind": kind,
            "n": _COUNTS.get(kind, len(vals)),
            "mean": statistics.fmean(vals) if vals else 0.0,
            "std": statistics.stdev(vals) if len(vals) > 1 else 0.0,
            "p50": _percentile(vals, 50),
            "p99": _percentile(vals, 99),
            "max": vals[-1] if vals else 0.0,
        })
    return out


def reset() -> None:
    _SAMPLES.clear()
    _COUNTS.clear()
