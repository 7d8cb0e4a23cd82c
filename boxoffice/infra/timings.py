# boxoffice/infra/timings.py
"""
In-process latency samples for the hot paths (ledger writes, order writes,
checkout steps), exposed read-only on the admin timings endpoint.
"""
from __future__ import annotations
import statistics
import time
from typing import Dict, List

# ------------ hot path: append only ------------
# one list per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, List[float]] = {}
_COUNTS: Dict[str, int] = {}
# per kind; older samples are dropped, counts keep going
MAX_SAMPLES = 10_000


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    lst = _TIMINGS.get(kind)
    if lst is None:
        lst = []
        _TIMINGS[kind] = lst
    lst.append(float(value))
    _COUNTS[kind] = _COUNTS.get(kind, 0) + 1
    if len(lst) > MAX_SAMPLES:
        del lst[: len(lst) // 2]


class timeit:
    """async usage:
        async with timeit("ledger.reserve"):
            await ledger_write()
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


# ------------ stats only on demand ------------
def _percentile(ordered: List[float], pct: float) -> float:
    if not ordered:
        return 0.0
    idx = min(len(ordered) - 1, int(round(pct / 100 * (len(ordered) - 1))))
    return ordered[idx]


def summary() -> Dict[str, Dict[str, float]]:
    """Milliseconds per kind over the retained samples."""
    out: Dict[str, Dict[str, float]] = {}
    for kind, vals in sorted(_TIMINGS.items()):
        if not vals:
            continue
        ordered = sorted(vals)
        out[kind] = {
            "count": _COUNTS.get(kind, len(vals)),
            "n": len(vals),
            "mean_ms": statistics.fmean(vals) * 1000,
            "p50_ms": _percentile(ordered, 50) * 1000,
            "p95_ms": _percentile(ordered, 95) * 1000,
            "max_ms": ordered[-1] * 1000,
        }
    return out


def reset() -> None:
    _TIMINGS.clear()
    _COUNTS.clear()
