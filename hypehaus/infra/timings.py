# hypehaus/infra/timings.py
from __future__ import annotations
import statistics
import time
from typing import Dict, List


def perf_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def _mean_std(values: List[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


class _Timer:
    __slots__ = ("_owner", "_kind", "_t0")

    def __init__(self, owner: "Timings", kind: str):
        self._owner = owner
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = perf_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._owner.record(self._kind, perf_ts() - self._t0)


class Timings:
    """
    Per-app latency samples for the hot paths (hold, verify, issue, ...).

        async with app.state.timings.timeit("issue"):
            await issuer.issue(...)

    Append only on the hot path; stats are computed when asked for.
    Samples are capped per kind so a long-running worker stays bounded.
    """

    def __init__(self, max_samples: int = 10_000) -> None:
        self.max_samples = max_samples
        self._samples: Dict[str, List[float]] = {}

    def record(self, kind: str, value: float) -> None:
        lst = self._samples.get(kind)
        if lst is None:
            lst = []
            self._samples[kind] = lst
        lst.append(float(value))
        if len(lst) > self.max_samples:
            del lst[: len(lst) - self.max_samples]

    def timeit(self, kind: str) -> _Timer:
        return _Timer(self, kind)

    def summary(self) -> Dict[str, Dict[str, float]]:
        out = {}
        for kind, vals in sorted(self._samples.items()):
            mean, std = _mean_std(vals)
            out[kind] = {
                "n": len(vals),
                "mean_ms": mean * 1000.0,
                "std_ms": std * 1000.0,
                "max_ms": max(vals) * 1000.0 if vals else 0.0,
            }
        return out

    def clear(self) -> None:
        self._samples.clear()
