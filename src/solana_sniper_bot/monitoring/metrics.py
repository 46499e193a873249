"""In-process metrics for the position lifecycle.

Counters track pipeline outcomes and submission attempts, gauges the
admission load and trailing stop floors, and summaries the submit latency
and realised profit or loss per position.
"""

from __future__ import annotations

import math
import re
import threading
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from pathlib import Path
from statistics import mean
from typing import Deque, Dict, Iterator, List, MutableMapping

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_:]")
_QUANTILES = (("p50", 0.5), ("p90", 0.9), ("p99", 0.99))


def _prometheus_name(name: str) -> str:
    """Map a dotted metric key such as ``pipeline.buy.confirmed`` to a Prometheus name."""

    converted = _INVALID_NAME_CHARS.sub("_", name) or "_"
    return f"_{converted}" if converted[0].isdigit() else converted


class _Summary:
    """Bounded window of observations reported as nearest-rank quantiles."""

    __slots__ = ("_samples",)

    def __init__(self, window: int) -> None:
        self._samples: Deque[float] = deque(maxlen=window)

    def add(self, value: float) -> None:
        self._samples.append(float(value))

    def stats(self) -> Dict[str, float]:
        ordered = sorted(self._samples)
        if not ordered:
            return {}
        stats = {"count": float(len(ordered)), "avg": mean(ordered)}
        for label, quantile in _QUANTILES:
            rank = max(math.ceil(quantile * len(ordered)) - 1, 0)
            stats[label] = ordered[min(rank, len(ordered) - 1)]
        return stats


class MetricsRegistry:
    """Thread-safe counters, gauges and summaries with a Prometheus text export.

    The event bus worker thread and the trading event loop both write here,
    so every access goes through one re-entrant lock.
    """

    def __init__(self, *, window: int = 1024) -> None:
        self._lock = threading.RLock()
        self._window = window
        self._counters: MutableMapping[str, float] = defaultdict(float)
        self._gauges: MutableMapping[str, float] = {}
        self._summaries: Dict[str, _Summary] = {}

    def increment(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            self._counters[name] += amount

    def get(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = float(value)

    def get_gauge(self, name: str) -> float:
        with self._lock:
            return self._gauges.get(name, 0.0)

    def discard_gauge(self, name: str) -> None:
        with self._lock:
            self._gauges.pop(name, None)

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            summary = self._summaries.get(name)
            if summary is None:
                summary = self._summaries[name] = _Summary(self._window)
            summary.add(value)

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        """Observe the wall-clock duration of the block, in seconds, under ``name``."""

        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, time.perf_counter() - started)

    def snapshot(self) -> Dict[str, Dict]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "summaries": {name: summary.stats() for name, summary in self._summaries.items()},
            }

    def export_prometheus(self) -> str:
        snap = self.snapshot()
        lines: List[str] = []
        for kind, values in (("counter", snap["counters"]), ("gauge", snap["gauges"])):
            for name, value in sorted(values.items()):
                metric = _prometheus_name(name)
                lines.append(f"# TYPE {metric} {kind}")
                lines.append(f"{metric} {value}")
        for name, stats in sorted(snap["summaries"].items()):
            if not stats:
                continue
            metric = _prometheus_name(name)
            lines.append(f"# TYPE {metric} summary")
            for label, _ in _QUANTILES:
                lines.append(f'{metric}{{quantile="{label}"}} {stats[label]}')
            lines.append(f"{metric}_count {stats['count']}")
            lines.append(f"{metric}_avg {stats['avg']}")
        return "\n".join(lines) + "\n"

    def write_prometheus(self, path: Path) -> None:
        """Atomically replace ``path`` with the current export, textfile-collector style."""

        path.parent.mkdir(parents=True, exist_ok=True)
        staging = path.with_name(f".{path.name}.tmp")
        staging.write_text(self.export_prometheus(), encoding="utf-8")
        staging.replace(path)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._summaries.clear()


METRICS = MetricsRegistry()


__all__ = ["METRICS", "MetricsRegistry"]
