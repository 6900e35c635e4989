# faucet_bot/infra/metrics.py
"""
In-process faucet counters and transfer timings, served as JSON on /metrics.

Counter keys carry their labels inline, sorted by name:
    faucet_requests_total{kind=faucet,outcome=accepted}
"""
from __future__ import annotations
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from threading import Lock
from typing import Iterator
from faucet_bot.infra.logging_config import get_logger

logger = get_logger(__name__)

# Recent observations kept per histogram for the p95 estimate
HISTOGRAM_WINDOW = 1000


class Histogram:
    """Running count/min/max/avg plus p95 over the most recent observations."""

    def __init__(self, window: int = HISTOGRAM_WINDOW):
        self.count = 0
        self.total = 0.0
        self.min: float | None = None
        self.max: float | None = None
        self._recent: deque[float] = deque(maxlen=window)

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)
        self._recent.append(value)

    def get_stats(self) -> dict:
        if not self.count:
            return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0}
        recent = sorted(self._recent)
        return {
            "count": self.count,
            "min": self.min,
            "max": self.max,
            "avg": self.total / self.count,
            "p95": recent[min(int(len(recent) * 0.95), len(recent) - 1)],
        }


class MetricsCollector:

    def __init__(self):
        self._counters: dict[str, int] = defaultdict(int)
        self._histograms: dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] += amount

    def observe_histogram(self, name: str, value: float) -> None:
        with self._lock:
            self._histograms[name].observe(value)

    def get_metrics(self) -> dict:
        """Snapshot of every counter and histogram"""
        with self._lock:
            return {
                "counters": dict(self._counters),
                "histograms": {k: v.get_stats() for k, v in self._histograms.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


# Global metrics collector
_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    """Increment a counter metric"""
    _metrics.inc_counter(name, amount, labels or None)


class FaucetMetrics:
    """Faucet-level metrics tracking"""

    @staticmethod
    def request_accepted(kind: str) -> None:
        inc_counter("faucet_requests_total", kind=kind, outcome="accepted")

    @staticmethod
    def request_rejected(reason: str) -> None:
        inc_counter("faucet_requests_total", outcome="rejected", reason=reason)

    @staticmethod
    def transfer_confirmed(source: str) -> None:
        inc_counter("faucet_transfers_total", status="confirmed", source=source)

    @staticmethod
    def transfer_failed(reason: str) -> None:
        inc_counter("faucet_transfers_total", status="failed", reason=reason)

    @staticmethod
    def submission_retried(kind: str) -> None:
        inc_counter("faucet_submission_retries_total", kind=kind)

    @staticmethod
    def funding_exhausted() -> None:
        inc_counter("faucet_funding_exhausted_total")

    @staticmethod
    def ledger_reset() -> None:
        inc_counter("faucet_ledger_resets_total")

    @staticmethod
    @contextmanager
    def track_transfer_time() -> Iterator[None]:
        """Time one request from dequeue to terminal outcome"""
        started = time.monotonic()
        try:
            yield
        finally:
            _metrics.observe_histogram("faucet_transfer_seconds", time.monotonic() - started)
