"""
Defines Prometheus metrics for the deduplication engine.
"""

from __future__ import annotations

from typing import Any, Dict

from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Reuses an already-registered collector so that re-importing this module
# (test collection, container reloads) never raises a duplicate timeseries error.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race; use the collector that won.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    """Create (or fetch) every toastdedup collector."""
    return {
        "checks_total": Counter(
            "toastdedup_checks_total",
            "Duplicate checks evaluated by the core service, by decision path",
            ["path"],
        ),
        "blocked_total": Counter(
            "toastdedup_blocked_total",
            "Checks that returned should_block=True",
        ),
        "cache_entries": Gauge(
            "toastdedup_cache_entries",
            "Entries currently held by the dedup cache",
        ),
        "sweep_removed_total": Counter(
            "toastdedup_sweep_removed_total",
            "Dedup cache entries removed by the max-age sweep",
        ),
        "check_latency_seconds": Histogram(
            "toastdedup_check_latency_seconds",
            "Core service decision latency",
            buckets=[0.0001, 0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5],
        ),
        "optimizer_cache_hits_total": Counter(
            "toastdedup_optimizer_cache_hits_total",
            "Optimizer result-cache hits",
        ),
        "optimizer_cache_misses_total": Counter(
            "toastdedup_optimizer_cache_misses_total",
            "Optimizer result-cache misses",
        ),
        "optimizer_rejected_total": Counter(
            "toastdedup_optimizer_rejected_total",
            "Checks rejected by the concurrency admission limiter",
        ),
        "optimizer_batch_size": Histogram(
            "toastdedup_optimizer_batch_size",
            "Number of requests evaluated per batch flush",
            buckets=[1, 2, 5, 10, 20, 50, 100],
        ),
        "optimizer_in_flight": Gauge(
            "toastdedup_optimizer_in_flight",
            "Checks currently admitted by the optimizer",
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()
