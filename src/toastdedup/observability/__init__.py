"""Structured logging and Prometheus metrics for the deduplication engine."""

from __future__ import annotations

from prometheus_client import generate_latest

from .logging import configure_logging
from .metrics import METRICS

__all__ = ["configure_logging", "METRICS", "export_prometheus"]


def export_prometheus() -> str:
    """Render every registered collector in the Prometheus text format."""
    return generate_latest().decode("utf-8")
