# rentcollect/core/metrics.py
"""Prometheus counters for the reconciliation pipeline (exposed at /metrics)."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

REGISTRY = CollectorRegistry()

WEBHOOK_NOTIFICATIONS = Counter(
    "rentcollect_webhook_notifications_total",
    "Inbound M-Pesa notifications by kind and outcome",
    ["kind", "outcome"],
    registry=REGISTRY,
)
ALLOCATIONS = Counter(
    "rentcollect_allocations_total",
    "Allocation engine runs",
    ["mode", "result"],
    registry=REGISTRY,
)
ALLOCATION_CONFLICTS = Counter(
    "rentcollect_allocation_conflicts_total",
    "Concurrent-write conflicts detected while allocating or reversing",
    registry=REGISTRY,
)
REVERSALS = Counter(
    "rentcollect_reversals_total",
    "Allocation reversals",
    ["result"],
    registry=REGISTRY,
)
STK_SWEEP_RECORDS = Counter(
    "rentcollect_stk_sweep_records_total",
    "STK tracking records processed by the reconciliation sweep",
    ["outcome"],
    registry=REGISTRY,
)
HTTP_REQUEST_LATENCY = Histogram(
    "rentcollect_http_request_latency_seconds",
    "Latency of HTTP requests in seconds",
    ["method", "path"],
    registry=REGISTRY,
)


def render_latest() -> bytes:
    return generate_latest(REGISTRY)


__all__ = [
    "REGISTRY",
    "WEBHOOK_NOTIFICATIONS",
    "ALLOCATIONS",
    "ALLOCATION_CONFLICTS",
    "REVERSALS",
    "STK_SWEEP_RECORDS",
    "HTTP_REQUEST_LATENCY",
    "render_latest",
]
