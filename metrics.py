"""Prometheus metrics shared by the ledger, payments and web layers."""
from __future__ import annotations

import os
import time
from typing import Iterable

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

REGISTRY = CollectorRegistry()

_ENV = (os.getenv("APP_ENV") or "prod").strip() or "prod"

ledger_operations_total = Counter(
    "ledger_operations_total",
    "Ledger operations grouped by operation and outcome",
    labelnames=("op", "result", "env"),
    registry=REGISTRY,
)

ledger_operation_seconds = Histogram(
    "ledger_operation_seconds",
    "Duration of ledger operations",
    labelnames=("op", "env"),
    registry=REGISTRY,
)

webhook_events_total = Counter(
    "webhook_events_total",
    "Payment webhook deliveries grouped by event type and processing status",
    labelnames=("event", "status", "env"),
    registry=REGISTRY,
)

http_spend_total = Counter(
    "http_spend_total",
    "Token spend flows grouped by flow and outcome",
    labelnames=("flow", "result", "env"),
    registry=REGISTRY,
)

process_uptime_seconds = Gauge(
    "process_uptime_seconds",
    "Process uptime in seconds",
    registry=REGISTRY,
)

_START_TIME = time.time()


def record_ledger_op(op: str, result: str, duration: float | None = None) -> None:
    ledger_operations_total.labels(op=op, result=result, env=_ENV).inc()
    if duration is not None:
        ledger_operation_seconds.labels(op=op, env=_ENV).observe(max(0.0, duration))


def record_webhook(event: str, status: str) -> None:
    webhook_events_total.labels(event=event or "unknown", status=status, env=_ENV).inc()


def record_spend(flow: str, result: str) -> None:
    http_spend_total.labels(flow=flow, result=result, env=_ENV).inc()


def render_metrics() -> bytes:
    """Return the current metrics payload in Prometheus text format."""

    process_uptime_seconds.set(max(0.0, time.time() - _START_TIME))
    return generate_latest(REGISTRY)


__all__: Iterable[str] = [
    "REGISTRY",
    "ledger_operations_total",
    "ledger_operation_seconds",
    "webhook_events_total",
    "http_spend_total",
    "process_uptime_seconds",
    "record_ledger_op",
    "record_webhook",
    "record_spend",
    "render_metrics",
]
