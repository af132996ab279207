"""Prometheus metrics helpers for the billing reconciliation domain."""
from __future__ import annotations

from prometheus_client import Counter, Histogram

WEBHOOK_EVENT_COUNT = Counter(
    "billing_webhook_events_total",
    "Provider webhook deliveries by event type and outcome",
    labelnames=("event_type", "outcome"),
)

WEBHOOK_PROCESSING_LATENCY = Histogram(
    "billing_webhook_processing_seconds",
    "Latency of provider webhook processing",
    labelnames=("event_type",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)

RATE_LIMIT_DECISIONS = Counter(
    "billing_rate_limit_decisions_total",
    "Rate limiter decisions by endpoint category",
    labelnames=("category", "outcome"),
)

IDEMPOTENCY_OUTCOMES = Counter(
    "billing_idempotency_outcomes_total",
    "Idempotency cache outcomes for protected requests",
    labelnames=("outcome",),
)

NOTIFICATION_FAILURES = Counter(
    "billing_notification_failures_total",
    "Account notifications that could not be delivered",
    labelnames=("channel",),
)
