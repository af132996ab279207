"""
End-to-end processing of one webhook delivery from the billing provider or Stripe.

Webhook processing fails closed: any error while applying an event rolls the
transaction back, marks the log row failed and answers 500 so the provider
redelivers. Contrast with the rate limiter and idempotency cache, which fail
open.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from django.db import DatabaseError, transaction
from django.utils import timezone

from billing.models import WebhookEventLog
from billing.observability.logging import log_billing_event
from billing.observability.metrics import WEBHOOK_EVENT_COUNT, WEBHOOK_PROCESSING_LATENCY
from billing.services.dispatcher import DispatchResult, WebhookDispatcher
from billing.services.events import WebhookPayloadError, parse_provider_event
from billing.services.provider_client import ProviderClient
from billing.services.stripe_dispatcher import StripeWebhookDispatcher
from billing.services.stripe_events import parse_stripe_event
from billing.services.webhook_log import is_duplicate_event, log_event_pending, mark_event_outcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookOutcome:
    """HTTP-facing result of processing a delivery."""

    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status_code == 200


def _error_body(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"code": code, "message": message, "details": details or {}}


class WebhookProcessor:
    """Parse, deduplicate, log and dispatch billing provider events."""

    source = WebhookEventLog.Source.PROVIDER
    actor = "webhook.provider"

    def __init__(self, dispatcher=None, *, dedup_window_hours: Optional[int] = None):
        self.dispatcher = dispatcher or self.default_dispatcher()
        self.dedup_window_hours = dedup_window_hours

    def default_dispatcher(self):
        return WebhookDispatcher(provider_client=ProviderClient.from_settings())

    def parse(self, payload: Any):
        return parse_provider_event(payload)

    def process(self, payload: Any) -> WebhookOutcome:
        try:
            event = self.parse(payload)
        except WebhookPayloadError as exc:
            WEBHOOK_EVENT_COUNT.labels(event_type="malformed", outcome="rejected").inc()
            logger.warning("Rejected malformed webhook payload: %s", exc)
            return WebhookOutcome(400, _error_body("invalid_payload", str(exc)))

        event_type = event.raw_type
        metric_type = event.event_type.value
        ack = {"received": True, "event_id": event.event_id, "event_type": event_type}

        try:
            duplicate = is_duplicate_event(event.event_id, event_type, self.dedup_window_hours)
        except DatabaseError:
            logger.warning("Duplicate check failed for event %s; continuing", event.event_id, exc_info=True)
            duplicate = False
        if duplicate:
            WEBHOOK_EVENT_COUNT.labels(event_type=metric_type, outcome="duplicate").inc()
            return WebhookOutcome(200, {**ack, "duplicate": True})

        entry = log_event_pending(event.event_id, event_type, event.user_id, event.payload, source=self.source)
        if entry is None:
            logger.warning("Processing event %s without a log entry; redelivery will not be deduplicated", event.event_id)

        started = time.monotonic()
        try:
            with transaction.atomic():
                locked: Optional[WebhookEventLog] = None
                if entry is not None:
                    locked = WebhookEventLog.objects.select_for_update().get(pk=entry.pk)
                    if locked.success:
                        # A concurrent delivery finished first
                        WEBHOOK_EVENT_COUNT.labels(event_type=metric_type, outcome="duplicate").inc()
                        return WebhookOutcome(200, {**ack, "duplicate": True})
                    locked.status = WebhookEventLog.Status.PROCESSING
                    locked.save(update_fields=["status"])

                result = self.dispatcher.dispatch(event)

                if locked is not None:
                    locked.success = True
                    locked.status = (
                        WebhookEventLog.Status.IGNORED
                        if result.status == DispatchResult.IGNORED
                        else WebhookEventLog.Status.PROCESSED
                    )
                    locked.error_message = None
                    locked.processed_at = timezone.now()
                    locked.save(update_fields=["success", "status", "error_message", "processed_at"])
        except Exception as exc:
            logger.exception("Failed to process %s event %s (%s)", self.source, event.event_id, event_type)
            WEBHOOK_EVENT_COUNT.labels(event_type=metric_type, outcome="failed").inc()
            try:
                mark_event_outcome(event.event_id, success=False, error_message=str(exc))
            except DatabaseError:
                logger.exception("Failed to record failure for event %s", event.event_id)
            return WebhookOutcome(
                500,
                {"received": False, "event_id": event.event_id, "event_type": event_type, "error": str(exc)},
            )
        finally:
            WEBHOOK_PROCESSING_LATENCY.labels(event_type=metric_type).observe(time.monotonic() - started)

        WEBHOOK_EVENT_COUNT.labels(event_type=metric_type, outcome=result.status).inc()
        log_billing_event(
            message=f"{self.source}_webhook_processed",
            event_id=event.event_id,
            user_id=event.user_id,
            actor=self.actor,
            extra={"event_type": event_type, "outcome": result.status, "detail": result.detail},
        )
        return WebhookOutcome(200, ack)


class StripeWebhookProcessor(WebhookProcessor):
    """Same pipeline for Stripe subscription and invoice events."""

    source = WebhookEventLog.Source.STRIPE
    actor = "webhook.stripe"

    def default_dispatcher(self):
        return StripeWebhookDispatcher()

    def parse(self, payload: Any):
        return parse_stripe_event(payload)


def processor_for_source(source: str) -> WebhookProcessor:
    if source == WebhookEventLog.Source.STRIPE:
        return StripeWebhookProcessor()
    return WebhookProcessor()
