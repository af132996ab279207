"""Parsing of Stripe webhook bodies into typed events."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, Optional

from billing.services.events import WebhookPayloadError


class StripeEventType(str, enum.Enum):
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    TRIAL_WILL_END = "customer.subscription.trial_will_end"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_PAYMENT_ACTION_REQUIRED = "invoice.payment_action_required"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "StripeEventType":
        try:
            return cls(str(value or "").lower())
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_subscription_event(self) -> bool:
        return self.value.startswith("customer.subscription.")


def _coerce_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=dt_timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


@dataclass(frozen=True)
class StripeEvent:
    """A single Stripe webhook delivery; ``data`` is the event's ``data.object``."""

    event_id: str
    raw_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> StripeEventType:
        return StripeEventType.parse(self.raw_type)

    @property
    def metadata(self) -> Dict[str, Any]:
        metadata = self.data.get("metadata")
        if not metadata and not self.event_type.is_subscription_event:
            # Invoices carry the subscription's metadata under subscription_details
            details = self.data.get("subscription_details") or {}
            metadata = details.get("metadata")
        return metadata if isinstance(metadata, dict) else {}

    @property
    def user_id(self) -> Optional[str]:
        value = self.metadata.get("user_id")
        return str(value) if value else None

    @property
    def customer_id(self) -> Optional[str]:
        customer = self.data.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        return str(customer) if customer else None

    @property
    def subscription_id(self) -> Optional[str]:
        if self.event_type.is_subscription_event:
            value = self.data.get("id")
        else:
            value = self.data.get("subscription")
            if isinstance(value, dict):
                value = value.get("id")
        return str(value) if value else None

    @property
    def subscription_status(self) -> Optional[str]:
        if not self.event_type.is_subscription_event:
            return None
        return self.data.get("status")

    @property
    def current_period_end(self) -> Optional[datetime]:
        return _coerce_timestamp(self.data.get("current_period_end"))

    @property
    def trial_end(self) -> Optional[datetime]:
        return _coerce_timestamp(self.data.get("trial_end"))


def parse_stripe_event(payload: Any) -> StripeEvent:
    """
    Extract the identifiers of a Stripe event body.

    Raises :class:`WebhookPayloadError` when the id, the type or the
    ``data.object`` of the event is missing.
    """
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Webhook body must be a JSON object.")

    event_id = payload.get("id")
    if not event_id:
        raise WebhookPayloadError("Missing event id.")
    raw_type = payload.get("type")
    if not raw_type:
        raise WebhookPayloadError("Missing event type.")

    data = payload.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise WebhookPayloadError("Missing data.object.")

    return StripeEvent(event_id=str(event_id), raw_type=str(raw_type), data=obj, payload=payload)
