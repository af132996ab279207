"""Parsing of billing provider webhook payloads into typed events."""
from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, List, Optional


class WebhookPayloadError(ValueError):
    """Raised when a webhook payload is missing required identifiers."""


class WebhookEventType(str, enum.Enum):
    INITIAL_PURCHASE = "INITIAL_PURCHASE"
    RENEWAL = "RENEWAL"
    CANCELLATION = "CANCELLATION"
    UNCANCELLATION = "UNCANCELLATION"
    EXPIRATION = "EXPIRATION"
    BILLING_ISSUE = "BILLING_ISSUE"
    SUBSCRIBER_ALIAS = "SUBSCRIBER_ALIAS"
    SUBSCRIPTION_PAUSED = "SUBSCRIPTION_PAUSED"
    SUBSCRIPTION_EXTENDED = "SUBSCRIPTION_EXTENDED"
    TRANSFER = "TRANSFER"
    PRODUCT_CHANGE = "PRODUCT_CHANGE"
    TEST = "TEST"
    NON_RENEWING_PURCHASE = "NON_RENEWING_PURCHASE"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Optional[str]) -> "WebhookEventType":
        """Map a raw type string to a member; anything unrecognised is ``UNKNOWN``."""
        try:
            return cls(str(value or "").upper())
        except ValueError:
            return cls.UNKNOWN


def _coerce_timestamp_ms(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(float(value) / 1000.0, tz=dt_timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _first(values: Any) -> Optional[str]:
    if isinstance(values, (list, tuple)) and values:
        return str(values[0]) if values[0] not in (None, "") else None
    return None


def hash_payload(payload: Any) -> str:
    """SHA256 of the canonical JSON form of ``payload``."""
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


@dataclass(frozen=True)
class ProviderEvent:
    """A single webhook delivery from the billing provider."""

    event_id: str
    raw_type: str
    user_id: Optional[str]
    data: Dict[str, Any] = field(default_factory=dict)
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> WebhookEventType:
        return WebhookEventType.parse(self.raw_type)

    @property
    def expiration_at(self) -> Optional[datetime]:
        return _coerce_timestamp_ms(self.data.get("expiration_at_ms"))

    @property
    def grace_period_expires_at(self) -> Optional[datetime]:
        return _coerce_timestamp_ms(self.data.get("grace_period_expiration_at_ms"))

    @property
    def auto_resume_at(self) -> Optional[datetime]:
        return _coerce_timestamp_ms(self.data.get("auto_resume_date_ms"))

    @property
    def transferred_from(self) -> Optional[str]:
        return _first(self.data.get("transferred_from"))

    @property
    def transferred_to(self) -> Optional[str]:
        return _first(self.data.get("transferred_to"))

    @property
    def new_app_user_id(self) -> Optional[str]:
        return self.data.get("new_app_user_id") or _first(self.data.get("aliases"))

    @property
    def subscription_reference(self) -> str:
        """Provider identifier stored as the account's subscription reference."""
        return str(
            self.data.get("original_transaction_id")
            or self.data.get("transaction_id")
            or self.data.get("id")
            or self.event_id
        )

    @property
    def product_id(self) -> Optional[str]:
        return self.data.get("product_id")


def parse_provider_event(payload: Any) -> ProviderEvent:
    """
    Extract the identifiers of a provider webhook body.

    The body is ``{"event": {...}}`` with an optional top-level ``id``.
    Raises :class:`WebhookPayloadError` when the event type, the event id or,
    for anything but ``TEST`` events, the app user id is missing.
    """
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Webhook body must be a JSON object.")

    data = payload.get("event")
    if not isinstance(data, dict):
        data = {}

    raw_type = data.get("type")
    if not raw_type:
        raise WebhookPayloadError("Missing event type.")

    event_id = payload.get("id") or data.get("id")
    if not event_id:
        raise WebhookPayloadError("Missing event id.")

    user_id = data.get("app_user_id")
    if not user_id and WebhookEventType.parse(raw_type) is not WebhookEventType.TEST:
        raise WebhookPayloadError("Missing app_user_id.")

    return ProviderEvent(
        event_id=str(event_id),
        raw_type=str(raw_type),
        user_id=str(user_id) if user_id else None,
        data=data,
        payload=payload,
    )
