"""Signature verification for billing provider and Stripe webhooks."""
from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Optional

from django.conf import settings
import stripe

logger = logging.getLogger(__name__)


class WebhookSignatureError(Exception):
    """Raised when a webhook signature is missing or does not match the body."""


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], *, secret: Optional[str] = None) -> None:
    """
    Check ``signature`` (hex HMAC-SHA256 of the raw body) against the shared secret.

    Raises :class:`WebhookSignatureError` on any mismatch. A missing secret is
    a configuration error and rejects every delivery.
    """
    secret = secret if secret is not None else getattr(settings, "BILLING_WEBHOOK_SECRET", "")
    if not secret:
        logger.error("BILLING_WEBHOOK_SECRET is not configured; rejecting webhook.")
        raise WebhookSignatureError("Webhook secret not configured.")
    if not signature:
        raise WebhookSignatureError("Missing webhook signature.")

    expected = compute_signature(body, secret)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        logger.warning("Webhook signature mismatch (received %s...)", signature[:10])
        raise WebhookSignatureError("Invalid webhook signature.")


def verify_stripe_signature(body: bytes, signature: Optional[str], *, secret: Optional[str] = None) -> None:
    """Check a ``Stripe-Signature`` header with the Stripe SDK, including its timestamp tolerance."""
    secret = secret if secret is not None else getattr(settings, "STRIPE_WEBHOOK_SECRET", "")
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured; rejecting webhook.")
        raise WebhookSignatureError("Webhook secret not configured.")
    if not signature:
        raise WebhookSignatureError("Missing webhook signature.")

    try:
        stripe.WebhookSignature.verify_header(
            body.decode("utf-8"),
            signature,
            secret,
            stripe.Webhook.DEFAULT_TOLERANCE,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
        logger.warning("Stripe webhook signature mismatch: %s", exc)
        raise WebhookSignatureError("Invalid webhook signature.") from exc
