"""Stripe helpers used by the client-initiated subscription flow."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from django.conf import settings
import stripe

logger = logging.getLogger(__name__)


class StripeConfigurationError(RuntimeError):
    """Raised when mandatory Stripe configuration is missing."""


class StripeServiceError(RuntimeError):
    """Raised when Stripe returns an operational error."""


def _configure_stripe() -> None:
    secret_key = getattr(settings, "STRIPE_SECRET_KEY", "")
    if not secret_key:
        raise StripeConfigurationError("STRIPE_SECRET_KEY is not configured.")

    stripe.api_key = secret_key
    api_version = getattr(settings, "STRIPE_API_VERSION", None)
    if api_version:
        stripe.api_version = api_version
    stripe.max_network_retries = 2


def _as_dict(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    try:
        return obj.to_dict()  # type: ignore[attr-defined]
    except AttributeError:
        return dict(obj)


def _monthly_price_id() -> str:
    price_id = getattr(settings, "STRIPE_MONTHLY_PRICE_ID", "")
    if not price_id:
        raise StripeConfigurationError("STRIPE_MONTHLY_PRICE_ID is not configured.")
    return price_id


def get_monthly_price() -> Dict[str, Any]:
    """Return the advertised monthly price in minor units plus a display string."""

    cents = int(getattr(settings, "STRIPE_MONTHLY_PRICE_AMOUNT", 299))
    currency = getattr(settings, "STRIPE_CURRENCY", "usd").lower()
    return {
        "unit_amount": cents,
        "currency": currency,
        "interval": "month",
        "formatted": f"${cents / 100:.2f}",
    }


def create_or_get_customer(user) -> str:
    """Return the Stripe customer for ``user``, creating one when none is usable."""

    _configure_stripe()

    existing = user.billing_customer_id
    if existing:
        try:
            customer = _as_dict(stripe.Customer.retrieve(existing))
            if not customer.get("deleted"):
                return existing
        except stripe.InvalidRequestError:
            logger.info("Stripe customer %s not found for user %s; creating a new one", existing, user.pk)
        except stripe.StripeError as exc:
            logger.warning("Failed to retrieve Stripe customer %s: %s", existing, exc)
            raise StripeServiceError(str(exc)) from exc

    try:
        customer = stripe.Customer.create(
            email=user.email or None,
            phone=user.phone or None,
            metadata={"user_id": str(user.pk)},
        )
    except stripe.StripeError as exc:
        logger.warning("Failed to create Stripe customer for user %s: %s", user.pk, exc)
        raise StripeServiceError(str(exc)) from exc
    return str(_as_dict(customer).get("id"))


def attach_payment_method(payment_method_id: str, customer_id: str) -> None:
    """Attach a payment method and make it the customer's invoice default."""

    if not payment_method_id:
        raise ValueError("payment_method_id is required.")

    _configure_stripe()
    try:
        stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)
        stripe.Customer.modify(
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )
    except stripe.StripeError as exc:
        logger.warning("Failed to attach payment method for customer %s: %s", customer_id, exc)
        raise StripeServiceError(str(exc)) from exc


def create_subscription(customer_id: str, *, user_id: str) -> Dict[str, Any]:
    """
    Create the monthly subscription for ``customer_id``.

    No Stripe idempotency key is sent; Stripe would replay a cached decline to
    every client retry.
    """

    _configure_stripe()
    price_id = _monthly_price_id()

    try:
        subscription = stripe.Subscription.create(
            customer=customer_id,
            items=[{"price": price_id}],
            metadata={"user_id": user_id},
            expand=["latest_invoice.payment_intent"],
        )
    except stripe.StripeError as exc:
        logger.warning("Failed to create Stripe subscription for customer %s: %s", customer_id, exc)
        raise StripeServiceError(str(exc)) from exc
    return _as_dict(subscription)


def retrieve_subscription(subscription_id: str) -> Dict[str, Any]:
    _configure_stripe()
    try:
        subscription = stripe.Subscription.retrieve(subscription_id, expand=["latest_invoice"])
    except stripe.StripeError as exc:
        logger.warning("Failed to retrieve Stripe subscription %s: %s", subscription_id, exc)
        raise StripeServiceError(str(exc)) from exc
    return _as_dict(subscription)


def cancel_subscription_at_period_end(subscription_id: str) -> Dict[str, Any]:
    """Schedule cancellation; access continues until the current period ends."""

    _configure_stripe()
    try:
        subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
    except stripe.StripeError as exc:
        logger.warning("Failed to cancel Stripe subscription %s: %s", subscription_id, exc)
        raise StripeServiceError(str(exc)) from exc
    return _as_dict(subscription)


def list_card_payment_methods(customer_id: str) -> List[Dict[str, Any]]:
    _configure_stripe()
    try:
        methods = stripe.PaymentMethod.list(customer=customer_id, type="card")
    except stripe.StripeError as exc:
        logger.warning("Failed to list payment methods for customer %s: %s", customer_id, exc)
        raise StripeServiceError(str(exc)) from exc
    return [_as_dict(method) for method in _as_dict(methods).get("data") or []]


def replace_default_payment_method(customer_id: str, payment_method_id: str,
                                   previous_payment_method_id: Optional[str] = None) -> None:
    """Attach ``payment_method_id`` as the invoice default and detach the previous card."""

    attach_payment_method(payment_method_id, customer_id)
    if not previous_payment_method_id or previous_payment_method_id == payment_method_id:
        return
    try:
        stripe.PaymentMethod.detach(previous_payment_method_id)
    except stripe.StripeError as exc:
        # The new card is already the default; a stale card left attached is harmless
        logger.warning("Failed to detach payment method %s: %s", previous_payment_method_id, exc)


def retrieve_payment_method(payment_method_id: str) -> Dict[str, Any]:
    _configure_stripe()
    try:
        method = stripe.PaymentMethod.retrieve(payment_method_id)
    except stripe.StripeError as exc:
        logger.warning("Failed to retrieve payment method %s: %s", payment_method_id, exc)
        raise StripeServiceError(str(exc)) from exc
    return _as_dict(method)


def retry_invoice(invoice_id: str) -> Dict[str, Any]:
    _configure_stripe()
    try:
        invoice = stripe.Invoice.pay(invoice_id)
    except stripe.StripeError as exc:
        logger.warning("Failed to retry Stripe invoice %s: %s", invoice_id, exc)
        raise StripeServiceError(str(exc)) from exc
    return _as_dict(invoice)


def summarize_payment_method(method: Dict[str, Any]) -> Dict[str, Any]:
    card = method.get("card") or {}
    return {
        "id": method.get("id"),
        "brand": card.get("brand"),
        "last4": card.get("last4"),
        "exp_month": card.get("exp_month"),
        "exp_year": card.get("exp_year"),
    }
