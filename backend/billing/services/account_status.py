"""
Account-status state machine.

Pure decision functions: they read a user billing record and a provider event
and return the status the record should move to. Nothing here touches the
database; the dispatchers persist the outcome.

Precedence, applied to every recognised provider event:

1. exempt accounts (members, grandfathered) are always ``active_free``;
2. log-only events (product changes, tests, one-off purchases) change nothing;
3. an unexpired trial stays ``trial``;
4. otherwise the event type decides.

``UNKNOWN`` events never touch the record.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from accounts.models import AccountStatus
from billing.services.events import ProviderEvent, WebhookEventType
from billing.services.provider_client import SubscriptionState
from billing.services.stripe_events import StripeEvent, StripeEventType

# Events that never change the status of a paying account.
NON_MUTATING_EVENTS = frozenset({
    WebhookEventType.PRODUCT_CHANGE,
    WebhookEventType.TEST,
    WebhookEventType.NON_RENEWING_PURCHASE,
})

PAYMENT_EVENTS = frozenset({
    WebhookEventType.INITIAL_PURCHASE,
    WebhookEventType.RENEWAL,
})

_EVENT_STATUS = {
    WebhookEventType.INITIAL_PURCHASE: AccountStatus.ACTIVE,
    WebhookEventType.RENEWAL: AccountStatus.ACTIVE,
    WebhookEventType.UNCANCELLATION: AccountStatus.ACTIVE,
    WebhookEventType.SUBSCRIPTION_EXTENDED: AccountStatus.ACTIVE,
    WebhookEventType.CANCELLATION: AccountStatus.CANCELED,
    WebhookEventType.EXPIRATION: AccountStatus.FROZEN,
    WebhookEventType.SUBSCRIPTION_PAUSED: AccountStatus.PAUSED,
    WebhookEventType.TRANSFER: AccountStatus.ACTIVE,
}

_PROVIDER_STATE_STATUS = {
    SubscriptionState.ACTIVE: AccountStatus.ACTIVE,
    SubscriptionState.GRACE_PERIOD: AccountStatus.PAST_DUE,
    SubscriptionState.NONE: AccountStatus.FROZEN,
}

# Stripe subscription states that map onto an account status; others are left alone.
_STRIPE_SUBSCRIPTION_STATUS = {
    "active": AccountStatus.ACTIVE,
    "past_due": AccountStatus.PAST_DUE,
    "canceled": AccountStatus.CANCELED,
    "unpaid": AccountStatus.FROZEN,
}

_STRIPE_REACTIVATABLE = frozenset({AccountStatus.PAST_DUE, AccountStatus.FROZEN})


@dataclass(frozen=True)
class StatusDecision:
    """Outcome of a derivation. ``status`` of ``None`` means leave the record alone."""

    status: Optional[str]
    stamp_last_payment: bool = False
    reason: str = ""

    @property
    def mutates(self) -> bool:
        return self.status is not None or self.stamp_last_payment


def is_exempt(record) -> bool:
    return bool(record.is_member or record.grandfathered_free)


def in_trial(record, now: datetime) -> bool:
    return bool(record.trial_end_date and record.trial_end_date > now)


def derive_status(record, event: ProviderEvent, *, now: datetime,
                  provider_state: Optional[SubscriptionState] = None) -> StatusDecision:
    """
    Decide the new status of ``record`` for ``event``.

    For ``TRANSFER`` this is the destination account's decision; see
    :func:`derive_transfer_source_status` for the account losing the
    subscription. ``provider_state`` is only consulted for
    ``SUBSCRIBER_ALIAS`` re-syncs; without it the current status is kept.
    """
    event_type = event.event_type
    if event_type is WebhookEventType.UNKNOWN:
        return StatusDecision(None, reason="unsupported_event")

    stamp = event_type in PAYMENT_EVENTS

    if is_exempt(record):
        return StatusDecision(AccountStatus.ACTIVE_FREE, stamp_last_payment=stamp, reason="exempt")

    if event_type in NON_MUTATING_EVENTS:
        return StatusDecision(None, reason=f"no_status_change:{event_type.value.lower()}")

    if in_trial(record, now):
        return StatusDecision(AccountStatus.TRIAL, stamp_last_payment=stamp, reason="trial_active")

    if event_type is WebhookEventType.BILLING_ISSUE:
        grace_expires = event.grace_period_expires_at
        if grace_expires is not None and grace_expires <= now:
            return StatusDecision(AccountStatus.FROZEN, reason="grace_period_elapsed")
        return StatusDecision(AccountStatus.PAST_DUE, reason="billing_issue")

    if event_type is WebhookEventType.SUBSCRIBER_ALIAS:
        if provider_state is None:
            return StatusDecision(None, reason="alias_without_provider_state")
        return StatusDecision(_PROVIDER_STATE_STATUS[provider_state], reason=f"provider_{provider_state.value}")

    return StatusDecision(_EVENT_STATUS[event_type], stamp_last_payment=stamp, reason=event_type.value.lower())


def derive_stripe_status(record, event: StripeEvent) -> StatusDecision:
    """
    Decide the new status of ``record`` for a Stripe subscription or invoice event.

    Stripe subscriptions only exist once the account has paid through the
    create-subscription endpoint, so the trial rule does not apply here.
    """
    event_type = event.event_type
    if event_type is StripeEventType.UNKNOWN:
        return StatusDecision(None, reason="unsupported_event")

    stamp = event_type in (StripeEventType.SUBSCRIPTION_CREATED, StripeEventType.INVOICE_PAYMENT_SUCCEEDED)

    if is_exempt(record):
        return StatusDecision(AccountStatus.ACTIVE_FREE, stamp_last_payment=stamp, reason="exempt")

    if event_type is StripeEventType.SUBSCRIPTION_CREATED:
        return StatusDecision(AccountStatus.ACTIVE, stamp_last_payment=True, reason="subscription_created")

    if event_type is StripeEventType.SUBSCRIPTION_UPDATED:
        status = _STRIPE_SUBSCRIPTION_STATUS.get(event.subscription_status or "")
        return StatusDecision(status, reason=f"stripe_{event.subscription_status or 'unknown'}")

    if event_type is StripeEventType.SUBSCRIPTION_DELETED:
        return StatusDecision(AccountStatus.FROZEN, reason="subscription_deleted")

    if event_type is StripeEventType.INVOICE_PAYMENT_SUCCEEDED:
        if record.account_status in _STRIPE_REACTIVATABLE:
            return StatusDecision(AccountStatus.ACTIVE, stamp_last_payment=True, reason="payment_recovered")
        return StatusDecision(None, stamp_last_payment=True, reason="payment_succeeded")

    if event_type is StripeEventType.INVOICE_PAYMENT_FAILED:
        return StatusDecision(AccountStatus.PAST_DUE, reason="payment_failed")

    return StatusDecision(None, reason=f"no_status_change:{event_type.name.lower()}")


def derive_transfer_source_status(record, *, now: datetime) -> StatusDecision:
    """The account a subscription is transferred away from is frozen unless exempt."""
    if is_exempt(record):
        return StatusDecision(AccountStatus.ACTIVE_FREE, reason="exempt")
    return StatusDecision(AccountStatus.FROZEN, reason="transferred_away")


def derive_expired_trial_status(record) -> StatusDecision:
    if is_exempt(record):
        return StatusDecision(AccountStatus.ACTIVE_FREE, reason="exempt")
    return StatusDecision(AccountStatus.FROZEN, reason="trial_expired")


def grace_started_at(record) -> Optional[datetime]:
    """When the current ``past_due`` spell began; older records fall back to the last payment."""
    return record.past_due_since or record.last_payment_date or record.updated_at


def grace_period_expired(record, now: datetime, days: int) -> bool:
    """True when a ``past_due`` record has been past due for longer than ``days``."""
    if record.account_status != AccountStatus.PAST_DUE:
        return False
    started = grace_started_at(record)
    if started is None:
        return False
    return started + timedelta(days=days) <= now
