"""Apply Stripe subscription and invoice events to user billing records."""
from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from django.contrib.auth import get_user_model
from django.utils import timezone

from accounts.models import AccountStatus
from billing.services import notifications
from billing.services.account_status import StatusDecision, derive_stripe_status
from billing.services.dispatcher import DispatchResult, WebhookDispatcher
from billing.services.notifications import AccountNotification
from billing.services.stripe_events import StripeEvent, StripeEventType

logger = logging.getLogger(__name__)

User = get_user_model()

NotificationFactory = Callable[[StripeEvent, StatusDecision, datetime], Optional[AccountNotification]]


def _payment_succeeded(event: StripeEvent, decision: StatusDecision, now: datetime) -> Optional[AccountNotification]:
    if decision.status == AccountStatus.ACTIVE:
        return notifications.subscription_reactivated()
    return notifications.subscription_renewed()


def _trial_reminder(event: StripeEvent, decision: StatusDecision, now: datetime) -> Optional[AccountNotification]:
    trial_end = event.trial_end
    if trial_end is None:
        return None
    days = max(1, math.ceil((trial_end - now).total_seconds() / 86400))
    return notifications.trial_reminder(days)


_STRIPE_EVENTS: Dict[StripeEventType, Tuple[str, Optional[NotificationFactory]]] = {
    StripeEventType.SUBSCRIPTION_CREATED: (
        "subscription_created",
        lambda event, decision, now: notifications.subscription_activated(),
    ),
    StripeEventType.SUBSCRIPTION_UPDATED: ("subscription_updated", None),
    StripeEventType.SUBSCRIPTION_DELETED: (
        "subscription_deleted",
        lambda event, decision, now: notifications.account_frozen(),
    ),
    StripeEventType.TRIAL_WILL_END: ("trial_will_end", _trial_reminder),
    StripeEventType.INVOICE_PAYMENT_SUCCEEDED: ("payment_succeeded", _payment_succeeded),
    StripeEventType.INVOICE_PAYMENT_FAILED: (
        "payment_failed",
        lambda event, decision, now: notifications.payment_failed(),
    ),
    StripeEventType.INVOICE_PAYMENT_ACTION_REQUIRED: (
        "payment_action_required",
        lambda event, decision, now: notifications.payment_failed(),
    ),
}

# Notifications that only make sense when the event actually moved the account.
_TRANSITION_ONLY = frozenset({StripeEventType.SUBSCRIPTION_CREATED, StripeEventType.SUBSCRIPTION_DELETED})


class StripeWebhookDispatcher(WebhookDispatcher):
    """
    Route a parsed Stripe event to the account it belongs to.

    Subscription events name the account in ``metadata.user_id``; invoice
    events are matched on the stored Stripe customer. Events for customers
    this service does not know are acknowledged and marked ignored.
    """

    actor = "webhook.stripe"

    def dispatch(self, event: StripeEvent, *, now: Optional[datetime] = None) -> DispatchResult:
        now = now or timezone.now()
        event_type = event.event_type

        if event_type is StripeEventType.UNKNOWN:
            logger.info("Ignoring unhandled Stripe event type '%s' (%s).", event.raw_type, event.event_id)
            return DispatchResult(status=DispatchResult.IGNORED, detail="Unsupported event type")

        user = self._resolve_user(event)
        if user is None:
            logger.warning(
                "No account for Stripe event %s (%s); user_id=%s customer=%s",
                event.event_id,
                event.raw_type,
                event.user_id,
                event.customer_id,
            )
            return DispatchResult(status=DispatchResult.IGNORED, detail="No matching account")

        decision = derive_stripe_status(user, event)
        changed = self._persist(user, decision, now=now, extra=self._references(user, event))

        audit_event, build_notification = _STRIPE_EVENTS[event_type]
        self._audit(
            audit_event,
            user_id=user.pk,
            event=event,
            details={
                "reason": decision.reason,
                "account_status": user.account_status,
                "changed_fields": changed,
                "stripe_status": event.subscription_status,
                "customer_id": event.customer_id,
                "subscription_id": event.subscription_id,
            },
        )

        notify = build_notification is not None and decision.reason != "exempt"
        if notify and event_type in _TRANSITION_ONLY:
            notify = "account_status" in changed
        if notify:
            notification = build_notification(event, decision, now)
            if notification is not None:
                self._notify_on_commit(user.pk, notification)
        return DispatchResult(status=DispatchResult.PROCESSED, detail=decision.reason, user_ids=(str(user.pk),))

    def _resolve_user(self, event: StripeEvent):
        user = self._find_locked_user(event.user_id)
        if user is None and event.customer_id:
            user = User.objects.select_for_update().filter(billing_customer_id=event.customer_id).first()
        return user

    @staticmethod
    def _references(user, event: StripeEvent) -> Dict[str, Any]:
        extra: Dict[str, Any] = {}
        if event.event_type in (StripeEventType.SUBSCRIPTION_CREATED, StripeEventType.SUBSCRIPTION_UPDATED):
            if event.subscription_id:
                extra["billing_subscription_id"] = event.subscription_id
            if event.customer_id and not user.billing_customer_id:
                extra["billing_customer_id"] = event.customer_id
        elif event.event_type is StripeEventType.SUBSCRIPTION_DELETED:
            # Frees the account to subscribe again
            if event.subscription_id and user.billing_subscription_id == event.subscription_id:
                extra["billing_subscription_id"] = None
        return extra
