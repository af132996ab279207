"""Apply provider webhook events to user billing records."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from billing.models import BillingAuditLog
from billing.services import notifications
from billing.services.account_status import (
    StatusDecision,
    derive_status,
    derive_transfer_source_status,
)
from billing.services.events import ProviderEvent, WebhookEventType
from billing.services.notifications import AccountNotification, Notifier
from billing.services.provider_client import ProviderClient, SubscriptionState

logger = logging.getLogger(__name__)

User = get_user_model()

ACTOR = "webhook.provider"


class WebhookProcessingError(Exception):
    """Raised when a webhook cannot be processed successfully."""


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of dispatching one provider event."""

    status: str
    detail: str = ""
    user_ids: Tuple[str, ...] = ()

    PROCESSED = "processed"
    IGNORED = "ignored"


# Audit event name and notification factory per status-bearing event type.
_STATUS_EVENTS: Dict[WebhookEventType, Tuple[str, Optional[Callable[[ProviderEvent], AccountNotification]]]] = {
    WebhookEventType.INITIAL_PURCHASE: ("subscription_created", lambda event: notifications.subscription_activated()),
    WebhookEventType.RENEWAL: ("subscription_renewed", lambda event: notifications.subscription_renewed()),
    WebhookEventType.CANCELLATION: (
        "subscription_canceled",
        lambda event: notifications.subscription_canceled(event.expiration_at),
    ),
    WebhookEventType.UNCANCELLATION: ("subscription_reactivated", lambda event: notifications.subscription_reactivated()),
    WebhookEventType.EXPIRATION: ("subscription_expired", lambda event: notifications.subscription_expired()),
    WebhookEventType.BILLING_ISSUE: ("payment_failed", lambda event: notifications.payment_failed()),
    WebhookEventType.SUBSCRIPTION_PAUSED: (
        "subscription_paused",
        lambda event: notifications.subscription_paused(event.auto_resume_at),
    ),
    WebhookEventType.SUBSCRIPTION_EXTENDED: (
        "subscription_extended",
        lambda event: notifications.subscription_extended(event.expiration_at),
    ),
}

_LOG_ONLY_EVENTS = {
    WebhookEventType.PRODUCT_CHANGE: "subscription_product_changed",
    WebhookEventType.TEST: "webhook_test_received",
    WebhookEventType.NON_RENEWING_PURCHASE: "non_renewing_purchase",
}


def _canonical_user_id(value) -> str:
    try:
        return str(uuid.UUID(str(value)))
    except ValueError as exc:
        raise WebhookProcessingError(f"Invalid user id {value!r}.") from exc


class WebhookDispatcher:
    """
    Route a parsed provider event to its handler.

    Must run inside a transaction: user rows are locked with
    ``select_for_update`` and notifications are registered with
    ``transaction.on_commit`` so they only go out once the new status is
    durable.
    """

    actor = ACTOR

    def __init__(self, *, notifier: Optional[Notifier] = None, provider_client: Optional[ProviderClient] = None):
        self.notifier = notifier or Notifier()
        self.provider_client = provider_client

    def dispatch(self, event: ProviderEvent, *, now: Optional[datetime] = None) -> DispatchResult:
        now = now or timezone.now()
        event_type = event.event_type

        if event_type is WebhookEventType.UNKNOWN:
            logger.warning("Ignoring unsupported provider event type '%s' (%s).", event.raw_type, event.event_id)
            return DispatchResult(status=DispatchResult.IGNORED, detail="Unsupported event type")

        if event_type in _LOG_ONLY_EVENTS:
            return self._handle_log_only(event, now=now)
        if event_type is WebhookEventType.TRANSFER:
            return self._handle_transfer(event, now=now)
        if event_type is WebhookEventType.SUBSCRIBER_ALIAS:
            return self._handle_alias(event, now=now)

        audit_event, build_notification = _STATUS_EVENTS[event_type]
        user = self._lock_user(event.user_id)
        decision = derive_status(user, event, now=now)
        changed = self._persist(user, decision, now=now)
        self._audit(
            audit_event,
            user_id=user.pk,
            event=event,
            details={
                "reason": decision.reason,
                "account_status": user.account_status,
                "changed_fields": changed,
                "product_id": event.product_id,
            },
        )
        if build_notification is not None and decision.reason != "exempt":
            self._notify_on_commit(user.pk, build_notification(event))
        return DispatchResult(status=DispatchResult.PROCESSED, detail=decision.reason, user_ids=(str(user.pk),))

    # -- handlers --------------------------------------------------------

    def _handle_log_only(self, event: ProviderEvent, *, now: datetime) -> DispatchResult:
        details: Dict[str, Any] = {"product_id": event.product_id}
        if event.event_type is WebhookEventType.PRODUCT_CHANGE:
            details["old_product_id"] = event.data.get("old_product_id")

        detail = "no_status_change"
        user = self._find_locked_user(event.user_id)
        if user is not None:
            # Only exempt accounts are corrected here; see derive_status
            decision = derive_status(user, event, now=now)
            changed = self._persist(user, decision, now=now)
            if changed:
                details["changed_fields"] = changed
                detail = decision.reason
        if detail == "no_status_change":
            logger.info("Provider event %s (%s) requires no status change.", event.event_id, event.raw_type)

        self._audit(_LOG_ONLY_EVENTS[event.event_type], user_id=event.user_id, event=event, details=details)
        return DispatchResult(status=DispatchResult.PROCESSED, detail=detail)

    def _handle_alias(self, event: ProviderEvent, *, now: datetime) -> DispatchResult:
        target_id = event.data.get("new_app_user_id") or event.user_id
        old_id = next(iter(event.data.get("aliases") or []), None)

        provider_state: Optional[SubscriptionState] = None
        if self.provider_client is not None:
            # Fetched before taking the row lock
            provider_state = self.provider_client.get_subscription_state(str(target_id), now=now)

        user = self._lock_user(target_id)
        decision = derive_status(user, event, now=now, provider_state=provider_state)
        changed = self._persist(user, decision, now=now)
        self._audit(
            "subscriber_aliased",
            user_id=user.pk,
            event=event,
            details={
                "old_app_user_id": old_id,
                "new_app_user_id": target_id,
                "reason": decision.reason,
                "changed_fields": changed,
            },
        )
        return DispatchResult(status=DispatchResult.PROCESSED, detail=decision.reason, user_ids=(str(user.pk),))

    def _handle_transfer(self, event: ProviderEvent, *, now: datetime) -> DispatchResult:
        source_id = event.transferred_from
        if not source_id:
            raise WebhookProcessingError("TRANSFER event missing transferred_from.")
        destination_id = event.user_id or event.transferred_to
        if not destination_id:
            raise WebhookProcessingError("TRANSFER event missing destination user.")
        source_key = _canonical_user_id(source_id)
        destination_key = _canonical_user_id(destination_id)
        if source_key == destination_key:
            raise WebhookProcessingError("TRANSFER source and destination are the same account.")
        users = self._lock_users([source_key, destination_key])
        source = users[source_key]
        destination = users[destination_key]

        source_decision = derive_transfer_source_status(source, now=now)
        self._persist(
            source,
            source_decision,
            now=now,
            extra={"billing_customer_id": None, "billing_subscription_id": None},
        )

        destination_decision = derive_status(destination, event, now=now)
        self._persist(
            destination,
            destination_decision,
            now=now,
            extra={
                "billing_customer_id": str(destination.pk),
                "billing_subscription_id": event.subscription_reference,
            },
        )

        self._audit(
            "subscription_transferred",
            user_id=destination.pk,
            event=event,
            details={
                "from_user_id": str(source.pk),
                "to_user_id": str(destination.pk),
                "source_status": source.account_status,
                "destination_status": destination.account_status,
            },
        )
        self._notify_on_commit(source.pk, notifications.subscription_transfer_removed())
        self._notify_on_commit(destination.pk, notifications.subscription_transfer_received())
        return DispatchResult(
            status=DispatchResult.PROCESSED,
            detail="transferred",
            user_ids=(str(source.pk), str(destination.pk)),
        )

    # -- persistence helpers ---------------------------------------------

    def _lock_user(self, user_id: Optional[str]):
        if not user_id:
            raise WebhookProcessingError("Event has no target user.")
        try:
            return User.objects.select_for_update().get(pk=user_id)
        except (User.DoesNotExist, ValidationError, ValueError) as exc:
            raise WebhookProcessingError(f"User {user_id} not found.") from exc

    def _find_locked_user(self, user_id: Optional[str]):
        """Like :meth:`_lock_user` but ``None`` for a missing or malformed id."""
        if not user_id:
            return None
        try:
            return User.objects.select_for_update().filter(pk=user_id).first()
        except (ValidationError, ValueError):
            return None

    def _lock_users(self, user_ids: Iterable[str]) -> Dict[str, Any]:
        ids = sorted({str(user_id) for user_id in user_ids})
        # Stable lock order across concurrent transfers
        locked = list(User.objects.select_for_update().filter(pk__in=ids).order_by("pk"))
        found = {str(user.pk): user for user in locked}
        missing = [user_id for user_id in ids if user_id not in found]
        if missing:
            raise WebhookProcessingError(f"User(s) not found: {', '.join(missing)}.")
        return found

    def _persist(self, user, decision: StatusDecision, *, now: datetime,
                 extra: Optional[Dict[str, Any]] = None) -> List[str]:
        update_fields: List[str] = []
        if decision.status is not None and user.account_status != decision.status:
            logger.info(
                "User %s account_status %s -> %s (%s)",
                user.pk,
                user.account_status,
                decision.status,
                decision.reason,
            )
            update_fields.extend(user.apply_status(decision.status, now=now))
        if decision.stamp_last_payment:
            user.last_payment_date = now
            update_fields.append("last_payment_date")
        for field_name, value in (extra or {}).items():
            if getattr(user, field_name) != value:
                setattr(user, field_name, value)
                update_fields.append(field_name)

        if update_fields:
            user.save(update_fields=update_fields + ["updated_at"])
        return update_fields

    def _audit(self, event_type: str, *, user_id, event, details: Dict[str, Any]) -> None:
        BillingAuditLog.objects.create(
            event_type=event_type,
            user_id=str(user_id) if user_id else "",
            provider_event_id=event.event_id,
            actor=self.actor,
            details=details,
        )

    def _notify_on_commit(self, user_id, notification: AccountNotification) -> None:
        notifier = self.notifier
        transaction.on_commit(lambda: notifier.notify(str(user_id), notification))

