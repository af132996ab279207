"""Celery tasks for billing sweeps, store cleanup and notification delivery."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

import requests
from celery import shared_task
from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import Q
from django.db.models.functions import Coalesce
from django.utils import timezone

from accounts.models import AccountStatus
from billing.models import BillingAuditLog
from billing.services import notifications
from billing.services.account_status import derive_expired_trial_status, grace_period_expired, in_trial
from billing.services.idempotency import cleanup_expired_keys
from billing.services.notifications import AccountNotification, Notifier
from billing.services.rate_limiter import cleanup_expired_buckets
from billing.services.webhook_log import cleanup_event_logs

logger = logging.getLogger(__name__)

User = get_user_model()


@shared_task(queue="billing")
def cleanup_expired_idempotency_keys() -> int:
    """Remove Idempotency-Key entries past their expiry."""

    deleted = cleanup_expired_keys()
    logger.info("Cleaned up %s expired idempotency keys.", deleted)
    return deleted


@shared_task(queue="billing")
def cleanup_expired_rate_limit_buckets(retention_hours: Optional[int] = None) -> int:
    deleted = cleanup_expired_buckets(retention_hours=retention_hours)
    logger.info("Cleaned up %s expired rate limit buckets.", deleted)
    return deleted


@shared_task(queue="billing")
def cleanup_webhook_event_logs(days: Optional[int] = None) -> int:
    """Remove successfully processed webhook events older than ``days`` days."""

    deleted = cleanup_event_logs(days)
    logger.info("Cleaned up %s processed webhook events (retention=%s days).", deleted, days or "default")
    return deleted


def _record_sweep_transition(user, previous: str, *, actor: str, event_type: str, reason: str) -> None:
    BillingAuditLog.objects.create(
        event_type=event_type,
        user_id=str(user.pk),
        provider_event_id="",
        actor=actor,
        details={"from": previous, "to": user.account_status, "reason": reason},
    )


@shared_task(queue="billing")
def expire_trials() -> Dict[str, int]:
    """Freeze trial accounts whose trial has ended and that never subscribed."""

    now = timezone.now()
    notifier = Notifier()
    stats = {"checked": 0, "frozen": 0, "exempt": 0, "skipped": 0}

    candidate_ids = list(
        User.objects.filter(account_status=AccountStatus.TRIAL, trial_end_date__lte=now).values_list("pk", flat=True)
    )
    for user_id in candidate_ids:
        stats["checked"] += 1
        with transaction.atomic():
            user = User.objects.select_for_update().filter(pk=user_id).first()
            # Re-checked under the lock; a webhook may have moved the account on
            if user is None or user.account_status != AccountStatus.TRIAL or in_trial(user, now):
                stats["skipped"] += 1
                continue

            decision = derive_expired_trial_status(user)
            previous = user.account_status
            changed = user.apply_status(decision.status, now=now)
            user.save(update_fields=changed + ["updated_at"])
            _record_sweep_transition(
                user,
                previous,
                actor="celery.expire_trials",
                event_type="trial_expired",
                reason=decision.reason,
            )
            if decision.status == AccountStatus.FROZEN:
                stats["frozen"] += 1
                pk = str(user.pk)
                transaction.on_commit(lambda pk=pk: notifier.notify(pk, notifications.account_frozen()))
            else:
                stats["exempt"] += 1

    logger.info("Trial expiry sweep finished: %s", stats)
    return stats


@shared_task(queue="billing")
def expire_grace_periods(days: Optional[int] = None) -> Dict[str, int]:
    """Freeze ``past_due`` accounts whose payment grace period has elapsed."""

    now = timezone.now()
    days = days if days is not None else int(getattr(settings, "BILLING_GRACE_PERIOD_DAYS", 7))
    notifier = Notifier()
    stats = {"checked": 0, "frozen": 0, "skipped": 0}

    candidate_ids = list(
        User.objects.filter(account_status=AccountStatus.PAST_DUE)
        .exclude(Q(is_member=True) | Q(grandfathered_free=True))
        .annotate(grace_started=Coalesce("past_due_since", "last_payment_date", "updated_at"))
        .filter(grace_started__lte=now - timedelta(days=days))
        .values_list("pk", flat=True)
    )
    for user_id in candidate_ids:
        stats["checked"] += 1
        with transaction.atomic():
            user = User.objects.select_for_update().filter(pk=user_id).first()
            if user is None or not grace_period_expired(user, now, days):
                stats["skipped"] += 1
                continue

            previous = user.account_status
            changed = user.apply_status(AccountStatus.FROZEN, now=now)
            user.save(update_fields=changed + ["updated_at"])
            _record_sweep_transition(
                user,
                previous,
                actor="celery.expire_grace_periods",
                event_type="grace_period_expired",
                reason=f"past_due_over_{days}_days",
            )
            stats["frozen"] += 1
            pk = str(user.pk)
            transaction.on_commit(lambda pk=pk: notifier.notify(pk, notifications.account_frozen()))

    logger.info("Grace period sweep finished: %s", stats)
    return stats


@shared_task(
    bind=True,
    queue="notifications",
    autoretry_for=(requests.RequestException,),
    retry_backoff=True,
    max_retries=3,
)
def deliver_account_notification(self, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Send one queued account notification over push and/or SMS."""

    notification = AccountNotification.from_payload(payload)
    user = User.objects.filter(pk=user_id).first()
    if user is None:
        logger.warning("Dropping %s notification for missing user %s", notification.type, user_id)
        return {"user_id": user_id, "type": notification.type, "channels": []}

    channels = notifications.deliver(user, notification)
    logger.info("Delivered %s notification to user %s via %s", notification.type, user_id, channels or "none")
    return {"user_id": user_id, "type": notification.type, "channels": channels}
