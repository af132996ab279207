"""
Account notifications for billing transitions.

The dispatcher builds an :class:`AccountNotification` for each transition and
hands it to a :class:`Notifier`, which queues delivery on Celery. Delivery is
best effort: failures are logged and counted, never raised into webhook
processing.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests
from django.conf import settings

from billing.observability.metrics import NOTIFICATION_FAILURES

logger = logging.getLogger(__name__)


class NotificationPriority(str, enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


@dataclass(frozen=True)
class AccountNotification:
    type: str
    title: str
    body: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    silent: bool = False
    data: Dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["priority"] = self.priority.value
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AccountNotification":
        return cls(
            type=payload["type"],
            title=payload["title"],
            body=payload["body"],
            priority=NotificationPriority(payload.get("priority", NotificationPriority.NORMAL.value)),
            silent=bool(payload.get("silent", False)),
            data=dict(payload.get("data") or {}),
        )


def _format_date(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.strftime("%b %d, %Y").replace(" 0", " ")


def subscription_activated() -> AccountNotification:
    return AccountNotification(
        type="subscription_activated",
        title="Subscription Active",
        body="You're all set! You'll continue receiving alerts for your loved ones.",
    )


def subscription_renewed() -> AccountNotification:
    return AccountNotification(
        type="subscription_renewed",
        title="Subscription Renewed",
        body="Your subscription has been renewed.",
        priority=NotificationPriority.LOW,
        silent=True,
    )


def subscription_canceled(access_until: Optional[datetime]) -> AccountNotification:
    until = _format_date(access_until) or "the end of your billing period"
    return AccountNotification(
        type="subscription_canceled",
        title="Subscription Canceled",
        body=f"You'll have access until {until}. You can resubscribe anytime.",
        priority=NotificationPriority.HIGH,
    )


def subscription_reactivated() -> AccountNotification:
    return AccountNotification(
        type="subscription_reactivated",
        title="Subscription Reactivated",
        body="Your subscription is active again. Alerts will continue as normal.",
    )


def subscription_expired() -> AccountNotification:
    return AccountNotification(
        type="subscription_expired",
        title="Subscription Expired",
        body="Your subscription has ended. Resubscribe to continue receiving alerts.",
        priority=NotificationPriority.CRITICAL,
    )


def payment_failed() -> AccountNotification:
    return AccountNotification(
        type="payment_failed",
        title="Payment Failed",
        body="We couldn't process your payment. Please update your payment method to continue service.",
        priority=NotificationPriority.CRITICAL,
    )


def subscription_paused(resume_at: Optional[datetime]) -> AccountNotification:
    resume = _format_date(resume_at)
    suffix = f" and will resume on {resume}" if resume else ""
    return AccountNotification(
        type="subscription_paused",
        title="Subscription Paused",
        body=f"Your subscription has been paused{suffix}.",
    )


def subscription_extended(expires_at: Optional[datetime]) -> AccountNotification:
    until = _format_date(expires_at)
    suffix = f" until {until}" if until else ""
    return AccountNotification(
        type="subscription_extended",
        title="Subscription Extended",
        body=f"Great news! Your subscription has been extended{suffix}.",
    )


def subscription_transfer_removed() -> AccountNotification:
    return AccountNotification(
        type="subscription_transfer_removed",
        title="Subscription Transferred",
        body="Your subscription has been transferred to another account.",
        priority=NotificationPriority.HIGH,
    )


def subscription_transfer_received() -> AccountNotification:
    return AccountNotification(
        type="subscription_transfer_received",
        title="Subscription Received",
        body="A subscription has been transferred to your account.",
        priority=NotificationPriority.HIGH,
    )


def trial_reminder(days_remaining: int) -> AccountNotification:
    if days_remaining <= 1:
        title = "Trial Ends Tomorrow"
        body = "Your trial ends tomorrow. Add a payment method to continue monitoring your loved ones."
    else:
        title = f"{days_remaining} Days Left in Trial"
        body = f"Your free trial ends in {days_remaining} days. Add a payment method to avoid interruption."
    return AccountNotification(
        type="trial_reminder",
        title=title,
        body=body,
        priority=NotificationPriority.HIGH,
        data={"days_remaining": str(days_remaining)},
    )


def account_frozen() -> AccountNotification:
    return AccountNotification(
        type="account_frozen",
        title="Account Frozen",
        body="Your account has been frozen. Subscribe to restore alerts for your loved ones.",
        priority=NotificationPriority.CRITICAL,
    )


def _enqueue_delivery(user_id: str, payload: Dict[str, Any]) -> None:
    from billing.tasks import deliver_account_notification

    deliver_account_notification.delay(user_id, payload)


class Notifier:
    """Queues account notifications; never raises into the caller."""

    def __init__(self, enqueue: Optional[Callable[[str, Dict[str, Any]], None]] = None):
        self._enqueue = enqueue or _enqueue_delivery

    def notify(self, user_id: str, notification: AccountNotification) -> bool:
        try:
            self._enqueue(str(user_id), notification.to_payload())
        except Exception:  # noqa: BLE001
            NOTIFICATION_FAILURES.labels(channel="queue").inc()
            logger.exception("Failed to queue %s notification for user %s", notification.type, user_id)
            return False
        return True


def _gateway_post(url: str, api_key: str, body: Dict[str, Any]) -> None:
    timeout = getattr(settings, "BILLING_HTTP_TIMEOUT_SECONDS", 10)
    response = requests.post(
        url,
        json=body,
        headers={"Authorization": f"Bearer {api_key}"},
        timeout=timeout,
    )
    response.raise_for_status()


def send_push(push_token: str, notification: AccountNotification) -> None:
    url = getattr(settings, "PUSH_GATEWAY_URL", "")
    if not url:
        logger.info("PUSH_GATEWAY_URL not configured; skipping push %s", notification.type)
        return
    _gateway_post(
        url,
        getattr(settings, "PUSH_GATEWAY_API_KEY", ""),
        {
            "to": push_token,
            "title": notification.title,
            "body": notification.body,
            "priority": "high" if notification.priority in (NotificationPriority.CRITICAL, NotificationPriority.HIGH) else "normal",
            "content_available": notification.silent,
            "data": {**notification.data, "type": notification.type},
        },
    )


def send_sms(phone: str, notification: AccountNotification) -> None:
    url = getattr(settings, "SMS_GATEWAY_URL", "")
    if not url:
        logger.info("SMS_GATEWAY_URL not configured; skipping SMS %s", notification.type)
        return
    _gateway_post(
        url,
        getattr(settings, "SMS_GATEWAY_API_KEY", ""),
        {
            "to": phone,
            "from": getattr(settings, "SMS_FROM_NUMBER", ""),
            "body": f"{notification.title}: {notification.body}",
        },
    )


def deliver(user, notification: AccountNotification) -> List[str]:
    """
    Send ``notification`` to ``user`` over the channels its priority calls for.

    Critical notices go to push and SMS, high priority falls back to SMS when
    push fails, everything else is push only. Returns the channels that
    succeeded and re-raises the last gateway error when none did.
    """
    sent: List[str] = []
    last_error: Optional[requests.RequestException] = None

    def _attempt(channel: str, send: Callable[[], None]) -> None:
        nonlocal last_error
        try:
            send()
            sent.append(channel)
        except requests.RequestException as exc:
            NOTIFICATION_FAILURES.labels(channel=channel).inc()
            logger.warning("%s delivery of %s failed for user %s: %s", channel, notification.type, user.pk, exc)
            last_error = exc

    has_push = bool(user.push_token)
    has_sms = bool(user.phone)

    if has_push:
        _attempt("push", lambda: send_push(user.push_token, notification))

    if has_sms and not notification.silent:
        if notification.priority is NotificationPriority.CRITICAL:
            _attempt("sms", lambda: send_sms(user.phone, notification))
        elif notification.priority is NotificationPriority.HIGH and "push" not in sent:
            _attempt("sms", lambda: send_sms(user.phone, notification))

    if not sent and last_error is not None:
        raise last_error
    return sent
