"""
Webhook deduplication and audit log.

Every provider delivery gets one ``WebhookEventLog`` row keyed by the
provider's event id. A row with ``success=True`` means the event's effects are
durable and any redelivery is acknowledged without reprocessing. Failed rows
stay ``success=False`` so the provider's retry reprocesses them.

Writing the pending row is audit, not a gate: store errors are logged and the
event is still processed.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from django.conf import settings
from django.db import DatabaseError, transaction
from django.db.models import F
from django.utils import timezone

from billing.models import WebhookEventLog
from billing.services.events import hash_payload

logger = logging.getLogger(__name__)

EVENT_TYPE_MAX_LENGTH = WebhookEventLog._meta.get_field("event_type").max_length


def _dedup_window_hours() -> int:
    return int(getattr(settings, "BILLING_WEBHOOK_DEDUP_WINDOW_HOURS", 24))


def is_duplicate_event(event_id: str, event_type: Optional[str] = None, window_hours: Optional[int] = None,
                       *, now: Optional[datetime] = None) -> bool:
    """True when ``event_id`` was already processed successfully within the window."""

    now = now or timezone.now()
    window = window_hours if window_hours is not None else _dedup_window_hours()
    duplicate = WebhookEventLog.objects.filter(
        event_id=event_id,
        success=True,
        created_at__gte=now - timedelta(hours=window),
    ).exists()
    if duplicate:
        logger.info("Duplicate webhook event %s (%s) within %sh window", event_id, event_type or "-", window)
    return duplicate


def log_event_pending(event_id: str, event_type: str, user_id: Optional[str], payload: Dict[str, Any],
                      *, source: str = WebhookEventLog.Source.PROVIDER) -> Optional[WebhookEventLog]:
    """
    Insert the pending log row for a delivery, or reopen a previously failed one.

    Returns ``None`` when the store rejects the write.
    """
    payload_hash = hash_payload(payload)
    event_type = (event_type or "")[:EVENT_TYPE_MAX_LENGTH]
    try:
        with transaction.atomic():
            entry, created = WebhookEventLog.objects.get_or_create(
                event_id=event_id,
                defaults={
                    "source": source,
                    "event_type": event_type,
                    "user_id": user_id,
                    "payload": payload,
                    "payload_hash": payload_hash,
                    "status": WebhookEventLog.Status.RECEIVED,
                },
            )
            if not created and not entry.success:
                WebhookEventLog.objects.filter(pk=entry.pk, success=False).update(
                    event_type=event_type,
                    user_id=user_id,
                    payload=payload,
                    payload_hash=payload_hash,
                    status=WebhookEventLog.Status.RECEIVED,
                    error_message=None,
                    processed_at=None,
                    attempts=F("attempts") + 1,
                )
                entry.refresh_from_db()
            if not created and entry.payload_hash and entry.payload_hash != payload_hash:
                logger.warning("Webhook event %s redelivered with a different payload", event_id)
            return entry
    except DatabaseError:
        logger.exception("Failed to write webhook log entry for event %s", event_id)
        return None


def mark_event_outcome(event_id: str, success: bool, error_message: Optional[str] = None,
                       status: Optional[str] = None) -> int:
    if status is None:
        status = WebhookEventLog.Status.PROCESSED if success else WebhookEventLog.Status.FAILED
    return WebhookEventLog.objects.filter(event_id=event_id).update(
        success=success,
        status=status,
        error_message=error_message,
        processed_at=timezone.now() if success else None,
    )


def cleanup_event_logs(days: Optional[int] = None, *, now: Optional[datetime] = None) -> int:
    """Delete successfully handled log rows older than ``days``. Failed rows are kept for replay."""

    now = now or timezone.now()
    days = days if days is not None else int(getattr(settings, "BILLING_WEBHOOK_LOG_RETENTION_DAYS", 90))
    deleted, _ = WebhookEventLog.objects.filter(
        success=True,
        created_at__lt=now - timedelta(days=days),
    ).delete()
    return deleted
