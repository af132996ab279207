"""
Idempotency-Key cache for client mutating requests.

A key is reserved with a unique-constraint insert before the view runs, so
of two concurrent requests with the same key exactly one proceeds; the other
sees the in-flight reservation and gets 409. Only 2xx responses are kept for
replay. Anything else releases the reservation so the client can retry with
the same key.

Like the rate limiter this cache fails open: a store error lets the request
through uncached.
"""
from __future__ import annotations

import hashlib
import json
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from billing.models import IdempotencyKey
from billing.observability.metrics import IDEMPOTENCY_OUTCOMES

logger = logging.getLogger(__name__)

KEY_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

CONFLICT_MESSAGE = (
    "Idempotency key already used with a different request. "
    "Use a new key or retry with the same request."
)


@dataclass(frozen=True)
class IdempotencyError:
    status: int
    code: str
    message: str


@dataclass(frozen=True)
class IdempotencyCheck:
    """
    Result of :func:`check_idempotency_key`.

    ``proceed`` with a ``record`` means the key is reserved for this request;
    ``proceed`` without one means no caching applies. Otherwise exactly one of
    ``replay`` (a completed entry to send back) or ``error`` is set.
    """

    proceed: bool
    record: Optional[IdempotencyKey] = None
    replay: Optional[IdempotencyKey] = None
    error: Optional[IdempotencyError] = None


def generate_idempotency_key() -> str:
    return str(uuid.uuid4())


def is_valid_key(key: str) -> bool:
    return bool(KEY_PATTERN.match(key or ""))


def hash_request_body(body: Union[bytes, str, None]) -> str:
    """SHA256 of the canonical JSON form of ``body``; non-JSON bodies hash their raw bytes."""
    if body is None:
        body = b""
    raw = body.encode("utf-8") if isinstance(body, str) else bytes(body)
    try:
        parsed = json.loads(raw.decode("utf-8")) if raw else None
    except (UnicodeDecodeError, ValueError):
        return hashlib.sha256(raw).hexdigest()
    canonical = json.dumps(parsed, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _ttl_hours() -> int:
    return int(getattr(settings, "BILLING_IDEMPOTENCY_KEY_TTL_HOURS", 24))


def check_idempotency_key(key: Optional[str], body: Union[bytes, str, None], *, method: str = "", path: str = "",
                          now: Optional[datetime] = None) -> IdempotencyCheck:
    if not key:
        return IdempotencyCheck(proceed=True)

    if not is_valid_key(key):
        IDEMPOTENCY_OUTCOMES.labels(outcome="invalid").inc()
        return IdempotencyCheck(
            proceed=False,
            error=IdempotencyError(
                status=400,
                code="invalid_idempotency_key",
                message="Invalid Idempotency-Key format. Must be a valid UUID.",
            ),
        )

    key = key.lower()
    now = now or timezone.now()
    request_hash = hash_request_body(body)
    expires_at = now + timedelta(hours=_ttl_hours())

    try:
        with transaction.atomic():
            record, created = IdempotencyKey.objects.get_or_create(
                key=key,
                defaults={
                    "request_hash": request_hash,
                    "method": method,
                    "path": path,
                    "expires_at": expires_at,
                },
            )
        if created:
            IDEMPOTENCY_OUTCOMES.labels(outcome="reserved").inc()
            return IdempotencyCheck(proceed=True, record=record)

        if record.expires_at <= now:
            rebound = IdempotencyKey.objects.filter(pk=record.pk, expires_at__lte=now).update(
                request_hash=request_hash,
                method=method,
                path=path,
                response_data=None,
                status_code=None,
                content_type="",
                expires_at=expires_at,
                completed_at=None,
            )
            record.refresh_from_db()
            if rebound:
                IDEMPOTENCY_OUTCOMES.labels(outcome="reserved").inc()
                return IdempotencyCheck(proceed=True, record=record)
    except DatabaseError:
        logger.warning("Idempotency store unavailable for key %s; proceeding uncached", key, exc_info=True)
        IDEMPOTENCY_OUTCOMES.labels(outcome="fail_open").inc()
        return IdempotencyCheck(proceed=True)

    if record.request_hash != request_hash:
        IDEMPOTENCY_OUTCOMES.labels(outcome="conflict").inc()
        return IdempotencyCheck(
            proceed=False,
            error=IdempotencyError(status=409, code="idempotency_conflict", message=CONFLICT_MESSAGE),
        )

    if record.is_completed:
        logger.info("Idempotency key matched: %s. Returning cached response.", key)
        IDEMPOTENCY_OUTCOMES.labels(outcome="replayed").inc()
        return IdempotencyCheck(proceed=False, replay=record)

    IDEMPOTENCY_OUTCOMES.labels(outcome="in_progress").inc()
    return IdempotencyCheck(
        proceed=False,
        error=IdempotencyError(
            status=409,
            code="idempotency_in_progress",
            message="A request with this Idempotency-Key is still being processed.",
        ),
    )


def store_idempotency_response(record: IdempotencyKey, status_code: int, body: Union[bytes, str],
                               content_type: str = "application/json", *, now: Optional[datetime] = None) -> bool:
    """Persist a 2xx response for replay. Non-2xx responses release the reservation instead."""

    if not 200 <= status_code < 300:
        logger.info("Not storing idempotency key %s for non-success status %s", record.key, status_code)
        release_idempotency_key(record)
        return False

    try:
        text = body.decode("utf-8") if isinstance(body, bytes) else body
    except UnicodeDecodeError:
        logger.warning("Response for idempotency key %s is not UTF-8; not caching", record.key)
        release_idempotency_key(record)
        return False

    try:
        IdempotencyKey.objects.filter(pk=record.pk).update(
            response_data=text,
            status_code=status_code,
            content_type=content_type or "",
            completed_at=now or timezone.now(),
        )
    except DatabaseError:
        logger.warning("Failed to store idempotent response for key %s", record.key, exc_info=True)
        IDEMPOTENCY_OUTCOMES.labels(outcome="fail_open").inc()
        return False
    IDEMPOTENCY_OUTCOMES.labels(outcome="stored").inc()
    return True


def release_idempotency_key(record: IdempotencyKey) -> None:
    try:
        IdempotencyKey.objects.filter(pk=record.pk, status_code__isnull=True).delete()
    except DatabaseError:
        logger.warning("Failed to release idempotency key %s", record.key, exc_info=True)
        return
    IDEMPOTENCY_OUTCOMES.labels(outcome="released").inc()


def cleanup_expired_keys(*, now: Optional[datetime] = None) -> int:
    deleted, _ = IdempotencyKey.objects.filter(expires_at__lt=now or timezone.now()).delete()
    return deleted
