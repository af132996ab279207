"""
Fixed-window rate limiter backed by ``RateLimitBucket`` rows.

One row per (identifier, category, window). Admission is a single
conditional UPDATE that increments ``request_count`` only while it is below
the category maximum, so concurrent requests can never overshoot.

The limiter fails open: if the store errors the request is allowed and the
failure is logged and counted.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Dict, Optional

from django.conf import settings
from django.db import DatabaseError
from django.db.models import F
from django.utils import timezone

from billing.models import RateLimitBucket
from billing.observability.metrics import RATE_LIMIT_DECISIONS

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "default"

DEFAULT_RATE_LIMITS: Dict[str, Dict[str, int]] = {
    "auth": {"max_requests": 10, "window_minutes": 1},
    "sms": {"max_requests": 5, "window_minutes": 1},
    "checkin": {"max_requests": 10, "window_minutes": 1},
    "payment": {"max_requests": 5, "window_minutes": 1},
    "read": {"max_requests": 100, "window_minutes": 1},
    "write": {"max_requests": 30, "window_minutes": 1},
    DEFAULT_CATEGORY: {"max_requests": 60, "window_minutes": 1},
}


@dataclass(frozen=True)
class RateLimit:
    category: str
    max_requests: int
    window_minutes: int

    @property
    def window_seconds(self) -> int:
        return self.window_minutes * 60


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: Optional[datetime]
    retry_after: int = 0
    category: str = DEFAULT_CATEGORY
    window_minutes: int = 1

    @property
    def reset_epoch(self) -> Optional[int]:
        return int(self.reset_at.timestamp()) if self.reset_at else None


def get_rate_limit(category: Optional[str]) -> RateLimit:
    """Resolve ``category`` against the configured table, falling back to ``default``."""
    table = getattr(settings, "BILLING_RATE_LIMITS", None) or DEFAULT_RATE_LIMITS
    name = category if category in table else DEFAULT_CATEGORY
    config = table.get(name) or DEFAULT_RATE_LIMITS[DEFAULT_CATEGORY]
    return RateLimit(
        category=name,
        max_requests=int(config["max_requests"]),
        window_minutes=int(config["window_minutes"]),
    )


def window_bounds(now: datetime, window_seconds: int):
    epoch = int(now.timestamp())
    start_epoch = (epoch // window_seconds) * window_seconds
    start = datetime.fromtimestamp(start_epoch, tz=dt_timezone.utc)
    return start, start + timedelta(seconds=window_seconds)


def bucket_id_for(identifier: str, category: str, window_start: datetime) -> str:
    return f"{identifier}|{category}|{int(window_start.timestamp())}"


def check_rate_limit(identifier: str, category: Optional[str] = None, *,
                     now: Optional[datetime] = None) -> RateLimitDecision:
    """Count one request for ``identifier`` in ``category`` and decide whether it is admitted."""

    now = now or timezone.now()
    limit = get_rate_limit(category)
    window_start, window_end = window_bounds(now, limit.window_seconds)
    bucket_id = bucket_id_for(identifier, limit.category, window_start)

    try:
        bucket, _ = RateLimitBucket.objects.get_or_create(
            bucket_id=bucket_id,
            defaults={
                "identifier": identifier,
                "category": limit.category,
                "request_count": 0,
                "window_start": window_start,
                "window_end": window_end,
            },
        )
        admitted = RateLimitBucket.objects.filter(
            pk=bucket.pk,
            request_count__lt=limit.max_requests,
        ).update(request_count=F("request_count") + 1, updated_at=now)
        count = RateLimitBucket.objects.filter(pk=bucket.pk).values_list("request_count", flat=True).first() or 0
    except DatabaseError:
        logger.warning(
            "Rate limit store unavailable for %s (%s); allowing request",
            identifier,
            limit.category,
            exc_info=True,
        )
        RATE_LIMIT_DECISIONS.labels(category=limit.category, outcome="fail_open").inc()
        return RateLimitDecision(
            allowed=True,
            limit=limit.max_requests,
            remaining=limit.max_requests,
            reset_at=None,
            category=limit.category,
            window_minutes=limit.window_minutes,
        )

    if not admitted:
        retry_after = max(1, math.ceil((window_end - now).total_seconds()))
        logger.info(
            "Rate limit exceeded for %s on %s: %s/%s",
            identifier,
            limit.category,
            count,
            limit.max_requests,
        )
        RATE_LIMIT_DECISIONS.labels(category=limit.category, outcome="rejected").inc()
        return RateLimitDecision(
            allowed=False,
            limit=limit.max_requests,
            remaining=0,
            reset_at=window_end,
            retry_after=retry_after,
            category=limit.category,
            window_minutes=limit.window_minutes,
        )

    RATE_LIMIT_DECISIONS.labels(category=limit.category, outcome="allowed").inc()
    return RateLimitDecision(
        allowed=True,
        limit=limit.max_requests,
        remaining=max(0, limit.max_requests - count),
        reset_at=window_end,
        category=limit.category,
        window_minutes=limit.window_minutes,
    )


def get_rate_limit_status(identifier: str, category: Optional[str] = None, *,
                          now: Optional[datetime] = None) -> Dict[str, object]:
    """Read-only view of the current window's bucket, for debugging."""

    now = now or timezone.now()
    limit = get_rate_limit(category)
    window_start, window_end = window_bounds(now, limit.window_seconds)
    bucket = RateLimitBucket.objects.filter(
        bucket_id=bucket_id_for(identifier, limit.category, window_start),
        window_end__gt=now,
    ).first()
    return {
        "current_count": bucket.request_count if bucket else 0,
        "max_requests": limit.max_requests,
        "reset_time": window_end,
    }


def cleanup_expired_buckets(*, retention_hours: Optional[int] = None, now: Optional[datetime] = None) -> int:
    now = now or timezone.now()
    if retention_hours is None:
        retention_hours = int(getattr(settings, "BILLING_RATE_LIMIT_BUCKET_RETENTION_HOURS", 1))
    deleted, _ = RateLimitBucket.objects.filter(window_end__lt=now - timedelta(hours=retention_hours)).delete()
    return deleted
