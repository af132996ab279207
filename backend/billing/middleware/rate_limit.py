"""Middleware applying the fixed-window rate limiter to every routed request."""
from __future__ import annotations

import logging
from typing import Optional

from django.conf import settings
from django.db import DatabaseError
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin
from rest_framework.authentication import TokenAuthentication
from rest_framework.exceptions import AuthenticationFailed

from billing.services.rate_limiter import RateLimitDecision, check_rate_limit

logger = logging.getLogger(__name__)

SAFE_METHODS = ("GET", "HEAD", "OPTIONS")


def client_ip(request) -> str:
    forwarded = request.META.get("HTTP_X_FORWARDED_FOR", "")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = request.META.get("HTTP_X_REAL_IP", "").strip()
    if real_ip:
        return real_ip
    return request.META.get("REMOTE_ADDR") or "unknown"


class RateLimitMiddleware(MiddlewareMixin):
    """Reject requests over their category's per-window budget with 429."""

    def _is_exempt(self, request) -> bool:
        if not getattr(settings, "BILLING_RATE_LIMIT_ENABLED", True):
            return True
        exempt_paths = getattr(settings, "BILLING_RATE_LIMIT_EXEMPT_PATHS", ())
        return any(request.path.startswith(prefix) for prefix in exempt_paths)

    @staticmethod
    def _resolve_category(request, view_func) -> str:
        view_class = getattr(view_func, "cls", None) or getattr(view_func, "view_class", None)
        category = getattr(view_class, "rate_limit_category", None) or getattr(view_func, "rate_limit_category", None)
        if category:
            return category
        return "read" if request.method.upper() in SAFE_METHODS else "write"

    @staticmethod
    def _resolve_identifier(request) -> str:
        user = getattr(request, "user", None)
        if user is not None and user.is_authenticated:
            return f"user:{user.pk}"
        try:
            authenticated = TokenAuthentication().authenticate(request)
        except (AuthenticationFailed, DatabaseError):
            authenticated = None
        if authenticated:
            return f"user:{authenticated[0].pk}"
        return f"ip:{client_ip(request)}"

    def process_view(self, request, view_func, view_args, view_kwargs):
        if self._is_exempt(request):
            return None

        category = self._resolve_category(request, view_func)
        identifier = self._resolve_identifier(request)
        decision = check_rate_limit(identifier, category)
        request._rate_limit_decision = decision  # type: ignore[attr-defined]

        if decision.allowed:
            return None

        response = JsonResponse(
            {
                "code": "rate_limit_exceeded",
                "message": (
                    f"Too many requests. Limit: {decision.limit} requests per "
                    f"{decision.window_minutes} minute(s)."
                ),
                "details": {
                    "limit": decision.limit,
                    "window_minutes": decision.window_minutes,
                    "reset_time": decision.reset_at.isoformat() if decision.reset_at else None,
                },
            },
            status=429,
        )
        response["Retry-After"] = str(decision.retry_after)
        return response

    def process_response(self, request, response):
        decision: Optional[RateLimitDecision] = getattr(request, "_rate_limit_decision", None)
        if decision is not None and decision.reset_at is not None:
            response["X-RateLimit-Limit"] = str(decision.limit)
            response["X-RateLimit-Remaining"] = str(decision.remaining)
            response["X-RateLimit-Reset"] = str(decision.reset_epoch)
        return response
