"""Middleware enforcing Idempotency-Key semantics for billing write operations."""
from __future__ import annotations

from typing import Optional

from django.conf import settings
from django.http import HttpResponse, JsonResponse
from django.utils.deprecation import MiddlewareMixin

from billing.services.idempotency import (
    check_idempotency_key,
    release_idempotency_key,
    store_idempotency_response,
)

IDEMPOTENT_METHODS = ("POST", "PUT", "PATCH")


class IdempotencyMiddleware(MiddlewareMixin):
    """Replay, reject, or reserve requests carrying an Idempotency-Key."""

    def _is_protected(self, request) -> bool:
        if request.method.upper() not in IDEMPOTENT_METHODS:
            return False
        prefixes = getattr(settings, "BILLING_IDEMPOTENCY_PROTECTED_PATHS", ())
        return any(request.path.startswith(prefix) for prefix in prefixes)

    def process_view(self, request, view_func, view_args, view_kwargs):
        request._idempotency_record = None  # type: ignore[attr-defined]
        if not self._is_protected(request):
            return None

        check = check_idempotency_key(
            request.headers.get("Idempotency-Key"),
            request.body,
            method=request.method.upper(),
            path=request.path,
        )

        if check.error is not None:
            return self._error_response(
                status=check.error.status,
                code=check.error.code,
                message=check.error.message,
            )

        if check.replay is not None:
            record = check.replay
            response = HttpResponse(
                record.response_data or "",
                status=record.status_code,
                content_type=record.content_type or "application/json",
            )
            response["X-Idempotency-Replay"] = "true"
            return response

        request._idempotency_record = check.record  # type: ignore[attr-defined]
        return None

    def process_response(self, request, response):
        record = getattr(request, "_idempotency_record", None)
        if record is not None:
            request._idempotency_record = None  # type: ignore[attr-defined]
            if getattr(response, "streaming", False):
                release_idempotency_key(record)
            else:
                store_idempotency_response(
                    record,
                    response.status_code,
                    response.content,
                    response.get("Content-Type", ""),
                )
        return response

    @staticmethod
    def _error_response(*, status: int, code: str, message: str, details: Optional[dict] = None):
        payload = {
            "code": code,
            "message": message,
            "details": details or {},
        }
        return JsonResponse(payload, status=status)
