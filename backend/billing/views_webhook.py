"""Billing provider and Stripe webhook endpoints."""
from __future__ import annotations

import json
import logging

from django.conf import settings
from django.http import JsonResponse
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework.views import APIView

from billing.services.webhook_processor import StripeWebhookProcessor, WebhookProcessor
from billing.services.webhook_security import WebhookSignatureError, verify_signature, verify_stripe_signature

logger = logging.getLogger(__name__)


def _error_response(*, status: int, code: str, message: str) -> JsonResponse:
    return JsonResponse({"code": code, "message": message, "details": {}}, status=status)


def _process(processor, body: bytes) -> JsonResponse:
    try:
        payload = json.loads(body.decode("utf-8")) if body else None
    except (UnicodeDecodeError, ValueError):
        logger.warning("Unable to decode %s webhook payload.", processor.source)
        return _error_response(status=400, code="invalid_json", message="Request body is not valid JSON.")

    outcome = processor.process(payload)
    return JsonResponse(outcome.body, status=outcome.status_code)


@method_decorator(csrf_exempt, name="dispatch")
class ProviderWebhookView(APIView):
    """Verify, parse and synchronously apply provider webhook deliveries."""

    authentication_classes = []
    permission_classes = []
    http_method_names = ["post"]
    rate_limit_category = "default"

    processor_class = WebhookProcessor

    def post(self, request, *args, **kwargs):  # noqa: D401 - DRF signature
        body = request.body
        header = getattr(settings, "BILLING_WEBHOOK_SIGNATURE_HEADER", "X-RevenueCat-Signature")
        try:
            verify_signature(body, request.headers.get(header))
        except WebhookSignatureError as exc:
            logger.warning("Rejected provider webhook: %s", exc)
            return _error_response(status=401, code="invalid_signature", message=str(exc))

        return _process(self.processor_class(), body)


@method_decorator(csrf_exempt, name="dispatch")
class StripeWebhookView(APIView):
    """Verify and apply Stripe subscription and invoice events."""

    authentication_classes = []
    permission_classes = []
    http_method_names = ["post"]
    rate_limit_category = "default"

    processor_class = StripeWebhookProcessor

    def post(self, request, *args, **kwargs):  # noqa: D401 - DRF signature
        body = request.body
        try:
            verify_stripe_signature(body, request.headers.get("Stripe-Signature"))
        except WebhookSignatureError as exc:
            logger.warning("Rejected Stripe webhook: %s", exc)
            return _error_response(status=401, code="invalid_signature", message=str(exc))

        return _process(self.processor_class(), body)
