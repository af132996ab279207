"""Staff listing of the provider webhook event log."""
from __future__ import annotations

from rest_framework.authentication import SessionAuthentication, TokenAuthentication
from rest_framework.permissions import IsAdminUser
from rest_framework.viewsets import ReadOnlyModelViewSet

from billing.filters import WebhookEventLogFilter
from billing.models import WebhookEventLog
from billing.pagination import BoundedPageNumberPagination
from billing.serializers import WebhookEventLogSerializer


class WebhookEventViewSet(ReadOnlyModelViewSet):
    serializer_class = WebhookEventLogSerializer
    authentication_classes = [TokenAuthentication, SessionAuthentication]
    permission_classes = [IsAdminUser]
    pagination_class = BoundedPageNumberPagination
    filterset_class = WebhookEventLogFilter
    ordering_fields = ("created_at", "status", "attempts")
    ordering = ("-created_at",)
    rate_limit_category = "read"

    def get_queryset(self):
        return WebhookEventLog.objects.all().order_by("-created_at")
