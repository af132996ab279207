"""Staff listing of billing audit log entries."""
from __future__ import annotations

from rest_framework.authentication import SessionAuthentication, TokenAuthentication
from rest_framework.permissions import IsAdminUser
from rest_framework.viewsets import ReadOnlyModelViewSet

from billing.filters import BillingAuditLogFilter
from billing.models import BillingAuditLog
from billing.pagination import BoundedPageNumberPagination
from billing.serializers import BillingAuditLogSerializer


class BillingAuditLogViewSet(ReadOnlyModelViewSet):
    serializer_class = BillingAuditLogSerializer
    authentication_classes = [TokenAuthentication, SessionAuthentication]
    permission_classes = [IsAdminUser]
    pagination_class = BoundedPageNumberPagination
    filterset_class = BillingAuditLogFilter
    ordering_fields = ("created_at", "event_type")
    ordering = ("-created_at",)
    rate_limit_category = "read"

    def get_queryset(self):
        return BillingAuditLog.objects.all().order_by("-created_at")
