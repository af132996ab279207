"""FilterSet definitions for billing endpoints."""
from __future__ import annotations

import django_filters

from billing.models import BillingAuditLog, WebhookEventLog


class BillingAuditLogFilter(django_filters.FilterSet):
    event_type = django_filters.CharFilter(field_name="event_type", lookup_expr="iexact")
    user_id = django_filters.CharFilter(field_name="user_id", lookup_expr="iexact")
    provider_event_id = django_filters.CharFilter(field_name="provider_event_id")
    created_after = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_before = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="lte")

    class Meta:
        model = BillingAuditLog
        fields = ["event_type", "user_id", "provider_event_id"]


class WebhookEventLogFilter(django_filters.FilterSet):
    status = django_filters.CharFilter(field_name="status", lookup_expr="iexact")
    source = django_filters.CharFilter(field_name="source", lookup_expr="iexact")
    event_type = django_filters.CharFilter(field_name="event_type", lookup_expr="iexact")
    user_id = django_filters.CharFilter(field_name="user_id", lookup_expr="iexact")
    success = django_filters.BooleanFilter(field_name="success")
    created_after = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_before = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="lte")

    class Meta:
        model = WebhookEventLog
        fields = ["status", "source", "event_type", "user_id", "success"]
