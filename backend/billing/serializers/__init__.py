"""DRF serializers for billing flows (subscription status, creation, and log listings)."""
from __future__ import annotations

from typing import Any, Dict, Optional

from django.contrib.auth import get_user_model
from django.utils import timezone
from rest_framework import serializers

from billing.models import BillingAuditLog, WebhookEventLog

User = get_user_model()


class CreateSubscriptionSerializer(serializers.Serializer):
    """Validate a client request to start the monthly subscription."""

    payment_method_id = serializers.CharField(max_length=255, trim_whitespace=True)

    def validate_payment_method_id(self, value: str) -> str:
        if not value:
            raise serializers.ValidationError("payment_method_id is required.")
        return value


class UpdatePaymentMethodSerializer(CreateSubscriptionSerializer):
    """Validate a client request to replace the default card."""


class SubscriptionStatusSerializer(serializers.ModelSerializer):
    """Expose the billing-derived access state of the requesting user."""

    requires_payment = serializers.BooleanField(read_only=True)
    trial = serializers.SerializerMethodField()

    class Meta:
        model = User
        fields = (
            "id",
            "account_status",
            "is_member",
            "grandfathered_free",
            "requires_payment",
            "last_payment_date",
            "past_due_since",
            "billing_subscription_id",
            "trial",
        )
        read_only_fields = fields

    def get_trial(self, obj) -> Dict[str, Optional[Any]]:
        now = self.context.get("now") or timezone.now()
        end_date = obj.trial_end_date
        return {
            "start_date": obj.trial_start_date,
            "end_date": end_date,
            "days_remaining": max(0, obj.trial_days_remaining(now)) if end_date else None,
            "is_active": bool(end_date and end_date > now),
        }


class BillingAuditLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = BillingAuditLog
        fields = (
            "id",
            "user_id",
            "event_type",
            "provider_event_id",
            "actor",
            "details",
            "created_at",
        )
        read_only_fields = fields


class WebhookEventLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = WebhookEventLog
        fields = (
            "id",
            "event_id",
            "source",
            "event_type",
            "user_id",
            "status",
            "success",
            "attempts",
            "processed_at",
            "payload_hash",
            "error_message",
            "created_at",
        )
        read_only_fields = fields
