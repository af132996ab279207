from django.contrib import admin
from django.urls import reverse
from django.utils.html import format_html

from .models import BillingAuditLog, IdempotencyKey, RateLimitBucket, WebhookEventLog


def _user_link(user_id):
    if not user_id:
        return "-"
    url = reverse("admin:accounts_user_change", args=[user_id])
    return format_html('<a href="{}">{}</a>', url, user_id)


@admin.register(WebhookEventLog)
class WebhookEventLogAdmin(admin.ModelAdmin):
    """Monitor webhook processing progress and failures."""

    list_display = (
        "event_id",
        "source",
        "event_type",
        "status",
        "success",
        "attempts",
        "user_display",
        "created_at",
        "processed_at",
        "error_short",
    )
    search_fields = ("event_id", "event_type", "user_id", "payload_hash")
    list_filter = ("source", "status", "success", "event_type", "created_at")
    readonly_fields = (
        "event_id",
        "event_type",
        "status",
        "success",
        "attempts",
        "user_id",
        "payload",
        "payload_hash",
        "created_at",
        "processed_at",
        "error_message",
    )
    ordering = ("-created_at",)

    fieldsets = (
        (
            "Event",
            {"fields": ("event_id", "event_type", "user_id", "status", "success", "attempts")},
        ),
        (
            "Payload",
            {"fields": ("payload", "payload_hash")},
        ),
        (
            "Processing",
            {"fields": ("error_message", "created_at", "processed_at")},
        ),
    )

    @admin.display(description="User")
    def user_display(self, obj):
        return _user_link(obj.user_id)

    @admin.display(description="Error")
    def error_short(self, obj):
        if not obj.error_message:
            return "-"
        snippet = obj.error_message.strip().splitlines()[0]
        if len(snippet) > 120:
            snippet = f"{snippet[:117]}..."
        return snippet


@admin.register(IdempotencyKey)
class IdempotencyKeyAdmin(admin.ModelAdmin):
    """Inspect reserved and completed Idempotency-Key entries."""

    list_display = ("key", "method", "path", "status_code", "created_at", "completed_at", "expires_at")
    search_fields = ("key", "path", "request_hash")
    list_filter = ("method", "status_code", "created_at")
    readonly_fields = (
        "key",
        "request_hash",
        "method",
        "path",
        "status_code",
        "content_type",
        "response_data",
        "created_at",
        "completed_at",
        "expires_at",
    )
    ordering = ("-created_at",)


@admin.register(RateLimitBucket)
class RateLimitBucketAdmin(admin.ModelAdmin):
    list_display = ("identifier", "category", "request_count", "window_start", "window_end")
    search_fields = ("identifier", "bucket_id")
    list_filter = ("category",)
    readonly_fields = ("bucket_id", "identifier", "category", "request_count", "window_start", "window_end", "updated_at")
    ordering = ("-window_start",)


@admin.register(BillingAuditLog)
class BillingAuditLogAdmin(admin.ModelAdmin):
    """Audit log explorer for billing lifecycle events."""

    list_display = (
        "user_display",
        "event_type",
        "provider_event_id",
        "actor",
        "created_at",
    )
    search_fields = ("event_type", "provider_event_id", "user_id", "actor")
    list_filter = ("event_type", "actor", "created_at")
    readonly_fields = ("user_id", "event_type", "provider_event_id", "actor", "details", "created_at")
    ordering = ("-created_at",)

    fieldsets = (
        (
            "Event",
            {"fields": ("user_id", "event_type", "actor")},
        ),
        (
            "Provider",
            {"fields": ("provider_event_id",)},
        ),
        (
            "Details",
            {"fields": ("details", "created_at")},
        ),
    )

    @admin.display(description="User")
    def user_display(self, obj):
        return _user_link(obj.user_id)
