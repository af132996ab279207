"""Billing models for webhook logging, idempotency, rate limiting, and auditing."""
from django.db import models


class WebhookEventLog(models.Model):
    """Keeps track of received provider webhook events to guarantee exactly-once effects."""

    class Status(models.TextChoices):
        RECEIVED = "received", "Received"
        PROCESSING = "processing", "Processing"
        PROCESSED = "processed", "Processed"
        IGNORED = "ignored", "Ignored"
        FAILED = "failed", "Failed"

    class Source(models.TextChoices):
        PROVIDER = "provider", "Billing provider"
        STRIPE = "stripe", "Stripe"

    id = models.BigAutoField(primary_key=True)
    event_id = models.CharField(max_length=255, unique=True)
    source = models.CharField(max_length=16, choices=Source.choices, default=Source.PROVIDER)
    event_type = models.CharField(max_length=255, blank=True)
    user_id = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Provider app_user_id the event targets; empty for TEST events.",
    )
    payload = models.JSONField(blank=True, null=True)
    payload_hash = models.CharField(
        max_length=64,
        blank=True,
        help_text="SHA256 of the canonical payload for drift detection.",
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.RECEIVED,
    )
    success = models.BooleanField(
        default=False,
        help_text="True once the event has been fully processed.",
    )
    error_message = models.TextField(blank=True, null=True)
    attempts = models.PositiveIntegerField(default=1)
    created_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "billing_webhook_event_log"
        verbose_name = "Webhook event log"
        verbose_name_plural = "Webhook event logs"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="webhook_event_status_idx"),
            models.Index(fields=["event_type"], name="webhook_event_type_idx"),
            models.Index(fields=["user_id", "-created_at"], name="webhook_event_user_idx"),
        ]

    def __str__(self):
        return f"WebhookEventLog<{self.event_id}:{self.status}>"


class IdempotencyKey(models.Model):
    """Caches the response of a client mutating request under its Idempotency-Key."""

    id = models.BigAutoField(primary_key=True)
    key = models.CharField(max_length=64, unique=True)
    request_hash = models.CharField(
        max_length=64,
        help_text="SHA256 of the canonical request body.",
    )
    response_data = models.TextField(
        blank=True,
        null=True,
        help_text="Rendered response body; empty while the request is in flight.",
    )
    status_code = models.PositiveIntegerField(null=True, blank=True)
    content_type = models.CharField(max_length=128, blank=True)
    method = models.CharField(max_length=8, blank=True)
    path = models.CharField(max_length=255, blank=True)
    expires_at = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "billing_idempotency_key"
        verbose_name = "Idempotency key"
        verbose_name_plural = "Idempotency keys"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["expires_at"], name="billing_idempo_expires_idx"),
        ]

    def __str__(self):
        return f"IdempotencyKey<{self.key}>"

    @property
    def is_completed(self) -> bool:
        return self.status_code is not None


class RateLimitBucket(models.Model):
    """Request counter for one identifier and category within one fixed window."""

    id = models.BigAutoField(primary_key=True)
    bucket_id = models.CharField(max_length=255, unique=True)
    identifier = models.CharField(max_length=255)
    category = models.CharField(max_length=32)
    request_count = models.PositiveIntegerField(default=0)
    window_start = models.DateTimeField()
    window_end = models.DateTimeField()
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_rate_limit_bucket"
        verbose_name = "Rate limit bucket"
        verbose_name_plural = "Rate limit buckets"
        ordering = ["-window_start"]
        indexes = [
            models.Index(fields=["window_end"], name="rate_limit_window_end_idx"),
            models.Index(fields=["identifier", "category"], name="rate_limit_ident_cat_idx"),
        ]

    def __str__(self):
        return f"RateLimitBucket<{self.bucket_id}:{self.request_count}>"


class BillingAuditLog(models.Model):
    """Structured audit log for key billing lifecycle events."""

    id = models.BigAutoField(primary_key=True)
    event_type = models.CharField(max_length=100, help_text="Classification of the billing event.")
    user_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Account the event applied to.",
    )
    provider_event_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Provider webhook event identifier tied to the event.",
    )
    actor = models.CharField(
        max_length=255,
        blank=True,
        help_text="Auth user or system actor responsible.",
    )
    details = models.JSONField(
        blank=True,
        null=True,
        help_text="Structured data describing the event.",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_audit_log"
        verbose_name = "Billing audit log"
        verbose_name_plural = "Billing audit logs"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["user_id", "event_type"], name="billing_audit_user_event_idx"),
            models.Index(fields=["provider_event_id"], name="billing_audit_provider_idx"),
        ]

    def __str__(self):
        return f"BillingAuditLog<{self.user_id}:{self.event_type}>"
