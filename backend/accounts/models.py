import uuid

from django.contrib.auth.models import AbstractUser
from django.db import models
from django.utils import timezone


class AccountStatus(models.TextChoices):
    """Billing-derived access state of an account."""

    TRIAL = "trial", "Trial"
    ACTIVE = "active", "Active"
    ACTIVE_FREE = "active_free", "Active (free)"
    PAST_DUE = "past_due", "Past due"
    PAUSED = "paused", "Paused"
    CANCELED = "canceled", "Canceled"
    FROZEN = "frozen", "Frozen"


class User(AbstractUser):
    """
    User model carrying the billing record reconciled from provider webhooks.

    The string form of ``id`` is the ``app_user_id`` the billing provider
    reports in its events.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    email = models.EmailField(unique=True)
    phone = models.CharField(max_length=20, blank=True, null=True, verbose_name="Phone Number")
    push_token = models.CharField(max_length=255, blank=True, null=True, help_text="Device token for push delivery")

    account_status = models.CharField(
        max_length=20,
        choices=AccountStatus.choices,
        default=AccountStatus.TRIAL,
        db_index=True,
    )
    is_member = models.BooleanField(default=False, help_text="Members never pay for the service.")
    grandfathered_free = models.BooleanField(default=False, help_text="Legacy accounts exempt from billing.")
    trial_start_date = models.DateTimeField(blank=True, null=True)
    trial_end_date = models.DateTimeField(blank=True, null=True)
    last_payment_date = models.DateTimeField(blank=True, null=True)
    past_due_since = models.DateTimeField(
        blank=True,
        null=True,
        help_text="When the account last entered past_due; the grace period runs from here.",
    )
    billing_customer_id = models.CharField(max_length=255, blank=True, null=True)
    billing_subscription_id = models.CharField(max_length=255, blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    USERNAME_FIELD = 'username'
    REQUIRED_FIELDS = ['email']

    class Meta:
        db_table = 'user'
        verbose_name = 'User'
        verbose_name_plural = 'Users'
        indexes = [
            models.Index(fields=["account_status", "trial_end_date"], name="user_status_trial_idx"),
        ]

    def __str__(self):
        return self.username

    @property
    def is_exempt(self) -> bool:
        return bool(self.is_member or self.grandfathered_free)

    @property
    def requires_payment(self) -> bool:
        return not self.is_exempt

    def apply_status(self, status, now=None):
        """Set ``account_status``, keeping ``past_due_since`` in step. Returns the changed field names."""
        if status == self.account_status:
            return []
        changed = ["account_status"]
        if status == AccountStatus.PAST_DUE:
            self.past_due_since = now or timezone.now()
            changed.append("past_due_since")
        elif self.past_due_since is not None:
            self.past_due_since = None
            changed.append("past_due_since")
        self.account_status = status
        return changed

    def trial_days_remaining(self, now=None):
        if not self.trial_end_date:
            return None
        now = now or timezone.now()
        remaining = self.trial_end_date - now
        # Partial days count as a full day left
        return -((-int(remaining.total_seconds())) // 86400)
