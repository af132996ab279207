from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from .models import User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """
    User admin configuration
    """
    list_display = (
        'username', 'email', 'account_status', 'is_member',
        'grandfathered_free', 'trial_end_date', 'last_payment_date', 'created_at'
    )
    list_filter = (
        'account_status', 'is_member', 'grandfathered_free',
        'is_active', 'is_staff', 'created_at'
    )
    search_fields = (
        'username', 'email', 'phone',
        'billing_customer_id', 'billing_subscription_id'
    )
    ordering = ('-created_at',)
    readonly_fields = ('created_at', 'updated_at')

    # Billing state is written by webhooks; the admin only exposes it for support
    fieldsets = BaseUserAdmin.fieldsets + (
        ('Contact', {
            'fields': ('phone', 'push_token')
        }),
        ('Billing', {
            'fields': (
                'account_status', 'is_member', 'grandfathered_free',
                'trial_start_date', 'trial_end_date', 'last_payment_date', 'past_due_since',
                'billing_customer_id', 'billing_subscription_id',
            )
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at')
        }),
    )

    add_fieldsets = BaseUserAdmin.add_fieldsets + (
        ('Billing', {
            'fields': ('email', 'is_member', 'grandfathered_free', 'trial_end_date')
        }),
    )
