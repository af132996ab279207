"""URL routes for billing endpoints."""
from django.urls import path

from .views import (
    CancelSubscriptionView,
    CreateSubscriptionView,
    SubscriptionStatusView,
    UpdatePaymentMethodView,
)
from .views.audit import BillingAuditLogViewSet
from .views.webhooks import WebhookEventViewSet
from .views_webhook import ProviderWebhookView, StripeWebhookView

app_name = "billing"

urlpatterns = [
    path("webhooks/provider/", ProviderWebhookView.as_view(), name="provider-webhook"),
    path("webhooks/stripe/", StripeWebhookView.as_view(), name="stripe-webhook"),
    path("subscriptions/", CreateSubscriptionView.as_view(), name="subscription-create"),
    path("subscription/", SubscriptionStatusView.as_view(), name="subscription-status"),
    path("subscription/cancel/", CancelSubscriptionView.as_view(), name="subscription-cancel"),
    path(
        "subscription/payment-method/",
        UpdatePaymentMethodView.as_view(),
        name="subscription-payment-method",
    ),
    path(
        "webhook-events/",
        WebhookEventViewSet.as_view({"get": "list"}),
        name="webhook-events",
    ),
    path(
        "webhook-events/<int:pk>/",
        WebhookEventViewSet.as_view({"get": "retrieve"}),
        name="webhook-event-detail",
    ),
    path(
        "audit-logs/",
        BillingAuditLogViewSet.as_view({"get": "list"}),
        name="audit-logs",
    ),
]
