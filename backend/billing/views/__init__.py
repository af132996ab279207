"""Billing API views for the client-initiated subscription flow."""
from __future__ import annotations

import logging
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, Optional

from django.contrib.auth import get_user_model
from django.db import transaction
from django.utils import timezone
from rest_framework import status
from rest_framework.authentication import SessionAuthentication, TokenAuthentication
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.models import AccountStatus
from billing.models import BillingAuditLog
from billing.observability.logging import log_billing_event
from billing.serializers import (
    CreateSubscriptionSerializer,
    SubscriptionStatusSerializer,
    UpdatePaymentMethodSerializer,
)
from billing.services import notifications
from billing.services.notifications import Notifier
from billing.services.stripe_payments import (
    StripeConfigurationError,
    StripeServiceError,
    attach_payment_method,
    cancel_subscription_at_period_end,
    create_or_get_customer,
    create_subscription,
    get_monthly_price,
    list_card_payment_methods,
    replace_default_payment_method,
    retrieve_payment_method,
    retrieve_subscription,
    retry_invoice,
    summarize_payment_method,
)

logger = logging.getLogger(__name__)

User = get_user_model()


def _error(code: str, message: str, http_status: int, details: Optional[Dict[str, Any]] = None) -> Response:
    return Response({"code": code, "message": message, "details": details or {}}, status=http_status)


def _from_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=dt_timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _period_end(value: Any) -> Optional[str]:
    moment = _from_timestamp(value)
    return moment.isoformat() if moment else None


def _stripe_error(exc: Exception, action: str) -> Response:
    if isinstance(exc, StripeConfigurationError):
        logger.error("Stripe configuration error while %s: %s", action, exc)
        return _error("payment_provider_unavailable", str(exc), status.HTTP_503_SERVICE_UNAVAILABLE)
    return _error("payment_provider_error", str(exc), status.HTTP_502_BAD_GATEWAY)


def _subscription_body(subscription: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(subscription.get("id") or ""),
        "status": subscription.get("status"),
        "current_period_end": _period_end(subscription.get("current_period_end")),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
    }


def _remember_customer(user, customer_id: str) -> None:
    if user.billing_customer_id == customer_id:
        return
    User.objects.filter(pk=user.pk).update(billing_customer_id=customer_id, updated_at=timezone.now())
    user.billing_customer_id = customer_id


class CreateSubscriptionView(APIView):
    """Start the monthly subscription for the requesting user."""

    authentication_classes = [TokenAuthentication, SessionAuthentication]
    permission_classes = [IsAuthenticated]
    rate_limit_category = "payment"

    def post(self, request):
        serializer = CreateSubscriptionSerializer(data=request.data)
        if not serializer.is_valid():
            return _error("validation_error", "Invalid request body.", status.HTTP_400_BAD_REQUEST, serializer.errors)

        user = request.user
        if user.is_exempt:
            return _error(
                "payment_not_required",
                "This account does not require a subscription.",
                status.HTTP_400_BAD_REQUEST,
                {"account_status": user.account_status},
            )
        if user.billing_subscription_id:
            return _error(
                "subscription_exists",
                "An active subscription already exists for this account.",
                status.HTTP_409_CONFLICT,
                {"subscription_id": user.billing_subscription_id},
            )

        payment_method_id = serializer.validated_data["payment_method_id"]
        try:
            customer_id = create_or_get_customer(user)
            # Kept even if the card or subscription step fails so a retry reuses it
            _remember_customer(user, customer_id)
            attach_payment_method(payment_method_id, customer_id)
            subscription = create_subscription(customer_id, user_id=str(user.pk))
        except (StripeConfigurationError, StripeServiceError) as exc:
            return _stripe_error(exc, "creating subscription")

        subscription_id = str(subscription.get("id") or "")
        now = timezone.now()
        with transaction.atomic():
            locked = User.objects.select_for_update().get(pk=user.pk)
            changed = locked.apply_status(AccountStatus.ACTIVE, now=now)
            locked.last_payment_date = now
            locked.billing_customer_id = customer_id
            locked.billing_subscription_id = subscription_id
            locked.save(
                update_fields=changed + [
                    "last_payment_date",
                    "billing_customer_id",
                    "billing_subscription_id",
                    "updated_at",
                ]
            )
            BillingAuditLog.objects.create(
                event_type="subscription_created",
                user_id=str(locked.pk),
                provider_event_id=subscription_id,
                actor="api.create_subscription",
                details={"customer_id": customer_id, "stripe_status": subscription.get("status")},
            )
            notifier = Notifier()
            user_id = str(locked.pk)
            transaction.on_commit(lambda: notifier.notify(user_id, notifications.subscription_activated()))

        log_billing_event(
            message="subscription_created",
            user_id=str(user.pk),
            actor="api.create_subscription",
            extra={"subscription_id": subscription_id, "customer_id": customer_id},
        )
        return Response(
            {
                "subscription": _subscription_body(subscription),
                "customer": {"id": customer_id},
                "price": get_monthly_price(),
                "message": "Subscription created successfully",
            },
            status=status.HTTP_201_CREATED,
        )


class CancelSubscriptionView(APIView):
    """Schedule cancellation of the requesting user's subscription at period end."""

    authentication_classes = [TokenAuthentication, SessionAuthentication]
    permission_classes = [IsAuthenticated]
    rate_limit_category = "payment"

    def post(self, request):
        user = request.user
        subscription_id = user.billing_subscription_id
        if not subscription_id:
            return _error("no_subscription", "No active subscription found.", status.HTTP_404_NOT_FOUND)

        try:
            subscription = retrieve_subscription(subscription_id)
            if subscription.get("cancel_at_period_end"):
                return Response(
                    {
                        "subscription": _subscription_body(subscription),
                        "message": "Subscription already scheduled for cancellation",
                    }
                )
            subscription = cancel_subscription_at_period_end(subscription_id)
        except (StripeConfigurationError, StripeServiceError) as exc:
            return _stripe_error(exc, "canceling subscription")

        access_until = _from_timestamp(subscription.get("current_period_end"))
        with transaction.atomic():
            locked = User.objects.select_for_update().get(pk=user.pk)
            changed = [] if locked.is_exempt else locked.apply_status(AccountStatus.CANCELED)
            if changed:
                locked.save(update_fields=changed + ["updated_at"])
            BillingAuditLog.objects.create(
                event_type="subscription_cancel_scheduled",
                user_id=str(locked.pk),
                provider_event_id=subscription_id,
                actor="api.cancel_subscription",
                details={
                    "account_status": locked.account_status,
                    "changed_fields": changed,
                    "current_period_end": _period_end(subscription.get("current_period_end")),
                },
            )
            notifier = Notifier()
            user_id = str(locked.pk)
            transaction.on_commit(lambda: notifier.notify(user_id, notifications.subscription_canceled(access_until)))

        log_billing_event(
            message="subscription_cancel_scheduled",
            user_id=str(user.pk),
            actor="api.cancel_subscription",
            extra={"subscription_id": subscription_id},
        )
        until = access_until.date().isoformat() if access_until else "the end of the billing period"
        return Response(
            {
                "subscription": _subscription_body(subscription),
                "message": f"Subscription will be canceled on {until}",
            }
        )


class UpdatePaymentMethodView(APIView):
    """
    Replace the default card on the requesting user's Stripe customer.

    A past-due account gets its latest invoice retried on the new card; a
    successful retry reactivates the account. A failed retry still leaves the
    new card in place and the account past due.
    """

    authentication_classes = [TokenAuthentication, SessionAuthentication]
    permission_classes = [IsAuthenticated]
    rate_limit_category = "payment"

    def patch(self, request):
        serializer = UpdatePaymentMethodSerializer(data=request.data)
        if not serializer.is_valid():
            return _error("validation_error", "Invalid request body.", status.HTTP_400_BAD_REQUEST, serializer.errors)

        user = request.user
        customer_id = user.billing_customer_id
        if not customer_id:
            return _error(
                "no_customer",
                "No billing customer found. Please create a subscription first.",
                status.HTTP_404_NOT_FOUND,
            )

        payment_method_id = serializer.validated_data["payment_method_id"]
        try:
            existing = list_card_payment_methods(customer_id)
            previous_id = existing[0].get("id") if existing else None
            replace_default_payment_method(customer_id, payment_method_id, previous_id)
            payment_method = summarize_payment_method(retrieve_payment_method(payment_method_id))
        except (StripeConfigurationError, StripeServiceError) as exc:
            return _stripe_error(exc, "updating payment method")

        account_status = user.account_status
        if user.account_status == AccountStatus.PAST_DUE and user.billing_subscription_id:
            account_status = self._retry_overdue_invoice(user)

        log_billing_event(
            message="payment_method_updated",
            user_id=str(user.pk),
            actor="api.update_payment_method",
            extra={"customer_id": customer_id, "payment_method_id": payment_method_id},
        )
        return Response(
            {
                "payment_method": payment_method,
                "account_status": account_status,
                "message": "Payment method updated successfully",
            }
        )

    @staticmethod
    def _retry_overdue_invoice(user) -> str:
        try:
            subscription = retrieve_subscription(user.billing_subscription_id)
            invoice = subscription.get("latest_invoice")
            if not isinstance(invoice, dict) or not invoice.get("id"):
                return user.account_status
            retry_invoice(invoice["id"])
        except (StripeConfigurationError, StripeServiceError) as exc:
            logger.warning("Invoice retry failed for user %s after card update: %s", user.pk, exc)
            return user.account_status

        now = timezone.now()
        with transaction.atomic():
            locked = User.objects.select_for_update().get(pk=user.pk)
            if locked.account_status != AccountStatus.PAST_DUE:
                return locked.account_status
            changed = locked.apply_status(AccountStatus.ACTIVE, now=now)
            locked.last_payment_date = now
            locked.save(update_fields=changed + ["last_payment_date", "updated_at"])
            BillingAuditLog.objects.create(
                event_type="payment_recovered",
                user_id=str(locked.pk),
                provider_event_id=str(invoice["id"]),
                actor="api.update_payment_method",
                details={"account_status": locked.account_status, "changed_fields": changed},
            )
            notifier = Notifier()
            user_id = str(locked.pk)
            transaction.on_commit(lambda: notifier.notify(user_id, notifications.subscription_reactivated()))
        return locked.account_status


class SubscriptionStatusView(APIView):
    authentication_classes = [TokenAuthentication, SessionAuthentication]
    permission_classes = [IsAuthenticated]
    rate_limit_category = "read"

    def get(self, request):
        serializer = SubscriptionStatusSerializer(request.user, context={"request": request})
        return Response({**serializer.data, "price": get_monthly_price()})
