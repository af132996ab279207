import time

import pytest
from django.utils import timezone

from accounts.models import AccountStatus
from billing.models import BillingAuditLog, WebhookEventLog
from billing.tests.factories import (
    build_stripe_event,
    build_stripe_invoice,
    build_stripe_subscription,
    encode,
    sign_stripe,
)


@pytest.mark.django_db
def test_deleted_subscription_freezes_account(make_user, post_stripe_webhook,
                                              django_capture_on_commit_callbacks, queued_notifications):
    user = make_user(account_status=AccountStatus.CANCELED, billing_subscription_id="sub_123")
    payload = build_stripe_event(
        "customer.subscription.deleted",
        build_stripe_subscription(user.pk, status="canceled"),
        event_id="evt_deleted",
    )

    with django_capture_on_commit_callbacks(execute=True):
        response = post_stripe_webhook(payload)

    assert response.status_code == 200
    assert response.json() == {
        "received": True,
        "event_id": "evt_deleted",
        "event_type": "customer.subscription.deleted",
    }
    user.refresh_from_db()
    assert user.account_status == AccountStatus.FROZEN
    assert user.billing_subscription_id is None
    entry = WebhookEventLog.objects.get(event_id="evt_deleted")
    assert entry.source == WebhookEventLog.Source.STRIPE
    assert entry.status == WebhookEventLog.Status.PROCESSED
    audit = BillingAuditLog.objects.get(event_type="subscription_deleted")
    assert audit.actor == "webhook.stripe"
    assert [payload["type"] for _, payload in queued_notifications] == ["account_frozen"]


@pytest.mark.django_db
def test_failed_invoice_moves_account_past_due(make_user, post_stripe_webhook,
                                               django_capture_on_commit_callbacks, queued_notifications):
    user = make_user(account_status=AccountStatus.ACTIVE, billing_customer_id="cus_123")

    with django_capture_on_commit_callbacks(execute=True):
        response = post_stripe_webhook(
            build_stripe_event("invoice.payment_failed", build_stripe_invoice(customer_id="cus_123"))
        )

    assert response.status_code == 200
    user.refresh_from_db()
    assert user.account_status == AccountStatus.PAST_DUE
    assert user.past_due_since is not None
    assert [payload["type"] for _, payload in queued_notifications] == ["payment_failed"]


@pytest.mark.django_db
def test_paid_invoice_reactivates_past_due_account(make_user, post_stripe_webhook,
                                                   django_capture_on_commit_callbacks, queued_notifications):
    user = make_user(
        account_status=AccountStatus.PAST_DUE,
        past_due_since=timezone.now(),
        billing_customer_id="cus_123",
    )

    with django_capture_on_commit_callbacks(execute=True):
        response = post_stripe_webhook(
            build_stripe_event("invoice.payment_succeeded", build_stripe_invoice(customer_id="cus_123"))
        )

    assert response.status_code == 200
    user.refresh_from_db()
    assert user.account_status == AccountStatus.ACTIVE
    assert user.past_due_since is None
    assert user.last_payment_date is not None
    assert [payload["type"] for _, payload in queued_notifications] == ["subscription_reactivated"]


@pytest.mark.django_db
def test_invoice_metadata_identifies_account(make_user, post_stripe_webhook):
    user = make_user(account_status=AccountStatus.ACTIVE)
    invoice = build_stripe_invoice(
        customer_id="cus_unknown",
        subscription_details={"metadata": {"user_id": str(user.pk)}},
    )

    response = post_stripe_webhook(build_stripe_event("invoice.payment_failed", invoice))

    assert response.status_code == 200
    user.refresh_from_db()
    assert user.account_status == AccountStatus.PAST_DUE


@pytest.mark.django_db
def test_created_subscription_records_references(make_user, post_stripe_webhook):
    user = make_user(account_status=AccountStatus.TRIAL)
    subscription = build_stripe_subscription(user.pk, subscription_id="sub_new", customer_id="cus_new")

    response = post_stripe_webhook(build_stripe_event("customer.subscription.created", subscription))

    assert response.status_code == 200
    user.refresh_from_db()
    assert user.account_status == AccountStatus.ACTIVE
    assert user.billing_subscription_id == "sub_new"
    assert user.billing_customer_id == "cus_new"


@pytest.mark.django_db
def test_event_for_unknown_customer_is_ignored(post_stripe_webhook):
    payload = build_stripe_event(
        "invoice.payment_failed",
        build_stripe_invoice(customer_id="cus_nobody"),
        event_id="evt_orphan",
    )

    response = post_stripe_webhook(payload)

    assert response.status_code == 200
    entry = WebhookEventLog.objects.get(event_id="evt_orphan")
    assert entry.status == WebhookEventLog.Status.IGNORED
    assert entry.success is True


@pytest.mark.django_db
def test_unhandled_stripe_event_type_is_ignored(post_stripe_webhook):
    payload = build_stripe_event("charge.refunded", {"id": "ch_1", "customer": "cus_123"}, event_id="evt_charge")

    response = post_stripe_webhook(payload)

    assert response.status_code == 200
    assert WebhookEventLog.objects.get(event_id="evt_charge").status == WebhookEventLog.Status.IGNORED


@pytest.mark.django_db
def test_stripe_redelivery_is_flagged_duplicate(make_user, post_stripe_webhook):
    user = make_user(account_status=AccountStatus.ACTIVE, billing_customer_id="cus_123")
    payload = build_stripe_event(
        "invoice.payment_failed",
        build_stripe_invoice(customer_id="cus_123"),
        event_id="evt_twice",
    )

    post_stripe_webhook(payload)
    response = post_stripe_webhook(payload)

    assert response.status_code == 200
    assert response.json()["duplicate"] is True
    assert WebhookEventLog.objects.get(event_id="evt_twice").attempts == 1
    assert BillingAuditLog.objects.filter(provider_event_id="evt_twice", user_id=str(user.pk)).count() == 1


@pytest.mark.django_db
def test_invalid_stripe_signature_is_rejected(make_user, post_stripe_webhook):
    user = make_user(account_status=AccountStatus.ACTIVE, billing_customer_id="cus_123")
    payload = build_stripe_event("invoice.payment_failed", build_stripe_invoice(customer_id="cus_123"))
    body = encode(payload)

    response = post_stripe_webhook(body=body, signature=sign_stripe(body, secret="whsec_wrong"))

    assert response.status_code == 401
    assert response.json()["code"] == "invalid_signature"
    assert not WebhookEventLog.objects.exists()
    user.refresh_from_db()
    assert user.account_status == AccountStatus.ACTIVE


@pytest.mark.django_db
def test_stale_stripe_signature_is_rejected(post_stripe_webhook):
    body = encode(build_stripe_event("invoice.payment_failed", build_stripe_invoice()))

    response = post_stripe_webhook(body=body, signature=sign_stripe(body, timestamp=int(time.time()) - 3600))

    assert response.status_code == 401


@pytest.mark.django_db
def test_missing_stripe_signature_is_rejected(post_stripe_webhook):
    response = post_stripe_webhook(build_stripe_event("invoice.payment_failed", build_stripe_invoice()), signature="")

    assert response.status_code == 401


@pytest.mark.django_db
def test_stripe_event_without_object_is_bad_request(post_stripe_webhook):
    response = post_stripe_webhook({"id": "evt_empty", "type": "invoice.payment_failed", "data": {}})

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_payload"
