from datetime import timedelta
from unittest import mock

import pytest
from django.contrib.auth import get_user_model
from django.utils import timezone

from accounts.models import AccountStatus
from billing.models import BillingAuditLog
from billing.services.dispatcher import DispatchResult, WebhookDispatcher, WebhookProcessingError
from billing.services.events import parse_provider_event
from billing.services.provider_client import ProviderClient, ProviderServiceError, SubscriptionState
from billing.tests.factories import build_webhook_payload

User = get_user_model()


def _event(event_type, user_id, **fields):
    return parse_provider_event(build_webhook_payload(event_type, user_id, **fields))


@pytest.mark.django_db
def test_transfer_moves_subscription_between_accounts(make_user, django_capture_on_commit_callbacks,
                                                      queued_notifications):
    source = make_user(account_status=AccountStatus.ACTIVE, billing_customer_id="cus_src",
                       billing_subscription_id="sub_src")
    destination = make_user(account_status=AccountStatus.FROZEN)
    event = _event(
        "TRANSFER",
        destination.pk,
        transferred_from=[str(source.pk)],
        transferred_to=[str(destination.pk)],
        original_transaction_id="otx_77",
    )

    with django_capture_on_commit_callbacks(execute=True):
        result = WebhookDispatcher().dispatch(event)

    assert result.status == DispatchResult.PROCESSED
    source.refresh_from_db()
    destination.refresh_from_db()
    assert source.account_status == AccountStatus.FROZEN
    assert source.billing_customer_id is None
    assert source.billing_subscription_id is None
    assert destination.account_status == AccountStatus.ACTIVE
    assert destination.billing_customer_id == str(destination.pk)
    assert destination.billing_subscription_id == "otx_77"
    audit = BillingAuditLog.objects.get(event_type="subscription_transferred")
    assert audit.details["from_user_id"] == str(source.pk)
    assert sorted(payload["type"] for _, payload in queued_notifications) == [
        "subscription_transfer_received",
        "subscription_transfer_removed",
    ]


@pytest.mark.django_db
def test_transfer_keeps_exempt_source_free(make_user):
    source = make_user(account_status=AccountStatus.ACTIVE_FREE, is_member=True)
    destination = make_user(account_status=AccountStatus.FROZEN)
    event = _event("TRANSFER", destination.pk, transferred_from=[str(source.pk)])

    WebhookDispatcher().dispatch(event)

    source.refresh_from_db()
    assert source.account_status == AccountStatus.ACTIVE_FREE


@pytest.mark.django_db
def test_transfer_without_source_is_rejected(make_user):
    destination = make_user()

    with pytest.raises(WebhookProcessingError, match="transferred_from"):
        WebhookDispatcher().dispatch(_event("TRANSFER", destination.pk))


@pytest.mark.django_db
def test_transfer_to_the_same_account_is_rejected(make_user):
    user = make_user()

    with pytest.raises(WebhookProcessingError, match="same account"):
        WebhookDispatcher().dispatch(_event("TRANSFER", user.pk, transferred_from=[str(user.pk).upper()]))


@pytest.mark.django_db
def test_transfer_with_unknown_source_is_rejected(make_user):
    destination = make_user()
    event = _event("TRANSFER", destination.pk, transferred_from=["1d0f3a52-1111-4222-8333-444455556666"])

    with pytest.raises(WebhookProcessingError, match="not found"):
        WebhookDispatcher().dispatch(event)


@pytest.mark.django_db
def test_subscriber_alias_resyncs_from_provider(make_user):
    user = make_user(account_status=AccountStatus.ACTIVE)
    provider = mock.create_autospec(ProviderClient, instance=True)
    provider.get_subscription_state.return_value = SubscriptionState.GRACE_PERIOD

    result = WebhookDispatcher(provider_client=provider).dispatch(
        _event("SUBSCRIBER_ALIAS", user.pk, aliases=["$anon:abc"])
    )

    assert result.detail == "provider_grace_period"
    provider.get_subscription_state.assert_called_once()
    user.refresh_from_db()
    assert user.account_status == AccountStatus.PAST_DUE
    audit = BillingAuditLog.objects.get(event_type="subscriber_aliased")
    assert audit.details["old_app_user_id"] == "$anon:abc"


@pytest.mark.django_db
def test_subscriber_alias_provider_error_fails_event(make_user):
    user = make_user(account_status=AccountStatus.ACTIVE)
    provider = mock.create_autospec(ProviderClient, instance=True)
    provider.get_subscription_state.side_effect = ProviderServiceError("timeout")

    with pytest.raises(ProviderServiceError):
        WebhookDispatcher(provider_client=provider).dispatch(_event("SUBSCRIBER_ALIAS", user.pk))

    user.refresh_from_db()
    assert user.account_status == AccountStatus.ACTIVE


@pytest.mark.django_db
def test_subscriber_alias_without_provider_keeps_status(make_user):
    user = make_user(account_status=AccountStatus.CANCELED)

    WebhookDispatcher().dispatch(_event("SUBSCRIBER_ALIAS", user.pk))

    user.refresh_from_db()
    assert user.account_status == AccountStatus.CANCELED


@pytest.mark.django_db
def test_product_change_is_audited_without_status_change(make_user):
    user = make_user(account_status=AccountStatus.ACTIVE)

    result = WebhookDispatcher().dispatch(
        _event("PRODUCT_CHANGE", user.pk, old_product_id="monthly_199", new_product_id="monthly_299")
    )

    assert result.detail == "no_status_change"
    audit = BillingAuditLog.objects.get(event_type="subscription_product_changed")
    assert audit.details["old_product_id"] == "monthly_199"
    user.refresh_from_db()
    assert user.account_status == AccountStatus.ACTIVE


@pytest.mark.django_db
@pytest.mark.parametrize("event_type", ["PRODUCT_CHANGE", "TEST", "NON_RENEWING_PURCHASE"])
def test_log_only_events_still_correct_exempt_accounts(make_user, event_type):
    user = make_user(account_status=AccountStatus.ACTIVE, is_member=True)

    result = WebhookDispatcher().dispatch(_event(event_type, user.pk))

    assert result.detail == "exempt"
    user.refresh_from_db()
    assert user.account_status == AccountStatus.ACTIVE_FREE


@pytest.mark.django_db
def test_unknown_event_leaves_exempt_account_alone(make_user):
    user = make_user(account_status=AccountStatus.ACTIVE, is_member=True)

    result = WebhookDispatcher().dispatch(_event("SOMETHING_NEW", user.pk))

    assert result.status == DispatchResult.IGNORED
    user.refresh_from_db()
    assert user.account_status == AccountStatus.ACTIVE


@pytest.mark.django_db
def test_billing_issue_starts_the_grace_clock(make_user):
    user = make_user(account_status=AccountStatus.ACTIVE, last_payment_date=timezone.now() - timedelta(days=30))

    WebhookDispatcher().dispatch(_event("BILLING_ISSUE", user.pk))

    user.refresh_from_db()
    assert user.account_status == AccountStatus.PAST_DUE
    assert user.past_due_since is not None
    assert timezone.now() - user.past_due_since < timedelta(minutes=1)

    WebhookDispatcher().dispatch(_event("RENEWAL", user.pk, event_id="evt_renewal"))

    user.refresh_from_db()
    assert user.account_status == AccountStatus.ACTIVE
    assert user.past_due_since is None


@pytest.mark.django_db
def test_exempt_account_gets_no_transition_notification(make_user, django_capture_on_commit_callbacks,
                                                         queued_notifications):
    user = make_user(account_status=AccountStatus.ACTIVE_FREE, grandfathered_free=True)

    with django_capture_on_commit_callbacks(execute=True):
        result = WebhookDispatcher().dispatch(_event("EXPIRATION", user.pk))

    assert result.detail == "exempt"
    user.refresh_from_db()
    assert user.account_status == AccountStatus.ACTIVE_FREE
    assert queued_notifications == []


@pytest.mark.django_db
def test_notifications_wait_for_commit(make_user, django_capture_on_commit_callbacks, queued_notifications):
    user = make_user(account_status=AccountStatus.ACTIVE)

    with django_capture_on_commit_callbacks() as callbacks:
        WebhookDispatcher().dispatch(_event("BILLING_ISSUE", user.pk))
        assert queued_notifications == []

    assert len(callbacks) == 1
    callbacks[0]()
    user_id, payload = queued_notifications[0]
    assert user_id == str(user.pk)
    assert payload["type"] == "payment_failed"
    assert payload["priority"] == "critical"
