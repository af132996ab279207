from io import StringIO

import pytest
from django.core.management import CommandError, call_command

from accounts.models import AccountStatus
from billing.models import WebhookEventLog
from billing.services.webhook_log import log_event_pending, mark_event_outcome
from billing.tests.factories import (
    build_stripe_event,
    build_stripe_invoice,
    build_webhook_payload,
)


def _failed_entry(event_type, user_id, event_id):
    payload = build_webhook_payload(event_type, user_id, event_id=event_id)
    log_event_pending(event_id, event_type, str(user_id), payload)
    mark_event_outcome(event_id, success=False, error_message="database timeout")


@pytest.mark.django_db
def test_replay_reprocesses_failed_events(make_user):
    user = make_user(account_status=AccountStatus.FROZEN)
    _failed_entry("RENEWAL", user.pk, "evt_replay")
    out = StringIO()

    call_command("replay_webhook_events", stdout=out)

    assert "1 succeeded" in out.getvalue()
    entry = WebhookEventLog.objects.get(event_id="evt_replay")
    assert entry.success is True
    assert entry.attempts == 2
    user.refresh_from_db()
    assert user.account_status == AccountStatus.ACTIVE


@pytest.mark.django_db
def test_replay_sends_stripe_rows_through_stripe_pipeline(make_user):
    user = make_user(account_status=AccountStatus.ACTIVE, billing_customer_id="cus_replay")
    payload = build_stripe_event(
        "invoice.payment_failed",
        build_stripe_invoice(customer_id="cus_replay"),
        event_id="evt_stripe_replay",
    )
    log_event_pending("evt_stripe_replay", "invoice.payment_failed", None, payload, source=WebhookEventLog.Source.STRIPE)
    mark_event_outcome("evt_stripe_replay", success=False, error_message="database timeout")
    out = StringIO()

    call_command("replay_webhook_events", stdout=out)

    assert "Replaying stripe invoice.payment_failed event evt_stripe_replay" in out.getvalue()
    assert WebhookEventLog.objects.get(event_id="evt_stripe_replay").success is True
    user.refresh_from_db()
    assert user.account_status == AccountStatus.PAST_DUE


@pytest.mark.django_db
def test_dry_run_changes_nothing(make_user):
    user = make_user(account_status=AccountStatus.FROZEN)
    _failed_entry("RENEWAL", user.pk, "evt_dry")
    out = StringIO()

    call_command("replay_webhook_events", "--dry-run", stdout=out)

    assert "Would replay provider RENEWAL event evt_dry" in out.getvalue()
    assert WebhookEventLog.objects.get(event_id="evt_dry").success is False
    user.refresh_from_db()
    assert user.account_status == AccountStatus.FROZEN


@pytest.mark.django_db
def test_replay_filters_by_event_id_and_reports_failures(make_user):
    user = make_user(account_status=AccountStatus.FROZEN)
    _failed_entry("RENEWAL", user.pk, "evt_keep")
    _failed_entry("RENEWAL", "0f6d3e1a-aaaa-4bbb-8ccc-dddddddddddd", "evt_orphan")

    with pytest.raises(CommandError, match="1 failed"):
        call_command("replay_webhook_events", "--event-id", "evt_orphan", stdout=StringIO(), stderr=StringIO())

    assert WebhookEventLog.objects.get(event_id="evt_keep").attempts == 1
    assert WebhookEventLog.objects.get(event_id="evt_orphan").attempts == 2


@pytest.mark.django_db
def test_nothing_to_replay():
    out = StringIO()

    call_command("replay_webhook_events", stdout=out)

    assert "No failed webhook events" in out.getvalue()
