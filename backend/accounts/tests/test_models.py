from datetime import timedelta

import pytest
from django.contrib.auth import get_user_model
from django.utils import timezone

from accounts.models import AccountStatus


@pytest.mark.django_db
def test_new_users_start_in_trial_and_require_payment():
    user = get_user_model().objects.create_user(
        username="dana",
        email="dana@example.com",
        password="pass1234",
    )

    assert user.account_status == AccountStatus.TRIAL
    assert user.is_exempt is False
    assert user.requires_payment is True
    assert user.trial_days_remaining() is None


@pytest.mark.django_db
@pytest.mark.parametrize("flag", ["is_member", "grandfathered_free"])
def test_exempt_users_do_not_require_payment(flag):
    user = get_user_model().objects.create_user(
        username="erin",
        email="erin@example.com",
        password="pass1234",
        **{flag: True},
    )

    assert user.is_exempt is True
    assert user.requires_payment is False


def test_trial_days_remaining_rounds_partial_days_up():
    now = timezone.now()
    user = get_user_model()(trial_end_date=now + timedelta(days=1, minutes=1))

    assert user.trial_days_remaining(now) == 2


def test_trial_days_remaining_is_negative_after_expiry():
    now = timezone.now()
    user = get_user_model()(trial_end_date=now - timedelta(days=2))

    assert user.trial_days_remaining(now) == -2


def test_test_modules_are_namespaced_by_app():
    # billing and accounts both ship a tests package; they must not collide
    assert __name__ == "accounts.tests.test_models"


def test_entering_past_due_starts_grace_clock():
    now = timezone.now()
    user = get_user_model()(account_status=AccountStatus.ACTIVE)

    changed = user.apply_status(AccountStatus.PAST_DUE, now=now)

    assert changed == ["account_status", "past_due_since"]
    assert user.past_due_since == now


def test_leaving_past_due_clears_grace_clock():
    user = get_user_model()(account_status=AccountStatus.PAST_DUE, past_due_since=timezone.now())

    changed = user.apply_status(AccountStatus.ACTIVE)

    assert changed == ["account_status", "past_due_since"]
    assert user.past_due_since is None


def test_same_status_changes_nothing():
    started = timezone.now()
    user = get_user_model()(account_status=AccountStatus.PAST_DUE, past_due_since=started)

    assert user.apply_status(AccountStatus.PAST_DUE) == []
    assert user.past_due_since == started
