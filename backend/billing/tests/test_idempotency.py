from datetime import timedelta
from unittest import mock

import pytest
from django.db import DatabaseError
from django.utils import timezone

from billing.models import IdempotencyKey
from billing.services.idempotency import (
    check_idempotency_key,
    cleanup_expired_keys,
    generate_idempotency_key,
    hash_request_body,
    store_idempotency_response,
)

BODY = b'{"payment_method_id": "pm_123"}'


def _check(key, body=BODY, **kwargs):
    return check_idempotency_key(key, body, method="POST", path="/api/billing/subscriptions/", **kwargs)


def test_missing_key_proceeds_without_caching():
    check = _check(None)

    assert check.proceed is True
    assert check.record is None


def test_malformed_key_is_rejected():
    check = _check("not-a-uuid")

    assert check.proceed is False
    assert check.error.status == 400
    assert check.error.code == "invalid_idempotency_key"


@pytest.mark.django_db
def test_first_use_reserves_the_key():
    key = generate_idempotency_key()

    check = _check(key)

    assert check.proceed is True
    record = IdempotencyKey.objects.get(key=key)
    assert check.record.pk == record.pk
    assert record.is_completed is False


@pytest.mark.django_db
def test_completed_key_replays_stored_response():
    key = generate_idempotency_key()
    reserved = _check(key).record
    store_idempotency_response(reserved, 201, b'{"ok": true}', "application/json")

    check = _check(key)

    assert check.proceed is False
    assert check.replay.status_code == 201
    assert check.replay.response_data == '{"ok": true}'


@pytest.mark.django_db
def test_same_key_with_different_body_conflicts():
    key = generate_idempotency_key()
    reserved = _check(key).record
    store_idempotency_response(reserved, 201, b"{}", "application/json")

    check = _check(key, body=b'{"payment_method_id": "pm_other"}')

    assert check.error.status == 409
    assert check.error.code == "idempotency_conflict"


@pytest.mark.django_db
def test_in_flight_key_is_rejected():
    key = generate_idempotency_key()
    _check(key)

    check = _check(key)

    assert check.error.status == 409
    assert check.error.code == "idempotency_in_progress"


@pytest.mark.django_db
def test_key_lookup_is_case_insensitive():
    key = generate_idempotency_key()
    _check(key.upper())

    assert _check(key).error.code == "idempotency_in_progress"


@pytest.mark.django_db
def test_failure_responses_are_not_cached():
    key = generate_idempotency_key()
    reserved = _check(key).record

    stored = store_idempotency_response(reserved, 502, b'{"code": "payment_provider_error"}', "application/json")

    assert stored is False
    assert not IdempotencyKey.objects.filter(key=key).exists()
    assert _check(key).proceed is True


@pytest.mark.django_db
def test_expired_key_can_be_reused_with_a_new_body():
    key = generate_idempotency_key()
    reserved = _check(key).record
    store_idempotency_response(reserved, 201, b"{}", "application/json")
    later = timezone.now() + timedelta(hours=25)

    check = _check(key, body=b'{"payment_method_id": "pm_new"}', now=later)

    assert check.proceed is True
    record = IdempotencyKey.objects.get(key=key)
    assert record.status_code is None
    assert record.request_hash == hash_request_body(b'{"payment_method_id": "pm_new"}')


@pytest.mark.django_db
def test_store_failure_fails_open():
    with mock.patch("billing.services.idempotency.IdempotencyKey") as key_model:
        key_model.objects.get_or_create.side_effect = DatabaseError("store unavailable")
        check = _check(generate_idempotency_key())

    assert check.proceed is True
    assert check.record is None


def test_request_hash_ignores_json_key_order_and_whitespace():
    assert hash_request_body(b'{"a": 1, "b": 2}') == hash_request_body(b'{"b":2,"a":1}')
    assert hash_request_body(b"plain") != hash_request_body(b"other")


@pytest.mark.django_db
def test_cleanup_deletes_only_expired_keys():
    now = timezone.now()
    _check(generate_idempotency_key(), now=now - timedelta(hours=48))
    fresh_key = generate_idempotency_key()
    _check(fresh_key, now=now)

    deleted = cleanup_expired_keys(now=now)

    assert deleted == 1
    assert list(IdempotencyKey.objects.values_list("key", flat=True)) == [fresh_key]
