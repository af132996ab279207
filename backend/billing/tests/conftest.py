import itertools

import pytest
from django.contrib.auth import get_user_model
from rest_framework.test import APIClient

from billing.services import notifications
from billing.tests.factories import (
    STRIPE_WEBHOOK_SECRET,
    STRIPE_WEBHOOK_URL,
    WEBHOOK_SECRET,
    WEBHOOK_URL,
    encode,
    sign,
    sign_stripe,
)


@pytest.fixture(autouse=True)
def billing_settings(settings):
    settings.BILLING_WEBHOOK_SECRET = WEBHOOK_SECRET
    settings.STRIPE_WEBHOOK_SECRET = STRIPE_WEBHOOK_SECRET
    settings.BILLING_PROVIDER_SECRET_KEY = ""
    settings.PUSH_GATEWAY_URL = ""
    settings.SMS_GATEWAY_URL = ""
    return settings


@pytest.fixture(autouse=True)
def queued_notifications(monkeypatch):
    """Capture notifications instead of sending them to the broker."""
    queued = []
    monkeypatch.setattr(
        notifications,
        "_enqueue_delivery",
        lambda user_id, payload: queued.append((user_id, payload)),
    )
    return queued


@pytest.fixture
def make_user(db):
    counter = itertools.count()
    User = get_user_model()

    def _make(**overrides):
        n = next(counter)
        fields = {
            "username": f"user{n}",
            "email": f"user{n}@example.com",
            "password": "pass1234",
        }
        fields.update(overrides)
        return User.objects.create_user(**fields)

    return _make


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def post_webhook(api_client):
    def _post(payload=None, *, body=None, signature=None):
        raw = body if body is not None else encode(payload)
        extra = {}
        if signature is None:
            extra["HTTP_X_REVENUECAT_SIGNATURE"] = sign(raw)
        elif signature:
            extra["HTTP_X_REVENUECAT_SIGNATURE"] = signature
        return api_client.post(WEBHOOK_URL, data=raw, content_type="application/json", **extra)

    return _post


@pytest.fixture
def post_stripe_webhook(api_client):
    def _post(payload=None, *, body=None, signature=None):
        raw = body if body is not None else encode(payload)
        extra = {}
        if signature is None:
            extra["HTTP_STRIPE_SIGNATURE"] = sign_stripe(raw)
        elif signature:
            extra["HTTP_STRIPE_SIGNATURE"] = signature
        return api_client.post(STRIPE_WEBHOOK_URL, data=raw, content_type="application/json", **extra)

    return _post
