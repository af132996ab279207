from datetime import datetime, timedelta, timezone as dt_timezone
from unittest import mock

import pytest
import requests

from billing.services.provider_client import (
    ProviderClient,
    ProviderConfigurationError,
    ProviderServiceError,
    SubscriptionState,
)

NOW = datetime(2026, 5, 1, tzinfo=dt_timezone.utc)


def _iso(value):
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def _client(payload=None, status_code=200, error=None):
    session = mock.create_autospec(requests.Session, instance=True)
    if error is not None:
        session.request.side_effect = error
    else:
        response = mock.Mock(status_code=status_code, content=b"{}", text="")
        response.json.return_value = payload or {}
        session.request.return_value = response
    client = ProviderClient(api_base="https://provider.test/v1", secret_key="sk_test", timeout=3, session=session)
    return client, session


def _subscriber(**subscriptions):
    return {"subscriber": {"subscriptions": subscriptions}}


def test_request_uses_bearer_auth_and_timeout():
    client, session = _client(_subscriber())

    client.get_subscriber("user 1")

    method, url = session.request.call_args.args
    assert method == "GET"
    assert url == "https://provider.test/v1/subscribers/user%201"
    assert session.request.call_args.kwargs["headers"]["Authorization"] == "Bearer sk_test"
    assert session.request.call_args.kwargs["timeout"] == 3


def test_latest_unexpired_subscription_is_active():
    client, _ = _client(
        _subscriber(
            monthly_old={"expires_date": _iso(NOW - timedelta(days=3))},
            monthly_299={"expires_date": _iso(NOW + timedelta(days=20)), "store": "APP_STORE"},
        )
    )

    details = client.get_subscription_details("user-1", now=NOW)

    assert details.state is SubscriptionState.ACTIVE
    assert details.product_id == "monthly_299"


def test_billing_issue_inside_grace_window_is_grace_period():
    client, _ = _client(
        _subscriber(
            monthly_299={
                "expires_date": _iso(NOW + timedelta(days=2)),
                "billing_issues_detected_at": _iso(NOW - timedelta(days=1)),
                "grace_period_expires_date": _iso(NOW + timedelta(days=5)),
            }
        )
    )

    assert client.get_subscription_state("user-1", now=NOW) is SubscriptionState.GRACE_PERIOD


def test_refunded_or_expired_subscriptions_mean_none():
    client, _ = _client(
        _subscriber(
            refunded={"expires_date": _iso(NOW + timedelta(days=10)), "refunded_at": _iso(NOW)},
            expired={"expires_date": _iso(NOW - timedelta(days=1))},
        )
    )

    assert client.get_subscription_state("user-1", now=NOW) is SubscriptionState.NONE


def test_http_errors_raise_service_error():
    client, _ = _client(status_code=503)

    with pytest.raises(ProviderServiceError):
        client.get_subscriber("user-1")


def test_network_errors_raise_service_error():
    client, _ = _client(error=requests.ConnectTimeout("timed out"))

    with pytest.raises(ProviderServiceError):
        client.get_subscriber("user-1")


def test_missing_key_is_a_configuration_error():
    client = ProviderClient(api_base="https://provider.test/v1", secret_key="", session=mock.Mock())

    with pytest.raises(ProviderConfigurationError):
        client.get_subscriber("user-1")


def test_from_settings_returns_none_without_secret(settings):
    settings.BILLING_PROVIDER_SECRET_KEY = ""
    assert ProviderClient.from_settings() is None

    settings.BILLING_PROVIDER_SECRET_KEY = "sk_live"
    assert ProviderClient.from_settings().secret_key == "sk_live"
