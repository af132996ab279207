from unittest import mock

import pytest
import stripe

from billing.services import stripe_payments
from billing.services.stripe_payments import StripeConfigurationError, StripeServiceError


@pytest.fixture(autouse=True)
def stripe_settings(settings):
    settings.STRIPE_SECRET_KEY = "sk_test_123"
    settings.STRIPE_API_VERSION = ""
    settings.STRIPE_MONTHLY_PRICE_ID = "price_monthly"
    return settings


def test_subscription_is_created_without_stripe_idempotency_key():
    with mock.patch.object(stripe.Subscription, "create", return_value={"id": "sub_1", "status": "active"}) as create:
        subscription = stripe_payments.create_subscription("cus_1", user_id="user-1")

    assert subscription["id"] == "sub_1"
    kwargs = create.call_args.kwargs
    assert "idempotency_key" not in kwargs
    assert kwargs["items"] == [{"price": "price_monthly"}]
    assert kwargs["metadata"] == {"user_id": "user-1"}


def test_declined_subscription_can_be_retried():
    declined = stripe.CardError("Your card was declined.", param=None, code="card_declined")
    with mock.patch.object(stripe.Subscription, "create", side_effect=[declined, {"id": "sub_2"}]) as create:
        with pytest.raises(StripeServiceError):
            stripe_payments.create_subscription("cus_1", user_id="user-1")
        subscription = stripe_payments.create_subscription("cus_1", user_id="user-1")

    assert subscription["id"] == "sub_2"
    assert create.call_count == 2


def test_missing_price_is_a_configuration_error(settings):
    settings.STRIPE_MONTHLY_PRICE_ID = ""

    with pytest.raises(StripeConfigurationError):
        stripe_payments.create_subscription("cus_1", user_id="user-1")


def test_cancel_keeps_access_until_period_end():
    with mock.patch.object(stripe.Subscription, "modify", return_value={"id": "sub_1"}) as modify:
        stripe_payments.cancel_subscription_at_period_end("sub_1")

    modify.assert_called_once_with("sub_1", cancel_at_period_end=True)


def test_replacing_card_detaches_the_previous_one():
    with mock.patch.object(stripe.PaymentMethod, "attach") as attach, \
            mock.patch.object(stripe.Customer, "modify") as modify, \
            mock.patch.object(stripe.PaymentMethod, "detach") as detach:
        stripe_payments.replace_default_payment_method("cus_1", "pm_new", "pm_old")

    attach.assert_called_once_with("pm_new", customer="cus_1")
    modify.assert_called_once_with("cus_1", invoice_settings={"default_payment_method": "pm_new"})
    detach.assert_called_once_with("pm_old")


def test_detach_failure_does_not_undo_card_replacement():
    with mock.patch.object(stripe.PaymentMethod, "attach"), \
            mock.patch.object(stripe.Customer, "modify"), \
            mock.patch.object(stripe.PaymentMethod, "detach", side_effect=stripe.InvalidRequestError("gone", param=None)):
        stripe_payments.replace_default_payment_method("cus_1", "pm_new", "pm_old")


def test_attach_failure_is_a_service_error():
    with mock.patch.object(stripe.PaymentMethod, "attach", side_effect=stripe.CardError("declined", None, "card_declined")):
        with pytest.raises(StripeServiceError):
            stripe_payments.replace_default_payment_method("cus_1", "pm_new", "pm_old")


def test_listed_cards_are_plain_dicts():
    listing = {"object": "list", "data": [{"id": "pm_1", "card": {"brand": "visa", "last4": "4242"}}]}
    with mock.patch.object(stripe.PaymentMethod, "list", return_value=listing) as listed:
        methods = stripe_payments.list_card_payment_methods("cus_1")

    listed.assert_called_once_with(customer="cus_1", type="card")
    assert stripe_payments.summarize_payment_method(methods[0]) == {
        "id": "pm_1",
        "brand": "visa",
        "last4": "4242",
        "exp_month": None,
        "exp_year": None,
    }
