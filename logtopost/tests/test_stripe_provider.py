"""
StripeProvider: webhook signature verification and event normalization
across Stripe API versions. No network; SDK calls are patched.
"""
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest
import stripe

from logtopost.features.billing.provider import BillingPaymentError, BillingProviderError, BillingWebhookError
from logtopost.features.billing.stripe_provider import StripeProvider, _timestamp
from logtopost.features.entitlements.transitions import EventKind

SECRET = "whsec_test_secret"
EPOCH = 1773144000  # 2026-03-10T12:00:00Z


def _provider():
    return StripeProvider("sk_test_dummy", SECRET)


def _sign(body: str, secret: str = SECRET, timestamp=None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{body}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _payload(event_type, obj, event_id="evt_1", created=EPOCH):
    return json.dumps({"id": event_id, "type": event_type, "created": created, "data": {"object": obj}})


def test_requires_secret_key():
    with pytest.raises(BillingProviderError):
        StripeProvider(None)


def test_valid_signature_parses_event():
    body = _payload("customer.subscription.updated", {
        "id": "sub_1",
        "customer": "cus_1",
        "status": "active",
        "current_period_start": EPOCH,
        "current_period_end": EPOCH + 30 * 86400,
        "metadata": {"user_id": "u1"},
    })
    event = _provider().construct_event(body.encode("utf-8"), _sign(body))

    assert event.event_id == "evt_1"
    assert event.kind == EventKind.SUBSCRIPTION_UPDATED
    assert event.occurred_at == datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
    assert event.subscription_ref == "sub_1"
    assert event.customer_ref == "cus_1"
    assert event.user_id == "u1"
    assert event.provider_status == "active"
    assert event.period_end == event.occurred_at + timedelta(days=30)


def test_tampered_body_rejected():
    body = _payload("invoice.payment_failed", {"customer": "cus_1"})
    signature = _sign(body)
    tampered = body.replace("cus_1", "cus_2")
    with pytest.raises(BillingWebhookError):
        _provider().construct_event(tampered.encode("utf-8"), signature)


def test_wrong_secret_and_missing_header_rejected():
    body = _payload("invoice.payment_failed", {"customer": "cus_1"})
    with pytest.raises(BillingWebhookError):
        _provider().construct_event(body.encode("utf-8"), _sign(body, secret="whsec_other"))
    with pytest.raises(BillingWebhookError):
        _provider().construct_event(body.encode("utf-8"), None)


def test_expired_signature_rejected():
    body = _payload("invoice.payment_failed", {"customer": "cus_1"})
    old = int(time.time()) - 3600
    with pytest.raises(BillingWebhookError):
        _provider().construct_event(body.encode("utf-8"), _sign(body, timestamp=old))


def test_missing_webhook_secret_rejected():
    body = _payload("invoice.payment_failed", {"customer": "cus_1"})
    with pytest.raises(BillingWebhookError):
        StripeProvider("sk_test_dummy").construct_event(body.encode("utf-8"), _sign(body))


def test_signed_body_without_event_id_rejected():
    body = json.dumps({"type": "invoice.payment_failed", "data": {"object": {}}})
    with pytest.raises(BillingWebhookError):
        _provider().construct_event(body.encode("utf-8"), _sign(body))


def test_checkout_event_falls_back_to_client_reference_id():
    event = _provider()._parse_event(json.loads(_payload("checkout.session.completed", {
        "customer": "cus_1",
        "subscription": "sub_1",
        "mode": "subscription",
        "client_reference_id": "u1",
        "metadata": {},
    })))
    assert event.kind == EventKind.CHECKOUT_COMPLETED
    assert event.user_id == "u1"
    assert event.subscription_ref == "sub_1"
    assert event.mode == "subscription"


def test_subscription_period_read_from_items_on_newer_api_versions():
    event = _provider()._parse_event(json.loads(_payload("customer.subscription.updated", {
        "id": "sub_1",
        "customer": {"id": "cus_1"},
        "status": "trialing",
        "trial_end": EPOCH + 86400,
        "items": {"data": [{"current_period_start": EPOCH, "current_period_end": EPOCH + 86400}]},
    })))
    assert event.customer_ref == "cus_1"
    assert event.period_start == datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
    assert event.trial_end == event.period_end


def test_invoice_subscription_under_parent_details():
    event = _provider()._parse_event(json.loads(_payload("invoice.payment_succeeded", {
        "customer": "cus_1",
        "amount_paid": 999,
        "parent": {"subscription_details": {"subscription": "sub_9"}},
        "lines": {"data": [{"period": {"start": EPOCH, "end": EPOCH + 30 * 86400}}]},
    })))
    assert event.subscription_ref == "sub_9"
    assert event.period_start == datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
    assert event.raw["amount_paid"] == 999


def test_malformed_period_timestamps_become_none():
    event = _provider()._parse_event(json.loads(_payload("customer.subscription.updated", {
        "id": "sub_1",
        "customer": "cus_1",
        "status": "active",
        "current_period_end": "not-a-number",
    }, created=None)))
    assert event.period_end is None
    assert event.occurred_at is None


@pytest.mark.parametrize("value", [None, 0, -5, "abc", True, 1e20])
def test_timestamp_rejects_malformed_values(value):
    assert _timestamp(value) is None


def test_checkout_session_includes_trial_when_long_enough():
    trial_end = datetime.now(timezone.utc) + timedelta(days=5)
    with mock.patch("stripe.checkout.Session.create") as create:
        create.return_value = mock.Mock(url="https://checkout.stripe.com/c/pay/cs_1")
        url = _provider().create_checkout_session(
            "cus_1", "price_1", "https://ok", "https://cancel", metadata={"user_id": "u1"}, trial_end=trial_end,
        )
    assert url == "https://checkout.stripe.com/c/pay/cs_1"
    kwargs = create.call_args.kwargs
    assert kwargs["subscription_data"]["trial_end"] == int(trial_end.timestamp())
    assert kwargs["client_reference_id"] == "u1"
    assert kwargs["mode"] == "subscription"


def test_checkout_session_omits_trial_shorter_than_48_hours():
    trial_end = datetime.now(timezone.utc) + timedelta(hours=20)
    with mock.patch("stripe.checkout.Session.create") as create:
        create.return_value = mock.Mock(url="https://checkout.stripe.com/c/pay/cs_2")
        _provider().create_checkout_session("cus_1", "price_1", "https://ok", "https://cancel", trial_end=trial_end)
    assert "trial_end" not in create.call_args.kwargs["subscription_data"]


def test_stripe_errors_become_provider_errors():
    with mock.patch("stripe.Customer.list", side_effect=stripe.APIConnectionError("timeout")):
        with pytest.raises(BillingProviderError):
            _provider().has_subscription_history("a@example.com")


def test_declined_card_is_a_payment_error():
    declined = stripe.CardError("Your card was declined.", param=None, code="card_declined")
    with mock.patch("stripe.Subscription.create", side_effect=declined):
        with pytest.raises(BillingPaymentError):
            _provider().create_subscription("cus_1", "price_1", "pm_1")
