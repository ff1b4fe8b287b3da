"""Stripe client tests

WHAT: Request parameters sent to the Stripe SDK, error wrapping, webhook
      signature verification
WHY: The adapter is the only code that talks to Stripe; these tests pin the
     exact parameters (no proration, cycle anchor, metadata keys) without
     touching the network
REFERENCES:
    - stackcore/services/stripe_client.py
    - https://docs.stripe.com/webhooks#verify-manually
"""

import hashlib
import hmac
import json
import time
from unittest.mock import MagicMock

import pytest
import stripe

from stackcore.models import BillingCycleEnum, ProductEnum
from stackcore.services.billing_errors import BillingProviderError, WebhookSignatureError
from stackcore.services.stripe_client import StripeBillingClient

WEBHOOK_SECRET = "whsec_test_secret"


def stripe_object(data):
    """Mimic a StripeObject: attribute access plus to_dict()."""
    obj = MagicMock()
    obj.to_dict.return_value = data
    for key, value in data.items():
        setattr(obj, key, value)
    return obj


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def billing_client(catalog):
    return StripeBillingClient(api_key="sk_test_123", catalog=catalog)


@pytest.fixture
def sdk(billing_client):
    """Replace the underlying StripeClient with a mock."""
    mock = MagicMock()
    billing_client._stripe = mock
    return mock


class TestCustomers:

    def test_create_customer(self, billing_client, sdk):
        sdk.v1.customers.create.return_value = stripe_object({"id": "cus_1", "object": "customer"})

        customer = billing_client.create_customer("ws-1", "Acme")

        assert customer == {"id": "cus_1", "object": "customer"}
        sdk.v1.customers.create.assert_called_once_with(
            params={"name": "Acme", "metadata": {"workspace_id": "ws-1", "workspace_name": "Acme"}},
        )

    def test_error_is_wrapped(self, billing_client, sdk):
        sdk.v1.customers.retrieve.side_effect = stripe.APIConnectionError("connection reset")

        with pytest.raises(BillingProviderError) as exc_info:
            billing_client.get_customer("cus_1")
        assert exc_info.value.operation == "get_customer"


class TestDefaultPaymentMethod:

    def test_subscription_default_wins(self):
        assert StripeBillingClient.has_default_payment_method({}, {"default_payment_method": "pm_1"})

    def test_invoice_settings_default(self):
        customer = {"invoice_settings": {"default_payment_method": {"id": "pm_1"}}}
        assert StripeBillingClient.has_default_payment_method(customer)

    def test_legacy_default_source(self):
        assert StripeBillingClient.has_default_payment_method({"default_source": "card_1"})

    def test_nothing_on_file(self):
        customer = {"invoice_settings": {"default_payment_method": None}, "default_source": None}
        assert not StripeBillingClient.has_default_payment_method(customer, {"default_payment_method": None})
        assert not StripeBillingClient.has_default_payment_method(None)


class TestSubscriptions:

    def test_create_with_threshold(self, billing_client, sdk):
        sdk.v1.subscriptions.create.return_value = stripe_object({"id": "sub_1", "status": "active"})

        billing_client.create_subscription(
            "cus_1", ProductEnum.BASIC, BillingCycleEnum.MONTHLY, threshold=1000, idempotency_key="boot-1"
        )

        sdk.v1.subscriptions.create.assert_called_once_with(
            params={
                "customer": "cus_1",
                "items": [{"price": "price_basic_monthly", "billing_thresholds": {"usage_gte": 1000}}],
                "metadata": {},
            },
            options={"idempotency_key": "boot-1"},
        )

    def test_create_without_threshold(self, billing_client, sdk):
        sdk.v1.subscriptions.create.return_value = stripe_object({"id": "sub_1", "status": "active"})

        billing_client.create_subscription("cus_1", ProductEnum.PRO, BillingCycleEnum.YEARLY)

        params = sdk.v1.subscriptions.create.call_args.kwargs["params"]
        assert params["items"] == [{"price": "price_pro_yearly"}]
        assert sdk.v1.subscriptions.create.call_args.kwargs["options"] == {}

    def test_latest_subscription(self, billing_client, sdk):
        sdk.v1.subscriptions.list.return_value = MagicMock(data=[stripe_object({"id": "sub_2"})])

        assert billing_client.get_customer_subscription("cus_1") == {"id": "sub_2"}
        sdk.v1.subscriptions.list.assert_called_once_with(params={"customer": "cus_1", "limit": 1})

    def test_no_subscription(self, billing_client, sdk):
        sdk.v1.subscriptions.list.return_value = MagicMock(data=[])

        assert billing_client.get_customer_subscription("cus_1") is None

    def test_upgrade_swaps_price_without_proration(self, billing_client, sdk):
        sdk.v1.subscriptions.update.return_value = stripe_object({"id": "sub_1"})

        billing_client.update_subscription_item("sub_1", "si_1", "price_pro_monthly", idempotency_key="req-1")

        sdk.v1.subscriptions.update.assert_called_once_with(
            "sub_1",
            params={
                "items": [{"id": "si_1", "price": "price_pro_monthly"}],
                "proration_behavior": "none",
                "billing_cycle_anchor": "now",
                "cancel_at_period_end": False,
                "metadata": {"scheduled_product": "", "scheduled_billing_cycle": ""},
            },
            options={"idempotency_key": "req-1"},
        )

    def test_schedule_downgrade(self, billing_client, sdk):
        sdk.v1.subscriptions.update.return_value = stripe_object({"id": "sub_1"})

        billing_client.cancel_at_period_end("sub_1", ProductEnum.BASIC, BillingCycleEnum.YEARLY)

        sdk.v1.subscriptions.update.assert_called_once_with(
            "sub_1",
            params={
                "cancel_at_period_end": True,
                "metadata": {"scheduled_product": "BASIC", "scheduled_billing_cycle": "YEARLY"},
            },
            options={},
        )

    def test_plain_cancellation_clears_metadata(self, billing_client, sdk):
        sdk.v1.subscriptions.update.return_value = stripe_object({"id": "sub_1"})

        billing_client.cancel_at_period_end("sub_1", None, None)

        params = sdk.v1.subscriptions.update.call_args.kwargs["params"]
        assert params["metadata"] == {"scheduled_product": "", "scheduled_billing_cycle": ""}

    def test_remove_billing_threshold(self, billing_client, sdk):
        sdk.v1.subscription_items.update.return_value = stripe_object({"id": "si_1"})

        billing_client.remove_billing_threshold("si_1")

        sdk.v1.subscription_items.update.assert_called_once_with("si_1", params={"billing_thresholds": ""})

    def test_update_error_is_wrapped(self, billing_client, sdk):
        sdk.v1.subscriptions.update.side_effect = stripe.InvalidRequestError("No such subscription", param="id")

        with pytest.raises(BillingProviderError) as exc_info:
            billing_client.update_subscription_item("sub_x", "si_x", "price_pro_monthly")
        assert exc_info.value.operation == "update_subscription_item"


class TestPortalAndUsage:

    def test_portal_session(self, billing_client, sdk):
        sdk.v1.billing_portal.sessions.create.return_value = MagicMock(url="https://billing.stripe.com/p/1")

        url = billing_client.create_portal_session("cus_1", "https://app.test/billing")

        assert url == "https://billing.stripe.com/p/1"
        sdk.v1.billing_portal.sessions.create.assert_called_once_with(
            params={"customer": "cus_1", "return_url": "https://app.test/billing"},
        )

    def test_payment_method_portal_session(self, billing_client, sdk):
        sdk.v1.billing_portal.sessions.create.return_value = MagicMock(url="https://billing.stripe.com/p/2")

        billing_client.create_payment_method_portal_session("cus_1", "https://app.test/billing")

        params = sdk.v1.billing_portal.sessions.create.call_args.kwargs["params"]
        assert params["flow_data"] == {"type": "payment_method_update"}

    def test_usage_without_meter_is_zero(self, billing_client, sdk):
        assert billing_client.get_current_usage("cus_1", {"current_period_start": 1_760_000_000}) == 0
        sdk.v1.billing.meters.event_summaries.list.assert_not_called()

    def test_usage_sums_meter_summaries(self, catalog):
        billing_client = StripeBillingClient(api_key="sk_test_123", catalog=catalog, usage_meter_id="mtr_1")
        sdk = MagicMock()
        billing_client._stripe = sdk
        sdk.v1.billing.meters.event_summaries.list.return_value = MagicMock(
            data=[MagicMock(aggregated_value=3.0), MagicMock(aggregated_value=4.5)]
        )

        usage = billing_client.get_current_usage("cus_1", {"current_period_start": 1_760_000_037})

        assert usage == 7.5
        args, kwargs = sdk.v1.billing.meters.event_summaries.list.call_args
        assert args == ("mtr_1",)
        assert kwargs["params"]["customer"] == "cus_1"
        assert kwargs["params"]["start_time"] % 60 == 0
        assert kwargs["params"]["end_time"] % 60 == 0
        assert kwargs["params"]["start_time"] <= 1_760_000_037 < kwargs["params"]["end_time"]


class TestWebhookVerification:

    def test_valid_signature(self, billing_client):
        payload = json.dumps({"id": "evt_1", "object": "event", "type": "invoice.paid", "data": {"object": {}}}).encode()

        event = billing_client.verify_and_parse_webhook(payload, sign(payload), WEBHOOK_SECRET)

        assert event["id"] == "evt_1"
        assert event["type"] == "invoice.paid"

    def test_wrong_secret(self, billing_client):
        payload = b'{"id": "evt_1", "object": "event"}'

        with pytest.raises(WebhookSignatureError):
            billing_client.verify_and_parse_webhook(payload, sign(payload, secret="whsec_other"), WEBHOOK_SECRET)

    def test_tampered_body(self, billing_client):
        payload = b'{"id": "evt_1", "object": "event"}'
        header = sign(payload)

        with pytest.raises(WebhookSignatureError):
            billing_client.verify_and_parse_webhook(b'{"id": "evt_2", "object": "event"}', header, WEBHOOK_SECRET)

    def test_missing_header(self, billing_client):
        with pytest.raises(WebhookSignatureError):
            billing_client.verify_and_parse_webhook(b"{}", None, WEBHOOK_SECRET)

    def test_signed_but_not_json(self, billing_client):
        payload = b"not json"

        with pytest.raises(WebhookSignatureError):
            billing_client.verify_and_parse_webhook(payload, sign(payload), WEBHOOK_SECRET)
