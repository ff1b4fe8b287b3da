"""Stripe billing client.

WHAT:
    Thin adapter over the Stripe API for the subscription lifecycle engine:
    customers, subscriptions, subscription items, billing portal sessions,
    metered usage and webhook verification.

WHY:
    Each instance carries its own `stripe.StripeClient` (API key, base URL,
    timeout) instead of configuring the module-level `stripe.api_key`, so
    services receive it by injection and tests swap in a fake. Every SDK
    error is re-raised as BillingProviderError so callers handle one type.

    All objects are returned as plain dicts, which is what the classifier
    and the reconciler (fed by raw webhook JSON) both consume.

REFERENCES:
    - stackcore/deps.py: get_billing_client builds this from Settings
    - stackcore/tests/conftest.py: FakeBillingClient mirrors this interface
"""

import json
import logging
import time
from typing import Any, Dict, Optional

import stripe

from stackcore.models import BillingCycleEnum, ProductEnum
from stackcore.services.billing_errors import BillingProviderError, WebhookSignatureError
from stackcore.services.subscription_classifier import SCHEDULED_BILLING_CYCLE_KEY, SCHEDULED_PRODUCT_KEY
from stackcore.services.tier_catalog import TierCatalog

logger = logging.getLogger(__name__)


def _as_dict(obj: Any) -> Optional[Dict[str, Any]]:
    if obj is None or isinstance(obj, dict):
        return obj
    return obj.to_dict()


def _request_options(idempotency_key: Optional[str]) -> Dict[str, Any]:
    options: Dict[str, Any] = {}
    if idempotency_key:
        options["idempotency_key"] = idempotency_key
    return options


def _id_of(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


class StripeBillingClient:
    """Stripe adapter used by the subscription service and webhook reconciler.

    Usage:
        ```python
        client = StripeBillingClient(api_key="sk_test_...", catalog=catalog)
        customer = client.create_customer(workspace.id, workspace.name)
        subscription = client.create_subscription(customer["id"], ProductEnum.BASIC, BillingCycleEnum.MONTHLY)
        ```
    """

    def __init__(
        self,
        api_key: str,
        catalog: TierCatalog,
        api_base: Optional[str] = None,
        timeout: int = 30,
        max_network_retries: int = 2,
        usage_meter_id: Optional[str] = None,
    ):
        base_addresses = {"api": api_base} if api_base else {}
        self._stripe = stripe.StripeClient(
            api_key,
            base_addresses=base_addresses,
            max_network_retries=max_network_retries,
            http_client=stripe.RequestsClient(timeout=timeout),
        )
        self.catalog = catalog
        self.usage_meter_id = usage_meter_id

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def create_customer(self, workspace_id, workspace_name: str) -> Dict[str, Any]:
        try:
            customer = self._stripe.v1.customers.create(
                params={
                    "name": workspace_name,
                    "metadata": {
                        "workspace_id": str(workspace_id),
                        "workspace_name": workspace_name,
                    },
                },
            )
        except stripe.StripeError as exc:
            logger.warning(f"[STRIPE] Failed to create customer for workspace {workspace_id}: {exc}")
            raise BillingProviderError(str(exc), operation="create_customer") from exc

        logger.info(f"[STRIPE] Created customer {customer.id} for workspace {workspace_id}")
        return _as_dict(customer)

    def get_customer(self, customer_id: str) -> Dict[str, Any]:
        try:
            customer = self._stripe.v1.customers.retrieve(customer_id)
        except stripe.StripeError as exc:
            logger.warning(f"[STRIPE] Failed to retrieve customer {customer_id}: {exc}")
            raise BillingProviderError(str(exc), operation="get_customer") from exc
        return _as_dict(customer)

    @staticmethod
    def has_default_payment_method(
        customer: Optional[Dict[str, Any]],
        subscription: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """True when a charge method is on file for the subscription or customer.

        Checks subscription.default_payment_method first, then
        customer.invoice_settings.default_payment_method, then the legacy
        customer.default_source.
        """
        if subscription and _id_of(subscription.get("default_payment_method")):
            return True
        if not customer:
            return False
        invoice_settings = customer.get("invoice_settings") or {}
        if _id_of(invoice_settings.get("default_payment_method")):
            return True
        return bool(_id_of(customer.get("default_source")))

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def create_subscription(
        self,
        customer_id: str,
        product: ProductEnum,
        billing_cycle: BillingCycleEnum,
        threshold: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a single-item subscription at the catalog price for the tier.

        `threshold` sets a usage threshold on the item so usage is invoiced
        before the period ends. It is used for customers without a card on
        file and removed once one exists.
        """
        price_id = self.catalog.price_id_for(product, billing_cycle)

        item: Dict[str, Any] = {"price": price_id}
        if threshold:
            item["billing_thresholds"] = {"usage_gte": threshold}

        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [item],
            "metadata": metadata or {},
        }

        try:
            subscription = self._stripe.v1.subscriptions.create(
                params=params,
                options=_request_options(idempotency_key),
            )
        except stripe.StripeError as exc:
            logger.warning(f"[STRIPE] Failed to create {product.value}/{billing_cycle.value} subscription for {customer_id}: {exc}")
            raise BillingProviderError(str(exc), operation="create_subscription") from exc

        logger.info(
            f"[STRIPE] Created subscription {subscription.id} for {customer_id}: "
            f"{product.value}/{billing_cycle.value} (threshold={threshold})"
        )
        return _as_dict(subscription)

    def get_customer_subscription(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """Return the customer's most recent live subscription, or None.

        Stripe's list endpoint excludes canceled subscriptions by default and
        returns the newest first.
        """
        try:
            subscriptions = self._stripe.v1.subscriptions.list(
                params={"customer": customer_id, "limit": 1},
            )
        except stripe.StripeError as exc:
            logger.warning(f"[STRIPE] Failed to list subscriptions for {customer_id}: {exc}")
            raise BillingProviderError(str(exc), operation="get_customer_subscription") from exc

        if not subscriptions.data:
            return None
        return _as_dict(subscriptions.data[0])

    def update_subscription_item(
        self,
        subscription_id: str,
        item_id: str,
        price_id: str,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Swap the single item's price and restart the billing cycle now.

        No proration: the customer is billed fresh from now. Any pending
        cancellation and its scheduled-change metadata are cleared.
        """
        params: Dict[str, Any] = {
            "items": [{"id": item_id, "price": price_id}],
            "proration_behavior": "none",
            "billing_cycle_anchor": "now",
            "cancel_at_period_end": False,
            # Empty string unsets a metadata key
            "metadata": {SCHEDULED_PRODUCT_KEY: "", SCHEDULED_BILLING_CYCLE_KEY: ""},
        }

        try:
            subscription = self._stripe.v1.subscriptions.update(
                subscription_id,
                params=params,
                options=_request_options(idempotency_key),
            )
        except stripe.StripeError as exc:
            logger.warning(f"[STRIPE] Failed to update subscription {subscription_id}: {exc}")
            raise BillingProviderError(str(exc), operation="update_subscription_item") from exc

        logger.info(f"[STRIPE] Subscription {subscription_id} item {item_id} moved to price {price_id}")
        return _as_dict(subscription)

    def cancel_at_period_end(
        self,
        subscription_id: str,
        scheduled_product: Optional[ProductEnum],
        scheduled_billing_cycle: Optional[BillingCycleEnum],
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Schedule the subscription to end with the current period.

        When a scheduled tier is given it is written to metadata and the
        webhook reconciler materializes it after `customer.subscription.deleted`.
        Without one the metadata is cleared and the workspace churns.
        """
        metadata = {
            SCHEDULED_PRODUCT_KEY: scheduled_product.value if scheduled_product else "",
            SCHEDULED_BILLING_CYCLE_KEY: scheduled_billing_cycle.value if scheduled_billing_cycle else "",
        }

        try:
            subscription = self._stripe.v1.subscriptions.update(
                subscription_id,
                params={"cancel_at_period_end": True, "metadata": metadata},
                options=_request_options(idempotency_key),
            )
        except stripe.StripeError as exc:
            logger.warning(f"[STRIPE] Failed to schedule cancellation of {subscription_id}: {exc}")
            raise BillingProviderError(str(exc), operation="cancel_at_period_end") from exc

        logger.info(f"[STRIPE] Subscription {subscription_id} cancels at period end, scheduled={metadata}")
        return _as_dict(subscription)

    def remove_billing_threshold(self, item_id: str) -> Dict[str, Any]:
        try:
            item = self._stripe.v1.subscription_items.update(
                item_id,
                params={"billing_thresholds": ""},
            )
        except stripe.StripeError as exc:
            logger.warning(f"[STRIPE] Failed to remove billing threshold from item {item_id}: {exc}")
            raise BillingProviderError(str(exc), operation="remove_billing_threshold") from exc

        logger.info(f"[STRIPE] Removed billing threshold from item {item_id}")
        return _as_dict(item)

    # ------------------------------------------------------------------
    # Billing portal
    # ------------------------------------------------------------------

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        return self._portal_session(customer_id, {"customer": customer_id, "return_url": return_url})

    def create_payment_method_portal_session(self, customer_id: str, return_url: str) -> str:
        """Portal session that opens directly on the payment method update flow."""
        return self._portal_session(
            customer_id,
            {
                "customer": customer_id,
                "return_url": return_url,
                "flow_data": {"type": "payment_method_update"},
            },
        )

    def _portal_session(self, customer_id: str, params: Dict[str, Any]) -> str:
        try:
            session = self._stripe.v1.billing_portal.sessions.create(params=params)
        except stripe.StripeError as exc:
            logger.warning(f"[STRIPE] Failed to create portal session for {customer_id}: {exc}")
            raise BillingProviderError(str(exc), operation="create_portal_session") from exc
        return session.url

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    def get_current_usage(self, customer_id: str, subscription: Dict[str, Any]) -> float:
        """Sum the meter's usage for the customer over the current period.

        Returns 0 when no usage meter is configured.
        """
        if not self.usage_meter_id:
            return 0

        items = (subscription.get("items") or {}).get("data") or [{}]
        start_time = subscription.get("current_period_start") or items[0].get("current_period_start")
        if not start_time:
            return 0

        # Summary bounds must fall on minute boundaries
        start_time = int(start_time) // 60 * 60
        end_time = (int(time.time()) // 60 + 1) * 60

        try:
            summaries = self._stripe.v1.billing.meters.event_summaries.list(
                self.usage_meter_id,
                params={"customer": customer_id, "start_time": start_time, "end_time": end_time},
            )
        except stripe.StripeError as exc:
            logger.warning(f"[STRIPE] Failed to read usage for {customer_id}: {exc}")
            raise BillingProviderError(str(exc), operation="get_current_usage") from exc

        return sum(summary.aggregated_value for summary in summaries.data)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_and_parse_webhook(self, raw_body: bytes, signature_header: Optional[str], secret: str) -> Dict[str, Any]:
        """Verify the Stripe-Signature header and return the event as a dict.

        Raises WebhookSignatureError for a missing or bad signature and for a
        payload that is not valid JSON.
        """
        if not signature_header:
            raise WebhookSignatureError("Stripe-Signature header is missing")

        try:
            self._stripe.construct_event(raw_body, signature_header, secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning(f"[WEBHOOK] Signature verification failed: {exc}")
            raise WebhookSignatureError("Invalid signature") from exc
        except ValueError as exc:
            logger.warning(f"[WEBHOOK] Malformed payload: {exc}")
            raise WebhookSignatureError("Malformed payload") from exc

        return json.loads(raw_body)
