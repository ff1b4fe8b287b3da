"""Subscription classifier.

WHAT:
    Projects a Stripe subscription object onto the tiering model: which
    (product, billing cycle) it is on, whether a downgrade is scheduled, and
    the ids the change protocol needs (subscription id, item id).

WHY:
    The projection is recomputed from Stripe on every read and never stored,
    so there is no local copy to go stale. Both the subscription service and
    the webhook reconciler classify through this one function.

REFERENCES:
    - stackcore/services/tier_catalog.py: reverse price lookup
    - stackcore/services/stripe_client.py: writes the scheduled-change metadata
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Tuple

from stackcore.models import BillingCycleEnum, ProductEnum
from stackcore.services.billing_errors import InvalidScheduledMetadata, MultiItemSubscriptionError
from stackcore.services.tier_catalog import TierCatalog


SCHEDULED_PRODUCT_KEY = "scheduled_product"
SCHEDULED_BILLING_CYCLE_KEY = "scheduled_billing_cycle"


@dataclass(frozen=True)
class ClassifiedSubscription:
    subscription_id: Optional[str]
    customer_id: Optional[str]
    status: str
    item_id: Optional[str]
    price_id: Optional[str]
    product: ProductEnum
    billing_cycle: Optional[BillingCycleEnum]  # None only for CUSTOM
    has_billing_threshold: bool
    default_payment_method: Optional[str]
    cancel_at: Optional[datetime] = None
    scheduled_product: Optional[ProductEnum] = None
    scheduled_billing_cycle: Optional[BillingCycleEnum] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None

    @property
    def has_scheduled_change(self) -> bool:
        return self.scheduled_product is not None


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _single_item(subscription: Mapping[str, Any]) -> Mapping[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    if len(items) != 1:
        raise MultiItemSubscriptionError(subscription.get("id"), len(items))
    return items[0]


def _price_id(item: Mapping[str, Any]) -> Optional[str]:
    price = item.get("price")
    if isinstance(price, str):
        return price
    if price:
        return price.get("id")
    # Legacy API versions expose `plan` instead of `price`
    plan = item.get("plan") or {}
    return plan.get("id")


def _id_of(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


def parse_scheduled_change(
    metadata: Optional[Mapping[str, Any]],
) -> Optional[Tuple[ProductEnum, BillingCycleEnum]]:
    """Read the scheduled (product, billing cycle) from subscription metadata.

    Returns None when neither key is set (a plain cancellation). Raises
    InvalidScheduledMetadata when only one key is set, or when a value is not
    a catalog product/cycle.
    """
    metadata = metadata or {}
    raw_product = metadata.get(SCHEDULED_PRODUCT_KEY) or None
    raw_cycle = metadata.get(SCHEDULED_BILLING_CYCLE_KEY) or None

    if raw_product is None and raw_cycle is None:
        return None
    if raw_product is None or raw_cycle is None:
        raise InvalidScheduledMetadata(dict(metadata), "only one of product/billing cycle is set")

    try:
        product = ProductEnum(raw_product)
        billing_cycle = BillingCycleEnum(raw_cycle)
    except ValueError:
        raise InvalidScheduledMetadata(dict(metadata), "unknown product or billing cycle")

    if product == ProductEnum.CUSTOM:
        raise InvalidScheduledMetadata(dict(metadata), "CUSTOM cannot be scheduled")

    return product, billing_cycle


def classify(subscription: Mapping[str, Any], catalog: TierCatalog) -> ClassifiedSubscription:
    """Classify a Stripe subscription against the tier catalog.

    Raises MultiItemSubscriptionError unless the subscription has exactly one
    item. An unknown price classifies as (CUSTOM, None). Scheduled-change
    metadata is only read while a cancellation is pending.
    """
    item = _single_item(subscription)
    price_id = _price_id(item)

    tier = catalog.lookup(price_id)
    if tier is None:
        product, billing_cycle = ProductEnum.CUSTOM, None
    else:
        product, billing_cycle = tier

    # Newer API versions moved the period bounds onto the item
    period_start = subscription.get("current_period_start") or item.get("current_period_start")
    period_end = subscription.get("current_period_end") or item.get("current_period_end")

    cancel_at = _timestamp(subscription.get("cancel_at"))
    if cancel_at is None and subscription.get("cancel_at_period_end"):
        cancel_at = _timestamp(period_end)

    scheduled = None
    if cancel_at is not None:
        scheduled = parse_scheduled_change(subscription.get("metadata"))

    return ClassifiedSubscription(
        subscription_id=subscription.get("id"),
        customer_id=_id_of(subscription.get("customer")),
        status=subscription.get("status"),
        item_id=item.get("id"),
        price_id=price_id,
        product=product,
        billing_cycle=billing_cycle,
        has_billing_threshold=bool(item.get("billing_thresholds")),
        default_payment_method=_id_of(subscription.get("default_payment_method")),
        cancel_at=cancel_at,
        scheduled_product=scheduled[0] if scheduled else None,
        scheduled_billing_cycle=scheduled[1] if scheduled else None,
        current_period_start=_timestamp(period_start),
        current_period_end=_timestamp(period_end),
    )
