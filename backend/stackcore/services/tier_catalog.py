"""Tier catalog: Stripe price ids per (product, billing cycle).

WHAT:
    Maps every catalog tier to its Stripe price id, resolves price ids back to
    tiers, and exposes the rank order used to classify a change as an upgrade
    or a downgrade.

WHY:
    Price ids differ between Stripe test and live mode, so they come from
    settings rather than code. CUSTOM is deliberately absent: it is what the
    classifier reports for a price this catalog does not know.

REFERENCES:
    - stackcore/deps.py: STRIPE_PRICE_* settings
    - stackcore/services/transition_validator.py: consumes the ranks
"""

from typing import Dict, Iterator, Optional, Tuple

from stackcore.models import BillingCycleEnum, ProductEnum
from stackcore.services.billing_errors import NoPriceMappingError


Tier = Tuple[ProductEnum, BillingCycleEnum]

PRODUCT_RANK: Dict[ProductEnum, int] = {
    ProductEnum.BASIC: 0,
    ProductEnum.PRO: 1,
    ProductEnum.PREMIUM: 2,
}

CYCLE_RANK: Dict[BillingCycleEnum, int] = {
    BillingCycleEnum.MONTHLY: 0,
    BillingCycleEnum.YEARLY: 1,
}


class TierCatalog:
    """Bidirectional mapping between tiers and Stripe price ids."""

    def __init__(self, prices: Dict[Tier, str]):
        for product, _cycle in prices:
            if product == ProductEnum.CUSTOM:
                raise ValueError("CUSTOM cannot have a catalog price")

        self._prices: Dict[Tier, str] = dict(prices)
        self._tiers_by_price: Dict[str, Tier] = {}
        for tier, price_id in self._prices.items():
            if price_id in self._tiers_by_price:
                raise ValueError(f"Price {price_id} is mapped to more than one tier")
            self._tiers_by_price[price_id] = tier

    @classmethod
    def from_settings(cls, settings) -> "TierCatalog":
        """Build the catalog from STRIPE_PRICE_<PRODUCT>_<CYCLE> settings."""
        prices: Dict[Tier, str] = {}
        for product in PRODUCT_RANK:
            for cycle in CYCLE_RANK:
                price_id = getattr(settings, f"STRIPE_PRICE_{product.value}_{cycle.value}", None)
                if price_id:
                    prices[(product, cycle)] = price_id
        return cls(prices)

    def price_id_for(self, product: ProductEnum, billing_cycle: BillingCycleEnum) -> str:
        try:
            return self._prices[(product, billing_cycle)]
        except KeyError:
            raise NoPriceMappingError(product, billing_cycle)

    def lookup(self, price_id: Optional[str]) -> Optional[Tier]:
        """Reverse lookup; None when the price is not in the catalog."""
        if not price_id:
            return None
        return self._tiers_by_price.get(price_id)

    def tiers(self) -> Iterator[Tier]:
        return iter(self._prices)

    @staticmethod
    def product_rank(product: ProductEnum) -> int:
        # CUSTOM is unordered, so asking for its rank is a caller bug
        try:
            return PRODUCT_RANK[product]
        except KeyError:
            raise NoPriceMappingError(product)

    @staticmethod
    def cycle_rank(billing_cycle: BillingCycleEnum) -> int:
        return CYCLE_RANK[billing_cycle]
