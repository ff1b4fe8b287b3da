"""Transition validator.

WHAT:
    Decides whether a requested plan change is allowed and, when it is not,
    which error code to report.

WHY:
    Upgrade and downgrade share one rule chain and differ only in direction.
    The function is pure (no DB, no Stripe) so the subscription service can
    re-run it against freshly fetched state right before calling Stripe.

RULES (first failing rule wins):
    1. Actor is a member of the workspace     -> not_a_member_of_workspace
    2. Actor is an admin                      -> not_an_admin
    3. Current product is not CUSTOM          -> cannot_change_custom_product
    4. UPGRADE: requested tier not below current -> cannot_upgrade_to_inferior_product,
       then a default payment method on file  -> cannot_upgrade_without_default_payment_method
    5. DOWNGRADE: requested tier not above current -> cannot_downgrade_to_superior_product
    6. Requested tier differs from current    -> cannot_change_to_same_product_and_billing_cycle

Tiers are compared by product rank, then by billing cycle rank.
"""

import enum
from dataclasses import dataclass
from typing import Optional

from stackcore.models import BillingCycleEnum, ProductEnum, RoleEnum
from stackcore.services.tier_catalog import TierCatalog


class Direction(str, enum.Enum):
    UPGRADE = "UPGRADE"
    DOWNGRADE = "DOWNGRADE"


class ErrorCode(str, enum.Enum):
    """Stable error codes returned to API clients as {"error": code}."""
    NOT_A_MEMBER_OF_WORKSPACE = "not_a_member_of_workspace"
    NOT_AN_ADMIN = "not_an_admin"
    CANNOT_CHANGE_CUSTOM_PRODUCT = "cannot_change_custom_product"
    CANNOT_UPGRADE_TO_INFERIOR_PRODUCT = "cannot_upgrade_to_inferior_product"
    CANNOT_DOWNGRADE_TO_SUPERIOR_PRODUCT = "cannot_downgrade_to_superior_product"
    CANNOT_CHANGE_TO_SAME_PRODUCT_AND_BILLING_CYCLE = "cannot_change_to_same_product_and_billing_cycle"
    CANNOT_UPGRADE_WITHOUT_DEFAULT_PAYMENT_METHOD = "cannot_upgrade_without_default_payment_method"
    COULD_NOT_CHANGE_SUBSCRIPTION = "could_not_change_subscription"
    CANNOT_DEACTIVATE_PERSONAL_WORKSPACE = "cannot_deactivate_personal_workspace"
    COULD_NOT_DEACTIVATE_WORKSPACE = "could_not_deactivate_workspace"


@dataclass(frozen=True)
class MembershipFacts:
    role: RoleEnum


@dataclass(frozen=True)
class CurrentPlan:
    product: ProductEnum
    billing_cycle: Optional[BillingCycleEnum]
    has_default_payment_method: bool


@dataclass(frozen=True)
class TransitionResult:
    error: Optional[ErrorCode] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _compare(catalog: TierCatalog, current: CurrentPlan, product: ProductEnum, billing_cycle: BillingCycleEnum) -> int:
    """Return -1/0/1 for requested below/equal/above current.

    Product rank decides first; billing cycle only breaks a tie on product.
    """
    product_delta = catalog.product_rank(product) - catalog.product_rank(current.product)
    if product_delta:
        return 1 if product_delta > 0 else -1
    cycle_delta = catalog.cycle_rank(billing_cycle) - catalog.cycle_rank(current.billing_cycle)
    if cycle_delta:
        return 1 if cycle_delta > 0 else -1
    return 0


def check_authorization(membership: Optional[MembershipFacts]) -> Optional[ErrorCode]:
    """Rules 1 and 2 on their own.

    Lets callers reject a non-admin before fetching anything from Stripe.
    """
    if membership is None:
        return ErrorCode.NOT_A_MEMBER_OF_WORKSPACE
    if membership.role != RoleEnum.admin:
        return ErrorCode.NOT_AN_ADMIN
    return None


def validate_transition(
    membership: Optional[MembershipFacts],
    current: CurrentPlan,
    requested_product: ProductEnum,
    requested_billing_cycle: BillingCycleEnum,
    direction: Direction,
    catalog: TierCatalog,
) -> TransitionResult:
    auth_error = check_authorization(membership)
    if auth_error is not None:
        return TransitionResult(auth_error)

    # Must run before any rank comparison: CUSTOM has no rank
    if current.product == ProductEnum.CUSTOM:
        return TransitionResult(ErrorCode.CANNOT_CHANGE_CUSTOM_PRODUCT)

    order = _compare(catalog, current, requested_product, requested_billing_cycle)

    if direction == Direction.UPGRADE:
        if order < 0:
            return TransitionResult(ErrorCode.CANNOT_UPGRADE_TO_INFERIOR_PRODUCT)
        if not current.has_default_payment_method:
            return TransitionResult(ErrorCode.CANNOT_UPGRADE_WITHOUT_DEFAULT_PAYMENT_METHOD)
    else:
        if order > 0:
            return TransitionResult(ErrorCode.CANNOT_DOWNGRADE_TO_SUPERIOR_PRODUCT)

    if order == 0:
        return TransitionResult(ErrorCode.CANNOT_CHANGE_TO_SAME_PRODUCT_AND_BILLING_CYCLE)

    return TransitionResult()
