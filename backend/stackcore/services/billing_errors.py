"""
Billing Exceptions
==================

Exception types for data-integrity violations and provider failures in the
subscription lifecycle engine.

WHY THIS FILE EXISTS
--------------------
Policy rejections (not an admin, cannot downgrade to a superior product, ...)
are ordinary outcomes and are returned as `ErrorCode` values. The errors here
are different: they mean Stripe holds data this system cannot reason about
(a hand-edited subscription, corrupt metadata, a new status) or that Stripe
could not be reached. They propagate instead of being coerced into a policy
code.

RELATED FILES
-------------
- stackcore/services/tier_catalog.py: Raises NoPriceMappingError
- stackcore/services/subscription_classifier.py: Raises MultiItemSubscriptionError,
  InvalidScheduledMetadata
- stackcore/services/access_policy.py: Raises UnknownSubscriptionStatus
- stackcore/services/stripe_client.py: Raises BillingProviderError, WebhookSignatureError
- stackcore/services/subscription_service.py: Collapses BillingProviderError
"""

from typing import Optional


class BillingIntegrityError(Exception):
    """
    Base exception for billing data-integrity violations.

    WHAT:
        Parent class for errors that indicate a bug or an out-of-band change
        in the Stripe dashboard.

    WHY:
        Lets the webhook endpoint record every integrity failure with a single
        except clause while the specific type still reaches the logs.
    """


class NoPriceMappingError(BillingIntegrityError):
    """Raised when a (product, billing cycle) pair has no catalog price.

    CUSTOM never has one: it is only ever produced by classification.
    """

    def __init__(self, product, billing_cycle=None):
        self.product = product
        self.billing_cycle = billing_cycle
        super().__init__(f"No price mapping for {product}/{billing_cycle}")


class MultiItemSubscriptionError(BillingIntegrityError):
    """Raised when a subscription does not carry exactly one line item."""

    def __init__(self, subscription_id: Optional[str], item_count: int):
        self.subscription_id = subscription_id
        self.item_count = item_count
        super().__init__(
            f"Subscription {subscription_id} has {item_count} items, expected exactly 1"
        )


class InvalidScheduledMetadata(BillingIntegrityError):
    """Raised when scheduled-change metadata is present but unusable."""

    def __init__(self, metadata: dict, reason: str):
        self.metadata = metadata
        self.reason = reason
        super().__init__(f"Invalid scheduled change metadata ({reason}): {metadata}")


class UnknownSubscriptionStatus(BillingIntegrityError):
    """Raised for a Stripe subscription status that has not been triaged."""

    def __init__(self, status):
        self.status = status
        super().__init__(f"Unknown subscription status: {status!r}")


class BillingProviderError(Exception):
    """
    Stripe could not complete a request.

    WHAT:
        Wraps any `stripe.StripeError` raised by the SDK.

    RECOVERY:
        The subscription service catches this, logs it, reports it to Sentry
        and returns `could_not_change_subscription`. The underlying Stripe
        message is never sent to the caller.
    """

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
        self.message = message


class WebhookSignatureError(Exception):
    """Raised when a webhook payload or its Stripe-Signature header is invalid."""
