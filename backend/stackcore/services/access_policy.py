"""Derive a workspace's access gate from its Stripe subscription status."""

from stackcore.services.billing_errors import UnknownSubscriptionStatus


ACCESS_STATUSES = frozenset({"active", "trialing", "incomplete"})
NO_ACCESS_STATUSES = frozenset({"past_due", "canceled", "paused", "unpaid", "incomplete_expired"})


def should_have_access(status: str) -> bool:
    """Return whether a subscription in `status` grants product access.

    Raises UnknownSubscriptionStatus for any status outside the two sets
    above. A new Stripe status has to be triaged here before it is accepted.
    """
    if status in ACCESS_STATUSES:
        return True
    if status in NO_ACCESS_STATUSES:
        return False
    raise UnknownSubscriptionStatus(status)
