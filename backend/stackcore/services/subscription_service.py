"""Subscription change service.

WHAT:
    Reads a workspace's subscription and applies upgrades and downgrades
    against Stripe:
      1. Lock the workspace row
      2. Re-resolve membership/role and re-classify the live subscription
      3. Validate the transition
      4. Call Stripe (item swap for upgrades, cancel-at-period-end for downgrades)
      5. Recompute access_enabled from the returned status and commit
      6. Schedule admin notifications

WHY:
    Caller-supplied snapshots can be stale, so every decision is made on state
    fetched right before the Stripe call, inside a row lock on the workspace.
    Concurrent changes to the same workspace are serialized; different
    workspaces never block each other. A client-supplied idempotency key is
    forwarded to Stripe so a retried request cannot apply twice.

    Validation runs before any Stripe mutation, so a rejection leaves nothing
    behind. A Stripe failure after validation can only be a transport or
    processor problem and is reported as `could_not_change_subscription`.

REFERENCES:
    - stackcore/services/transition_validator.py: the rules
    - stackcore/services/webhook_reconciler.py: materializes scheduled downgrades
    - stackcore/routers/billing.py: HTTP surface
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

from stackcore.models import BillingCycleEnum, ProductEnum, RoleEnum, User, Workspace, WorkspaceMember
from stackcore.services.access_policy import should_have_access
from stackcore.services.billing_errors import BillingProviderError
from stackcore.services.notification_service import BillingNotifier
from stackcore.services.stripe_client import StripeBillingClient
from stackcore.services.subscription_classifier import ClassifiedSubscription, classify
from stackcore.services.tier_catalog import TierCatalog
from stackcore.services.transition_validator import (
    CurrentPlan,
    Direction,
    ErrorCode,
    MembershipFacts,
    check_authorization,
    validate_transition,
)
from stackcore.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionDetails:
    """On-demand projection of the workspace subscription. Never stored."""
    product: ProductEnum
    billing_cycle: Optional[BillingCycleEnum]
    has_default_payment_method: bool
    cancel_at: Optional[datetime]
    scheduled_product: Optional[ProductEnum]
    scheduled_billing_cycle: Optional[BillingCycleEnum]
    current_usage: float


@dataclass(frozen=True)
class ChangeResult:
    error: Optional[ErrorCode] = None
    subscription: Optional[ClassifiedSubscription] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _run_now(func: Callable[..., Any], *args: Any) -> None:
    func(*args)


class SubscriptionService:
    """Applies plan changes for one request.

    `schedule` decides how notifications run after commit. The router passes
    `BackgroundTasks.add_task`; by default they run inline.

    Usage:
        service = SubscriptionService(db, client, catalog, notifier)
        result = service.upgrade(user, workspace_id, ProductEnum.PRO, BillingCycleEnum.MONTHLY)
        if not result.ok:
            return {"error": result.error.value}
    """

    def __init__(
        self,
        db: Session,
        client: StripeBillingClient,
        catalog: TierCatalog,
        notifier: BillingNotifier,
        schedule: Optional[Callable[..., Any]] = None,
    ):
        self.db = db
        self.client = client
        self.catalog = catalog
        self.notifier = notifier
        self.schedule = schedule or _run_now

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _get_membership(self, user: User, workspace_id) -> Optional[WorkspaceMember]:
        return (
            self.db.query(WorkspaceMember)
            .filter(
                WorkspaceMember.workspace_id == workspace_id,
                WorkspaceMember.user_id == user.id,
                WorkspaceMember.status == "active",
            )
            .first()
        )

    def _lock_workspace(self, workspace_id) -> Optional[Workspace]:
        # SELECT ... FOR UPDATE; held until commit/rollback
        return (
            self.db.query(Workspace)
            .filter(Workspace.id == workspace_id)
            .with_for_update()
            .first()
        )

    def _admin_emails(self, workspace_id) -> List[str]:
        rows = (
            self.db.query(User.email)
            .join(WorkspaceMember, WorkspaceMember.user_id == User.id)
            .filter(
                WorkspaceMember.workspace_id == workspace_id,
                WorkspaceMember.role == RoleEnum.admin,
                WorkspaceMember.status == "active",
            )
            .all()
        )
        return [email for (email,) in rows]

    def _billable(self, workspace: Optional[Workspace]) -> bool:
        return bool(workspace and workspace.is_team and not workspace.deactivated and workspace.stripe_customer_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_subscription(self, user: User, workspace_id) -> Tuple[Optional[SubscriptionDetails], Optional[ErrorCode]]:
        """Return the live subscription projection for any workspace member."""
        if self._get_membership(user, workspace_id) is None:
            return None, ErrorCode.NOT_A_MEMBER_OF_WORKSPACE

        workspace = self.db.get(Workspace, workspace_id)
        if not self._billable(workspace):
            logger.info(f"[BILLING] Workspace {workspace_id} has no billable subscription")
            return None, ErrorCode.COULD_NOT_CHANGE_SUBSCRIPTION

        customer_id = workspace.stripe_customer_id
        try:
            subscription = self.client.get_customer_subscription(customer_id)
            if subscription is None:
                logger.info(f"[BILLING] No live subscription for workspace {workspace_id}")
                return None, ErrorCode.COULD_NOT_CHANGE_SUBSCRIPTION
            customer = self.client.get_customer(customer_id)
            current_usage = self.client.get_current_usage(customer_id, subscription)
        except BillingProviderError as e:
            logger.exception(f"[BILLING] Failed to read subscription for workspace {workspace_id}: {e}")
            capture_exception(e, extra={"workspace_id": str(workspace_id), "operation": e.operation})
            return None, ErrorCode.COULD_NOT_CHANGE_SUBSCRIPTION

        classified = classify(subscription, self.catalog)
        return SubscriptionDetails(
            product=classified.product,
            billing_cycle=classified.billing_cycle,
            has_default_payment_method=self.client.has_default_payment_method(customer, subscription),
            cancel_at=classified.cancel_at,
            scheduled_product=classified.scheduled_product,
            scheduled_billing_cycle=classified.scheduled_billing_cycle,
            current_usage=current_usage,
        ), None

    def create_portal_session(
        self,
        user: User,
        workspace_id,
        return_url: str,
        payment_method: bool = False,
    ) -> Tuple[Optional[str], Optional[ErrorCode]]:
        """Create a Stripe billing portal session for any workspace member.

        With `payment_method=True` the portal opens on the payment method
        update flow.
        """
        if self._get_membership(user, workspace_id) is None:
            return None, ErrorCode.NOT_A_MEMBER_OF_WORKSPACE

        workspace = self.db.get(Workspace, workspace_id)
        if not self._billable(workspace):
            return None, ErrorCode.COULD_NOT_CHANGE_SUBSCRIPTION

        try:
            if payment_method:
                url = self.client.create_payment_method_portal_session(workspace.stripe_customer_id, return_url)
            else:
                url = self.client.create_portal_session(workspace.stripe_customer_id, return_url)
        except BillingProviderError as e:
            logger.exception(f"[BILLING] Failed to create portal session for workspace {workspace_id}: {e}")
            capture_exception(e, extra={"workspace_id": str(workspace_id), "operation": e.operation})
            return None, ErrorCode.COULD_NOT_CHANGE_SUBSCRIPTION

        return url, None

    # ------------------------------------------------------------------
    # Changes
    # ------------------------------------------------------------------

    def upgrade(
        self,
        user: User,
        workspace_id,
        product: ProductEnum,
        billing_cycle: BillingCycleEnum,
        idempotency_key: Optional[str] = None,
    ) -> ChangeResult:
        return self._change(user, workspace_id, product, billing_cycle, Direction.UPGRADE, idempotency_key)

    def downgrade(
        self,
        user: User,
        workspace_id,
        product: ProductEnum,
        billing_cycle: BillingCycleEnum,
        idempotency_key: Optional[str] = None,
    ) -> ChangeResult:
        return self._change(user, workspace_id, product, billing_cycle, Direction.DOWNGRADE, idempotency_key)

    def _reject(self, workspace_id, direction: Direction, error: ErrorCode) -> ChangeResult:
        # Releases the row lock
        self.db.rollback()
        logger.info(f"[BILLING] {direction.value} rejected for workspace {workspace_id}: {error.value}")
        return ChangeResult(error=error)

    def _change(
        self,
        user: User,
        workspace_id,
        product: ProductEnum,
        billing_cycle: BillingCycleEnum,
        direction: Direction,
        idempotency_key: Optional[str],
    ) -> ChangeResult:
        workspace = self._lock_workspace(workspace_id)

        membership = self._get_membership(user, workspace_id) if workspace else None
        facts = MembershipFacts(role=membership.role) if membership else None

        auth_error = check_authorization(facts)
        if auth_error is not None:
            return self._reject(workspace_id, direction, auth_error)

        if not self._billable(workspace):
            return self._reject(workspace_id, direction, ErrorCode.COULD_NOT_CHANGE_SUBSCRIPTION)

        customer_id = workspace.stripe_customer_id
        try:
            subscription = self.client.get_customer_subscription(customer_id)
            customer = self.client.get_customer(customer_id) if subscription else None
        except BillingProviderError as e:
            return self._provider_failure(workspace_id, direction, e)

        if subscription is None:
            return self._reject(workspace_id, direction, ErrorCode.COULD_NOT_CHANGE_SUBSCRIPTION)

        current = classify(subscription, self.catalog)
        plan = CurrentPlan(
            product=current.product,
            billing_cycle=current.billing_cycle,
            has_default_payment_method=self.client.has_default_payment_method(customer, subscription),
        )

        result = validate_transition(facts, plan, product, billing_cycle, direction, self.catalog)
        if not result.ok:
            return self._reject(workspace_id, direction, result.error)

        try:
            if direction == Direction.UPGRADE:
                updated = self.client.update_subscription_item(
                    current.subscription_id,
                    current.item_id,
                    self.catalog.price_id_for(product, billing_cycle),
                    idempotency_key=idempotency_key,
                )
            else:
                updated = self.client.cancel_at_period_end(
                    current.subscription_id,
                    product,
                    billing_cycle,
                    idempotency_key=idempotency_key,
                )
        except BillingProviderError as e:
            return self._provider_failure(workspace_id, direction, e)

        changed = classify(updated, self.catalog)
        workspace.access_enabled = should_have_access(changed.status)
        workspace_name = workspace.name
        self.db.commit()

        old = (current.product, current.billing_cycle)
        new = (product, billing_cycle)
        logger.info(
            f"[BILLING] {direction.value} applied for workspace {workspace_id}: "
            f"{old[0].value}/{old[1].value} -> {product.value}/{billing_cycle.value}"
        )

        emails = self._admin_emails(workspace_id)
        if direction == Direction.UPGRADE:
            self.schedule(self._notify, self.notifier.notify_upgraded, emails, workspace_name, old, new)
        else:
            effective_date = changed.cancel_at or current.current_period_end
            self.schedule(self._notify, self.notifier.notify_downgraded, emails, workspace_name, old, new, effective_date)

        return ChangeResult(subscription=changed)

    def _provider_failure(self, workspace_id, direction: Direction, error: BillingProviderError) -> ChangeResult:
        self.db.rollback()
        logger.exception(f"[BILLING] {direction.value} failed for workspace {workspace_id} at {error.operation}: {error}")
        capture_exception(
            error,
            extra={"workspace_id": str(workspace_id), "direction": direction.value, "operation": error.operation},
        )
        return ChangeResult(error=ErrorCode.COULD_NOT_CHANGE_SUBSCRIPTION)

    @staticmethod
    def _notify(send: Callable[..., Any], *args: Any) -> None:
        """Run a notifier call; failures are logged, never raised."""
        try:
            send(*args)
        except Exception as e:
            logger.exception(f"[NOTIFY] Plan change notification failed: {e}")
