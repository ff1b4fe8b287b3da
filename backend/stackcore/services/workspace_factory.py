"""Workspace Factory Service - workspace creation with billing bootstrap.

WHAT: Creates team workspaces with a Stripe customer and a BASIC/MONTHLY
      subscription, and personal workspaces with no billing at all.
      Deactivates team workspaces, ending their subscription at period end.
WHY: A team workspace must have a Stripe customer from the moment it exists.
     Every upgrade, downgrade and webhook lookup goes through
     `stripe_customer_id`, so it is set here, in the same transaction that
     creates the workspace.

REFERENCES:
    - stackcore/models.py (Workspace, WorkspaceMember models)
    - stackcore/services/stripe_client.py (customer and subscription creation)
"""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from stackcore.models import (
    BillingCycleEnum,
    ProductEnum,
    RoleEnum,
    User,
    Workspace,
    WorkspaceMember,
)
from stackcore.services.access_policy import should_have_access
from stackcore.services.billing_errors import BillingProviderError
from stackcore.services.stripe_client import StripeBillingClient
from stackcore.services.transition_validator import ErrorCode
from stackcore.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)

DEFAULT_PRODUCT = ProductEnum.BASIC
DEFAULT_BILLING_CYCLE = BillingCycleEnum.MONTHLY


def _create_workspace(db: Session, name: str, is_team: bool, owner_user_id: Optional[UUID]) -> Workspace:
    workspace = Workspace(name=name, is_team=is_team, access_enabled=False)
    db.add(workspace)
    db.flush()  # Get workspace.id without committing

    if owner_user_id:
        membership = WorkspaceMember(
            workspace_id=workspace.id,
            user_id=owner_user_id,
            role=RoleEnum.admin,
            status="active",
        )
        db.add(membership)

    return workspace


def create_team_workspace(
    db: Session,
    client: StripeBillingClient,
    name: str,
    owner_user_id: Optional[UUID] = None,
    threshold: Optional[int] = None,
    flush_only: bool = True,
) -> Workspace:
    """Create a team workspace on BASIC/MONTHLY.

    WHAT: Creates the workspace and admin membership, a Stripe customer and a
          BASIC/MONTHLY subscription, then derives access_enabled from the
          new subscription's status.
    WHY: New teams start on the cheapest tier without a card on file. The
         usage `threshold` makes Stripe invoice early until a card exists;
         the webhook reconciler removes it afterwards.

    Parameters:
        db: Database session
        client: Stripe client
        name: Workspace name
        owner_user_id: If provided, creates WorkspaceMember with admin role
        threshold: Usage threshold for the BASIC item (None or 0 for none)
        flush_only: If True, only flush (don't commit)

    Raises:
        BillingProviderError: Stripe failed; nothing is committed

    Example:
        workspace = create_team_workspace(db, client, "Acme", owner_user_id=user.id, threshold=1000)
        db.commit()
    """
    workspace = _create_workspace(db, name, is_team=True, owner_user_id=owner_user_id)

    customer = client.create_customer(workspace.id, name)
    workspace.stripe_customer_id = customer["id"]

    subscription = client.create_subscription(
        customer["id"],
        DEFAULT_PRODUCT,
        DEFAULT_BILLING_CYCLE,
        threshold=threshold or None,
        idempotency_key=f"workspace-bootstrap:{workspace.id}",
    )
    workspace.access_enabled = should_have_access(subscription["status"])
    db.flush()

    logger.info(
        f"[BILLING] Team workspace {workspace.id} created with customer {customer['id']}, "
        f"subscription {subscription.get('id')} ({subscription['status']})"
    )

    if not flush_only:
        db.commit()
        db.refresh(workspace)

    return workspace


def create_personal_workspace(
    db: Session,
    name: str,
    owner_user_id: Optional[UUID] = None,
    flush_only: bool = True,
) -> Workspace:
    """Create a personal workspace.

    Personal workspaces are never billed: no Stripe customer, no subscription,
    and plan changes on them are rejected.
    """
    workspace = _create_workspace(db, name, is_team=False, owner_user_id=owner_user_id)

    if not flush_only:
        db.commit()
        db.refresh(workspace)

    return workspace


def deactivate_workspace(
    db: Session,
    client: StripeBillingClient,
    user: User,
    workspace_id: UUID,
) -> Optional[ErrorCode]:
    """Deactivate a team workspace and cancel its subscription at period end.

    WHAT: Admin only. Removes every membership, marks the workspace
          deactivated and asks Stripe to end the subscription with the
          current period, clearing any scheduled downgrade.
    WHY: Deactivation is the only way a workspace churns on purpose. Access
         stays on until Stripe sends `customer.subscription.deleted`; the
         webhook reconciler then finds no scheduled change and disables it.

    Returns:
        None on success, otherwise the ErrorCode to return to the client.
        Nothing is written when an error is returned.
    """
    workspace = (
        db.query(Workspace)
        .filter(Workspace.id == workspace_id, Workspace.deactivated.is_(False))
        .with_for_update()
        .first()
    )
    membership = None
    if workspace is not None:
        membership = (
            db.query(WorkspaceMember)
            .filter(
                WorkspaceMember.workspace_id == workspace_id,
                WorkspaceMember.user_id == user.id,
                WorkspaceMember.status == "active",
            )
            .first()
        )

    error = None
    if membership is None:
        error = ErrorCode.NOT_A_MEMBER_OF_WORKSPACE
    elif membership.role != RoleEnum.admin:
        error = ErrorCode.NOT_AN_ADMIN
    elif not workspace.is_team:
        error = ErrorCode.CANNOT_DEACTIVATE_PERSONAL_WORKSPACE
    if error is not None:
        db.rollback()
        logger.info(f"[BILLING] Deactivation rejected for workspace {workspace_id}: {error.value}")
        return error

    customer_id = workspace.stripe_customer_id
    if customer_id:
        try:
            subscription = client.get_customer_subscription(customer_id)
            if subscription is None:
                logger.info(f"[BILLING] Workspace {workspace_id} has no live subscription to cancel")
            else:
                client.cancel_at_period_end(
                    subscription["id"],
                    None,
                    None,
                    idempotency_key=f"deactivate:{workspace_id}",
                )
        except BillingProviderError as e:
            db.rollback()
            logger.exception(f"[BILLING] Failed to cancel subscription for workspace {workspace_id}: {e}")
            capture_exception(e, extra={"workspace_id": str(workspace_id), "operation": e.operation})
            return ErrorCode.COULD_NOT_DEACTIVATE_WORKSPACE

    for member in list(workspace.memberships):
        db.delete(member)
    workspace.deactivated = True
    db.commit()

    logger.info(f"[BILLING] Workspace {workspace_id} deactivated by {user.email}")
    return None
