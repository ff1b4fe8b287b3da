"""Stripe billing endpoints.

WHAT: Subscription reads and plan changes for workspaces, Stripe billing
      portal sessions, and the Stripe webhook receiver
WHY: Per-workspace billing - each team workspace has one Stripe customer
     with one subscription

Key flows:
    1. Read: GET /billing/subscription → live projection from Stripe
    2. Change: POST /billing/subscription/{upgrade,downgrade} → admin only
    3. Portal: POST /billing/portal[/paymentMethod] → Stripe portal URL
    4. Webhook: POST /billing/webhook → reconcile access_enabled

ERRORS:
    Policy rejections return 400 {"error": "<code>"}. Request validation
    errors return 400 {"error": [<details>]} (see main.py).

REFERENCES:
    - stackcore/services/subscription_service.py
    - stackcore/services/webhook_reconciler.py
    - https://docs.stripe.com/webhooks
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import Settings, get_billing_client, get_current_user, get_notifier, get_settings, get_tier_catalog
from ..models import BillingCycleEnum, ProductEnum, User
from ..services.billing_errors import WebhookSignatureError
from ..services.notification_service import BillingNotifier
from ..services.stripe_client import StripeBillingClient
from ..services.subscription_service import SubscriptionService
from ..services.tier_catalog import TierCatalog
from ..services.transition_validator import ErrorCode
from ..services.webhook_reconciler import WebhookReconciler
from ..telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/billing",
    tags=["Billing"],
    responses={
        400: {"model": schemas.ErrorResponse, "description": "Rejected"},
        401: {"description": "Unauthorized"},
    },
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


def get_subscription_service(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    client: StripeBillingClient = Depends(get_billing_client),
    catalog: TierCatalog = Depends(get_tier_catalog),
    notifier: BillingNotifier = Depends(get_notifier),
) -> SubscriptionService:
    """Build the service for this request; notifications run after the response."""
    return SubscriptionService(db, client, catalog, notifier, schedule=background_tasks.add_task)


def _error(code: ErrorCode) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": code.value})


# =============================================================================
# SUBSCRIPTION ENDPOINTS
# =============================================================================


@router.get(
    "/subscription",
    response_model=schemas.SubscriptionResponse,
    summary="Get workspace subscription",
    description="""
    Current product, billing cycle, payment method state, scheduled change
    and usage for a workspace. Any member may read it.
    """,
)
def get_subscription(
    workspace_id: UUID = Query(alias="workspaceId"),
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    details, error = service.get_subscription(current_user, workspace_id)
    if error:
        return _error(error)
    return schemas.SubscriptionResponse(
        product=details.product,
        billing_cycle=details.billing_cycle,
        has_default_payment_method=details.has_default_payment_method,
        cancel_at=details.cancel_at,
        scheduled_product=details.scheduled_product,
        scheduled_billing_cycle=details.scheduled_billing_cycle,
        current_usage=details.current_usage,
    )


@router.post(
    "/subscription/upgrade",
    response_model=schemas.MessageResponse,
    summary="Upgrade workspace subscription",
    description="""
    Moves the workspace to a higher tier immediately. Admin only, and a
    default payment method must be on file. The billing period restarts now
    without proration.

    Send an `Idempotency-Key` header to make retries safe.
    """,
)
def upgrade_subscription(
    payload: schemas.SubscriptionChangeRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    result = service.upgrade(
        current_user,
        payload.workspace_id,
        ProductEnum(payload.product),
        BillingCycleEnum(payload.billing_cycle),
        idempotency_key=idempotency_key,
    )
    if not result.ok:
        return _error(result.error)
    return schemas.MessageResponse(message="Subscription upgraded")


@router.post(
    "/subscription/downgrade",
    response_model=schemas.MessageResponse,
    summary="Downgrade workspace subscription",
    description="""
    Schedules a move to a lower tier at the end of the current billing
    period. Admin only. The current tier stays active until then.
    """,
)
def downgrade_subscription(
    payload: schemas.SubscriptionChangeRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    result = service.downgrade(
        current_user,
        payload.workspace_id,
        ProductEnum(payload.product),
        BillingCycleEnum(payload.billing_cycle),
        idempotency_key=idempotency_key,
    )
    if not result.ok:
        return _error(result.error)
    return schemas.MessageResponse(message="Subscription downgraded")


# =============================================================================
# PORTAL ENDPOINTS
# =============================================================================


@router.post(
    "/portal",
    response_model=schemas.PortalResponse,
    summary="Open Stripe billing portal",
)
def create_portal_session(
    payload: schemas.PortalRequest,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    url, error = service.create_portal_session(current_user, payload.workspace_id, payload.return_url)
    if error:
        return _error(error)
    return schemas.PortalResponse(url=url)


@router.post(
    "/portal/paymentMethod",
    response_model=schemas.PortalResponse,
    summary="Open Stripe billing portal on payment method update",
)
def create_payment_method_portal_session(
    payload: schemas.PortalRequest,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    url, error = service.create_portal_session(
        current_user, payload.workspace_id, payload.return_url, payment_method=True
    )
    if error:
        return _error(error)
    return schemas.PortalResponse(url=url)


# =============================================================================
# WEBHOOK ENDPOINT
# =============================================================================


@router.post(
    "/webhook",
    response_class=PlainTextResponse,
    summary="Stripe webhook receiver",
    description="""
    Authenticated by the `Stripe-Signature` header, not by session.

    Returns 400 for a missing or invalid signature. Once the signature is
    valid the response is always 200 "Event received": handler failures are
    logged, reported to Sentry and recorded against the event, and Stripe
    is not asked to redeliver.
    """,
)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    client: StripeBillingClient = Depends(get_billing_client),
    catalog: TierCatalog = Depends(get_tier_catalog),
    settings: Settings = Depends(get_settings),
):
    signature = request.headers.get("stripe-signature")
    if not signature:
        return PlainTextResponse("No signature", status_code=status.HTTP_400_BAD_REQUEST)

    # Raw body: the signature covers the exact bytes Stripe sent
    body = await request.body()

    try:
        event = client.verify_and_parse_webhook(body, signature, settings.STRIPE_WEBHOOK_SECRET)
    except WebhookSignatureError:
        return PlainTextResponse("Invalid signature", status_code=status.HTTP_400_BAD_REQUEST)

    logger.info(f"[WEBHOOK] Received Stripe event {event.get('id')}: {event.get('type')}")

    # Handlers call Stripe and take row locks; keep them off the event loop
    reconciler = WebhookReconciler(db, client, catalog)
    try:
        await run_in_threadpool(reconciler.handle, event)
    except Exception as e:
        logger.error(f"[WEBHOOK] Processing error for {event.get('id')} ({event.get('type')}): {e}", exc_info=True)
        capture_exception(e, extra={"event_id": event.get("id"), "event_type": event.get("type")})
        await run_in_threadpool(reconciler.record_failure, event, e)

    return PlainTextResponse("Event received", status_code=status.HTTP_200_OK)
