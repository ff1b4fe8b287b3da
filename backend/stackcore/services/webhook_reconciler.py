"""Stripe webhook reconciler.

WHAT:
    Consumes verified Stripe events and keeps `Workspace.access_enabled` in
    line with the subscription status. Materializes scheduled downgrades when
    the old subscription ends.

WHY:
    Stripe delivers at-least-once and in no particular order. Every handler
    recomputes from the event's own status (or a fresh Stripe read) and
    overwrites, so duplicates and reordering re-assert the same or a newer
    truth. `customer.subscription.deleted` is the exception: materializing
    twice would create two subscriptions. Every event id is therefore claimed
    in `stripe_webhook_events` before dispatch, and the claim commits in the
    same transaction as the handler's writes.

EVENTS:
    - customer.subscription.deleted: create the scheduled subscription, or churn
    - customer.subscription.created / updated: access from event status when
      the event is about the live subscription, otherwise from a fresh read;
      drop the usage threshold once a card is on file
    - customer.updated: re-fetch the subscription, same as above
    - anything else: ignored

REFERENCES:
    - stackcore/routers/billing.py: signature verification and error capture
    - stackcore/services/subscription_classifier.py: scheduled metadata parsing
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stackcore.models import StripeWebhookEvent, Workspace
from stackcore.services.access_policy import should_have_access
from stackcore.services.stripe_client import StripeBillingClient
from stackcore.services.subscription_classifier import classify, parse_scheduled_change
from stackcore.services.tier_catalog import TierCatalog
from stackcore.telemetry.sentry import capture_message

logger = logging.getLogger(__name__)


SUBSCRIPTION_DELETED = "customer.subscription.deleted"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
CUSTOMER_UPDATED = "customer.updated"

RESULT_PROCESSING = "processing"


def _id_of(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


def _event_object(event: Dict[str, Any]) -> Dict[str, Any]:
    return (event.get("data") or {}).get("object") or {}


class WebhookReconciler:
    """Dispatches Stripe events for one webhook delivery.

    Usage:
        reconciler = WebhookReconciler(db, client, catalog)
        action = reconciler.handle(event)
    """

    def __init__(self, db: Session, client: StripeBillingClient, catalog: TierCatalog):
        self.db = db
        self.client = client
        self.catalog = catalog

    # ------------------------------------------------------------------
    # Idempotency
    # ------------------------------------------------------------------

    def _find_event(self, event_id: str) -> Optional[StripeWebhookEvent]:
        return (
            self.db.query(StripeWebhookEvent)
            .filter(StripeWebhookEvent.event_id == event_id)
            .first()
        )

    def _claim_event(self, event: Dict[str, Any]) -> Optional[StripeWebhookEvent]:
        """Insert (or re-open) the event row. None when already handled.

        A row left by a failed attempt is re-opened so a manual replay from
        the Stripe dashboard can succeed.
        """
        existing = self._find_event(event["id"])
        if existing is not None:
            if not (existing.processing_result or "").startswith("error"):
                return None
            existing.processing_result = RESULT_PROCESSING
            self.db.flush()
            return existing

        record = StripeWebhookEvent(
            event_id=event["id"],
            event_type=event.get("type", "unknown"),
            stripe_object_id=_event_object(event).get("id"),
            payload_json=event,
            processing_result=RESULT_PROCESSING,
        )
        self.db.add(record)
        try:
            # A concurrent delivery of the same event fails here on the unique index
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            return None
        return record

    def record_failure(self, event: Dict[str, Any], error: Exception) -> None:
        """Persist a failed attempt after rolling back the handler's writes."""
        self.db.rollback()
        result = f"error: {type(error).__name__}: {error}"[:500]

        existing = self._find_event(event["id"])
        if existing is not None:
            existing.processing_result = result
        else:
            self.db.add(
                StripeWebhookEvent(
                    event_id=event["id"],
                    event_type=event.get("type", "unknown"),
                    stripe_object_id=_event_object(event).get("id"),
                    payload_json=event,
                    processing_result=result,
                )
            )
        self.db.commit()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def handle(self, event: Dict[str, Any]) -> str:
        """Process one verified event and return the action taken.

        Data-integrity errors and Stripe errors propagate; the caller rolls
        back and records them with `record_failure`.
        """
        event_type = event.get("type")

        record = self._claim_event(event)
        if record is None:
            logger.info(f"[WEBHOOK] Skipping duplicate event {event.get('id')} ({event_type})")
            return "duplicate"

        obj = _event_object(event)
        if event_type == SUBSCRIPTION_DELETED:
            action = self._handle_subscription_deleted(obj)
        elif event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
            action = self._handle_subscription_changed(obj)
        elif event_type == CUSTOMER_UPDATED:
            action = self._handle_customer_updated(obj)
        else:
            logger.info(f"[WEBHOOK] Unhandled event type: {event_type}")
            action = "ignored"

        record.processing_result = action
        self.db.commit()
        logger.info(f"[WEBHOOK] {event_type} {event.get('id')} -> {action}")
        return action

    def _workspace_for_customer(self, customer_id: Optional[str]) -> Optional[Workspace]:
        if not customer_id:
            return None
        return (
            self.db.query(Workspace)
            .filter(Workspace.stripe_customer_id == customer_id)
            .with_for_update()
            .first()
        )

    def _set_access(self, workspace: Workspace, status: str) -> None:
        access = should_have_access(status)
        if workspace.access_enabled != access:
            logger.info(f"[WEBHOOK] Workspace {workspace.id} access_enabled {workspace.access_enabled} -> {access} (status={status})")
        workspace.access_enabled = access

    def _remove_threshold_if_paid(
        self,
        subscription: Dict[str, Any],
        customer: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Drop the usage threshold once the customer has a default payment method.

        Thresholds only exist to invoice early for customers without a card.
        Returns True when a threshold was removed.
        """
        classified = classify(subscription, self.catalog)
        if not classified.has_billing_threshold:
            return False

        if customer is None:
            customer = self.client.get_customer(classified.customer_id)
        if not self.client.has_default_payment_method(customer, subscription):
            return False

        self.client.remove_billing_threshold(classified.item_id)
        return True

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handle_subscription_deleted(self, subscription: Dict[str, Any]) -> str:
        customer_id = _id_of(subscription.get("customer"))

        # Raises InvalidScheduledMetadata on corrupt metadata
        scheduled = parse_scheduled_change(subscription.get("metadata"))

        workspace = self._workspace_for_customer(customer_id)
        if workspace is None:
            logger.warning(f"[WEBHOOK] No workspace for customer {customer_id}")
            if scheduled is not None:
                # A scheduled downgrade that nobody will materialize
                capture_message(
                    f"Scheduled change dropped for unknown customer {customer_id}",
                    level="warning",
                    extra={"subscription_id": subscription.get("id"), "scheduled": [s.value for s in scheduled]},
                )
            return "workspace_not_found"

        if scheduled is None:
            logger.info(f"[WEBHOOK] Subscription {subscription.get('id')} ended without a scheduled change, workspace {workspace.id} churned")
            self._set_access(workspace, subscription.get("status") or "canceled")
            return "churned"

        product, billing_cycle = scheduled
        new_subscription = self.client.create_subscription(
            customer_id,
            product,
            billing_cycle,
            threshold=None,
            # Stripe replays the same result if this is retried within 24h
            idempotency_key=f"materialize:{subscription.get('id')}",
        )
        self._set_access(workspace, new_subscription["status"])

        logger.info(
            f"[WEBHOOK] Materialized {product.value}/{billing_cycle.value} for workspace {workspace.id}: "
            f"{subscription.get('id')} -> {new_subscription.get('id')}"
        )
        return "materialized"

    def _apply_subscription(
        self,
        workspace: Workspace,
        subscription: Optional[Dict[str, Any]],
        customer: Optional[Dict[str, Any]] = None,
    ) -> str:
        if subscription is None:
            if workspace.access_enabled:
                logger.info(f"[WEBHOOK] Customer {workspace.stripe_customer_id} has no live subscription, disabling workspace {workspace.id}")
            workspace.access_enabled = False
            return "access_disabled"

        self._set_access(workspace, subscription.get("status"))
        if self._remove_threshold_if_paid(subscription, customer):
            return "access_updated_threshold_removed"
        return "access_updated"

    def _handle_subscription_changed(self, subscription: Dict[str, Any]) -> str:
        customer_id = _id_of(subscription.get("customer"))
        workspace = self._workspace_for_customer(customer_id)
        if workspace is None:
            logger.warning(f"[WEBHOOK] No workspace for customer {customer_id}")
            return "workspace_not_found"

        # Only the customer's live subscription may speak for the workspace.
        # A late snapshot of an ended one is replaced by a fresh read.
        live = self.client.get_customer_subscription(customer_id)
        if live is None or live.get("id") != subscription.get("id"):
            logger.info(
                f"[WEBHOOK] Event for {subscription.get('id')} is not the live subscription of {customer_id} "
                f"(live={live.get('id') if live else None}), using fresh state"
            )
            return self._apply_subscription(workspace, live)

        return self._apply_subscription(workspace, subscription)

    def _handle_customer_updated(self, customer: Dict[str, Any]) -> str:
        customer_id = customer.get("id")
        workspace = self._workspace_for_customer(customer_id)
        if workspace is None:
            logger.warning(f"[WEBHOOK] No workspace for customer {customer_id}")
            return "workspace_not_found"

        subscription = self.client.get_customer_subscription(customer_id)
        return self._apply_subscription(workspace, subscription, customer)
