"""
Sentry Error Tracking
=====================

Centralized error tracking for the billing API.

Related files:
- stackcore/main.py: Initializes Sentry on app creation
- stackcore/services/subscription_service.py: Reports provider failures
  that are collapsed into `could_not_change_subscription`
- stackcore/routers/billing.py: Reports webhook handler failures that are
  still acknowledged with a 200

Environment Variables:
- SENTRY_DSN: Sentry project DSN (required for Sentry to work)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release identifier (set via CI/CD)
"""

from __future__ import annotations

import os
import logging
from typing import Optional
from functools import lru_cache

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)


@lru_cache()
def get_sentry_dsn() -> Optional[str]:
    """Get Sentry DSN from environment variable.

    Returns:
        DSN string if configured, None otherwise.
    """
    return os.environ.get("SENTRY_DSN")


def init_sentry() -> bool:
    """
    Initialize Sentry SDK for FastAPI.

    Returns:
        True if Sentry was initialized, False when no DSN is configured
        or initialization failed.

    Side effects:
        - Configures global Sentry SDK
        - Sets up integrations for FastAPI, SQLAlchemy and logging
    """
    dsn = get_sentry_dsn()
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(
                    transaction_style="endpoint",
                ),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,  # User is attached explicitly
            release=os.environ.get("RELEASE_VERSION"),
        )

        logger.debug(f"[SENTRY] Initialized for {environment} environment")
        return True

    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def set_user_context(user_id: str, email: Optional[str] = None) -> None:
    """Attach the acting user to subsequent Sentry events in this scope."""
    try:
        sentry_sdk.set_user({"id": user_id, "email": email})
    except Exception as e:
        logger.debug(f"[SENTRY] Failed to set user context: {e}")


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Manually capture an exception to Sentry.

    Use this for exceptions that are caught and handled but should still
    be tracked, e.g. a Stripe outage surfaced to the caller as
    `could_not_change_subscription`.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event

    Example:
        try:
            client.update_subscription_item(...)
        except BillingProviderError as e:
            capture_exception(e, extra={"workspace_id": str(workspace.id)})
            return ChangeResult(error=ErrorCode.COULD_NOT_CHANGE_SUBSCRIPTION)
    """
    if not get_sentry_dsn():
        logger.debug(f"[SENTRY] Disabled, not capturing: {exception!r}")
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Capture a non-exception event, e.g. a webhook for an unknown customer."""
    if not get_sentry_dsn():
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture message: {e}")
