"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from fastapi import Cookie, Depends, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .models import User
from .security import decode_token
from .services.notification_service import BillingNotifier
from .services.stripe_client import StripeBillingClient
from .services.tier_catalog import TierCatalog
from .telemetry.sentry import set_user_context


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    FRONTEND_URL: str = "http://localhost:3000"

    # Stripe
    STRIPE_API_KEY: str
    STRIPE_WEBHOOK_SECRET: str
    # Point the SDK at stripe-mock (e.g. http://localhost:12111) in local dev
    STRIPE_API_BASE: Optional[str] = None
    STRIPE_TIMEOUT_SECONDS: int = 30
    STRIPE_MAX_NETWORK_RETRIES: int = 2

    # Tier catalog: one Stripe price per (product, billing cycle). Required:
    # a missing price would classify every subscription as CUSTOM
    STRIPE_PRICE_BASIC_MONTHLY: str
    STRIPE_PRICE_BASIC_YEARLY: str
    STRIPE_PRICE_PRO_MONTHLY: str
    STRIPE_PRICE_PRO_YEARLY: str
    STRIPE_PRICE_PREMIUM_MONTHLY: str
    STRIPE_PRICE_PREMIUM_YEARLY: str

    # Usage threshold applied to new BASIC subscriptions until a card is on file (0 disables)
    STRIPE_BILLING_THRESHOLD_BASIC: int = 1000
    STRIPE_USAGE_METER_ID: Optional[str] = None

    # Email
    RESEND_API_KEY: Optional[str] = None
    EMAIL_FROM: str = "Stackcore <billing@stackcore.dev>"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_tier_catalog(settings: Settings = Depends(get_settings)) -> TierCatalog:
    return TierCatalog.from_settings(settings)


def get_billing_client(
    settings: Settings = Depends(get_settings),
    catalog: TierCatalog = Depends(get_tier_catalog),
) -> StripeBillingClient:
    """Build a Stripe client for this request.

    The client is constructed per request with explicit credentials instead
    of configuring the module-level `stripe.api_key`, so tests can override
    this dependency with a deterministic fake.
    """
    return StripeBillingClient(
        api_key=settings.STRIPE_API_KEY,
        catalog=catalog,
        api_base=settings.STRIPE_API_BASE,
        timeout=settings.STRIPE_TIMEOUT_SECONDS,
        max_network_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
        usage_meter_id=settings.STRIPE_USAGE_METER_ID,
    )


def get_notifier(settings: Settings = Depends(get_settings)) -> BillingNotifier:
    return BillingNotifier(
        resend_api_key=settings.RESEND_API_KEY,
        sender=settings.EMAIL_FROM,
        dashboard_url=settings.FRONTEND_URL,
    )


def get_current_user(
    db: Session = Depends(get_db),
    access_token: Optional[str] = Cookie(default=None, alias="access_token"),
) -> User:
    """Resolve the current user from the `access_token` cookie.

    The cookie value is expected to be in the form: "Bearer <jwt>".
    """
    if not access_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    # Remove optional "Bearer " prefix
    if access_token.startswith("Bearer "):
        token = access_token[len("Bearer ") :]
    else:
        token = access_token

    try:
        payload = decode_token(token)
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    user = (
        db.query(User)
        .filter(User.email == subject)
        .first()
    )
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    set_user_context(user_id=str(user.id), email=user.email)
    return user
