"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .models import BillingCycleEnum, ProductEnum


# CUSTOM is only ever produced by classification, never requested
ChangeableProduct = Literal["BASIC", "PRO", "PREMIUM"]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(
        description="Service status",
        examples=["ok"],
    )


class ErrorResponse(BaseModel):
    """Policy rejection with a stable error code."""

    error: str = Field(
        description="Error code",
        examples=["not_an_admin"],
    )


class MessageResponse(BaseModel):
    message: str = Field(examples=["Subscription upgraded"])


# Billing Schemas
class SubscriptionResponse(BaseModel):
    """Live projection of a workspace subscription.

    WHAT: Current tier, pending scheduled change, and usage this period
    WHY: Recomputed from Stripe on every request, never cached
    """

    product: ProductEnum = Field(description="Current product (CUSTOM for a negotiated price)")
    billing_cycle: Optional[BillingCycleEnum] = Field(None, alias="billingCycle", description="Null for CUSTOM")
    has_default_payment_method: bool = Field(alias="hasDefaultPaymentMethod")
    cancel_at: Optional[datetime] = Field(None, alias="cancelAt", description="When the current subscription ends")
    scheduled_product: Optional[ProductEnum] = Field(None, alias="scheduledProduct")
    scheduled_billing_cycle: Optional[BillingCycleEnum] = Field(None, alias="scheduledBillingCycle")
    current_usage: float = Field(0, alias="currentUsage", description="Metered usage in the current period")

    model_config = {"populate_by_name": True}


class SubscriptionChangeRequest(BaseModel):
    """Request to upgrade or downgrade a workspace subscription.

    WHAT: Target tier for the workspace
    WHY: Upgrades apply now, downgrades at the end of the paid period
    """

    workspace_id: UUID = Field(alias="workspaceId", description="Workspace UUID")
    product: ChangeableProduct = Field(description="Target product")
    billing_cycle: BillingCycleEnum = Field(alias="billingCycle", description="Target billing cycle")

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {
                "workspaceId": "5b0c4f8e-0f61-4d4b-8d8e-3f0f2b6f6d2a",
                "product": "PRO",
                "billingCycle": "MONTHLY",
            }
        },
    }


class PortalRequest(BaseModel):
    """Request for a Stripe billing portal session."""

    workspace_id: UUID = Field(alias="workspaceId", description="Workspace UUID")
    return_url: str = Field(alias="returnUrl", min_length=1, description="Where Stripe sends the user back to")

    model_config = {"populate_by_name": True}


class PortalResponse(BaseModel):
    url: str = Field(description="Stripe billing portal URL")
