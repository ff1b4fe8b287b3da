"""SQLAlchemy ORM models and enums.

This module defines the relational contracts the billing engine relies on:
workspaces (the billable tenant), users, workspace memberships with a role,
and the processed Stripe webhook events used for deduplication.

The subscription itself is NOT stored here. Stripe owns it, and the local
system only keeps the customer id and the derived `access_enabled` gate.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Enum, ForeignKey, JSON, Boolean, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class RoleEnum(str, enum.Enum):
    admin = "admin"
    member = "member"


class ProductEnum(str, enum.Enum):
    """Billable product tier.

    BASIC < PRO < PREMIUM form a total order. CUSTOM is assigned when the
    Stripe price matches no catalog entry (e.g. a negotiated enterprise price)
    and is comparable to nothing.
    """
    BASIC = "BASIC"
    PRO = "PRO"
    PREMIUM = "PREMIUM"
    CUSTOM = "CUSTOM"


class BillingCycleEnum(str, enum.Enum):
    """Billing cycle, ordered MONTHLY < YEARLY within the same product."""
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


# Core models ----------------------------------------------------

class Workspace(Base):
    """Workspace is the billable tenant.

    `access_enabled` is derived from the Stripe subscription status. Only the
    webhook reconciler and the subscription change service write it.
    Personal workspaces (`is_team=False`) are never billed.
    """
    __tablename__ = "workspaces"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    is_team = Column(Boolean, nullable=False, default=False)
    access_enabled = Column(Boolean, nullable=False, default=False)
    # Null until the first subscription is created; set for every team workspace afterwards
    stripe_customer_id = Column(String, nullable=True, unique=True, index=True)
    deactivated = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    memberships = relationship("WorkspaceMember", back_populates="workspace", cascade="all, delete-orphan")

    def __str__(self):
        return self.name


class User(Base):
    """User represents a person who can act on workspaces.

    Authentication lives elsewhere; the billing engine only needs the
    identity (for membership checks) and the email (for notifications).
    """
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    memberships = relationship("WorkspaceMember", back_populates="user", cascade="all, delete-orphan")

    def __str__(self):
        return f"{self.name} ({self.email})"


class WorkspaceMember(Base):
    """Join table mapping users to workspaces with a role."""
    __tablename__ = "workspace_members"
    __table_args__ = (UniqueConstraint("workspace_id", "user_id", name="uq_workspace_member"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    role = Column(Enum(RoleEnum, values_callable=lambda obj: [e.value for e in obj]), nullable=False)
    status = Column(String, default="active")  # active, removed
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    workspace = relationship("Workspace", back_populates="memberships")
    user = relationship("User", back_populates="memberships")


class StripeWebhookEvent(Base):
    """Processed Stripe webhook events, keyed by Stripe's event id.

    WHAT: One row per delivered event that passed signature verification
    WHY: Stripe delivers at-least-once. Replaying `customer.subscription.deleted`
         would materialize a scheduled downgrade twice, so every event is
         checked against this table before dispatch.
    """
    __tablename__ = "stripe_webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(String, nullable=False, unique=True, index=True)
    event_type = Column(String, nullable=False)
    stripe_object_id = Column(String, nullable=True)
    payload_json = Column(JSON, nullable=True)
    processed_at = Column(DateTime, default=datetime.utcnow)
    processing_result = Column(String, default="processed")

    def __str__(self):
        return f"{self.event_type} ({self.event_id})"
