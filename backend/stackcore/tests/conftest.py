"""Pytest configuration for billing tests

WHAT: Shared fixtures: in-memory database, FastAPI app with dependency
      overrides, an in-memory Stripe fake, users and workspaces
WHY: Billing tests must never reach Stripe; the fake keeps customers,
     subscriptions, items, metadata and thresholds in memory and can be
     told to fail specific operations
REFERENCES:
    - stackcore/main.py: FastAPI application
    - stackcore/deps.py: Dependency injection
    - stackcore/services/stripe_client.py: interface mirrored by FakeBillingClient
"""

import copy
import json
import os
from typing import Any, Dict, Generator, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before stackcore.database / stackcore.security are imported
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("STRIPE_API_KEY", "sk_test_secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_secret")
for _product in ("BASIC", "PRO", "PREMIUM"):
    for _cycle in ("MONTHLY", "YEARLY"):
        os.environ.setdefault(f"STRIPE_PRICE_{_product}_{_cycle}", f"price_{_product.lower()}_{_cycle.lower()}")

from stackcore.models import (  # noqa: E402
    Base,
    BillingCycleEnum,
    ProductEnum,
    RoleEnum,
    User,
    Workspace,
    WorkspaceMember,
)
from stackcore.services.billing_errors import BillingProviderError, WebhookSignatureError  # noqa: E402
from stackcore.services.notification_service import BillingNotifier  # noqa: E402
from stackcore.services.stripe_client import StripeBillingClient  # noqa: E402
from stackcore.services.subscription_classifier import SCHEDULED_BILLING_CYCLE_KEY, SCHEDULED_PRODUCT_KEY  # noqa: E402
from stackcore.services.tier_catalog import TierCatalog  # noqa: E402


PRICES = {
    (ProductEnum.BASIC, BillingCycleEnum.MONTHLY): "price_basic_monthly",
    (ProductEnum.BASIC, BillingCycleEnum.YEARLY): "price_basic_yearly",
    (ProductEnum.PRO, BillingCycleEnum.MONTHLY): "price_pro_monthly",
    (ProductEnum.PRO, BillingCycleEnum.YEARLY): "price_pro_yearly",
    (ProductEnum.PREMIUM, BillingCycleEnum.MONTHLY): "price_premium_monthly",
    (ProductEnum.PREMIUM, BillingCycleEnum.YEARLY): "price_premium_yearly",
}

PERIOD_START = 1_760_000_000
PERIOD_END = PERIOD_START + 30 * 24 * 3600

VALID_SIGNATURE = "t=1,v1=valid"


# ============================================================================
# Stripe fake
# ============================================================================

class FakeBillingClient:
    """In-memory stand-in for StripeBillingClient.

    Every call is appended to `calls` as (operation, kwargs). Operations
    listed in `fail_on` raise BillingProviderError before doing anything.
    """

    has_default_payment_method = staticmethod(StripeBillingClient.has_default_payment_method)

    def __init__(self, catalog: TierCatalog):
        self.catalog = catalog
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.fail_on: set = set()
        self.new_subscription_status = "active"
        self.usage = 0
        self._ids = 0

    def _next_id(self, prefix: str) -> str:
        self._ids += 1
        return f"{prefix}_{self._ids}"

    def _record(self, operation: str, **kwargs) -> None:
        self.calls.append((operation, kwargs))
        if operation in self.fail_on:
            raise BillingProviderError(f"Stripe is down ({operation})", operation=operation)

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def mutating_calls(self) -> List[str]:
        readonly = {"get_customer", "get_customer_subscription", "get_current_usage"}
        return [name for name in self.call_names() if name not in readonly]

    # -- test helpers ---------------------------------------------------

    def add_customer(self, default_payment_method: Optional[str] = None) -> Dict[str, Any]:
        customer_id = self._next_id("cus")
        self.customers[customer_id] = {
            "id": customer_id,
            "object": "customer",
            "invoice_settings": {"default_payment_method": default_payment_method},
            "default_source": None,
            "metadata": {},
        }
        return copy.deepcopy(self.customers[customer_id])

    def set_default_payment_method(self, customer_id: str, payment_method: Optional[str] = "pm_card_visa") -> None:
        self.customers[customer_id]["invoice_settings"]["default_payment_method"] = payment_method

    def add_subscription(
        self,
        customer_id: str,
        price_id: str,
        status: str = "active",
        threshold: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
        extra_items: int = 0,
    ) -> Dict[str, Any]:
        subscription_id = self._next_id("sub")
        items = [
            {
                "id": self._next_id("si"),
                "object": "subscription_item",
                "price": {"id": price_id},
                "billing_thresholds": {"usage_gte": threshold} if threshold else None,
            }
        ]
        for _ in range(extra_items):
            items.append({"id": self._next_id("si"), "price": {"id": "price_extra"}, "billing_thresholds": None})

        self.subscriptions[subscription_id] = {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer_id,
            "status": status,
            "cancel_at": None,
            "cancel_at_period_end": False,
            "current_period_start": PERIOD_START,
            "current_period_end": PERIOD_END,
            "default_payment_method": None,
            "metadata": dict(metadata or {}),
            "items": {"object": "list", "data": items},
        }
        return copy.deepcopy(self.subscriptions[subscription_id])

    def end_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """What Stripe does at period end for a cancel_at_period_end subscription."""
        self.subscriptions[subscription_id]["status"] = "canceled"
        return copy.deepcopy(self.subscriptions[subscription_id])

    def live_subscriptions(self, customer_id: str) -> List[Dict[str, Any]]:
        return [
            s for s in self.subscriptions.values()
            if s["customer"] == customer_id and s["status"] not in ("canceled", "incomplete_expired")
        ]

    def _item(self, item_id: str) -> Dict[str, Any]:
        for subscription in self.subscriptions.values():
            for item in subscription["items"]["data"]:
                if item["id"] == item_id:
                    return item
        raise KeyError(item_id)

    # -- StripeBillingClient interface -----------------------------------

    def create_customer(self, workspace_id, workspace_name: str) -> Dict[str, Any]:
        self._record("create_customer", workspace_id=workspace_id, workspace_name=workspace_name)
        return self.add_customer()

    def get_customer(self, customer_id: str) -> Dict[str, Any]:
        self._record("get_customer", customer_id=customer_id)
        return copy.deepcopy(self.customers[customer_id])

    def create_subscription(
        self,
        customer_id: str,
        product: ProductEnum,
        billing_cycle: BillingCycleEnum,
        threshold: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._record(
            "create_subscription",
            customer_id=customer_id,
            product=product,
            billing_cycle=billing_cycle,
            threshold=threshold,
            idempotency_key=idempotency_key,
        )
        price_id = self.catalog.price_id_for(product, billing_cycle)
        return self.add_subscription(
            customer_id, price_id, status=self.new_subscription_status, threshold=threshold, metadata=metadata
        )

    def get_customer_subscription(self, customer_id: str) -> Optional[Dict[str, Any]]:
        self._record("get_customer_subscription", customer_id=customer_id)
        live = self.live_subscriptions(customer_id)
        return copy.deepcopy(live[-1]) if live else None

    def update_subscription_item(
        self, subscription_id: str, item_id: str, price_id: str, idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        self._record(
            "update_subscription_item",
            subscription_id=subscription_id,
            item_id=item_id,
            price_id=price_id,
            idempotency_key=idempotency_key,
        )
        subscription = self.subscriptions[subscription_id]
        self._item(item_id)["price"] = {"id": price_id}
        subscription["cancel_at_period_end"] = False
        subscription["cancel_at"] = None
        subscription["metadata"].pop(SCHEDULED_PRODUCT_KEY, None)
        subscription["metadata"].pop(SCHEDULED_BILLING_CYCLE_KEY, None)
        return copy.deepcopy(subscription)

    def cancel_at_period_end(
        self,
        subscription_id: str,
        scheduled_product: Optional[ProductEnum],
        scheduled_billing_cycle: Optional[BillingCycleEnum],
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._record(
            "cancel_at_period_end",
            subscription_id=subscription_id,
            scheduled_product=scheduled_product,
            scheduled_billing_cycle=scheduled_billing_cycle,
            idempotency_key=idempotency_key,
        )
        subscription = self.subscriptions[subscription_id]
        subscription["cancel_at_period_end"] = True
        subscription["cancel_at"] = subscription["current_period_end"]
        if scheduled_product:
            subscription["metadata"][SCHEDULED_PRODUCT_KEY] = scheduled_product.value
            subscription["metadata"][SCHEDULED_BILLING_CYCLE_KEY] = scheduled_billing_cycle.value
        else:
            # Stripe drops keys set to ""
            subscription["metadata"].pop(SCHEDULED_PRODUCT_KEY, None)
            subscription["metadata"].pop(SCHEDULED_BILLING_CYCLE_KEY, None)
        return copy.deepcopy(subscription)

    def remove_billing_threshold(self, item_id: str) -> Dict[str, Any]:
        self._record("remove_billing_threshold", item_id=item_id)
        item = self._item(item_id)
        item["billing_thresholds"] = None
        return copy.deepcopy(item)

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        self._record("create_portal_session", customer_id=customer_id, return_url=return_url)
        return f"https://billing.stripe.test/p/session/{customer_id}"

    def create_payment_method_portal_session(self, customer_id: str, return_url: str) -> str:
        self._record("create_payment_method_portal_session", customer_id=customer_id, return_url=return_url)
        return f"https://billing.stripe.test/p/session/{customer_id}/payment_method"

    def get_current_usage(self, customer_id: str, subscription: Dict[str, Any]) -> float:
        self._record("get_current_usage", customer_id=customer_id)
        return self.usage

    def verify_and_parse_webhook(self, raw_body: bytes, signature_header: Optional[str], secret: str) -> Dict[str, Any]:
        if signature_header != VALID_SIGNATURE:
            raise WebhookSignatureError("Invalid signature")
        return json.loads(raw_body)


def make_event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1") -> Dict[str, Any]:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session with rollback."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Billing Fixtures
# ============================================================================

@pytest.fixture
def catalog() -> TierCatalog:
    return TierCatalog(PRICES)


@pytest.fixture
def fake_billing(catalog) -> FakeBillingClient:
    return FakeBillingClient(catalog)


@pytest.fixture
def notifier():
    """Notifier mock; assert on notify_upgraded / notify_downgraded calls."""
    return MagicMock(spec=BillingNotifier)


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session, fake_billing, catalog, notifier):
    """Create FastAPI test application."""
    from stackcore.main import create_app
    from stackcore.database import get_db
    from stackcore.deps import get_billing_client, get_notifier, get_tier_catalog

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_billing_client] = lambda: fake_billing
    test_app.dependency_overrides[get_tier_catalog] = lambda: catalog
    test_app.dependency_overrides[get_notifier] = lambda: notifier

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


def login(client: TestClient, user: User) -> TestClient:
    """Attach a session cookie for `user` to the client."""
    from stackcore.security import create_access_token

    client.cookies.set("access_token", f"Bearer {create_access_token(user.email)}")
    return client


# ============================================================================
# Model Fixtures
# ============================================================================

def add_user(db: Session, email: str, name: str = "Test User") -> User:
    user = User(email=email, name=name)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def add_member(db: Session, workspace: Workspace, user: User, role: RoleEnum = RoleEnum.member) -> WorkspaceMember:
    membership = WorkspaceMember(workspace_id=workspace.id, user_id=user.id, role=role, status="active")
    db.add(membership)
    db.commit()
    return membership


@pytest.fixture
def admin_user(test_db_session) -> User:
    return add_user(test_db_session, "admin@acme.test", "Ada Admin")


@pytest.fixture
def member_user(test_db_session) -> User:
    return add_user(test_db_session, "member@acme.test", "Max Member")


@pytest.fixture
def outsider_user(test_db_session) -> User:
    return add_user(test_db_session, "outsider@elsewhere.test", "Olli Outsider")


@pytest.fixture
def team_workspace(test_db_session, fake_billing, admin_user, member_user) -> Workspace:
    """Team workspace on BASIC/MONTHLY with an admin and a plain member."""
    from stackcore.services.workspace_factory import create_team_workspace

    workspace = create_team_workspace(
        test_db_session,
        fake_billing,
        "Acme",
        owner_user_id=admin_user.id,
        flush_only=False,
    )
    add_member(test_db_session, workspace, member_user, RoleEnum.member)
    fake_billing.calls.clear()
    return workspace


@pytest.fixture
def paying_workspace(team_workspace, fake_billing) -> Workspace:
    """Team workspace whose Stripe customer has a default payment method."""
    fake_billing.set_default_payment_method(team_workspace.stripe_customer_id)
    return team_workspace


def set_plan(fake_billing: FakeBillingClient, workspace: Workspace, price_id: str) -> Dict[str, Any]:
    """Replace the workspace's live subscription price in the fake."""
    subscription = fake_billing.live_subscriptions(workspace.stripe_customer_id)[-1]
    subscription["items"]["data"][0]["price"] = {"id": price_id}
    return copy.deepcopy(subscription)
