#!/usr/bin/env python3
"""
Workspace Bootstrap Script.

WHAT:
    Creates a workspace for an existing user from the command line:
    - team: Stripe customer + BASIC/MONTHLY subscription, user becomes admin
    - personal: no billing at all

USAGE:
    # Team workspace (uses STRIPE_* settings from .env; point STRIPE_API_BASE at stripe-mock locally)
    python scripts/bootstrap_workspace.py team --name "Acme" --owner-email ada@acme.test

    # Skip the usage threshold on the BASIC item
    python scripts/bootstrap_workspace.py team --name "Acme" --owner-email ada@acme.test --no-threshold

    # Personal workspace
    python scripts/bootstrap_workspace.py personal --name "Ada" --owner-email ada@acme.test

REFERENCES:
    - backend/stackcore/services/workspace_factory.py
    - backend/stackcore/deps.py (Settings)
"""

import argparse
import logging
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Create a workspace for an existing user")
    parser.add_argument("kind", choices=["team", "personal"])
    parser.add_argument("--name", required=True, help="Workspace name")
    parser.add_argument("--owner-email", required=True, help="Email of the user who becomes admin")
    parser.add_argument("--no-threshold", action="store_true", help="Team only: no usage threshold on the BASIC item")
    args = parser.parse_args()

    from stackcore.database import get_sync_session
    from stackcore.deps import get_settings
    from stackcore.models import User
    from stackcore.services.billing_errors import BillingProviderError
    from stackcore.services.stripe_client import StripeBillingClient
    from stackcore.services.tier_catalog import TierCatalog
    from stackcore.services.workspace_factory import create_personal_workspace, create_team_workspace

    with get_sync_session() as db:
        owner = db.query(User).filter(User.email == args.owner_email).first()
        if owner is None:
            logger.error(f"No user with email {args.owner_email}")
            return 1

        if args.kind == "personal":
            workspace = create_personal_workspace(db, args.name, owner_user_id=owner.id, flush_only=False)
            logger.info(f"Created personal workspace {workspace.id}")
            return 0

        settings = get_settings()
        catalog = TierCatalog.from_settings(settings)
        client = StripeBillingClient(
            api_key=settings.STRIPE_API_KEY,
            catalog=catalog,
            api_base=settings.STRIPE_API_BASE,
            timeout=settings.STRIPE_TIMEOUT_SECONDS,
            max_network_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
            usage_meter_id=settings.STRIPE_USAGE_METER_ID,
        )
        threshold = None if args.no_threshold else settings.STRIPE_BILLING_THRESHOLD_BASIC

        try:
            workspace = create_team_workspace(
                db, client, args.name, owner_user_id=owner.id, threshold=threshold, flush_only=False
            )
        except BillingProviderError as e:
            db.rollback()
            logger.error(f"Stripe failed during {e.operation}: {e}")
            return 1

        logger.info(
            f"Created team workspace {workspace.id} (customer {workspace.stripe_customer_id}, "
            f"access_enabled={workspace.access_enabled})"
        )
        return 0


if __name__ == "__main__":
    sys.exit(main())
