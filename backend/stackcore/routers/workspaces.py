"""Workspace lifecycle endpoints.

WHAT: Deactivation of team workspaces
WHY: Ending a workspace must also end its Stripe subscription, so it lives
     next to billing rather than in a generic CRUD router

REFERENCES:
    - stackcore/services/workspace_factory.py: deactivate_workspace
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_billing_client, get_current_user
from ..models import User
from ..services.stripe_client import StripeBillingClient
from ..services.workspace_factory import deactivate_workspace

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/workspaces",
    tags=["Workspaces"],
    responses={
        400: {"model": schemas.ErrorResponse, "description": "Rejected"},
        401: {"description": "Unauthorized"},
    },
)


@router.post(
    "/{workspace_id}/deactivate",
    response_model=schemas.MessageResponse,
    summary="Deactivate workspace",
    description="""
    Deactivate a team workspace.

    Requirements:
    - User must be an admin of the workspace.
    - Personal workspaces cannot be deactivated.

    Behavior:
    - Removes all members and marks the workspace deactivated.
    - The Stripe subscription ends with the current billing period; access
      is disabled when Stripe reports it deleted.
    """,
)
def deactivate(
    workspace_id: UUID,
    db: Session = Depends(get_db),
    client: StripeBillingClient = Depends(get_billing_client),
    current_user: User = Depends(get_current_user),
):
    error = deactivate_workspace(db, client, current_user, workspace_id)
    if error:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": error.value})
    return schemas.MessageResponse(message="Workspace deactivated")
