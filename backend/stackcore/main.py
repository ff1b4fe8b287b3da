"""FastAPI application entrypoint.

Configures CORS, error handlers and Sentry, includes routers, and exposes a
healthcheck endpoint.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .routers import billing as billing_router
from .routers import workspaces as workspaces_router
from .services.billing_errors import BillingIntegrityError
from .telemetry import capture_exception, init_observability
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def create_app() -> FastAPI:
    status_by_tool = init_observability()
    logger.info(f"[STARTUP] Observability: {status_by_tool}")

    app = FastAPI(
        title="Stackcore Billing API",
        description="""
        Workspace subscription billing on Stripe.

        This API provides endpoints for:
        - Reading a workspace's live subscription
        - Upgrading (immediate) and downgrading (end of period) plans
        - Opening the Stripe billing portal
        - Receiving Stripe webhooks

        Authenticated endpoints expect a JWT in the `access_token` HTTP-only cookie.
        """,
        version="1.0.0",
    )

    settings = get_settings()

    ALLOWED_ORIGINS = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    logger.info(f"[CORS] Allowed origins: {ALLOWED_ORIGINS}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Schema violations use the same 400 {"error": ...} envelope as policy errors."""
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(BillingIntegrityError)
    async def integrity_exception_handler(request: Request, exc: BillingIntegrityError):
        """Stripe data this system cannot reason about. A bug or an out-of-band edit."""
        logger.error(
            f"[BILLING] Integrity error on {request.method} {request.url.path}: {exc}",
            exc_info=exc,
        )
        capture_exception(exc, extra={"path": request.url.path})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "internal_error"},
        )

    app.include_router(billing_router.router)
    app.include_router(workspaces_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="""
        Simple health check endpoint to verify the API is running.
        Does not require authentication or reach Stripe.
        """,
    )
    def health():
        return schemas.HealthResponse(status="ok")

    return app


app = create_app()
