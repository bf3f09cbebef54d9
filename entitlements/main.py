from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
import logging
import asyncio

from entitlements.config import settings

from entitlements.routers import health, subscription, usage, webhooks
from entitlements.auth.user_auth import get_current_user
from entitlements.core.database import init_db, close_db
from entitlements.core.structured_logging import setup_logging, APP_VERSION
from entitlements.core.errors.registry import error_registry
from entitlements.core.errors.middleware import register_error_handlers
from entitlements.core.log_middleware import CorrelationMiddleware
from entitlements.core.issue_tracker import issue_tracker
from entitlements.services.container import get_services
from entitlements.services.retention import retention_loop

# Initialize structured logging before any logger calls
setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)

logger = logging.getLogger(__name__)

API_TITLE = "Entitlement Engine API"

API_DESCRIPTION = """
## Entitlements - subscription tier, status and free-tier quotas

Authoritative FREE/PREMIUM state per user, reconciled from two producers:
the client-initiated subscription actions below and Stripe webhooks.

### Authentication
Requests arrive via the host gateway with `X-User-Id` (and `X-Internal-Key`
when configured). `/stripe/webhook` is authenticated by Stripe-Signature.
"""

TAGS_METADATA = [
    {"name": "health", "description": "Liveness, deep checks and monitoring signals."},
    {"name": "subscription", "description": "Create, cancel and inspect a user's Premium subscription."},
    {"name": "usage", "description": "Free-tier quota gate and usage history."},
    {"name": "webhooks", "description": "Stripe webhook receiver."},
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting Entitlement Engine API v%s...", APP_VERSION)

    error_registry.load()
    issue_tracker.reload()
    init_db()

    services = get_services()
    retention_task = asyncio.create_task(retention_loop(services.store, services.ledger))

    yield

    # Shutdown
    logger.info("Shutting down Entitlement Engine API...")

    issue_tracker.persist()

    retention_task.cancel()
    try:
        await retention_task
    except asyncio.CancelledError:
        logger.info("Retention loop cancelled")

    close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=APP_VERSION,
        openapi_tags=TAGS_METADATA,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware (request_id + correlation_id in every log)
    app.add_middleware(CorrelationMiddleware)

    # Structured JSON errors: EntitlementError, validation, catch-all
    register_error_handlers(app)

    # Protected Routes Dependency
    protected_route_dependency = [Depends(get_current_user)]

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(
        subscription.router,
        prefix="/api/subscription",
        tags=["subscription"],
        dependencies=protected_route_dependency,
    )
    app.include_router(
        usage.router,
        prefix="/api/usage",
        tags=["usage"],
        dependencies=protected_route_dependency,
    )
    # Stripe authenticates with Stripe-Signature, not the gateway headers
    app.include_router(webhooks.router, prefix="/stripe", tags=["webhooks"])

    @app.get("/", tags=["health"], summary="API Root")
    async def root():
        return {
            "name": API_TITLE,
            "version": APP_VERSION,
            "status": "running",
            "docs": {
                "swagger": "/docs",
                "redoc": "/redoc",
                "openapi": "/openapi.json",
            },
        }

    return app


# Create the app instance
app = create_app()
