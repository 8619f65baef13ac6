"""
Subscription Entitlement Service - Main Application
===================================================

FastAPI application entry point with middleware configuration
and route registration.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import newrelic.agent
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.core.errors import setup_exception_handlers
from app.db.session import close_db, init_db
from app.dependencies import get_app_store_api
from app.services.cache import close_redis, init_redis

# Configure logging for the application (root logger defaults to WARNING)
logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


# =============================================================================
# New Relic Transaction Enrichment Middleware (Raw ASGI)
# =============================================================================

class NewRelicTransactionMiddleware:
    """
    Raw ASGI middleware that adds custom attributes to every New Relic
    transaction.

    Raw ASGI keeps the route handler in the same task, so New Relic's
    contextvars-based spans for the DB, Redis and App Store calls stay
    attached to the web transaction.

    Captures: response status, latency, HTTP method, route pattern, and
    the user id from the path for subscription endpoints.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500  # default until we capture the real one

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000

            txn = newrelic.agent.current_transaction()
            if txn:
                # Route pattern (e.g. "/api/v1/subscriptions/premium/{user_id}")
                route = scope.get("route")
                route_path = route.path if route else scope.get("path", "unknown")

                newrelic.agent.add_custom_attributes([
                    ("http.method", scope.get("method", "")),
                    ("http.route", route_path),
                    ("http.status_code", status_code),
                    ("http.duration_ms", round(duration_ms, 2)),
                    ("environment", settings.ENVIRONMENT),
                    ("apple.environment", settings.APPLE_ENVIRONMENT),
                ])

                user_id = scope.get("path_params", {}).get("user_id")
                if user_id:
                    newrelic.agent.add_custom_attribute("enduser.id", str(user_id))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events for:
    - Database connection
    - Redis connection
    - App Store Server API client
    """
    logger.info("Starting Subscription Entitlement Service (%s)", settings.ENVIRONMENT)

    if not settings.API_KEY:
        logger.warning("API_KEY is not set; all authenticated endpoints will reject requests")

    # Initialize database
    try:
        await init_db()
    except (SQLAlchemyError, OSError, ValueError) as e:
        # Continue startup even if DB fails (for health checks)
        logger.error("Database connection failed: %s", e)

    # Initialize Redis (optional: the cache is best-effort)
    try:
        await init_redis()
    except (RedisError, OSError) as e:
        logger.warning("Redis connection failed: %s", e)

    yield

    logger.info("Shutting down Subscription Entitlement Service")
    if get_app_store_api.cache_info().currsize:
        await get_app_store_api().close()
        get_app_store_api.cache_clear()
    await close_db()
    await close_redis()


# Create FastAPI application
app = FastAPI(
    title="Subscription Entitlement Service",
    description="""
## App Store Subscription Entitlements

Keeps user entitlement flags consistent with the App Store.

### Features
- **Receipt validation**: StoreKit 2 signed transactions, verified against Apple's roots
- **Server notifications**: App Store Server Notifications V2 webhook
- **Premium check**: one-time unlock or active subscription
- **Sync**: reconcile stored state with the App Store transaction history

### Authentication
- Subscription and test-notification endpoints: `X-API-Key` header
- Apple webhook: JWS signature of the notification
    """,
    version=API_VERSION,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        400: {"description": "Validation error or malformed notification"},
        401: {"description": "Missing or invalid API key"},
        500: {"description": "Internal server error"},
        503: {"description": "Store or App Store temporarily unavailable"},
    },
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# New Relic transaction enrichment (adds custom attrs to every transaction)
app.add_middleware(NewRelicTransactionMiddleware)

# Setup exception handlers
setup_exception_handlers(app)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """
    Health check endpoint.

    Returns the current status of the API.
    """
    return {
        "status": "healthy",
        "version": API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "Subscription Entitlement Service",
        "version": API_VERSION,
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

from app.api.v1 import subscriptions, webhooks  # noqa: E402

app.include_router(subscriptions.router, prefix="/api/v1/subscriptions", tags=["Subscriptions"])
app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])
