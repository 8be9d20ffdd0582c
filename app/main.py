from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from app.config import settings
from app.routers import health, marketplace, payments
from app.core.database import init_db, close_db
from app.core.structured_logging import APP_VERSION, setup_logging
from app.core.errors import PaymentEngineError
from app.core.errors.registry import error_registry
from app.core.errors.middleware import payment_engine_error_handler
from app.core.log_middleware import CorrelationMiddleware
from app.services.payment_providers import close_provider_registry, get_provider_registry

# Initialize structured logging before any logger calls
setup_logging(log_dir=settings.log_directory, log_file=settings.log_file)

logger = logging.getLogger(__name__)

API_TITLE = "NostrMaxi Payments API"

API_DESCRIPTION = """
## NostrMaxi Payment & Settlement Engine

Lightning subscription billing and split settlement for NIP-05 name sales.

### Authentication

User endpoints require an API key.
Include in requests: `X-API-Key: nm_your_key_here`

Provider webhooks are authenticated by HMAC signature
(`btcpay-sig` or `x-webhook-signature` header).
"""

TAGS_METADATA = [
    {
        "name": "health",
        "description": "Health check endpoints for monitoring. No authentication required.",
    },
    {
        "name": "payments",
        "description": "Subscription tiers, Lightning invoices, receipts and the provider webhook.",
    },
    {
        "name": "marketplace",
        "description": "Name purchases and auction settlement with automatic seller payout.",
    },
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Starting %s v%s...", API_TITLE, APP_VERSION)

    error_registry.load()

    init_db()  # Run Alembic migrations
    logger.info("Database initialized")

    registry = get_provider_registry()
    logger.info(
        "Payment providers ready: %s",
        ", ".join(f"{p.type.value}({p.mode.value})" for p in registry.list()) or "none",
    )

    yield

    logger.info("Shutting down %s...", API_TITLE)
    await close_provider_registry()
    close_db()
    logger.info("Database connection closed")


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

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware (request_id + correlation_id in every log)
    app.add_middleware(CorrelationMiddleware)

    # Structured error handler for PaymentEngineError
    app.add_exception_handler(PaymentEngineError, payment_engine_error_handler)

    # Catch-all handler so unhandled exceptions return JSON (not bare text)
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error"},
        )

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(payments.router, prefix="/api/v1/payments", tags=["payments"])
    app.include_router(marketplace.router, prefix="/api/v1/marketplace", tags=["marketplace"])

    return app


app = create_app()
