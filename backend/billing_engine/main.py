"""
Coworking Billing Backend - Main FastAPI Application.

Serves the billing/subscription engine of the coworking platform: billing
cycles, subscriptions, metered usage, invoice generation, recurring runs and
financial reports.

Run with:
    uvicorn billing_engine.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from billing_engine.api.errors import billing_error_handler
from billing_engine.api.v1.billing import router as billing_router
from billing_engine.config import Settings, get_settings
from billing_engine.constants import API_TITLE, API_VERSION
from billing_engine.dependencies import build_services
from billing_engine.exceptions import BillingError
from billing_engine.logging_config import setup_logging
from billing_engine.middleware import RequestContextMiddleware
from billing_engine.services.repository import BillingRepository, InMemoryBillingRepository
from billing_engine.services.supabase_repository import SupabaseBillingRepository

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


async def create_repository(app_settings: Settings) -> BillingRepository:
    """Pick the storage backend; falls back to in-memory if Supabase is unusable."""
    if app_settings.billing.storage_backend != "supabase":
        logger.info("billing_storage_memory")
        return InMemoryBillingRepository()

    if not (app_settings.supabase_url and app_settings.supabase_secret_key):
        logger.warning("supabase_not_configured", detail="Using in-memory billing storage")
        return InMemoryBillingRepository()

    try:
        client: AsyncSupabaseClient = await acreate_client(
            app_settings.supabase_url,
            app_settings.supabase_secret_key,
        )
    except Exception as e:
        logger.warning("supabase_init_failed", error=str(e))
        return InMemoryBillingRepository()

    logger.info("supabase_configured")
    return SupabaseBillingRepository(client, app_settings.billing)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    repository = await create_repository(settings)

    # Create services once at startup
    _app.state.billing = build_services(repository, settings.billing)

    logger.info(
        "services_initialized",
        storage_backend=type(repository).__name__,
        runner_max_concurrency=settings.billing.runner_max_concurrency,
    )

    yield

    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Billing and subscription engine for multi-tenant coworking spaces: "
        "billing cycles, metered usage, exactly-once invoicing and revenue reports."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(BillingError, billing_error_handler)

# Include routers
app.include_router(billing_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "Billing and subscription engine for coworking spaces",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
