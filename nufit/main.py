"""
NuFit Entitlements - Main FastAPI Application.

Entry point for the subscription and quota lifecycle API. It owns the
entitlement records, gates plan generation on them and runs the daily
expiry and quota-reset sweeps.

Run with:
    uvicorn nufit.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from nufit.api.v1.admin import router as admin_router
from nufit.api.v1.billing import router as billing_router
from nufit.api.v1.plans import router as plans_router
from nufit.api.v1.subscription import router as subscription_router
from nufit.config import Settings, get_settings
from nufit.constants import API_TITLE, API_VERSION
from nufit.errors import EntitlementError, StoreUnavailable
from nufit.logging_config import setup_logging
from nufit.middleware import RequestContextMiddleware
from nufit.services.entitlement_service import EntitlementService
from nufit.services.entitlement_store import (
    EntitlementStore,
    InMemoryEntitlementStore,
    SupabaseEntitlementStore,
)
from nufit.services.lifecycle import TransitionEngine
from nufit.services.quota_gate import QuotaGate
from nufit.services.scheduler import Scheduler, SweepRunner
from nufit.services.stripe_service import StripeService
from nufit.services.tier_catalog import TierCatalog

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


def install_services(
    app: FastAPI,
    store: EntitlementStore,
    settings: Settings,
    now_provider=None,
) -> None:
    """Build the lifecycle services around `store` and attach them to app.state."""
    clock = {"now_provider": now_provider} if now_provider else {}
    catalog = TierCatalog()
    engine = TransitionEngine(catalog, settings.subscription)
    service = EntitlementService(store, engine, catalog, settings.subscription, **clock)
    runner = SweepRunner(store, engine, **clock)

    app.state.entitlement_service = service
    app.state.quota_gate = QuotaGate(service)
    app.state.sweep_runner = runner
    app.state.scheduler = Scheduler(runner, settings.scheduler, **clock)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    # Initialize Supabase async client
    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_secret_key:
        try:
            supabase_client = await acreate_client(
                settings.supabase_url,
                settings.supabase_secret_key,
            )
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning("supabase_not_configured", detail="Auth endpoints will return 503")

    _app.state.supabase = supabase_client

    store: EntitlementStore
    if supabase_client is not None:
        store = SupabaseEntitlementStore(
            supabase_client,
            settings.entitlements_table,
            settings.webhook_events_table,
            write_concurrency=settings.store_write_concurrency,
        )
    else:
        logger.warning("entitlement_store_in_memory", detail="Records are lost on restart")
        store = InMemoryEntitlementStore()

    install_services(_app, store, settings)

    stripe_service: StripeService | None = None
    if settings.stripe.webhook_secret:
        stripe_service = StripeService(settings.stripe)
        logger.info("stripe_configured")
    else:
        logger.warning("stripe_not_configured", detail="Billing webhook will return 503")
    _app.state.stripe_service = stripe_service

    # app.state.plan_generator is attached by the plan-generation collaborator.
    _app.state.scheduler.start()
    logger.info("services_initialized")

    yield

    await _app.state.scheduler.stop()
    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Subscription tiers, free trial, discounts and plan-generation quota "
        "for the NuFit nutrition planner."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


@app.exception_handler(EntitlementError)
async def entitlement_error_handler(_request: Request, exc: EntitlementError) -> JSONResponse:
    logger.info("entitlement_request_denied", error=exc.code, status_code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(_request: Request, exc: StoreUnavailable) -> JSONResponse:
    logger.error("entitlement_store_unavailable", error=str(exc))
    return JSONResponse(
        status_code=503,
        content={"error": "store_unavailable", "message": StoreUnavailable.__doc__},
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


# Include routers
app.include_router(subscription_router, prefix="/api/v1")
app.include_router(plans_router, prefix="/api/v1")
app.include_router(billing_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "Subscription and plan-generation quota lifecycle",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
