"""Pantry Billing: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# CRITICAL ORDER: configure_structlog MUST be called before all other app imports
# to avoid the structlog cache pitfall (structlog caches the processor chain on first use).
from pantry_billing.core.logging import configure_structlog
from pantry_billing.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import redis.asyncio as redis
import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pantry_billing.api.routes import api_router
from pantry_billing.core.access_guard import AccessGuard
from pantry_billing.core.config import Settings, get_settings
from pantry_billing.core.exceptions import NotFoundError, TransientError, UpgradeRequiredError
from pantry_billing.db import close_db, get_session_factory, init_db
from pantry_billing.middleware.correlation import get_correlation_id, setup_correlation_middleware
from pantry_billing.services.entitlement_service import EntitlementEngine
from pantry_billing.services.expiration_sweep import TrialExpirationSweep
from pantry_billing.services.quota_cache import QuotaCache
from pantry_billing.services.stripe_gateway import StripeGateway
from pantry_billing.services.subscription_store import SubscriptionStore
from pantry_billing.services.trial_service import TrialService
from pantry_billing.services.usage_snapshot import UsageSnapshotProvider
from pantry_billing.services.webhook_reconciler import WebhookReconciler

logger = structlog.get_logger(__name__)


def validate_price_map() -> None:
    """Fail fast if any Stripe price ID is missing at startup."""
    settings = get_settings()
    if settings.debug:
        return  # Skip in dev/test mode
    required = {
        "stripe_price_basic_monthly": settings.stripe_price_basic_monthly,
        "stripe_price_basic_annual": settings.stripe_price_basic_annual,
        "stripe_price_pro_monthly": settings.stripe_price_pro_monthly,
        "stripe_price_pro_annual": settings.stripe_price_pro_annual,
    }
    missing = [k for k, v in required.items() if not v]
    if missing:
        raise RuntimeError(f"Missing Stripe price IDs at startup: {missing}")


def wire_services(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: redis.Redis | None = None,
    settings: Settings | None = None,
) -> None:
    """Build the service graph and attach it to ``app.state``."""
    settings = settings or get_settings()

    cache = QuotaCache(ttl_seconds=settings.quota_cache_ttl_seconds, max_entries=settings.quota_cache_max_entries)
    engine = EntitlementEngine(UsageSnapshotProvider(session_factory), cache)
    store = SubscriptionStore(session_factory)
    gateway = StripeGateway(settings)
    trials = TrialService(store, engine, trial_days=settings.trial_days)
    reconciler = WebhookReconciler(
        session_factory,
        store,
        gateway,
        engine,
        max_attempts=settings.webhook_max_attempts,
    )

    app.state.session_factory = session_factory
    app.state.redis = redis_client
    app.state.entitlements = engine
    app.state.access_guard = AccessGuard(engine)
    app.state.subscriptions = store
    app.state.stripe = gateway
    app.state.trials = trials
    app.state.reconciler = reconciler
    app.state.sweep = TrialExpirationSweep(
        trials,
        reconciler,
        redis_client,
        interval_seconds=settings.sweep_interval_seconds,
        lease_ttl_seconds=settings.sweep_lock_ttl_seconds,
        batch_size=settings.sweep_batch_size,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # SIGTERM handler flips this so the health check returns 503
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    # Startup
    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    validate_price_map()
    logger.info("stripe_price_map_validated")

    await init_db()
    logger.info("db_initialized")

    redis_client = redis.from_url(settings.redis_url, decode_responses=True)
    wire_services(app, get_session_factory(), redis_client, settings)

    app.state.sweep.start()

    yield

    # Shutdown
    logger.info("shutdown_begin")
    await app.state.sweep.stop()
    await redis_client.aclose()
    await close_db()
    logger.info("shutdown_complete")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Global exception handler for HTTPException with debug_id tracking.

    Logs errors server-side with full context, returns sanitized response to client.
    """
    debug_id = str(uuid.uuid4())

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
    )


async def billing_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map engine errors to HTTP: NotFound 404, Transient 503, UpgradeRequired 403."""
    debug_id = str(uuid.uuid4())

    if isinstance(exc, NotFoundError):
        status_code, detail = 404, {"code": "not_found", "message": str(exc)}
    elif isinstance(exc, UpgradeRequiredError):
        status_code = 403
        detail = {"code": "upgrade_required", "message": str(exc), **exc.info.to_detail()}
    else:
        status_code, detail = 503, {"code": "entitlements_unavailable", "message": "Please retry shortly."}

    logger.warning(
        "billing_error",
        status_code=status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        user_id=getattr(request.state, "user_id", None),
        error=str(exc),
        error_type=type(exc).__name__,
    )

    return JSONResponse(status_code=status_code, content={"detail": detail, "debug_id": debug_id})


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors with debug_id tracking.

    Logs full exception with traceback, returns generic 500 to client.
    """
    debug_id = str(uuid.uuid4())

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.exception_handler(HTTPException)(http_exception_handler)
    for exc_class in (NotFoundError, TransientError, UpgradeRequiredError):
        app.exception_handler(exc_class)(billing_error_handler)
    app.exception_handler(Exception)(generic_exception_handler)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Subscription entitlements and Stripe billing reconciliation",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, *settings.clerk_allowed_origins],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    register_exception_handlers(app)

    app.include_router(api_router, prefix="/api")

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pantry_billing.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
