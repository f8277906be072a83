"""FastAPI application entry-point for the ad-spend billing service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from adspend_core.billing.errors import (
    AccountAlreadyExistsError,
    AccountNotFoundError,
    ConcurrencyConflictError,
    InvalidAmountError,
    LedgerInvariantError,
    PaymentProfileInUseError,
)
from adspend_core.state.database import create_tables
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from adspend_api import __version__
from adspend_api.config import APISettings, load_api_settings
from adspend_api.dependencies import (
    dispose_billing,
    dispose_engine,
    get_daily_billing_job,
    get_session_factory,
    init_billing,
    init_engine,
)
from adspend_api.middleware.json_formatter import configure_structured_logging
from adspend_api.middleware.logging import RequestLoggingMiddleware
from adspend_api.routers import ad_spend, admin, health, webhooks
from adspend_api.services.billing_scheduler import BillingSweepScheduler

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Switch to JSON logging when configured.
    - Initialise the async database engine; create tables for local SQLite
      or when ``auto_create_tables`` is set (production uses Alembic).
    - Build the billing services and start the grace-period sweep.

    On shutdown the sweep is stopped before the engine is disposed.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local SQLite" if is_local else "postgres")

    if is_local or settings.auto_create_tables:
        await create_tables(engine)
        logger.info("Database tables ensured")

    init_billing(settings, get_session_factory())

    scheduler: BillingSweepScheduler | None = None
    if settings.grace_sweep_enabled:
        scheduler = BillingSweepScheduler(get_daily_billing_job(), settings.grace_sweep_interval_seconds)
        await scheduler.start()
    app.state.sweep_scheduler = scheduler

    yield

    if scheduler is not None:
        await scheduler.stop()
    dispose_billing()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AccountNotFoundError)
    async def not_found_handler(request: Request, exc: AccountNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": "No ad spend credit account found"})

    @app.exception_handler(AccountAlreadyExistsError)
    async def already_exists_handler(request: Request, exc: AccountAlreadyExistsError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": "An ad spend credit account already exists"})

    @app.exception_handler(PaymentProfileInUseError)
    async def profile_in_use_handler(request: Request, exc: PaymentProfileInUseError) -> JSONResponse:
        logger.warning("Payment profile %s already funds another credit account", exc.stripe_customer_id)
        return JSONResponse(
            status_code=409,
            content={"detail": "This payment method is already linked to another ad spend account"},
        )

    @app.exception_handler(InvalidAmountError)
    async def invalid_amount_handler(request: Request, exc: InvalidAmountError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(ConcurrencyConflictError)
    async def conflict_handler(request: Request, exc: ConcurrencyConflictError) -> JSONResponse:
        logger.warning("Concurrency conflict on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=409,
            content={"detail": "The account was updated concurrently; retry the request", "retryable": True},
        )

    @app.exception_handler(LedgerInvariantError)
    async def ledger_invariant_handler(request: Request, exc: LedgerInvariantError) -> JSONResponse:
        logger.critical(
            "Ledger integrity failure on %s: %s",
            request.url.path,
            exc,
            extra={"account_id": exc.account_id},
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "There is a billing issue with this account. Please contact support."},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: APISettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = settings or load_api_settings()

    app = FastAPI(
        title="Ad Spend Billing API",
        description="Prepaid ad-spend credit ledger and payment risk engine.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "X-Correlation-ID",
            "X-Customer-ID",
            "Accept",
        ],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(ad_spend.router, prefix="/api/v1")
    app.include_router(webhooks.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")
    app.include_router(health.readiness_router)

    _register_exception_handlers(app)
    return app


# Module-level application instance used by ``uvicorn adspend_api.main:app``.
app = create_app()
