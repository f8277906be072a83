"""FastAPI dependency injection for settings, database and billing services."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from adspend_core.billing.locks import AccountLockRegistry
from adspend_core.billing.orchestrator import BillingOrchestrator
from adspend_core.state.database import get_engine
from adspend_core.state.database import get_session_factory as build_session_factory
from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from adspend_api.config import APISettings, load_api_settings
from adspend_api.services.daily_billing_job import DailyBillingJob
from adspend_api.services.payment_processor import PaymentProcessor, build_payment_processor
from adspend_api.services.recovery_service import RecoveryService

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = build_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on error.

    Billing mutations never go through this session; the orchestrator owns
    its transactions.  It is used for read-only probes such as ``/health``.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Billing services
# ---------------------------------------------------------------------------

_orchestrator: BillingOrchestrator | None = None
_recovery_service: RecoveryService | None = None
_daily_job: DailyBillingJob | None = None


def init_billing(
    settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    processor: PaymentProcessor | None = None,
) -> BillingOrchestrator:
    """Build the process-wide orchestrator, recovery service and daily job.

    One :class:`AccountLockRegistry` is shared by everything built here so
    that all writers in this process serialize per account.
    """
    global _orchestrator, _recovery_service, _daily_job  # noqa: PLW0603
    _orchestrator = BillingOrchestrator(
        session_factory,
        settings.to_billing_policy(),
        locks=AccountLockRegistry(),
    )
    _recovery_service = RecoveryService(
        _orchestrator,
        processor or build_payment_processor(settings),
        timeout_seconds=settings.processor_timeout_seconds,
    )
    _daily_job = DailyBillingJob(_orchestrator, _recovery_service)
    logger.info("Billing services initialised (billing_enabled=%s)", settings.billing_enabled)
    return _orchestrator


def dispose_billing() -> None:
    global _orchestrator, _recovery_service, _daily_job  # noqa: PLW0603
    _orchestrator = None
    _recovery_service = None
    _daily_job = None


def get_orchestrator() -> BillingOrchestrator:
    """Return the cached :class:`BillingOrchestrator` singleton."""
    if _orchestrator is None:
        raise RuntimeError(
            "Billing services have not been initialised. Ensure init_billing() is called during application startup."
        )
    return _orchestrator


def get_recovery_service() -> RecoveryService:
    if _recovery_service is None:
        raise RuntimeError(
            "Billing services have not been initialised. Ensure init_billing() is called during application startup."
        )
    return _recovery_service


def get_daily_billing_job() -> DailyBillingJob:
    if _daily_job is None:
        raise RuntimeError(
            "Billing services have not been initialised. Ensure init_billing() is called during application startup."
        )
    return _daily_job


OrchestratorDep = Annotated[BillingOrchestrator, Depends(get_orchestrator)]
RecoveryDep = Annotated[RecoveryService, Depends(get_recovery_service)]
DailyJobDep = Annotated[DailyBillingJob, Depends(get_daily_billing_job)]

# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------


def get_customer_id(x_customer_id: Annotated[str | None, Header()] = None) -> str:
    """Customer on whose behalf the request is made (set by the upstream gateway)."""
    if not x_customer_id or not x_customer_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Customer-ID header")
    return x_customer_id.strip()


CustomerIdDep = Annotated[str, Depends(get_customer_id)]


def require_admin(
    settings: SettingsDep,
    x_admin_token: Annotated[str | None, Header()] = None,
) -> None:
    """Reject the request unless ``X-Admin-Token`` matches the configured token.

    An unset admin token disables the admin endpoints entirely.
    """
    expected = settings.admin_token.get_secret_value()
    if not expected:
        raise HTTPException(status_code=503, detail="Admin API is not configured")
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode(), expected.encode()):
        raise HTTPException(status_code=403, detail="Invalid admin token")
