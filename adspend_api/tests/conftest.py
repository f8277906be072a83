"""Shared fixtures for the ad-spend API tests.

Billing services run against a real in-memory SQLite database; only the
payment processor is mocked.  The HTTP client talks to the app through
``ASGITransport`` with dependency overrides, so the lifespan (engine,
background sweep) never runs.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from adspend_core.billing.orchestrator import BillingOrchestrator
from adspend_core.billing.retry import RetryConfig
from adspend_core.state.database import create_tables, get_session_factory
from adspend_core.state.sqlite_adapter import get_local_engine
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr

from adspend_api.config import APISettings
from adspend_api.dependencies import (
    get_daily_billing_job,
    get_db_session,
    get_orchestrator,
    get_recovery_service,
    get_settings,
)
from adspend_api.main import create_app
from adspend_api.services.daily_billing_job import DailyBillingJob
from adspend_api.services.payment_processor import ChargeResult, PaymentProfile
from adspend_api.services.recovery_service import RecoveryService

ADMIN_TOKEN = "test-admin-token"
CUSTOMER_ID = "cust-1001"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


def approve(account: Any, amount: Decimal, description: str, metadata: dict[str, str] | None = None) -> ChargeResult:
    return ChargeResult.succeeded(amount, f"pi_{uuid.uuid4().hex[:16]}")


# ---------------------------------------------------------------------------
# Billing services
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=UTC))


@pytest_asyncio.fixture()
async def engine():
    engine = get_local_engine(":memory:")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def orchestrator(engine, clock) -> BillingOrchestrator:
    return BillingOrchestrator(
        get_session_factory(engine),
        clock=clock,
        retry_config=RetryConfig(max_retries=1, base_delay=0.001, jitter=False),
    )


@pytest.fixture()
def processor() -> AsyncMock:
    """Payment processor that approves every charge unless a test says otherwise."""
    mock = AsyncMock()
    mock.resolve_payment_profile = AsyncMock(
        return_value=PaymentProfile(stripe_customer_id="cus_on_file", stripe_payment_method_id="pm_on_file")
    )
    mock.charge = AsyncMock(side_effect=approve)
    return mock


@pytest.fixture()
def recovery(orchestrator: BillingOrchestrator, processor: AsyncMock) -> RecoveryService:
    return RecoveryService(orchestrator, processor, timeout_seconds=1.0)


@pytest.fixture()
def daily_job(orchestrator: BillingOrchestrator, recovery: RecoveryService) -> DailyBillingJob:
    return DailyBillingJob(orchestrator, recovery)


# ---------------------------------------------------------------------------
# FastAPI app and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    return APISettings(
        database_url="sqlite+aiosqlite:///:memory:",
        admin_token=SecretStr(ADMIN_TOKEN),
        billing_enabled=False,
        grace_sweep_enabled=False,
        cors_origins=["http://localhost:3000"],
    )


@pytest.fixture()
def app(test_settings, engine, orchestrator, recovery, daily_job):
    application = create_app(test_settings)
    session_factory = get_session_factory(engine)

    async def _override_session():
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_orchestrator] = lambda: orchestrator
    application.dependency_overrides[get_recovery_service] = lambda: recovery
    application.dependency_overrides[get_daily_billing_job] = lambda: daily_job
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Async httpx client acting as ``CUSTOMER_ID``."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-Customer-ID": CUSTOMER_ID},
    ) as ac:
        yield ac


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}


@pytest.fixture()
def customer_id() -> str:
    return CUSTOMER_ID
