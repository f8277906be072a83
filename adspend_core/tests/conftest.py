"""Shared fixtures for the billing core tests.

Every database-backed test gets a fresh in-memory SQLite engine with the
production table definitions, plus a controllable clock.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from adspend_core.billing.orchestrator import BillingOrchestrator
from adspend_core.billing.retry import RetryConfig
from adspend_core.config import BillingPolicy
from adspend_core.state.database import create_tables, get_session_factory
from adspend_core.state.sqlite_adapter import get_local_engine


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=UTC))


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine with all tables created."""
    engine = get_local_engine(":memory:")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest.fixture
def orchestrator(session_factory, clock) -> BillingOrchestrator:
    return BillingOrchestrator(
        session_factory,
        BillingPolicy(),
        clock=clock,
        retry_config=RetryConfig(max_retries=1, base_delay=0.001, jitter=False),
    )
