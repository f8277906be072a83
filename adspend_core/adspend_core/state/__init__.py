"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from adspend_core.state.database import create_tables, get_engine, get_session, get_session_factory
from adspend_core.state.repository import (
    CreditAccountRepository,
    LedgerEntryRepository,
    ReplayResult,
)

__all__ = [
    "CreditAccountRepository",
    "LedgerEntryRepository",
    "ReplayResult",
    "create_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
