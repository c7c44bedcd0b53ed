"""Ledger module: durable storage for swap records."""

from lnbridge.ledger.database import close_db, get_session_factory, init_db
from lnbridge.ledger.models import Base, SwapRecord
from lnbridge.ledger.repository import SqlSwapStore

__all__ = [
    # Models
    "Base",
    "SwapRecord",
    # Database
    "close_db",
    "get_session_factory",
    "init_db",
    "SqlSwapStore",
]
