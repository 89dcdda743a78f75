"""Swap persistence."""

from arkswap.storage.database import close_db, get_db, get_engine, get_session_factory, init_db
from arkswap.storage.models import Base, SwapRecord
from arkswap.storage.repository import (
    InMemorySwapRepository,
    SqlSwapRepository,
    SwapRecordStore,
    SwapRepository,
)

__all__ = [
    "Base",
    "InMemorySwapRepository",
    "SqlSwapRepository",
    "SwapRecord",
    "SwapRecordStore",
    "SwapRepository",
    "close_db",
    "get_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
