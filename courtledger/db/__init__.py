"""
Database Layer for the CourtLedger event ledger

Provides:
- PostgreSQL schema
- ChainStore abstraction (InMemory for dev, Postgres for prod)
- Connection configuration and driver selection
"""

from .store import (
    ChainStore,
    InMemoryChainStore,
    PostgresChainStore,
    ChainStoreError,
    ConcurrentAppendConflict,
    StoreUnavailable,
    StoreTimeout,
    ChainIntegrityError,
)
from .config import (
    ChainStoreDriver,
    DatabaseConfig,
    get_chainstore_driver,
    get_database_url,
    load_database_config,
)

__all__ = [
    "ChainStore",
    "InMemoryChainStore",
    "PostgresChainStore",
    "ChainStoreError",
    "ConcurrentAppendConflict",
    "StoreUnavailable",
    "StoreTimeout",
    "ChainIntegrityError",
    "ChainStoreDriver",
    "DatabaseConfig",
    "get_chainstore_driver",
    "get_database_url",
    "load_database_config",
]
