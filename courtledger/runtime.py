"""
Shared Ledger Instance

Holds the process-wide ledger and its chain store.
Supports both in-memory (development) and PostgreSQL (production) modes.

Mode is determined by environment variables:
- CHAINSTORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: Use in-memory (default for development)

A configured database that cannot be reached is an error, never a silent
fallback to memory: links appended to a throwaway store would be lost.
"""

from threading import Lock
from typing import Optional

from .config import LedgerConfig
from .core.ledger import LedgerService
from .db.config import ChainStoreDriver, DatabaseConfig, get_chainstore_driver, load_database_config
from .db.store import ChainStore, InMemoryChainStore, PostgresChainStore, StoreUnavailable
from .observability import get_logger

logger = get_logger(__name__)

_ledger_lock = Lock()
_ledger: Optional[LedgerService] = None


def create_chain_store(config: Optional[LedgerConfig] = None) -> ChainStore:
    """
    Create the appropriate ChainStore based on configuration.

    Returns:
        InMemoryChainStore for development/testing
        PostgresChainStore for production (when a database is configured)

    Raises:
        StoreUnavailable: psycopg2 selected but no database configured
    """
    driver = get_chainstore_driver()

    if driver == ChainStoreDriver.MEMORY:
        logger.info("Using in-memory chain store (no persistence)")
        return InMemoryChainStore()

    db_config = load_database_config()
    if db_config is None:
        raise StoreUnavailable(
            f"CHAINSTORE_DRIVER is {driver.value} but no database is configured "
            "(set DATABASE_URL or DATABASE_HOST)"
        )

    return _create_psycopg2_store(db_config, config or LedgerConfig())


def _create_psycopg2_store(db_config: DatabaseConfig, config: LedgerConfig) -> ChainStore:
    """Create PostgresChainStore with psycopg2."""
    import psycopg2

    connect_kwargs = db_config.connect_kwargs()

    def connection_factory():
        return psycopg2.connect(**connect_kwargs)

    # No configured timeout keeps the store default (PostgreSQL reads 0 as unlimited)
    if config.store_timeout_s is None:
        store = PostgresChainStore(connection_factory)
    else:
        store = PostgresChainStore(
            connection_factory,
            statement_timeout_ms=max(1, int(config.store_timeout_s * 1000)),
        )

    # Fails fast (StoreUnavailable) if the database is unreachable.
    # Reads no table, so it passes on a database init-schema has not touched yet.
    store.ping(timeout=config.store_timeout_s)

    logger.info(
        "PostgreSQL chain store ready",
        database_url=db_config.to_url(include_password=False),
    )
    return store


def get_ledger() -> LedgerService:
    """
    Get the shared ledger, creating it on first use.

    Thread-safe: concurrent first calls create exactly one instance.
    """
    global _ledger
    with _ledger_lock:
        if _ledger is None:
            config = LedgerConfig.from_env()
            _ledger = LedgerService(store=create_chain_store(config), config=config)
        return _ledger


def reset_ledger() -> None:
    """Drop the shared ledger (tests, or after changing environment)."""
    global _ledger
    with _ledger_lock:
        _ledger = None
