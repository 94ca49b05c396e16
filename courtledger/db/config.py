"""
Database Configuration

Where chains are kept, and how to reach that database.

Environment Variables:
    DATABASE_URL: postgresql:// URL (wins over the DATABASE_* parts)
    DATABASE_HOST: Server host; setting it alone selects PostgreSQL
    DATABASE_PORT: Server port (default 5432)
    DATABASE_NAME: Database holding chain_links (default courtledger)
    DATABASE_USER: Role the ledger connects as (default postgres)
    DATABASE_PASSWORD: Password for that role (default empty)
    DATABASE_SSL_MODE: libpq sslmode (default prefer)
    DATABASE_CONNECT_TIMEOUT_S: Seconds to wait for a connection (default 10)

    CHAINSTORE_DRIVER: Store selection, overriding the above
        - "memory": process-local, lost on exit
        - "psycopg2": PostgreSQL (implied when a database is configured)
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional
from urllib.parse import parse_qs, quote, unquote, urlparse


class ChainStoreDriver(str, Enum):
    """Chain store backends."""
    MEMORY = "memory"
    PSYCOPG2 = "psycopg2"


@dataclass
class DatabaseConfig:
    """Connection settings for the PostgreSQL chain store."""
    host: str = "localhost"
    port: int = 5432
    database: str = "courtledger"
    user: str = "postgres"
    password: str = ""
    ssl_mode: str = "prefer"

    # Shows up in pg_stat_activity next to every ledger connection
    application_name: str = "courtledger"
    connect_timeout_s: int = 10

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Build from the DATABASE_* variables (DATABASE_URL is not consulted)."""
        return cls(
            host=os.getenv("DATABASE_HOST", cls.host),
            port=int(os.getenv("DATABASE_PORT", str(cls.port))),
            database=os.getenv("DATABASE_NAME", cls.database),
            user=os.getenv("DATABASE_USER", cls.user),
            password=os.getenv("DATABASE_PASSWORD", cls.password),
            ssl_mode=os.getenv("DATABASE_SSL_MODE", cls.ssl_mode),
            connect_timeout_s=int(os.getenv("DATABASE_CONNECT_TIMEOUT_S", str(cls.connect_timeout_s))),
        )

    @classmethod
    def from_url(cls, url: str) -> "DatabaseConfig":
        """
        Parse a postgresql:// URL.

        Recognized query parameters: sslmode, application_name, connect_timeout.
        Anything the URL leaves out keeps its default.
        """
        parsed = urlparse(url)
        if parsed.scheme not in ("postgres", "postgresql"):
            raise ValueError(f"Not a PostgreSQL URL: scheme {parsed.scheme!r}")

        params = {key: values[0] for key, values in parse_qs(parsed.query).items()}

        return cls(
            host=parsed.hostname or cls.host,
            port=parsed.port or cls.port,
            database=parsed.path.lstrip("/") or cls.database,
            user=unquote(parsed.username) if parsed.username else cls.user,
            password=unquote(parsed.password) if parsed.password else cls.password,
            ssl_mode=params.get("sslmode", cls.ssl_mode),
            application_name=params.get("application_name", cls.application_name),
            connect_timeout_s=int(params.get("connect_timeout", cls.connect_timeout_s)),
        )

    def to_url(self, include_password: bool = True) -> str:
        """
        Render as a postgresql:// URL.

        Pass include_password=False for anything that ends up in a log.
        """
        credentials = self.user
        if include_password and self.password:
            credentials += ":" + quote(self.password, safe="")
        return (
            f"postgresql://{credentials}@{self.host}:{self.port}/{self.database}"
            f"?sslmode={self.ssl_mode}"
        )

    def connect_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for psycopg2.connect()."""
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "dbname": self.database,
            "user": self.user,
            "sslmode": self.ssl_mode,
            "application_name": self.application_name,
            "connect_timeout": self.connect_timeout_s,
        }
        if self.password:
            kwargs["password"] = self.password
        return kwargs


def get_database_url() -> Optional[str]:
    """
    The configured database as a URL, or None when none is configured.

    DATABASE_URL is returned as given; otherwise DATABASE_HOST (and friends)
    are assembled into one.
    """
    url = os.getenv("DATABASE_URL")
    if url:
        return url

    if os.getenv("DATABASE_HOST"):
        return DatabaseConfig.from_env().to_url()

    return None


def load_database_config() -> Optional[DatabaseConfig]:
    """The configured database's settings, or None when none is configured."""
    if os.getenv("DATABASE_URL"):
        return DatabaseConfig.from_url(os.environ["DATABASE_URL"])
    if os.getenv("DATABASE_HOST"):
        return DatabaseConfig.from_env()
    return None


def get_chainstore_driver() -> ChainStoreDriver:
    """
    Pick the chain store backend.

    CHAINSTORE_DRIVER wins when set. Otherwise a configured database means
    psycopg2 and no database means memory.
    """
    explicit = os.getenv("CHAINSTORE_DRIVER", "").strip().lower()

    if explicit:
        try:
            return ChainStoreDriver(explicit)
        except ValueError:
            valid = ", ".join(driver.value for driver in ChainStoreDriver)
            raise ValueError(
                f"Unknown CHAINSTORE_DRIVER: {explicit}. Valid values: {valid}"
            ) from None

    if get_database_url() is None:
        return ChainStoreDriver.MEMORY
    return ChainStoreDriver.PSYCOPG2
