"""
Ledger Configuration

Retry, timeout and paging settings for the append and verify paths.

Environment Variables:
    COURTLEDGER_MAX_APPEND_ATTEMPTS: Attempts per append before giving up (default 5)
    COURTLEDGER_BACKOFF_BASE_MS: First retry delay ceiling in ms (default 10)
    COURTLEDGER_BACKOFF_MAX_MS: Largest retry delay ceiling in ms (default 250)
    COURTLEDGER_STORE_TIMEOUT_S: Default timeout for each store call (default 5.0).
        "none" leaves calls to the store's own limit (PostgreSQL: 5s statement timeout)
    COURTLEDGER_VERIFY_PAGE_SIZE: Links read per page while verifying (default 500)
    COURTLEDGER_SIGNING_KEY: Base64 Ed25519 private key for attestations (optional)
"""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class LedgerConfig:
    """Ledger tunables."""
    max_append_attempts: int = 5
    backoff_base_ms: float = 10.0
    backoff_max_ms: float = 250.0
    store_timeout_s: Optional[float] = 5.0
    verify_page_size: int = 500
    signing_key: Optional[str] = None

    def __post_init__(self):
        if self.max_append_attempts < 1:
            raise ValueError("max_append_attempts must be at least 1")
        if self.backoff_base_ms < 0 or self.backoff_max_ms < self.backoff_base_ms:
            raise ValueError("backoff must satisfy 0 <= base <= max")
        if self.store_timeout_s is not None and self.store_timeout_s <= 0:
            raise ValueError("store_timeout_s must be positive (or None for the store default)")
        if self.verify_page_size < 1:
            raise ValueError("verify_page_size must be at least 1")

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """
        Load configuration from environment variables.

        Unset variables fall back to the defaults above.
        """
        timeout = os.getenv("COURTLEDGER_STORE_TIMEOUT_S", "5.0")
        return cls(
            max_append_attempts=int(os.getenv("COURTLEDGER_MAX_APPEND_ATTEMPTS", "5")),
            backoff_base_ms=float(os.getenv("COURTLEDGER_BACKOFF_BASE_MS", "10")),
            backoff_max_ms=float(os.getenv("COURTLEDGER_BACKOFF_MAX_MS", "250")),
            store_timeout_s=None if timeout.lower() in ("", "none", "0") else float(timeout),
            verify_page_size=int(os.getenv("COURTLEDGER_VERIFY_PAGE_SIZE", "500")),
            signing_key=os.getenv("COURTLEDGER_SIGNING_KEY") or None,
        )
