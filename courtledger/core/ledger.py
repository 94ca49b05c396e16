"""
Ledger Service - The Heart of the System

A tamper-evident, hash-chained event ledger.
Nothing is "edited". Things happen, and each one is chained to the last.

The ledger:
- Accepts business events from any feature (dispatch, onboarding, trust, ...)
- Canonicalizes payloads
- Appends links with compare-and-swap
- Verifies chains on demand
- Digests field evidence

The ledger does NOT:
- Decide whether an event is allowed (compliance rules live with the caller)
- Authenticate callers
- Encrypt payload fields (ciphertext is just payload content here)

ARCHITECTURE:
- ChainAppender: the only writer
- ChainVerifier: read-only integrity checks
- ChainStore: atomic tail CAS, ordering, durability

The store is the single source of truth for every chain's tail.
LedgerService holds no chain state of its own.
"""

from typing import Any, Callable, Optional

from ..config import LedgerConfig
from ..db.store import ChainStore, InMemoryChainStore
from ..observability import MetricsCollector
from ..schemas.evidence import EvidenceDigest
from ..schemas.links import ChainLink
from ..schemas.reports import ChainAttestation, VerificationReport
from .appender import ChainAppender
from .evidence import digest_evidence
from .verifier import ChainVerifier


class LedgerService:
    """
    Entry point for callers.

    Thread-safe: any number of threads may append and verify through one
    instance. Chains are independent; appends to different chains never
    contend.
    """

    def __init__(
        self,
        store: Optional[ChainStore] = None,
        config: Optional[LedgerConfig] = None,
        clock: Optional[Callable] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Initialize LedgerService.

        Args:
            store: ChainStore implementation for persistence.
                   If None, creates an InMemoryChainStore.
            config: Ledger tunables (defaults if None)
            clock: Timestamp source for appends (UTC now if None)
            metrics: Metrics sink (process-wide collector if None)
        """
        self._store = store if store is not None else InMemoryChainStore()
        self._config = config or LedgerConfig()
        self._appender = ChainAppender(
            self._store,
            config=self._config,
            clock=clock,
            metrics=metrics,
        )
        self._verifier = ChainVerifier(
            self._store,
            page_size=self._config.verify_page_size,
            metrics=metrics,
        )

    @classmethod
    def from_env(cls, store: Optional[ChainStore] = None) -> "LedgerService":
        """Create a service configured from COURTLEDGER_* variables."""
        return cls(store=store, config=LedgerConfig.from_env())

    @property
    def store(self) -> ChainStore:
        return self._store

    @property
    def config(self) -> LedgerConfig:
        return self._config

    @property
    def verifier(self) -> ChainVerifier:
        return self._verifier

    # ============================================================
    # WRITE PATH
    # ============================================================

    def append(
        self,
        chain_id: str,
        actor: str,
        action: str,
        payload: Any,
        *,
        expected_previous_hash: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ChainLink:
        """
        Append an event to a chain and return its receipt.

        See ChainAppender.append for the full contract.
        """
        return self._appender.append(
            chain_id,
            actor,
            action,
            payload,
            expected_previous_hash=expected_previous_hash,
            timeout=timeout,
        )

    def digest_evidence(self, fields: Any) -> EvidenceDigest:
        """Digest evidence fields for embedding in an event payload."""
        return digest_evidence(fields)

    # ============================================================
    # READ PATH
    # ============================================================

    def verify(
        self,
        chain_id: str,
        from_sequence: int = 0,
        to_sequence: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> VerificationReport:
        """Verify a chain or a window of it."""
        if timeout is None:
            timeout = self._config.store_timeout_s
        return self._verifier.verify(
            chain_id,
            from_sequence=from_sequence,
            to_sequence=to_sequence,
            timeout=timeout,
        )

    def head(self, chain_id: str, timeout: Optional[float] = None) -> Optional[ChainLink]:
        """Latest link of a chain, or None if the chain is empty."""
        if timeout is None:
            timeout = self._config.store_timeout_s
        return self._store.read_tail(chain_id, timeout=timeout)

    def read(
        self,
        chain_id: str,
        from_sequence: int = 0,
        to_sequence: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> list[ChainLink]:
        """Links in storage order (to_sequence inclusive)."""
        if timeout is None:
            timeout = self._config.store_timeout_s
        return self._store.read_range(chain_id, from_sequence, to_sequence, timeout=timeout)

    def list_chains(self, prefix: str = "", timeout: Optional[float] = None) -> list[str]:
        """Chain ids starting with prefix (e.g. "firm-7/" for one tenant)."""
        if timeout is None:
            timeout = self._config.store_timeout_s
        return self._store.list_chain_ids(prefix, timeout=timeout)

    # ============================================================
    # ATTESTATION
    # ============================================================

    def attest(
        self,
        chain_id: str,
        private_key_b64: Optional[str] = None,
    ) -> ChainAttestation:
        """
        Verify a chain and sign its head.

        Args:
            chain_id: Chain to attest
            private_key_b64: Signing key (config.signing_key if None)

        Raises:
            ValueError: No signing key, or the chain does not verify
        """
        key = private_key_b64 or self._config.signing_key
        if not key:
            raise ValueError("No signing key configured (set COURTLEDGER_SIGNING_KEY)")

        report = self.verify(chain_id)
        return ChainVerifier.attest(report, key)
