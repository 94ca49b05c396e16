"""
Chain Appender

The ONLY component that creates chain links.

Append flow (per attempt):
1. Canonicalize the payload (once, before any I/O; fails fast)
2. Read the chain tail from the store
3. sequence = tail.sequence + 1 (or 0), previous_hash = tail.hash (or GENESIS_HASH)
4. timestamp = now (UTC), assigned here, never by the caller
5. hash = Hasher.hash_link(...)
6. store.append_if_tail_matches(chain_id, tail_hash, link)   <- compare-and-swap

If the CAS loses (another append won the tail) or the store is briefly
unavailable, the attempt is retried from step 2 with jittered exponential
backoff. A failed attempt persists nothing unless its outcome was unknown.

IDEMPOTENT RETRIES:
A caller that pins expected_previous_hash gets at-most-once semantics
across its own retries: if its earlier attempt actually landed (e.g. the
store timed out after committing), the existing link is returned instead
of appending a second copy. The internal retry loop does the same after
a conditional append whose outcome is unknown (AppendOutcomeUnknown).
"""

import random
import re
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from ..config import LedgerConfig
from ..db.store import ChainStore, ConcurrentAppendConflict, StoreUnavailable
from ..observability import MetricsCollector, get_logger, get_metrics
from ..schemas.links import ChainLink, GENESIS_HASH
from .canonical import Canonicalizer
from .hasher import Hasher

logger = get_logger(__name__)


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class ValidationError(LedgerError):
    """Raised when append arguments are malformed."""
    pass


class AppendFailed(LedgerError):
    """
    Raised when an append could not be completed within the retry budget.

    Transient: the caller may resubmit. If the cause is AppendOutcomeUnknown
    the link may have landed, so resubmit pinned to cause.previous_hash.
    """
    retryable = True

    def __init__(self, message: str, chain_id: str, attempts: int):
        super().__init__(message)
        self.chain_id = chain_id
        self.attempts = attempts


class PositionTaken(ConcurrentAppendConflict):
    """
    Raised when a pinned append finds its position held by a different link.

    Not retried internally: the caller's view of the chain is stale.
    """
    pass


class AppendOutcomeUnknown(StoreUnavailable):
    """
    The conditional append failed after it may have committed.

    previous_hash is the tail the attempt wrote after. The next attempt
    looks for its link there before writing again.
    """

    def __init__(self, message: str, previous_hash: str):
        super().__init__(message)
        self.previous_hash = previous_hash


_ACTION_PATTERN = re.compile(r"[A-Za-z][A-Za-z0-9_]*(?:[.:][A-Za-z0-9_]+)*")

MAX_ID_LENGTH = 256
MAX_ACTION_LENGTH = 64


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChainAppender:
    """
    Appends links to chains with compare-and-swap concurrency.

    CONCURRENCY GUARANTEES:
    - For one chain, appends are linearized: at most one wins per tail
    - Chains never branch and never have gaps
    - Different chains never contend with each other
    - No lock is held here; the store's CAS is the only synchronization point
    """

    def __init__(
        self,
        store: ChainStore,
        config: Optional[LedgerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Args:
            store: Where links are persisted
            config: Retry/timeout settings (defaults if None)
            clock: Source of append timestamps (UTC now if None)
            sleep: Backoff sleeper (injectable for tests)
            metrics: Metrics sink (process-wide collector if None)
        """
        self._store = store
        self._config = config or LedgerConfig()
        self._clock = clock or _utc_now
        self._sleep = sleep
        self._metrics = metrics or get_metrics()
        self._random = random.Random()

    @property
    def store(self) -> ChainStore:
        return self._store

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
        Append one event to a chain.

        Args:
            chain_id: Chain to append to (created implicitly on first append)
            actor: Who/what performed the action
            action: Event kind (str or LedgerAction)
            payload: Any canonicalizable structured value
            expected_previous_hash: Pin the append to follow this hash
                                    (GENESIS_HASH for the first link).
                                    Makes retries idempotent.
            timeout: Per store call, in seconds (config default if None)

        Returns:
            The new link (or, for a pinned retry, the link an earlier
            attempt already wrote)

        Raises:
            ValidationError: Malformed chain_id / actor / action
            CanonicalizationError: Payload cannot be canonicalized
            PositionTaken: Pinned position holds a different link
            AppendFailed: Retry budget exhausted (transient)
        """
        action = self._validate(chain_id, actor, action, expected_previous_hash)

        # Fail fast, before any I/O
        payload_canon = Canonicalizer.encode_text(payload)

        if timeout is None:
            timeout = self._config.store_timeout_s

        attempts = self._config.max_append_attempts
        last_error: Optional[Exception] = None
        unconfirmed_after: Optional[str] = None

        for attempt in range(1, attempts + 1):
            started = time.perf_counter()
            try:
                link, duplicate = self._attempt(
                    chain_id, actor, action, payload_canon,
                    expected_previous_hash, unconfirmed_after, timeout,
                )
            except PositionTaken:
                raise
            except ConcurrentAppendConflict as e:
                last_error = e
                self._metrics.record_conflict()
                logger.warning(
                    "Append conflict on chain tail",
                    chain_id=chain_id,
                    attempt=attempt,
                    max_attempts=attempts,
                )
            except StoreUnavailable as e:
                last_error = e
                if isinstance(e, AppendOutcomeUnknown):
                    unconfirmed_after = e.previous_hash
                logger.warning(
                    "Chain store unavailable during append",
                    chain_id=chain_id,
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(e),
                )
            else:
                if duplicate:
                    self._metrics.record_duplicate()
                    logger.info(
                        "Duplicate append ignored",
                        chain_id=chain_id,
                        sequence=link.sequence,
                        link_hash=link.hash,
                    )
                else:
                    latency_ms = (time.perf_counter() - started) * 1000
                    self._metrics.record_append(latency_ms)
                    logger.info(
                        "Chain link appended",
                        chain_id=chain_id,
                        sequence=link.sequence,
                        action=link.action,
                        link_hash=link.hash,
                        attempt=attempt,
                    )
                return link

            if attempt < attempts:
                self._metrics.record_retry()
                self._sleep(self._backoff_delay(attempt))

        self._metrics.record_failure()
        logger.error(
            "Append failed after retries",
            chain_id=chain_id,
            attempts=attempts,
            error=str(last_error),
        )
        raise AppendFailed(
            f"Append to chain {chain_id} failed after {attempts} attempts: {last_error}",
            chain_id=chain_id,
            attempts=attempts,
        ) from last_error

    def _attempt(
        self,
        chain_id: str,
        actor: str,
        action: str,
        payload_canon: str,
        expected_previous_hash: Optional[str],
        unconfirmed_after: Optional[str],
        timeout: Optional[float],
    ) -> tuple[ChainLink, bool]:
        """
        One read-tail / build / CAS round.

        unconfirmed_after is the tail an earlier attempt wrote after when
        its outcome was unknown; if the tail has moved since, that write
        may be the link now following it.

        Returns:
            (link, duplicate) where duplicate means the link already existed
        """
        tail = self._store.read_tail(chain_id, timeout=timeout)
        tail_hash = tail.hash if tail is not None else GENESIS_HASH

        if expected_previous_hash is not None and tail_hash != expected_previous_hash:
            existing = self._resolve_pinned(
                chain_id, tail, expected_previous_hash,
                actor, action, payload_canon, timeout,
            )
            return existing, True

        if unconfirmed_after is not None and tail_hash != unconfirmed_after:
            try:
                existing = self._resolve_pinned(
                    chain_id, tail, unconfirmed_after,
                    actor, action, payload_canon, timeout,
                )
            except PositionTaken:
                # Another writer holds that position, so the earlier write never landed
                pass
            else:
                return existing, True

        link = self._build_link(chain_id, tail, actor, action, payload_canon)
        try:
            self._store.append_if_tail_matches(chain_id, tail_hash, link, timeout=timeout)
        except StoreUnavailable as e:
            raise AppendOutcomeUnknown(str(e), previous_hash=tail_hash) from e
        return link, False

    def _build_link(
        self,
        chain_id: str,
        tail: Optional[ChainLink],
        actor: str,
        action: str,
        payload_canon: str,
    ) -> ChainLink:
        """Create the next link after tail (or the first link)."""
        if tail is None:
            sequence = 0
            previous_hash = GENESIS_HASH
        else:
            sequence = tail.sequence + 1
            previous_hash = tail.hash

        timestamp = self._now()

        link_hash = Hasher.hash_link(
            previous_hash=previous_hash,
            sequence=sequence,
            timestamp=timestamp,
            actor=actor,
            action=action,
            payload_canon=payload_canon,
        )

        return ChainLink(
            chain_id=chain_id,
            sequence=sequence,
            timestamp=timestamp,
            actor=actor,
            action=action,
            payload_canon=payload_canon,
            previous_hash=previous_hash,
            hash=link_hash,
            canon_version=Canonicalizer.VERSION,
        )

    def _resolve_pinned(
        self,
        chain_id: str,
        tail: Optional[ChainLink],
        expected_previous_hash: str,
        actor: str,
        action: str,
        payload_canon: str,
        timeout: Optional[float],
    ) -> ChainLink:
        """
        The tail moved past a pinned position. Was it us?

        Returns the link that follows expected_previous_hash if it is the
        same event (same actor, action and canonical payload).
        """
        successor = self._find_successor(chain_id, tail, expected_previous_hash, timeout)

        if successor is None:
            raise PositionTaken(
                f"Chain {chain_id} has no link at {expected_previous_hash[:16]}...; "
                "re-read the tail before appending"
            )

        same_event = (
            successor.actor == actor
            and successor.action == action
            and successor.payload_canon == payload_canon
        )
        if not same_event:
            raise PositionTaken(
                f"Position after {expected_previous_hash[:16]}... in chain {chain_id} "
                f"is held by a different link (sequence {successor.sequence})"
            )

        return successor

    def _find_successor(
        self,
        chain_id: str,
        tail: Optional[ChainLink],
        previous_hash: str,
        timeout: Optional[float],
    ) -> Optional[ChainLink]:
        """Find the link whose previous_hash is previous_hash, scanning back from the tail."""
        if tail is None:
            return None

        page = self._config.verify_page_size
        end = tail.sequence
        while end >= 0:
            start = max(0, end - page + 1)
            links = self._store.read_range(chain_id, start, end, timeout=timeout)
            for link in reversed(links):
                if link.previous_hash == previous_hash:
                    return link
            end = start - 1
        return None

    def _backoff_delay(self, attempt: int) -> float:
        """Full-jitter exponential backoff, in seconds."""
        ceiling_ms = min(
            self._config.backoff_max_ms,
            self._config.backoff_base_ms * (2 ** (attempt - 1)),
        )
        return self._random.uniform(0, ceiling_ms) / 1000.0

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            raise LedgerError("Ledger clock returned a timezone-naive datetime")
        return now.astimezone(timezone.utc)

    @staticmethod
    def _validate(
        chain_id: Any,
        actor: Any,
        action: Any,
        expected_previous_hash: Optional[str],
    ) -> str:
        """Check identifiers; returns the action as a plain string."""
        if isinstance(action, Enum):
            action = action.value

        for name, value in (("chain_id", chain_id), ("actor", actor)):
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{name} must be a non-empty string")
            if len(value) > MAX_ID_LENGTH:
                raise ValidationError(f"{name} longer than {MAX_ID_LENGTH} characters")

        if (
            not isinstance(action, str)
            or len(action) > MAX_ACTION_LENGTH
            or not _ACTION_PATTERN.fullmatch(action)
        ):
            raise ValidationError(
                f"Invalid action {action!r}. Expected a short name like "
                "STAGE_ADVANCED or a namespaced one like trust.TXN_POSTED"
            )

        if expected_previous_hash is not None and not Hasher.is_digest(expected_previous_hash):
            raise ValidationError(
                "expected_previous_hash must be 64 lowercase hex characters"
            )

        return action
