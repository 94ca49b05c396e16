"""
Chain Store Abstraction

This module defines the ChainStore interface and provides two implementations:
- InMemoryChainStore: For development and testing
- PostgresChainStore: For production with full durability and concurrency safety

The ChainStore is responsible for:
- Append-only persistence keyed by chain_id
- The compare-and-swap append (the ONLY synchronization point of the ledger)
- Ordered reads of a chain or a window of it

The appender retains responsibility for:
- Canonicalization and hashing
- Sequence / previous_hash assignment
- Retry policy

CAS CONTRACT:
    append_if_tail_matches(chain_id, expected_tail_hash, link)

    Persists link only if the chain's current tail hash still equals
    expected_tail_hash (GENESIS_HASH for an empty chain). Otherwise raises
    ConcurrentAppendConflict and persists nothing.

Stores never re-serialize payload_canon. It is written and read back as text.
"""

import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Optional

from ..schemas.links import ChainLink, GENESIS_HASH
from ..observability import get_logger

logger = get_logger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


# ============================================================
# EXCEPTIONS
# ============================================================

class ChainStoreError(Exception):
    """Base exception for chain store errors."""
    pass


class ConcurrentAppendConflict(ChainStoreError):
    """Raised when the chain tail moved between read and conditional append."""
    pass


class StoreUnavailable(ChainStoreError):
    """Raised on transient I/O failure. Retryable with backoff."""
    pass


class StoreTimeout(StoreUnavailable):
    """Raised when a store call exceeds its timeout (lock or statement)."""
    pass


class ChainIntegrityError(ChainStoreError):
    """Raised when a link's own linkage does not match the tail it claims to extend."""
    pass


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class ChainStore(ABC):
    """
    Abstract base class for chain storage.

    Implementations must ensure:
    1. Conditional append is atomic per chain
    2. No gaps in sequence numbers
    3. No two links share a (chain_id, sequence)
    4. Appends to different chains never block one another

    All methods take an optional timeout (seconds). None means the
    implementation default.
    """

    @abstractmethod
    def read_tail(
        self,
        chain_id: str,
        timeout: Optional[float] = None,
    ) -> Optional[ChainLink]:
        """
        Get the last link of a chain.

        Returns:
            The last link, or None if the chain is empty
        """
        pass

    @abstractmethod
    def append_if_tail_matches(
        self,
        chain_id: str,
        expected_tail_hash: str,
        link: ChainLink,
        timeout: Optional[float] = None,
    ) -> ChainLink:
        """
        Append link only if the tail still has expected_tail_hash.

        Returns:
            The persisted link

        Raises:
            ConcurrentAppendConflict: The tail moved
            ChainIntegrityError: link does not extend expected_tail_hash
            StoreUnavailable: Transient failure (nothing persisted)
        """
        pass

    @abstractmethod
    def read_range(
        self,
        chain_id: str,
        from_sequence: int = 0,
        to_sequence: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> list[ChainLink]:
        """
        Read links in storage order.

        Args:
            from_sequence: First position to return
            to_sequence: Last position to return (inclusive). None = to the end.
        """
        pass

    @abstractmethod
    def list_chain_ids(
        self,
        prefix: str = "",
        timeout: Optional[float] = None,
    ) -> list[str]:
        """List chain ids (sorted), optionally restricted to a prefix."""
        pass

    @staticmethod
    def _check_extends(
        chain_id: str,
        expected_tail_hash: str,
        expected_sequence: int,
        link: ChainLink,
    ) -> None:
        """
        Validate a link claims the position it is being written to.

        A link that would create a branch or a gap is refused here even
        when the tail check passed.
        """
        if link.chain_id != chain_id:
            raise ChainIntegrityError(
                f"Link belongs to chain {link.chain_id!r}, not {chain_id!r}"
            )
        if link.previous_hash != expected_tail_hash:
            raise ChainIntegrityError(
                f"Link previous_hash {link.previous_hash[:16]}... does not match "
                f"expected tail {expected_tail_hash[:16]}..."
            )
        if link.sequence != expected_sequence:
            raise ChainIntegrityError(
                f"Sequence mismatch: expected {expected_sequence}, "
                f"got {link.sequence}"
            )


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryChainStore(ChainStore):
    """
    In-memory implementation of ChainStore.

    Suitable for:
    - Development
    - Testing
    - Single-process deployments without persistence requirements

    NOT suitable for:
    - Production (no durability)
    - Multi-process deployments (no shared state)

    Each chain has its own lock, held only for the duration of one
    conditional append. Positions in read_range are list positions, which
    equal sequence numbers for an intact chain; a deleted or reordered link
    therefore shows up to the verifier as a sequence mismatch.
    """

    def __init__(self):
        self._chains: dict[str, list[ChainLink]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _chain_lock(self, chain_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(chain_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[chain_id] = lock
            return lock

    def read_tail(
        self,
        chain_id: str,
        timeout: Optional[float] = None,
    ) -> Optional[ChainLink]:
        links = self._chains.get(chain_id)
        if not links:
            return None
        return links[-1]

    def append_if_tail_matches(
        self,
        chain_id: str,
        expected_tail_hash: str,
        link: ChainLink,
        timeout: Optional[float] = None,
    ) -> ChainLink:
        lock = self._chain_lock(chain_id)
        acquired = lock.acquire(timeout=timeout) if timeout is not None else lock.acquire()
        if not acquired:
            raise StoreTimeout(
                f"Chain {chain_id} busy - could not acquire lock within {timeout}s"
            )

        try:
            links = self._chains.get(chain_id, [])
            tail_hash = links[-1].hash if links else GENESIS_HASH

            if tail_hash != expected_tail_hash:
                raise ConcurrentAppendConflict(
                    f"Tail of {chain_id} moved: expected {expected_tail_hash[:16]}..., "
                    f"now {tail_hash[:16]}..."
                )

            expected_sequence = links[-1].sequence + 1 if links else 0
            self._check_extends(chain_id, expected_tail_hash, expected_sequence, link)

            # Copy-on-write so concurrent readers never see a half-updated list
            self._chains[chain_id] = links + [link]
            return link
        finally:
            lock.release()

    def read_range(
        self,
        chain_id: str,
        from_sequence: int = 0,
        to_sequence: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> list[ChainLink]:
        links = self._chains.get(chain_id, [])
        stop = len(links) if to_sequence is None else to_sequence + 1
        return list(links[from_sequence:stop])

    def list_chain_ids(
        self,
        prefix: str = "",
        timeout: Optional[float] = None,
    ) -> list[str]:
        return sorted(c for c in self._chains if c.startswith(prefix) and self._chains[c])

    def replace_link(self, chain_id: str, position: int, link: ChainLink) -> None:
        """Overwrite a stored link in place (for tamper tests only)."""
        links = list(self._chains[chain_id])
        links[position] = link
        self._chains[chain_id] = links

    def delete_link(self, chain_id: str, position: int) -> None:
        """Remove a stored link (for tamper tests only)."""
        links = list(self._chains[chain_id])
        del links[position]
        self._chains[chain_id] = links

    def swap_links(self, chain_id: str, first: int, second: int) -> None:
        """Reorder two stored links (for tamper tests only)."""
        links = list(self._chains[chain_id])
        links[first], links[second] = links[second], links[first]
        self._chains[chain_id] = links

    def clear(self) -> None:
        """Clear all chains (for testing only)."""
        with self._registry_lock:
            self._chains.clear()
            self._locks.clear()


# ============================================================
# POSTGRESQL IMPLEMENTATION (SYNC)
# ============================================================

_LINK_COLUMNS = """
    chain_id, sequence, created_at, actor, action,
    payload_canon, canon_version, previous_hash, link_hash
"""


class PostgresChainStore(ChainStore):
    """
    PostgreSQL implementation of ChainStore.

    Provides:
    - Full ACID guarantees
    - Optimistic concurrency: the conditional INSERT succeeds only if the
      expected tail row still is the tail. No row lock is held across
      application code.
    - PRIMARY KEY (chain_id, sequence) makes a second winner impossible
    - Durability (links survive restarts)
    - Statement timeouts so no call hangs

    THREAD SAFETY:
    Every call opens its own connection from connection_factory (typically
    a pool's getconn), so one store instance can be shared across threads.

    Requirements:
    - PostgreSQL 12+
    - Tables from schema.sql (see ensure_schema)
    - psycopg2 for connections
    """

    STATEMENT_TIMEOUT_MS = 5000  # 5 seconds

    # psycopg2 error codes
    PGCODE_UNIQUE_VIOLATION = '23505'
    PGCODE_LOCK_NOT_AVAILABLE = '55P03'
    PGCODE_QUERY_CANCELED = '57014'

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Initialize PostgreSQL chain store.

        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            statement_timeout_ms: Default max statement time (ms) when a call
                                  does not pass its own timeout.

        Raises:
            ValueError: statement_timeout_ms below 1 (PostgreSQL reads 0
                        as no timeout at all)
        """
        if statement_timeout_ms < 1:
            raise ValueError("statement_timeout_ms must be at least 1")
        self._connection_factory = connection_factory
        self._statement_timeout_ms = statement_timeout_ms

    # ----------------------------------------------------------------
    # Connection handling
    # ----------------------------------------------------------------

    def _connect(self) -> Any:
        try:
            return self._connection_factory()
        except Exception as e:
            raise StoreUnavailable(f"Could not connect to database: {e}") from e

    def _timeout_ms(self, timeout: Optional[float]) -> int:
        if timeout is None:
            return self._statement_timeout_ms
        return max(1, int(timeout * 1000))

    def _begin(self, cursor: Any, timeout: Optional[float]) -> None:
        # psycopg2 opens the transaction implicitly;
        # SET LOCAL keeps the timeouts transaction-scoped
        ms = self._timeout_ms(timeout)
        cursor.execute(f"SET LOCAL statement_timeout = '{ms}ms'")
        cursor.execute(f"SET LOCAL lock_timeout = '{ms}ms'")

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        "lock", "statement", or None when e is not a timeout.

        lock_timeout and statement_timeout both surface as 57014
        (query_canceled); only the message tells them apart.
        """
        pgcode = getattr(e, 'pgcode', None)
        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"

        text = (getattr(e, 'pgerror', None) or str(e)).lower().replace("_", " ")
        is_timeout = pgcode == self.PGCODE_QUERY_CANCELED or "timeout" in text
        if not is_timeout:
            return None
        return "lock" if "lock" in text else "statement"

    def _translate(self, e: Exception, chain_id: str) -> ChainStoreError:
        """Map a driver exception onto ConcurrentAppendConflict / StoreTimeout / StoreUnavailable."""
        if getattr(e, 'pgcode', None) == self.PGCODE_UNIQUE_VIOLATION:
            return ConcurrentAppendConflict(
                f"Another link already took this position in {chain_id}"
            )

        kind = self._timeout_kind(e)
        if kind == "lock":
            return StoreTimeout(f"Chain {chain_id} busy: lock wait exceeded the call timeout")
        if kind == "statement":
            return StoreTimeout(f"Query on chain {chain_id} exceeded the call timeout")

        return StoreUnavailable(f"Database error on chain {chain_id}: {e}")

    def _run(
        self,
        chain_id: str,
        timeout: Optional[float],
        work: Callable[[Any], Any],
        write: bool = False,
    ) -> Any:
        """
        Run work(cursor) in its own transaction.

        Driver errors are translated; our own ChainStoreErrors pass through.
        The transaction is rolled back unless work completes and write=True.
        """
        conn = self._connect()
        cursor = None
        committed = False
        try:
            conn.autocommit = False
            cursor = conn.cursor()
            self._begin(cursor, timeout)
            result = work(cursor)
            if write:
                conn.commit()
                committed = True
            return result
        except ChainStoreError:
            raise
        except Exception as e:
            raise self._translate(e, chain_id) from e
        finally:
            if not committed:
                try:
                    conn.rollback()
                except Exception as rollback_error:
                    # Connection might be broken; the original error is what matters
                    logger.debug("Rollback failed", error=str(rollback_error))
            try:
                if cursor is not None:
                    cursor.close()
            finally:
                conn.close()

    # ----------------------------------------------------------------
    # ChainStore API
    # ----------------------------------------------------------------

    def read_tail(
        self,
        chain_id: str,
        timeout: Optional[float] = None,
    ) -> Optional[ChainLink]:
        def work(cursor):
            cursor.execute(f"""
                SELECT {_LINK_COLUMNS}
                FROM chain_links
                WHERE chain_id = %s
                ORDER BY sequence DESC
                LIMIT 1
            """, (chain_id,))
            row = cursor.fetchone()
            return self._row_to_link(row) if row else None

        return self._run(chain_id, timeout, work)

    def append_if_tail_matches(
        self,
        chain_id: str,
        expected_tail_hash: str,
        link: ChainLink,
        timeout: Optional[float] = None,
    ) -> ChainLink:
        expected_sequence = link.sequence
        self._check_extends(chain_id, expected_tail_hash, expected_sequence, link)

        # The INSERT only produces a row if the expected tail is still the tail.
        # For sequence 0 that means the chain is still empty.
        if expected_sequence == 0:
            condition = """
                NOT EXISTS (SELECT 1 FROM chain_links WHERE chain_id = %s)
            """
            condition_params: tuple = (chain_id,)
        else:
            condition = """
                EXISTS (
                    SELECT 1 FROM chain_links
                    WHERE chain_id = %s AND sequence = %s AND link_hash = %s
                )
                AND NOT EXISTS (
                    SELECT 1 FROM chain_links
                    WHERE chain_id = %s AND sequence > %s
                )
            """
            condition_params = (
                chain_id, expected_sequence - 1, expected_tail_hash,
                chain_id, expected_sequence - 1,
            )

        def work(cursor):
            cursor.execute(f"""
                INSERT INTO chain_links ({_LINK_COLUMNS})
                SELECT %s, %s, %s, %s, %s, %s, %s, %s, %s
                WHERE {condition}
            """, (
                link.chain_id,
                link.sequence,
                link.timestamp,
                link.actor,
                link.action,
                link.payload_canon,
                link.canon_version,
                link.previous_hash,
                link.hash,
            ) + condition_params)

            if cursor.rowcount != 1:
                raise ConcurrentAppendConflict(
                    f"Tail of {chain_id} moved: expected {expected_tail_hash[:16]}..."
                )
            return link

        return self._run(chain_id, timeout, work, write=True)

    def read_range(
        self,
        chain_id: str,
        from_sequence: int = 0,
        to_sequence: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> list[ChainLink]:
        def work(cursor):
            if to_sequence is None:
                cursor.execute(f"""
                    SELECT {_LINK_COLUMNS}
                    FROM chain_links
                    WHERE chain_id = %s AND sequence >= %s
                    ORDER BY sequence
                """, (chain_id, from_sequence))
            else:
                cursor.execute(f"""
                    SELECT {_LINK_COLUMNS}
                    FROM chain_links
                    WHERE chain_id = %s AND sequence BETWEEN %s AND %s
                    ORDER BY sequence
                """, (chain_id, from_sequence, to_sequence))
            return [self._row_to_link(row) for row in cursor.fetchall()]

        return self._run(chain_id, timeout, work)

    def list_chain_ids(
        self,
        prefix: str = "",
        timeout: Optional[float] = None,
    ) -> list[str]:
        def work(cursor):
            cursor.execute("""
                SELECT DISTINCT chain_id
                FROM chain_links
                WHERE left(chain_id, %s) = %s
                ORDER BY chain_id
            """, (len(prefix), prefix))
            return [row[0] for row in cursor.fetchall()]

        return self._run(prefix or "*", timeout, work)

    def ping(self, timeout: Optional[float] = None) -> None:
        """
        Check the database answers. Touches no table, so it works before
        ensure_schema has run.

        Raises:
            StoreUnavailable: Database unreachable or not answering in time
        """
        def work(cursor):
            cursor.execute("SELECT 1")
            cursor.fetchone()

        self._run("*", timeout, work)

    def ensure_schema(self, schema_sql: Optional[str] = None) -> None:
        """Create tables if they do not exist (defaults to the bundled schema.sql)."""
        sql = schema_sql if schema_sql is not None else SCHEMA_PATH.read_text(encoding="utf-8")

        def work(cursor):
            cursor.execute(sql)

        self._run("*", None, work, write=True)

    @staticmethod
    def _row_to_link(row: tuple) -> ChainLink:
        """Convert a database row to a ChainLink."""
        return ChainLink(
            chain_id=row[0],
            sequence=row[1],
            timestamp=row[2],
            actor=row[3],
            action=row[4],
            payload_canon=row[5],
            canon_version=row[6],
            previous_hash=row[7],
            hash=row[8],
        )
