"""
Tests for chain stores: the in-memory CAS and the PostgreSQL store's SQL-level
CAS outcomes and error translation (against a mocked DB-API connection).
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from courtledger.core.hasher import Hasher
from courtledger.db.store import (
    SCHEMA_PATH,
    ChainIntegrityError,
    ConcurrentAppendConflict,
    InMemoryChainStore,
    PostgresChainStore,
    StoreTimeout,
    StoreUnavailable,
)
from courtledger.schemas import GENESIS_HASH, ChainLink


CHAIN = "firm-7/trust/acc-1"
T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


def make_link(sequence=0, previous_hash=GENESIS_HASH, chain_id=CHAIN, payload='{"amount":"10.00"}'):
    link_hash = Hasher.hash_link(
        previous_hash=previous_hash,
        sequence=sequence,
        timestamp=T0,
        actor="clerk-1",
        action="TXN_POSTED",
        payload_canon=payload,
    )
    return ChainLink(
        chain_id=chain_id,
        sequence=sequence,
        timestamp=T0,
        actor="clerk-1",
        action="TXN_POSTED",
        payload_canon=payload,
        previous_hash=previous_hash,
        hash=link_hash,
    )


class TestInMemoryChainStore:

    def test_empty_chain(self, store):
        assert store.read_tail(CHAIN) is None
        assert store.read_range(CHAIN) == []
        assert store.list_chain_ids() == []

    def test_append_and_read(self, store):
        first = make_link()
        assert store.append_if_tail_matches(CHAIN, GENESIS_HASH, first) == first

        second = make_link(1, first.hash)
        store.append_if_tail_matches(CHAIN, first.hash, second)

        assert store.read_tail(CHAIN) == second
        assert store.read_range(CHAIN) == [first, second]
        assert store.read_range(CHAIN, 1) == [second]
        assert store.read_range(CHAIN, 0, 0) == [first]

    def test_stale_tail_conflicts(self, store):
        first = make_link()
        store.append_if_tail_matches(CHAIN, GENESIS_HASH, first)

        with pytest.raises(ConcurrentAppendConflict):
            store.append_if_tail_matches(CHAIN, GENESIS_HASH, make_link(payload='{"other":1}'))

        assert store.read_range(CHAIN) == [first]

    def test_link_must_extend_expected_tail(self, store):
        first = make_link()
        store.append_if_tail_matches(CHAIN, GENESIS_HASH, first)

        with pytest.raises(ChainIntegrityError, match="previous_hash"):
            store.append_if_tail_matches(CHAIN, first.hash, make_link(1, "ab" * 32))
        with pytest.raises(ChainIntegrityError, match="Sequence"):
            store.append_if_tail_matches(CHAIN, first.hash, make_link(5, first.hash))
        with pytest.raises(ChainIntegrityError, match="belongs to chain"):
            store.append_if_tail_matches(CHAIN, first.hash, make_link(1, first.hash, chain_id="other"))

    def test_list_chain_ids_by_prefix(self, store):
        for chain_id in ("firm-7/trust/acc-1", "firm-7/dispatch/i-1", "firm-8/trust/acc-1"):
            store.append_if_tail_matches(chain_id, GENESIS_HASH, make_link(chain_id=chain_id))

        assert store.list_chain_ids("firm-7/") == ["firm-7/dispatch/i-1", "firm-7/trust/acc-1"]
        assert len(store.list_chain_ids()) == 3

    def test_busy_chain_times_out(self, store):
        lock = store._chain_lock(CHAIN)
        lock.acquire()
        try:
            with pytest.raises(StoreTimeout):
                store.append_if_tail_matches(CHAIN, GENESIS_HASH, make_link(), timeout=0.01)
        finally:
            lock.release()

        assert isinstance(StoreTimeout("x"), StoreUnavailable)

    def test_other_chains_not_blocked(self, store):
        """Holding one chain's lock never blocks another chain."""
        store._chain_lock(CHAIN).acquire()
        other = "firm-7/trust/acc-2"
        store.append_if_tail_matches(other, GENESIS_HASH, make_link(chain_id=other), timeout=0.01)
        assert store.read_tail(other) is not None

    def test_clear(self, store):
        store.append_if_tail_matches(CHAIN, GENESIS_HASH, make_link())
        store.clear()
        assert store.read_tail(CHAIN) is None


class FakePgError(Exception):
    """Quacks like a psycopg2 error."""

    def __init__(self, pgcode, pgerror=""):
        super().__init__(pgerror)
        self.pgcode = pgcode
        self.pgerror = pgerror


@pytest.fixture
def pg():
    """A PostgresChainStore wired to a mocked connection and cursor."""
    cursor = MagicMock()
    cursor.rowcount = 1
    conn = MagicMock()
    conn.cursor.return_value = cursor
    store = PostgresChainStore(lambda: conn)
    return store, conn, cursor


def executed_sql(cursor):
    return [c.args[0] for c in cursor.execute.call_args_list]


class TestPostgresChainStore:

    def test_append_commits_on_success(self, pg):
        store, conn, cursor = pg
        link = make_link()

        assert store.append_if_tail_matches(CHAIN, GENESIS_HASH, link) == link

        conn.commit.assert_called_once()
        conn.close.assert_called_once()
        insert_sql = executed_sql(cursor)[-1]
        assert "INSERT INTO chain_links" in insert_sql
        assert "NOT EXISTS" in insert_sql

    def test_append_writes_payload_text_verbatim(self, pg):
        store, conn, cursor = pg
        link = make_link()
        store.append_if_tail_matches(CHAIN, GENESIS_HASH, link)

        params = cursor.execute.call_args_list[-1].args[1]
        assert link.payload_canon in params
        assert link.hash in params

    def test_non_genesis_condition_checks_tail(self, pg):
        store, conn, cursor = pg
        first = make_link()
        second = make_link(1, first.hash)
        store.append_if_tail_matches(CHAIN, first.hash, second)

        sql, params = cursor.execute.call_args_list[-1].args
        assert "sequence > %s" in sql
        assert params[-5:] == (CHAIN, 0, first.hash, CHAIN, 0)

    def test_no_row_inserted_is_conflict(self, pg):
        store, conn, cursor = pg
        cursor.rowcount = 0

        with pytest.raises(ConcurrentAppendConflict):
            store.append_if_tail_matches(CHAIN, GENESIS_HASH, make_link())

        conn.commit.assert_not_called()
        conn.rollback.assert_called_once()
        conn.close.assert_called_once()

    def test_unique_violation_is_conflict(self, pg):
        store, conn, cursor = pg

        def execute(sql, params=None):
            if "INSERT" in sql:
                raise FakePgError("23505", "duplicate key value violates unique constraint")

        cursor.execute.side_effect = execute

        with pytest.raises(ConcurrentAppendConflict):
            store.append_if_tail_matches(CHAIN, GENESIS_HASH, make_link())

    @pytest.mark.parametrize("pgcode,message", [
        ("57014", "canceling statement due to statement timeout"),
        ("57014", "canceling statement due to lock timeout"),
        ("55P03", "could not obtain lock on row"),
    ])
    def test_timeouts_translated(self, pg, pgcode, message):
        store, conn, cursor = pg

        def execute(sql, params=None):
            if "SELECT" in sql:
                raise FakePgError(pgcode, message)

        cursor.execute.side_effect = execute

        with pytest.raises(StoreTimeout):
            store.read_tail(CHAIN)
        conn.close.assert_called_once()

    def test_other_errors_unavailable(self, pg):
        store, conn, cursor = pg

        def execute(sql, params=None):
            if "SELECT" in sql:
                raise FakePgError("08006", "server closed the connection unexpectedly")

        cursor.execute.side_effect = execute

        with pytest.raises(StoreUnavailable) as exc_info:
            store.read_range(CHAIN)
        assert not isinstance(exc_info.value, StoreTimeout)

    def test_connection_failure_unavailable(self):
        def factory():
            raise OSError("connection refused")

        with pytest.raises(StoreUnavailable, match="connect"):
            PostgresChainStore(factory).read_tail(CHAIN)

    def test_timeout_sets_local_limits(self, pg):
        store, conn, cursor = pg
        cursor.fetchone.return_value = None
        store.read_tail(CHAIN, timeout=0.25)

        sql = executed_sql(cursor)
        assert "SET LOCAL statement_timeout = '250ms'" in sql
        assert "SET LOCAL lock_timeout = '250ms'" in sql

    def test_default_timeout(self, pg):
        store, conn, cursor = pg
        cursor.fetchone.return_value = None
        store.read_tail(CHAIN)
        assert "SET LOCAL statement_timeout = '5000ms'" in executed_sql(cursor)

    def test_read_tail_maps_row(self, pg):
        store, conn, cursor = pg
        link = make_link()
        cursor.fetchone.return_value = (
            link.chain_id, link.sequence, link.timestamp, link.actor, link.action,
            link.payload_canon, link.canon_version, link.previous_hash, link.hash,
        )

        assert store.read_tail(CHAIN) == link
        conn.commit.assert_not_called()

    def test_read_tail_empty(self, pg):
        store, conn, cursor = pg
        cursor.fetchone.return_value = None
        assert store.read_tail(CHAIN) is None

    def test_read_range_bounds(self, pg):
        store, conn, cursor = pg
        cursor.fetchall.return_value = []
        store.read_range(CHAIN, 3, 7)

        sql, params = cursor.execute.call_args_list[-1].args
        assert "BETWEEN" in sql
        assert params == (CHAIN, 3, 7)

    def test_list_chain_ids(self, pg):
        store, conn, cursor = pg
        cursor.fetchall.return_value = [("firm-7/trust/acc-1",), ("firm-7/trust/acc-2",)]

        assert store.list_chain_ids("firm-7/") == ["firm-7/trust/acc-1", "firm-7/trust/acc-2"]
        assert cursor.execute.call_args_list[-1].args[1] == (7, "firm-7/")

    def test_zero_statement_timeout_refused(self):
        """PostgreSQL reads 0 as no limit, so it is never accepted."""
        with pytest.raises(ValueError, match="statement_timeout_ms"):
            PostgresChainStore(MagicMock, statement_timeout_ms=0)

    def test_ping_reads_no_table(self, pg):
        store, conn, cursor = pg
        store.ping(timeout=1.0)

        sql = executed_sql(cursor)
        assert sql[-1] == "SELECT 1"
        assert not any("chain_links" in s for s in sql)
        assert "SET LOCAL statement_timeout = '1000ms'" in sql
        conn.commit.assert_not_called()

    def test_ping_connection_lost(self, pg):
        store, conn, cursor = pg
        cursor.execute.side_effect = FakePgError("08006", "server closed the connection")
        with pytest.raises(StoreUnavailable):
            store.ping()

    def test_ensure_schema(self, pg):
        store, conn, cursor = pg
        store.ensure_schema()

        assert "CREATE TABLE IF NOT EXISTS chain_links" in executed_sql(cursor)[-1]
        conn.commit.assert_called_once()

    def test_schema_stores_payload_as_text(self):
        schema = SCHEMA_PATH.read_text(encoding="utf-8")
        assert "payload_canon   TEXT" in schema
        assert "PRIMARY KEY (chain_id, sequence)" in schema
