"""
Concurrency tests: parallel appends never branch, gap or lose a chain link.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from courtledger.config import LedgerConfig
from courtledger.core import LedgerService, PositionTaken
from courtledger.db.store import InMemoryChainStore
from courtledger.observability import MetricsCollector
from courtledger.schemas import GENESIS_HASH


WORKERS = 8
PER_WORKER = 25


@pytest.fixture
def contended_ledger():
    # Generous retry budget: every worker hammers the same tail
    config = LedgerConfig(max_append_attempts=10_000, backoff_base_ms=0.1, backoff_max_ms=2.0)
    return LedgerService(store=InMemoryChainStore(), config=config, metrics=MetricsCollector())


class TestParallelAppends:

    def test_single_chain_linearized(self, contended_ledger):
        """N threads appending to one chain produce one gapless, valid chain."""
        chain_id = "firm-7/trust/acc-1"

        def worker(worker_id):
            return [
                contended_ledger.append(chain_id, f"worker-{worker_id}", "TXN_POSTED", {"n": i})
                for i in range(PER_WORKER)
            ]

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            receipts = [link for batch in pool.map(worker, range(WORKERS)) for link in batch]

        links = contended_ledger.read(chain_id)
        total = WORKERS * PER_WORKER

        assert len(links) == total
        assert [link.sequence for link in links] == list(range(total))
        assert len({link.hash for link in links}) == total
        assert sorted(r.sequence for r in receipts) == list(range(total))

        report = contended_ledger.verify(chain_id)
        assert report.valid is True
        assert report.length == total

    def test_many_chains_in_parallel(self, contended_ledger):
        """Chains are independent: each ends up complete and valid."""
        chain_ids = [f"firm-7/onboarding/sess-{i}" for i in range(WORKERS)]

        def worker(chain_id):
            for i in range(PER_WORKER):
                contended_ledger.append(chain_id, "clerk-1", "STAGE_ADVANCED", {"stage": i})

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            list(pool.map(worker, chain_ids))

        for chain_id in chain_ids:
            report = contended_ledger.verify(chain_id)
            assert report.valid is True
            assert report.length == PER_WORKER

    def test_verify_during_appends(self, contended_ledger):
        """Readers always see a valid prefix while writers append."""
        chain_id = "firm-7/session/user-3"
        contended_ledger.append(chain_id, "auth", "SECURITY_EVENT", {"event": "login"})

        def writer(worker_id):
            for i in range(PER_WORKER):
                contended_ledger.append(chain_id, "auth", "SECURITY_EVENT", {"w": worker_id, "i": i})

        def reader(_):
            return [contended_ledger.verify(chain_id) for _ in range(10)]

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            writes = [pool.submit(writer, w) for w in range(WORKERS // 2)]
            reads = [pool.submit(reader, r) for r in range(WORKERS // 2)]
            for future in writes:
                future.result()
            reports = [report for future in reads for report in future.result()]

        assert all(report.valid for report in reports)
        assert contended_ledger.verify(chain_id).length == 1 + (WORKERS // 2) * PER_WORKER


class TestParallelPinnedAppends:

    def test_one_winner_per_position(self, contended_ledger):
        """Different events pinned to the same position: exactly one lands."""
        chain_id = "firm-7/precedent/case-9"

        def worker(worker_id):
            try:
                return contended_ledger.append(
                    chain_id, f"worker-{worker_id}", "PRECEDENT_RECORDED", {"w": worker_id},
                    expected_previous_hash=GENESIS_HASH,
                )
            except PositionTaken:
                return None

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            results = list(pool.map(worker, range(WORKERS)))

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert contended_ledger.read(chain_id) == winners

    def test_identical_retries_collapse(self, contended_ledger):
        """The same pinned event submitted concurrently is written once."""
        chain_id = "firm-7/dispatch/instr-7"

        def worker(_):
            return contended_ledger.append(
                chain_id, "device-9", "ATTEMPT_LOGGED", {"attempt": 1},
                expected_previous_hash=GENESIS_HASH,
            )

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            results = list(pool.map(worker, range(WORKERS)))

        links = contended_ledger.read(chain_id)
        assert len(links) == 1
        assert all(result == links[0] for result in results)
