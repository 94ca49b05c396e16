"""
Shared fixtures for the ledger tests.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from courtledger.config import LedgerConfig
from courtledger.core import LedgerService
from courtledger.db.store import InMemoryChainStore
from courtledger.observability import MetricsCollector


class StepClock:
    """Deterministic clock: every call returns a time one millisecond later."""

    def __init__(self, start=None, step=timedelta(milliseconds=1)):
        self._now = start or datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)
        self._step = step
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            now = self._now
            self._now += self._step
            return now


@pytest.fixture
def store():
    return InMemoryChainStore()


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def config():
    # No backoff delay: tests never wait on retries
    return LedgerConfig(backoff_base_ms=0.0, backoff_max_ms=0.0)


@pytest.fixture
def ledger(store, config, clock, metrics):
    return LedgerService(store=store, config=config, clock=clock, metrics=metrics)


@pytest.fixture
def populate():
    """Append n simple events to a chain; returns the receipts."""
    def _populate(ledger, chain_id, n, actor="clerk-1", action="STAGE_ADVANCED"):
        return [
            ledger.append(chain_id, actor, action, {"step": i})
            for i in range(n)
        ]
    return _populate
