"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured logging (JSON lines in production, readable text locally)
- Ledger metrics (appends, conflicts, retries, verifications)
- Health checks over the chain store and chosen chains

Configuration:
- COURTLEDGER_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- COURTLEDGER_LOG_FORMAT: json, text (default: json in production)
- COURTLEDGER_PRODUCTION: Enable production mode

Usage:
    from courtledger.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Chain link appended", chain_id=chain_id, sequence=3)

Keyword arguments become fields of the log record. Library modules only
ever call get_logger(); handlers are installed once, by setup_logging().
"""

import json
import logging
import os
import sys
import threading
import time
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, Iterator, Optional

# Set by whoever is driving the ledger (web request, job, CLI)
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
actor_var: ContextVar[str] = ContextVar("actor", default="")

LATENCY_WINDOW = 1000


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("COURTLEDGER_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    name = os.environ.get("COURTLEDGER_LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(name)
    # getLevelName returns "Level X" for names it does not know
    return level if isinstance(level, int) else logging.INFO


def _use_json_logging() -> bool:
    fmt = os.environ.get("COURTLEDGER_LOG_FORMAT", "").strip().lower()
    if fmt in ("json", "text"):
        return fmt == "json"
    return _is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

# Every LogRecord carries these; anything else arrived as an extra field
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line.

    {
        "timestamp": "2026-03-02T09:00:00.000123+00:00",
        "level": "WARNING",
        "logger": "courtledger.core.verifier",
        "message": "Chain integrity violation",
        "request_id": "req-7f3a",
        "chain_id": "firm-7/dispatch/instr-42",
        "broken_at_sequence": 1,
        ...
    }

    Extra values that json cannot encode are logged as their str().
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": _record_time(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = {"request_id": request_id_var.get(), "actor": actor_var.get()}
        entry.update({k: v for k, v in context.items() if v})

        for key, value in _extra_fields(record).items():
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                value = str(value)
            entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry)


class TextFormatter(logging.Formatter):
    """
    Single-line output for terminals:

        2026-03-02 09:00:00 INFO     courtledger.core.appender: Chain link appended chain_id=... sequence=3
    """

    def format(self, record: logging.LogRecord) -> str:
        request_id = request_id_var.get()
        parts = [
            _record_time(record).strftime("%Y-%m-%d %H:%M:%S"),
            f"{record.levelname:8}",
        ]
        if request_id:
            parts.append(f"[{request_id[:8]}]")
        parts.append(f"{record.name}: {record.getMessage()}")
        parts.extend(f"{key}={value}" for key, value in _extra_fields(record).items())

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """
    Adapter that moves keyword arguments into the record's extra fields.

        logger.warning("Append conflict on chain tail", chain_id=chain_id, attempt=2)
    """

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        fields = dict(kwargs.get("extra") or {})
        for key in [k for k in kwargs if k not in self._PASSTHROUGH]:
            fields[key] = kwargs.pop(key)
        kwargs["extra"] = fields
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """Logger for a module (pass __name__)."""
    return ContextLogger(logging.getLogger(name), {})


def setup_logging(level: Optional[int] = None, json_format: Optional[bool] = None) -> None:
    """
    Install a single stderr handler on the root logger.

    Called once at process start (the CLIs do). Arguments override the
    COURTLEDGER_LOG_* environment variables.
    """
    level = _get_log_level() if level is None else level
    json_format = _use_json_logging() if json_format is None else json_format

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter() if json_format else TextFormatter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    # Driver chatter is only interesting when something is wrong
    logging.getLogger("psycopg2").setLevel(logging.WARNING)


@contextmanager
def request_context(request_id: str = "", actor: str = "") -> Iterator[None]:
    """Attach request id and actor to every log line emitted inside the block."""
    tokens = (request_id_var.set(request_id), actor_var.set(actor))
    try:
        yield
    finally:
        request_id_var.reset(tokens[0])
        actor_var.reset(tokens[1])


# ============================================================
# METRICS
# ============================================================

def _percentile(samples: list, p: float) -> Optional[float]:
    if not samples:
        return None
    ordered = sorted(samples)
    return ordered[min(int(len(ordered) * p), len(ordered) - 1)]


@dataclass
class MetricsCollector:
    """
    Process-local ledger counters.

    Thread-safe. get_summary() is the export point for whatever scrapes
    the process (Prometheus, StatsD, a health endpoint).
    """

    links_appended: int = 0
    append_conflicts: int = 0
    append_retries: int = 0
    append_failures: int = 0
    duplicate_appends: int = 0
    verifications_run: int = 0
    integrity_violations: int = 0

    # Most recent append latencies only
    append_latencies_ms: Deque[float] = field(
        default_factory=lambda: deque(maxlen=LATENCY_WINDOW)
    )

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _bump(self, counter: str) -> None:
        with self._lock:
            setattr(self, counter, getattr(self, counter) + 1)

    def record_append(self, latency_ms: float) -> None:
        with self._lock:
            self.links_appended += 1
            self.append_latencies_ms.append(latency_ms)

    def record_conflict(self) -> None:
        self._bump("append_conflicts")

    def record_retry(self) -> None:
        self._bump("append_retries")

    def record_failure(self) -> None:
        self._bump("append_failures")

    def record_duplicate(self) -> None:
        self._bump("duplicate_appends")

    def record_verification(self, valid: bool) -> None:
        with self._lock:
            self.verifications_run += 1
            if not valid:
                self.integrity_violations += 1

    def get_summary(self) -> Dict[str, Any]:
        """Counters plus p50/p95/p99 append latency (None before any append)."""
        with self._lock:
            summary: Dict[str, Any] = {
                "links_appended": self.links_appended,
                "append_conflicts": self.append_conflicts,
                "append_retries": self.append_retries,
                "append_failures": self.append_failures,
                "duplicate_appends": self.duplicate_appends,
                "verifications_run": self.verifications_run,
                "integrity_violations": self.integrity_violations,
            }
            latencies = list(self.append_latencies_ms)

        for label, p in (("p50", 0.5), ("p95", 0.95), ("p99", 0.99)):
            summary[f"append_latency_{label}_ms"] = _percentile(latencies, p)
        return summary


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """The process-wide collector (used when no collector is injected)."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Outcome of check_health(); checks maps check name to its details."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


def check_health(store=None, verifier=None, chain_ids: Iterable[str] = ()) -> HealthStatus:
    """
    Check the store answers and, optionally, that given chains verify.

    Args:
        store: ChainStore to probe with list_chain_ids()
        verifier: ChainVerifier used for chain_ids
        chain_ids: Chains to verify end to end. Cost grows with chain
                   length, so pick a handful.

    A broken chain makes the status unhealthy; so does any exception.
    """
    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}

    if store is not None:
        probe_started = time.perf_counter()
        try:
            chain_count = len(store.list_chain_ids())
        except Exception as e:
            checks["chain_store"] = {"status": "unhealthy", "error": str(e)}
        else:
            checks["chain_store"] = {
                "status": "healthy",
                "store_type": type(store).__name__,
                "chain_count": chain_count,
                "latency_ms": _elapsed_ms(probe_started),
            }

    if verifier is not None:
        for chain_id in chain_ids:
            key = f"chain:{chain_id}"
            try:
                report = verifier.verify(chain_id)
            except Exception as e:
                checks[key] = {"status": "unhealthy", "error": str(e)}
                continue

            checks[key] = {
                "status": "healthy" if report.valid else "unhealthy",
                "valid": report.valid,
                "length": report.length,
            }
            if not report.valid:
                checks[key]["broken_at_sequence"] = report.broken_at_sequence
                checks[key]["reason"] = report.reason.value

    return HealthStatus(
        healthy=all(check["status"] == "healthy" for check in checks.values()),
        checks=checks,
        duration_ms=_elapsed_ms(started),
    )
