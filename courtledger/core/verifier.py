"""
Chain Verifier

Walks a chain (or a window of it) and reports where, if anywhere, it breaks.

Per link, in order:
1. sequence == running counter           else SEQUENCE_MISMATCH
2. previous_hash == expected             else PREVIOUS_HASH_MISMATCH
3. recomputed hash == stored hash        else HASH_MISMATCH

The walk stops at the first failure. A break is a finding, returned in the
report; only store faults (StoreUnavailable) are raised.

Read-only. Safe to run concurrently with appends and with other verifiers.
"""

import time
from datetime import datetime, timezone
from typing import Iterable, Iterator, Optional

from ..db.store import ChainStore
from ..observability import MetricsCollector, get_logger, get_metrics
from ..schemas.links import ChainLink, GENESIS_HASH
from ..schemas.reports import (
    ChainAttestation,
    IntegrityViolation,
    VerificationReport,
    ViolationReason,
)
from .canonical import CanonicalizationError
from .hasher import Hasher
from .signer import Signer

logger = get_logger(__name__)


class ChainVerifier:
    """
    Integrity checks over stored chains.

    verify() pages through the store; verify_links() is the pure walk
    and also backs offline verification of exported bundles.
    """

    def __init__(
        self,
        store: ChainStore,
        page_size: int = 500,
        metrics: Optional[MetricsCollector] = None,
    ):
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self._store = store
        self._page_size = page_size
        self._metrics = metrics or get_metrics()

    def verify(
        self,
        chain_id: str,
        from_sequence: int = 0,
        to_sequence: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> VerificationReport:
        """
        Verify a chain, or the window [from_sequence, to_sequence].

        A window starting after 0 is anchored on the stored hash of the
        link just before it, so it proves the window's internal
        consistency relative to that anchor (not the whole prefix).

        Raises:
            ValueError: Negative or inverted window
            StoreUnavailable: Store fault while reading
        """
        _check_window(from_sequence, to_sequence)
        started = time.perf_counter()

        expected_previous_hash = GENESIS_HASH
        if from_sequence > 0:
            anchor = self._store.read_range(
                chain_id, from_sequence - 1, from_sequence - 1, timeout=timeout
            )
            if not anchor:
                # Window starts past the end of the chain: nothing to check
                return self._finish(
                    _empty_report(chain_id, from_sequence, to_sequence), started
                )
            expected_previous_hash = anchor[0].hash

        report = self.verify_links(
            self._iter_links(chain_id, from_sequence, to_sequence, timeout),
            chain_id,
            from_sequence=from_sequence,
            expected_previous_hash=expected_previous_hash,
            to_sequence=to_sequence,
        )
        return self._finish(report, started)

    def _iter_links(
        self,
        chain_id: str,
        start: int,
        end: Optional[int],
        timeout: Optional[float],
    ) -> Iterator[ChainLink]:
        """
        Yield stored links page by page, fetching lazily.

        A short page means the chain ends inside it or links are missing
        from it. If the tail lies past the page, the tail is yielded next
        so the walk reports the gap instead of stopping early.
        """
        while end is None or start <= end:
            page_end = start + self._page_size - 1
            if end is not None:
                page_end = min(page_end, end)

            links = self._store.read_range(chain_id, start, page_end, timeout=timeout)
            yield from links

            if len(links) == page_end - start + 1:
                start = page_end + 1
                continue

            tail = self._store.read_tail(chain_id, timeout=timeout)
            if tail is not None and tail.sequence > page_end:
                yield tail
            return

    def _finish(self, report: VerificationReport, started: float) -> VerificationReport:
        self._metrics.record_verification(report.valid)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)

        if report.valid:
            logger.info(
                "Chain verified",
                chain_id=report.chain_id,
                length=report.length,
                head_hash=report.head_hash,
                duration_ms=duration_ms,
            )
        else:
            logger.warning(
                "Chain integrity violation",
                chain_id=report.chain_id,
                broken_at_sequence=report.broken_at_sequence,
                reason=report.reason.value,
                verified_length=report.length,
                duration_ms=duration_ms,
            )
        return report

    @staticmethod
    def verify_links(
        links: Iterable[ChainLink],
        chain_id: str,
        from_sequence: int = 0,
        expected_previous_hash: str = GENESIS_HASH,
        to_sequence: Optional[int] = None,
    ) -> VerificationReport:
        """
        Walk links in storage order and check every one.

        Args:
            links: Links as stored, starting at position from_sequence
            chain_id: Chain the links belong to (for the report)
            from_sequence: Position of the first link
            expected_previous_hash: previous_hash the first link must carry
            to_sequence: Recorded in the report only

        Returns:
            VerificationReport (valid, or the first violation)
        """
        _check_window(from_sequence, to_sequence)

        expected_sequence = from_sequence
        previous_hash = expected_previous_hash
        head_hash: Optional[str] = None
        verified = 0
        violation: Optional[IntegrityViolation] = None

        for link in links:
            violation = _check_link(link, expected_sequence, previous_hash)
            if violation is not None:
                break

            previous_hash = link.hash
            head_hash = link.hash
            expected_sequence += 1
            verified += 1

        return VerificationReport(
            chain_id=chain_id,
            valid=violation is None,
            length=verified,
            head_hash=head_hash,
            from_sequence=from_sequence,
            to_sequence=to_sequence,
            violation=violation,
            algorithm=Hasher.ALGORITHM,
            verified_at=datetime.now(timezone.utc),
        )

    @staticmethod
    def attest(report: VerificationReport, private_key_b64: str) -> ChainAttestation:
        """
        Sign a statement that the chain verified up to report.head_hash.

        Raises:
            ValueError: If the report is not valid or covers no links,
                        or the key is not an Ed25519 seed
        """
        if not report.valid:
            raise ValueError(
                f"Refusing to attest chain {report.chain_id}: "
                f"broken at sequence {report.broken_at_sequence} ({report.reason.value})"
            )
        if report.head_hash is None:
            raise ValueError(f"Refusing to attest chain {report.chain_id}: no links verified")

        unsigned = {
            "chain_id": report.chain_id,
            "head_hash": report.head_hash,
            "length": report.from_sequence + report.length,
            "attested_at": datetime.now(timezone.utc),
        }
        signature = Signer.sign_statement(unsigned, private_key_b64)

        return ChainAttestation(
            **unsigned,
            public_key=Signer.public_key_for(private_key_b64),
            signature=signature,
        )

    @staticmethod
    def verify_attestation(
        attestation: ChainAttestation,
        public_key_b64: Optional[str] = None,
    ) -> bool:
        """
        Check an attestation's signature.

        Args:
            attestation: The attestation to check
            public_key_b64: If given, the attestation must also be signed
                            by this key (not just by the key it carries)
        """
        if public_key_b64 is not None and attestation.public_key != public_key_b64:
            return False
        return Signer.verify_statement(
            attestation.statement(),
            attestation.signature,
            attestation.public_key,
        )


def _check_window(from_sequence: int, to_sequence: Optional[int]) -> None:
    if from_sequence < 0:
        raise ValueError("from_sequence must be >= 0")
    if to_sequence is not None and to_sequence < from_sequence:
        raise ValueError("to_sequence must be >= from_sequence")


def _empty_report(
    chain_id: str,
    from_sequence: int,
    to_sequence: Optional[int],
) -> VerificationReport:
    return VerificationReport(
        chain_id=chain_id,
        valid=True,
        length=0,
        head_hash=None,
        from_sequence=from_sequence,
        to_sequence=to_sequence,
        algorithm=Hasher.ALGORITHM,
        verified_at=datetime.now(timezone.utc),
    )


def _check_link(
    link: ChainLink,
    expected_sequence: int,
    expected_previous_hash: str,
) -> Optional[IntegrityViolation]:
    """The first failed check for one link, or None."""
    if link.sequence != expected_sequence:
        return IntegrityViolation(
            sequence=expected_sequence,
            reason=ViolationReason.SEQUENCE_MISMATCH,
            expected=str(expected_sequence),
            actual=str(link.sequence),
            detail="Gap, duplicate or reordered link",
        )

    if not Hasher.compare(link.previous_hash, expected_previous_hash):
        return IntegrityViolation(
            sequence=expected_sequence,
            reason=ViolationReason.PREVIOUS_HASH_MISMATCH,
            expected=expected_previous_hash,
            actual=link.previous_hash,
            detail="Link does not point at the link before it",
        )

    try:
        recomputed = Hasher.hash_link(
            previous_hash=link.previous_hash,
            sequence=link.sequence,
            timestamp=link.timestamp,
            actor=link.actor,
            action=link.action,
            payload_canon=link.payload_canon,
        )
    except CanonicalizationError as e:
        return IntegrityViolation(
            sequence=expected_sequence,
            reason=ViolationReason.HASH_MISMATCH,
            expected=None,
            actual=link.hash,
            detail=f"Stored fields cannot be re-hashed: {e}",
        )

    if not Hasher.compare(recomputed, link.hash):
        return IntegrityViolation(
            sequence=expected_sequence,
            reason=ViolationReason.HASH_MISMATCH,
            expected=recomputed,
            actual=link.hash,
            detail="Stored fields do not match the stored hash",
        )

    return None
