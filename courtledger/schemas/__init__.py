# Canonical Schemas for the CourtLedger event ledger
# These define the contract every stored link and report obeys.

from .links import (
    GENESIS_HASH,
    ChainLink,
    ChainStream,
    LedgerAction,
    make_chain_id,
)
from .reports import (
    ChainAttestation,
    IntegrityViolation,
    VerificationReport,
    ViolationReason,
)
from .evidence import (
    EvidenceDigest,
    EvidenceItem,
    ServiceAttemptEvidence,
    ServiceOutcome,
)

__all__ = [
    # Links
    "GENESIS_HASH",
    "ChainLink",
    "ChainStream",
    "LedgerAction",
    "make_chain_id",
    # Reports
    "ChainAttestation",
    "IntegrityViolation",
    "VerificationReport",
    "ViolationReason",
    # Evidence
    "EvidenceDigest",
    "EvidenceItem",
    "ServiceAttemptEvidence",
    "ServiceOutcome",
]
