# Core ledger services
from .canonical import Canonicalizer, CanonicalizationError, CanonicalText
from .hasher import Hasher
from .appender import (
    ChainAppender,
    LedgerError,
    ValidationError,
    AppendFailed,
    PositionTaken,
    AppendOutcomeUnknown,
)
from .verifier import ChainVerifier
from .evidence import digest_evidence, prune_blank
from .signer import Signer
from .ledger import LedgerService
from .bundle import (
    BundleCheck,
    BundleResult,
    export_bundle,
    verify_bundle,
)

__all__ = [
    "Canonicalizer",
    "CanonicalizationError",
    "CanonicalText",
    "Hasher",
    "ChainAppender",
    "LedgerError",
    "ValidationError",
    "AppendFailed",
    "PositionTaken",
    "AppendOutcomeUnknown",
    "ChainVerifier",
    "digest_evidence",
    "prune_blank",
    "Signer",
    "LedgerService",
    "BundleCheck",
    "BundleResult",
    "export_bundle",
    "verify_bundle",
]
