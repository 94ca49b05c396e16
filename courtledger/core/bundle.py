"""
Chain Bundles - The Verifiable Artifact

An exported chain that a third party can verify WITHOUT connecting to
our servers or database:
- Link hash recomputation
- Chain linkage and sequence
- Attestation signature (if the exporter signed the head)

Bundle layout:
    {
        "_meta":          who/what/when of the export
        "_verification":  algorithms and instructions for verifiers
        "verification":   the exporter's own report at export time
        "links":          every link, every field verbatim
        "attestation":    signed head statement (optional)
    }
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from pydantic import ValidationError as ModelValidationError

from ..observability import get_logger
from ..schemas.links import ChainLink, GENESIS_HASH
from ..schemas.reports import ChainAttestation, VerificationReport
from .canonical import Canonicalizer
from .hasher import Hasher
from .verifier import ChainVerifier

if TYPE_CHECKING:
    from .ledger import LedgerService

logger = get_logger(__name__)

BUNDLE_VERSION = "1.0"


class BundleResult(str, Enum):
    VERIFIED = "VERIFIED"
    TAMPERED = "TAMPERED"
    INVALID_FORMAT = "INVALID_FORMAT"


@dataclass
class BundleCheck:
    """Outcome of checking a bundle offline."""
    result: BundleResult
    chain_id: str
    link_count: int
    checks_passed: list[str] = field(default_factory=list)
    checks_failed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    report: Optional[VerificationReport] = None

    @property
    def verified(self) -> bool:
        return self.result == BundleResult.VERIFIED

    def to_dict(self) -> dict[str, Any]:
        return {
            "result": self.result.value,
            "chain_id": self.chain_id,
            "link_count": self.link_count,
            "checks_passed": self.checks_passed,
            "checks_failed": self.checks_failed,
            "warnings": self.warnings,
            "broken_at_sequence": self.report.broken_at_sequence if self.report else None,
            "head_hash": self.report.head_hash if self.report else None,
        }


def export_bundle(
    ledger: "LedgerService",
    chain_id: str,
    signing_key: Optional[str] = None,
) -> dict[str, Any]:
    """
    Export a chain as a self-contained, JSON-ready bundle.

    The included report is computed over exactly the exported links.
    A tampered chain is still exported (that is evidence too) but is
    never attested.

    Args:
        ledger: Ledger to read from
        chain_id: Chain to export
        signing_key: Base64 Ed25519 private key to attest the head with
    """
    links = ledger.read(chain_id)
    report = ChainVerifier.verify_links(links, chain_id)

    attestation = None
    if signing_key:
        if report.valid and report.head_hash is not None:
            attestation = ChainVerifier.attest(report, signing_key)
        else:
            logger.warning(
                "Exporting chain without attestation",
                chain_id=chain_id,
                chain_valid=report.valid,
                link_count=len(links),
            )

    bundle = {
        "_meta": {
            "bundle_version": BUNDLE_VERSION,
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "chain_id": chain_id,
            "link_count": len(links),
            "chain_valid_at_export": report.valid,
        },
        "_verification": {
            "canonicalization_version": Canonicalizer.VERSION,
            "hash_algorithm": Hasher.ALGORITHM,
            "signature_algorithm": "ed25519",
            "genesis_hash": GENESIS_HASH,
            "link_domain": Hasher.LINK_DOMAIN.decode("ascii").rstrip("\x00"),
            "instructions": [
                "1. Links are in sequence order starting at 0",
                "2. Each link's previous_hash equals the hash of the link before it (genesis_hash for link 0)",
                "3. Recompute hash = SHA256(link_domain || NUL || canonical envelope of "
                "action, actor, payload (payload_canon verbatim), previous_hash, sequence, timestamp, v)",
                "4. Verify the recomputed hash matches the stored hash",
                "5. If present, verify the attestation signature over the canonical "
                "{chain_id, head_hash, length, attested_at} with its public_key",
            ],
        },
        "verification": report.model_dump(mode="json"),
        "links": [link.to_record() for link in links],
    }
    if attestation is not None:
        bundle["attestation"] = attestation.model_dump(mode="json")

    logger.info(
        "Chain exported",
        chain_id=chain_id,
        link_count=len(links),
        attested=attestation is not None,
    )
    return bundle


def verify_bundle(bundle: Any) -> BundleCheck:
    """
    Verify an exported bundle offline.

    Never raises for bad input: malformed bundles come back as
    INVALID_FORMAT, broken ones as TAMPERED.
    """
    if not isinstance(bundle, dict):
        return BundleCheck(
            result=BundleResult.INVALID_FORMAT,
            chain_id="unknown",
            link_count=0,
            checks_failed=["Bundle must be a JSON object"],
        )

    meta = bundle.get("_meta")
    raw_links = bundle.get("links")
    chain_id = meta.get("chain_id") if isinstance(meta, dict) else None
    check = BundleCheck(
        result=BundleResult.VERIFIED,
        chain_id=chain_id if isinstance(chain_id, str) else "unknown",
        link_count=len(raw_links) if isinstance(raw_links, list) else 0,
    )

    # 1. Structure
    links = _parse_structure(bundle, check)
    if links is None:
        check.result = BundleResult.INVALID_FORMAT
        return check

    instructions = bundle.get("_verification")
    canon_v = instructions.get("canonicalization_version") if isinstance(instructions, dict) else None
    if canon_v is not None and canon_v != Canonicalizer.VERSION:
        check.warnings.append(
            f"Canonicalization version mismatch: bundle={canon_v}, verifier={Canonicalizer.VERSION}"
        )

    # 2. Chain
    report = ChainVerifier.verify_links(links, check.chain_id)
    check.report = report
    if not report.valid:
        check.checks_failed.append(
            f"Chain broken at sequence {report.broken_at_sequence}: {report.reason.value}"
        )
        check.result = BundleResult.TAMPERED
        return check
    check.checks_passed.append(f"All {len(links)} links verified")

    exported = bundle.get("verification")
    if isinstance(exported, dict) and exported.get("head_hash") != report.head_hash:
        check.checks_failed.append("Exported head hash does not match the links")
        check.result = BundleResult.TAMPERED
        return check

    # 3. Attestation
    raw_attestation = bundle.get("attestation")
    if raw_attestation is None:
        check.warnings.append("Bundle is not attested")
        return check

    try:
        attestation = ChainAttestation.model_validate(raw_attestation)
    except ModelValidationError as e:
        check.checks_failed.append(f"Attestation malformed: {e.error_count()} error(s)")
        check.result = BundleResult.INVALID_FORMAT
        return check

    if not ChainVerifier.verify_attestation(attestation):
        check.checks_failed.append("Attestation signature invalid")
        check.result = BundleResult.TAMPERED
        return check

    if (
        attestation.chain_id != check.chain_id
        or attestation.head_hash != report.head_hash
        or attestation.length != report.length
    ):
        check.checks_failed.append("Attestation does not match the exported chain head")
        check.result = BundleResult.TAMPERED
        return check

    check.checks_passed.append(f"Attestation signature verified ({attestation.public_key[:12]}...)")
    return check


def _parse_structure(bundle: dict, check: BundleCheck) -> Optional[list[ChainLink]]:
    """Parse links out of the bundle, or record why not."""
    missing = [k for k in ("_meta", "links") if k not in bundle]
    if missing:
        check.checks_failed.append(f"Missing required keys: {missing}")
        return None

    if not isinstance(bundle["_meta"], dict) or check.chain_id == "unknown":
        check.checks_failed.append("'_meta.chain_id' is required")
        return None

    if not isinstance(bundle["links"], list):
        check.checks_failed.append("'links' must be an array")
        return None

    links = []
    for i, record in enumerate(bundle["links"]):
        if not isinstance(record, dict):
            check.checks_failed.append(f"Link {i} is not an object")
            return None
        try:
            link = ChainLink.from_record(record)
        except ModelValidationError as e:
            check.checks_failed.append(f"Link {i} malformed: {e.error_count()} error(s)")
            return None
        if link.chain_id != check.chain_id:
            check.checks_failed.append(f"Link {i} belongs to chain {link.chain_id}")
            return None
        links.append(link)

    if not links:
        check.warnings.append("Bundle has no links")

    check.checks_passed.append("Bundle structure valid")
    return links
