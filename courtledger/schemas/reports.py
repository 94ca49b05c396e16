"""
Verification Report Schema

A broken chain is not an error. It is a finding.
The verifier always returns one of these, whatever it discovers.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import AwareDatetime, BaseModel, Field


class ViolationReason(str, Enum):
    """Which check failed at the broken link."""
    SEQUENCE_MISMATCH = "sequence_mismatch"             # Gap, duplicate, or reordering
    PREVIOUS_HASH_MISMATCH = "previous_hash_mismatch"   # Linkage to prior link broken
    HASH_MISMATCH = "hash_mismatch"                     # Stored fields altered


class IntegrityViolation(BaseModel):
    """
    Where and how a chain breaks.

    sequence is the position the verifier expected at the break,
    which is also the sequence the link at that position should carry.
    """
    sequence: int = Field(..., ge=0)
    reason: ViolationReason
    expected: Optional[str] = None
    actual: Optional[str] = None
    detail: str = ""


class VerificationReport(BaseModel):
    """
    Result of walking one chain (or a window of it).

    valid=True:  length links verified, head_hash is the last one's hash.
    valid=False: violation says where the first break is; length counts
                 the links that verified before it.
    """
    chain_id: str
    valid: bool
    length: int = Field(..., ge=0)
    head_hash: Optional[str] = None

    from_sequence: int = 0
    to_sequence: Optional[int] = None

    violation: Optional[IntegrityViolation] = None

    algorithm: str = "sha256"
    verified_at: datetime

    @property
    def broken_at_sequence(self) -> Optional[int]:
        return self.violation.sequence if self.violation else None

    @property
    def reason(self) -> Optional[ViolationReason]:
        return self.violation.reason if self.violation else None


class ChainAttestation(BaseModel):
    """
    A signed statement that a chain verified up to head_hash.

    Signed by an auditor (or the platform) over the canonical form of
    chain_id, head_hash, length and attested_at.
    """
    chain_id: str
    head_hash: str
    length: int = Field(..., ge=0)
    attested_at: AwareDatetime
    public_key: str = Field(..., description="Ed25519 public key (base64)")
    signature: str = Field(..., description="Ed25519 signature (base64)")

    def statement(self) -> dict:
        """The signed fields, as a dict for canonicalization."""
        return {
            "chain_id": self.chain_id,
            "head_hash": self.head_hash,
            "length": self.length,
            "attested_at": self.attested_at,
        }
