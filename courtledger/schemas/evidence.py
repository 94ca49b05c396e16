"""
Evidence Schema

Evidence captured in the field (GPS fix, outcome, photos, signatures)
is digested once, at capture time. The digest then travels inside the
payload of the link that records the event.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ServiceOutcome(str, Enum):
    """Outcome of a service-of-process attempt."""
    SERVED = "served"
    REFUSED = "refused"
    NOT_FOUND = "not_found"                 # Person not at address
    ADDRESS_INVALID = "address_invalid"
    ACCESS_DENIED = "access_denied"         # Gate, security estate, etc.
    SUBSTITUTED = "substituted"             # Served on another competent person


class EvidenceItem(BaseModel):
    """
    Descriptor of one captured artifact.
    The artifact itself lives elsewhere; only its reference and hash are digested.
    """
    kind: str = Field(
        ...,
        description="photo, signature, audio, document, ..."
    )
    reference: str = Field(
        ...,
        description="Storage key or URI of the artifact"
    )
    sha256: Optional[str] = Field(
        default=None,
        description="Content hash of the artifact, if the capture device computed one"
    )


class ServiceAttemptEvidence(BaseModel):
    """
    Non-repudiation-critical fields of a service attempt.
    """
    attempted_at: datetime
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy_m: Optional[float] = Field(
        default=None,
        ge=0,
        description="GPS accuracy in meters"
    )
    outcome: ServiceOutcome
    notes: str = ""
    items: list[EvidenceItem] = Field(default_factory=list)


class EvidenceDigest(BaseModel):
    """
    Content-addressable proof of a set of evidence fields.

    Computed once, never recomputed later. Carried as ordinary payload data.
    """
    model_config = ConfigDict(frozen=True)

    algorithm: str = "sha256"
    digest: str = Field(..., min_length=64, max_length=64)

    def as_payload(self) -> dict[str, str]:
        """Dict form to embed in a link payload."""
        return {"algorithm": self.algorithm, "digest": self.digest}

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.digest}"
