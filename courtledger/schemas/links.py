"""
Chain Link Schema

One entry in one chain. Chains are append-only: a link is created once,
by the appender, and never edited afterwards.

Each link:
- Belongs to exactly one chain (chain_id)
- Has a position (sequence, starting at 0)
- Points at the digest of the link before it (previous_hash)
- Carries its own digest (hash)
"""

import json
import re
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# The previous_hash of every chain's first link.
# 256 bits of zeros, hex encoded. Referenced, never written.
GENESIS_HASH = "0" * 64


class ChainStream(str, Enum):
    """
    Known kinds of chains.
    One chain per dispatch instruction, onboarding session, trust account, etc.
    """
    DISPATCH = "dispatch"           # Service-of-process attempts
    ONBOARDING = "onboarding"       # Client onboarding stage transitions
    TRUST = "trust"                 # Trust-account transactions
    PRECEDENT = "precedent"         # Precedent records
    SESSION = "session"             # Session security events


class LedgerAction(str, Enum):
    """
    Well-known action names.
    Plain strings are accepted too; these are the ones the platform emits.
    """
    ATTEMPT_LOGGED = "ATTEMPT_LOGGED"
    EVIDENCE_SEALED = "EVIDENCE_SEALED"
    STAGE_ADVANCED = "STAGE_ADVANCED"
    TXN_POSTED = "TXN_POSTED"
    PRECEDENT_RECORDED = "PRECEDENT_RECORDED"
    SECURITY_EVENT = "SECURITY_EVENT"


_SEGMENT = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.:-]*")


def make_chain_id(tenant_id: str, stream: ChainStream | str, entity_id: Any) -> str:
    """
    Build a tenant-scoped chain identifier.

    Format: "{tenant_id}/{stream}/{entity_id}", e.g. "firm-7/dispatch/instr-42".
    Chains of different tenants can never collide, and a tenant's chains
    can be listed by prefix.
    """
    stream_value = stream.value if isinstance(stream, ChainStream) else stream
    parts = [str(tenant_id), str(stream_value), str(entity_id).lower()]

    for part in parts:
        if not _SEGMENT.fullmatch(part):
            raise ValueError(
                f"Invalid chain id segment {part!r}. "
                "Segments must be non-empty and may not contain '/' or spaces."
            )

    return "/".join(parts)


class ChainLink(BaseModel):
    """
    A single ledger entry.

    payload_canon holds the canonical JSON text of the payload exactly as it
    was hashed. Stores keep it verbatim; re-serializing it would change the
    bytes and break verification.
    """
    model_config = ConfigDict(frozen=True)

    chain_id: str = Field(
        ...,
        min_length=1,
        description="Logical stream this link belongs to"
    )

    sequence: int = Field(
        ...,
        ge=0,
        description="Position in the chain. 0 for the first link."
    )

    timestamp: datetime = Field(
        ...,
        description="Wall-clock time of append, assigned by the appender (UTC)"
    )

    actor: str = Field(
        ...,
        description="User id, system, or device that performed the action"
    )

    action: str = Field(
        ...,
        description="Event kind, e.g. STAGE_ADVANCED"
    )

    payload_canon: str = Field(
        ...,
        description="Canonical JSON text of the payload"
    )

    previous_hash: str = Field(
        ...,
        description="Digest of the previous link (GENESIS_HASH for sequence 0)"
    )

    hash: str = Field(
        ...,
        description="Digest over previous_hash, sequence, timestamp, actor, action, payload"
    )

    canon_version: int = Field(
        default=1,
        description="Canonical serialization version used for this link"
    )

    @field_validator("timestamp")
    @classmethod
    def _require_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        return value

    @property
    def payload(self) -> Any:
        """Decoded payload (read-only view of payload_canon)."""
        return json.loads(self.payload_canon)

    @property
    def is_genesis(self) -> bool:
        return self.sequence == 0

    def to_record(self) -> dict[str, Any]:
        """JSON-ready form with every field verbatim."""
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "ChainLink":
        return cls.model_validate(record)
