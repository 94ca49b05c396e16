"""
Cryptographic Hashing Service

SHA-256 over canonical bytes, with a domain-separation prefix per kind
of thing being hashed. Same input → same hash. Always. Forever.

If this breaks, every chain becomes unverifiable.
The algorithm is fixed system-wide and never silently changed.

LINK HASH FORMAT:
    SHA256(LINK_DOMAIN || canonical({
        "action", "actor", "payload", "previous_hash",
        "sequence", "timestamp", "v"
    }))

    "payload" is the stored canonical payload text, spliced verbatim.
    "v" is the canonical serialization version.

EVIDENCE HASH FORMAT:
    SHA256(EVIDENCE_DOMAIN || canonical(evidence_fields))
"""

import hashlib
import hmac
import re
from datetime import datetime
from typing import Any

from .canonical import CanonicalText, Canonicalizer


_DIGEST_PATTERN = re.compile(r"[0-9a-f]{64}")


class Hasher:
    """
    Digests for chain links and evidence.

    Pure functions only. No state, no configuration.
    """

    ALGORITHM = "sha256"

    # Domain separation: a link digest can never be confused with an
    # evidence digest (or anything else hashed with SHA-256) even if the
    # canonical bytes happen to match.
    LINK_DOMAIN = b"courtledger/chain-link/v1\x00"
    EVIDENCE_DOMAIN = b"courtledger/evidence/v1\x00"

    @classmethod
    def digest(cls, data: bytes, domain: bytes) -> str:
        """
        Hex digest of domain || data.

        Returns:
            Lowercase hex (64 characters)
        """
        h = hashlib.new(cls.ALGORITHM)
        h.update(domain)
        h.update(data)
        return h.hexdigest()

    @classmethod
    def hash_link(
        cls,
        previous_hash: str,
        sequence: int,
        timestamp: datetime,
        actor: str,
        action: str,
        payload_canon: str,
    ) -> str:
        """
        Hash a chain link from its logical fields.

        The appender calls this once at append time; the verifier calls it
        again with the stored fields. Both must agree byte for byte, which is
        why the payload goes in as its stored canonical text.

        Raises:
            CanonicalizationError: If a field cannot be canonicalized
                                   (e.g. a naive timestamp)
        """
        envelope = {
            "action": action,
            "actor": actor,
            "payload": CanonicalText(payload_canon),
            "previous_hash": previous_hash,
            "sequence": sequence,
            "timestamp": timestamp,
            "v": Canonicalizer.VERSION,
        }
        return cls.digest(Canonicalizer.encode(envelope), cls.LINK_DOMAIN)

    @classmethod
    def hash_evidence(cls, fields: Any) -> str:
        """Hash evidence fields (already pruned by the caller)."""
        return cls.digest(Canonicalizer.encode(fields), cls.EVIDENCE_DOMAIN)

    @staticmethod
    def compare(a: str, b: str) -> bool:
        """
        Compare two digests in constant time.

        Prevents timing attacks where an attacker could learn
        about a hash by measuring comparison time.
        """
        return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))

    @staticmethod
    def is_digest(value: Any) -> bool:
        """True for 64 lowercase hex characters."""
        return isinstance(value, str) and bool(_DIGEST_PATTERN.fullmatch(value))
