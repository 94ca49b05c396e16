"""
Evidence Digest

One-shot, content-addressable proof of a set of evidence fields.

Computed once, at capture time, and embedded in the payload of the link
that records the event. Never recomputed by the ledger afterwards; a
later audit recomputes it from the retained evidence and compares.

NORMALIZATION:
Blank values (None, "", empty lists and dicts) are dropped from mappings
before hashing, so an omitted optional field and a blank one produce the
same digest. Everything else follows the canonical rules.
"""

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel

from ..schemas.evidence import EvidenceDigest
from .hasher import Hasher


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, Mapping)):
        return len(value) == 0
    return False


def prune_blank(value: Any) -> Any:
    """
    Recursively drop blank entries from mappings.

    List positions are meaningful, so list elements are pruned inside but
    never removed.
    """
    if isinstance(value, BaseModel):
        value = value.model_dump()

    if isinstance(value, Mapping):
        pruned = {}
        for key, item in value.items():
            item = prune_blank(item)
            if not _is_blank(item):
                pruned[key] = item
        return pruned

    if isinstance(value, (list, tuple)):
        return [prune_blank(item) for item in value]

    return value


def digest_evidence(fields: Any) -> EvidenceDigest:
    """
    Digest a set of evidence fields.

    Args:
        fields: Mapping of evidence fields, or a model such as
                ServiceAttemptEvidence

    Returns:
        EvidenceDigest to embed in the event payload

    Raises:
        CanonicalizationError: If a field cannot be canonicalized
        TypeError: If fields is not a mapping or model
    """
    if not isinstance(fields, (Mapping, BaseModel)):
        raise TypeError(
            f"Evidence fields must be a mapping or model, got {type(fields).__name__}"
        )

    return EvidenceDigest(
        algorithm=Hasher.ALGORITHM,
        digest=Hasher.hash_evidence(prune_blank(fields)),
    )
