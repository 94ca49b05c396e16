"""
Cryptographic Signing Service

Uses Ed25519 for signing integrity statements about chains.

The chain itself needs no keys: its hashes prove internal consistency.
A signature adds who vouched for a head hash, and when. That is what an
auditor hands to a court alongside an exported chain.
"""

import base64
from typing import Any, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .canonical import CanonicalizationError, Canonicalizer


class Signer:
    """
    Ed25519 signing for chain attestations.

    Keys travel as base64 text: the 32-byte seed for private keys,
    the 32-byte verify key for public keys.
    """

    @staticmethod
    def generate_keypair() -> Tuple[str, str]:
        """
        Generate a new Ed25519 keypair.

        Returns:
            Tuple of (private_key_b64, public_key_b64)
        """
        signing_key = SigningKey.generate()

        private_b64 = base64.b64encode(bytes(signing_key)).decode("utf-8")
        public_b64 = base64.b64encode(bytes(signing_key.verify_key)).decode("utf-8")

        return private_b64, public_b64

    @staticmethod
    def public_key_for(private_key_b64: str) -> str:
        """Derive the base64 public key from a base64 private key."""
        signing_key = SigningKey(base64.b64decode(private_key_b64))
        return base64.b64encode(bytes(signing_key.verify_key)).decode("utf-8")

    @staticmethod
    def sign(message: bytes, private_key_b64: str) -> str:
        """
        Sign bytes with Ed25519.

        Args:
            message: The bytes to sign (typically a canonical statement)
            private_key_b64: Base64-encoded private key

        Returns:
            Base64-encoded signature

        Raises:
            ValueError: If the private key is not a valid Ed25519 seed
        """
        signing_key = SigningKey(base64.b64decode(private_key_b64))

        signed = signing_key.sign(message)

        # Detached signature only, not signature || message
        return base64.b64encode(signed.signature).decode("utf-8")

    @staticmethod
    def verify(message: bytes, signature_b64: str, public_key_b64: str) -> bool:
        """
        Verify an Ed25519 signature.

        Returns:
            True if signature is valid, False otherwise
            (including malformed keys or signatures)
        """
        try:
            verify_key = VerifyKey(base64.b64decode(public_key_b64))
            verify_key.verify(message, base64.b64decode(signature_b64))
            return True
        except (BadSignatureError, ValueError, TypeError):
            return False

    @classmethod
    def sign_statement(cls, statement: Any, private_key_b64: str) -> str:
        """Sign the canonical bytes of a structured statement."""
        return cls.sign(Canonicalizer.encode(statement), private_key_b64)

    @classmethod
    def verify_statement(cls, statement: Any, signature_b64: str, public_key_b64: str) -> bool:
        """
        Verify a signature over the canonical bytes of a statement.

        A statement that cannot be canonicalized was never signed: False.
        """
        try:
            message = Canonicalizer.encode(statement)
        except CanonicalizationError:
            return False
        return cls.verify(message, signature_b64, public_key_b64)
