# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

"""
PKCE (RFC 7636) verifier, challenge and CSRF state generation. S256 only.
"""

import base64
import hashlib
import secrets
from typing import Protocol

# base64url of 32..96 bytes is 43..128 characters, the RFC 7636 verifier range
MIN_VERIFIER_BYTES = 32
MAX_VERIFIER_BYTES = 96
STATE_BYTES = 32


class CryptoProvider(Protocol):
    """The two primitives PKCE needs. Implementations must use a CSPRNG."""

    def random_bytes(self, n: int) -> bytes: ...

    def sha256(self, data: bytes) -> bytes: ...


class SystemCrypto:
    """CryptoProvider backed by the OS CSPRNG (`secrets`) and `hashlib`."""

    def random_bytes(self, n: int) -> bytes:
        return secrets.token_bytes(n)

    def sha256(self, data: bytes) -> bytes:
        return hashlib.sha256(data).digest()


def base64url_encode(data: bytes) -> str:
    """Base64URL encoding without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


class PKCEGenerator:
    """
    Produces code verifiers, S256 challenges and opaque state values.

    Attributes:
        crypto (CryptoProvider): Source of randomness and SHA-256.
    """

    def __init__(self, crypto: CryptoProvider | None = None) -> None:
        self.crypto = crypto or SystemCrypto()

    def generate_verifier(self, length: int = 64) -> str:
        """
        Generates a high-entropy URL-safe code_verifier.

        Args:
            length: Number of random bytes. 64 bytes encode to 86 characters.

        Returns:
            str: The verifier (43 to 128 characters).

        Raises:
            ValueError: If `length` would encode outside 43..128 characters.
        """
        if not MIN_VERIFIER_BYTES <= length <= MAX_VERIFIER_BYTES:
            raise ValueError(
                f"Verifier length must be between {MIN_VERIFIER_BYTES} and {MAX_VERIFIER_BYTES} bytes, got {length}"
            )
        return base64url_encode(self.crypto.random_bytes(length))

    def generate_challenge(self, verifier: str) -> str:
        """
        code_challenge = BASE64URL(SHA256(ASCII(code_verifier)))
        """
        return base64url_encode(self.crypto.sha256(verifier.encode("ascii")))

    def generate_pair(self) -> tuple[str, str]:
        """Returns (code_verifier, code_challenge)."""
        verifier = self.generate_verifier()
        return verifier, self.generate_challenge(verifier)

    def generate_state(self) -> str:
        """Opaque CSRF token; never parsed."""
        return base64url_encode(self.crypto.random_bytes(STATE_BYTES))
