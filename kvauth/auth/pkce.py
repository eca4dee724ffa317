"""PKCE (Proof Key for Code Exchange) implementation.

RFC 7636 - Proof Key for Code Exchange for OAuth 2.0 public clients.
Uses S256 challenge method (SHA-256 hash of the code verifier).

PKCE material is persisted under keys namespaced by the state token:
``("oauth_state", <token>, "pkce", <field>)``.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

from base64 import urlsafe_b64encode
from dataclasses import dataclass
from typing import Any


STATE_NAMESPACE = "oauth_state"

PKCE_FIELDS = ("verifier", "challenge", "challenge_method")


def pkce_key(token: str, field_name: str) -> tuple[str, str, str, str]:
    """Key of one PKCE field for a state token."""
    return (STATE_NAMESPACE, token, "pkce", field_name)


def s256(verifier: str) -> str:
    """Compute the S256 challenge of a verifier."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE code verifier and challenge pair.

    Attributes
    ----------
    verifier : str
        The code verifier (high-entropy random string).
    challenge : str
        The code challenge (base64url-encoded SHA-256 hash of verifier).
    method : str
        The challenge method, always "S256".
    """

    verifier: str
    challenge: str
    method: str = "S256"

    @classmethod
    def generate(cls, length: int = 64) -> PKCEChallenge:
        """Generate a new PKCE code verifier and challenge.

        Parameters
        ----------
        length : int
            Number of bytes for the random verifier (default 64).
            RFC 7636 recommends at least 32 bytes.

        Returns
        -------
        PKCEChallenge
            A new PKCE challenge pair.
        """
        verifier = secrets.token_urlsafe(length)
        return cls(verifier=verifier, challenge=s256(verifier))

    def matches(self, verifier: str) -> bool:
        """Check a verifier against this challenge in constant time."""
        return hmac.compare_digest(s256(verifier), self.challenge)

    def records(self, token: str) -> dict[tuple[str, str, str, str], Any]:
        """KV entries persisting this pair for ``token``."""
        return {
            pkce_key(token, "verifier"): self.verifier,
            pkce_key(token, "challenge"): self.challenge,
            pkce_key(token, "challenge_method"): self.method,
        }
