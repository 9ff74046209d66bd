"""PKCE (Proof Key for Code Exchange) and CSRF state generation.

Implements RFC 7636 for the OAuth 2.0 Authorization Code flow.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass

MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128

CHALLENGE_METHOD = "S256"


@dataclass(frozen=True)
class PKCEPair:
    """PKCE code verifier and challenge pair.

    Attributes:
        code_verifier: Random string sent with the token request
        code_challenge: SHA256 hash of the verifier sent with the auth request
        method: Challenge method, always S256
    """

    code_verifier: str
    code_challenge: str
    method: str = CHALLENGE_METHOD


def generate_code_verifier(length: int = MAX_VERIFIER_LENGTH) -> str:
    """Generate a cryptographically random code verifier.

    The verifier only uses the RFC 7636 unreserved characters
    ``[A-Za-z0-9-_]``.

    Args:
        length: Verifier length, between 43 and 128

    Returns:
        URL-safe code verifier string of exactly ``length`` characters

    Raises:
        ValueError: If length is out of range
    """
    if not MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH:
        msg = (
            f"code verifier length must be between {MIN_VERIFIER_LENGTH} "
            f"and {MAX_VERIFIER_LENGTH}"
        )
        raise ValueError(msg)

    # token_urlsafe(n) yields ~1.3 chars per byte, so n bytes always covers n chars
    return secrets.token_urlsafe(length)[:length]


def generate_code_challenge(verifier: str) -> str:
    """Compute the S256 code challenge: BASE64URL(SHA256(verifier)), unpadded.

    Args:
        verifier: The code verifier string

    Returns:
        Base64url-encoded SHA256 hash (without padding)
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def create_pkce_pair(length: int = MAX_VERIFIER_LENGTH) -> PKCEPair:
    """Create a new PKCE code verifier/challenge pair.

    Args:
        length: Verifier length

    Returns:
        PKCEPair with verifier and challenge
    """
    verifier = generate_code_verifier(length)
    return PKCEPair(code_verifier=verifier, code_challenge=generate_code_challenge(verifier))


def generate_state(nbytes: int = 32) -> str:
    """Generate an unpredictable, single-use CSRF state value."""
    return secrets.token_urlsafe(nbytes)
