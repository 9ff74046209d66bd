"""Security utilities for lms-cli.

Provides secret redaction, constant-time comparison, random token
generation and the authentication strategies API clients use to
attach credentials to outgoing requests.
"""

from __future__ import annotations

import hmac
import secrets
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from lms_cli.logging_config import get_logger

if TYPE_CHECKING:
    from lms_cli.auth.token_source import AutoRefreshTokenSource

logger = get_logger(__name__)


def redact(value: str | None) -> str:
    """Redact a potentially sensitive value for safe logging.

    Args:
        value: The value to redact

    Returns:
        "***" if value is non-empty, "<empty>" if empty/None
    """
    if value is None or value == "":
        return "<empty>"
    return "***"


def constant_time_equals(a: str | None, b: str | None) -> bool:
    """Compare two strings in constant time to prevent timing attacks.

    Args:
        a: First string to compare
        b: Second string to compare

    Returns:
        True if strings are equal, False otherwise
    """
    if a is None and b is None:
        return True
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode(), b.encode())


def generate_secure_token(nbytes: int = 32) -> str:
    """Generate a cryptographically secure random token.

    Args:
        nbytes: Number of random bytes (default 32 = 256 bits)

    Returns:
        URL-safe base64-encoded token string
    """
    return secrets.token_urlsafe(nbytes)


class AuthStrategy(ABC):
    """Abstract base class for authentication strategies.

    Authentication strategies provide a consistent interface for
    obtaining authorization headers for API calls.
    """

    @abstractmethod
    async def get_auth_headers(self) -> dict[str, str]:
        """Get authorization headers for an API request.

        Returns:
            Dictionary of headers to include in the request
        """


class StaticTokenAuthStrategy(AuthStrategy):
    """Authentication strategy using a fixed access token.

    Suitable for manually generated LMS access tokens.
    """

    def __init__(self, access_token: str, token_type: str = "Bearer") -> None:
        self._access_token = access_token
        self._token_type = token_type

    async def get_auth_headers(self) -> dict[str, str]:
        """Return the static token header."""
        return {"Authorization": f"{self._token_type} {self._access_token}"}


class TokenSourceAuthStrategy(AuthStrategy):
    """Authentication strategy backed by an auto-refreshing token source.

    Every call asks the source for a currently valid token, so expired
    access tokens are renewed before the request goes out. Errors from
    the source propagate unchanged; callers treat any AuthError as
    "not authenticated, run login again".
    """

    def __init__(self, source: AutoRefreshTokenSource) -> None:
        """Initialize with a token source.

        Args:
            source: Token source for the instance being called
        """
        self._source = source

    async def get_auth_headers(self) -> dict[str, str]:
        """Get authorization headers with a currently valid token.

        Raises:
            AuthError: If no valid token can be produced
        """
        token = await self._source.token()
        return {"Authorization": f"{token.token_type} {token.access_token}"}


def mask_sensitive_data(
    data: dict[str, Any], sensitive_keys: set[str] | None = None
) -> dict[str, Any]:
    """Mask sensitive data in a dictionary for logging.

    Args:
        data: Dictionary potentially containing sensitive data
        sensitive_keys: Set of keys to mask (uses defaults if not provided)

    Returns:
        Copy of dictionary with sensitive values masked
    """
    if sensitive_keys is None:
        sensitive_keys = {
            "access_token",
            "refresh_token",
            "code",
            "code_verifier",
            "token",
            "secret",
            "password",
            "authorization",
        }

    result: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            result[key] = mask_sensitive_data(value, sensitive_keys)
        elif any(sensitive in key.lower() for sensitive in sensitive_keys):
            result[key] = "***"
        else:
            result[key] = value

    return result
