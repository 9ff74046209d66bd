"""OAuth token model."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

# Used when the token endpoint omits expires_in
DEFAULT_EXPIRES_IN = 3600


def format_expiry(value: datetime) -> str:
    """Format an expiry as RFC 3339 in UTC with a trailing Z."""
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_expiry(value: str) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime.

    Raises:
        ValueError: If the value is not a timestamp or has no offset
    """
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        msg = f"expiry has no timezone: {value!r}"
        raise ValueError(msg)
    return parsed.astimezone(UTC)


@dataclass(frozen=True)
class Token:
    """OAuth 2.0 token for one instance.

    The expiry is an absolute UTC instant, never a relative lifetime, so
    a token reloaded from storage means the same thing it did when saved.
    """

    access_token: str
    refresh_token: str | None
    expiry: datetime
    token_type: str = "Bearer"

    @property
    def is_expired(self) -> bool:
        """Check if the access token is expired."""
        return datetime.now(UTC) >= self.expiry

    def expires_within(self, margin: timedelta) -> bool:
        """Check if the token expires within ``margin`` from now."""
        return datetime.now(UTC) >= self.expiry - margin

    @classmethod
    def from_token_response(
        cls,
        response: dict[str, Any],
        issued_at: datetime,
        previous_refresh_token: str | None = None,
    ) -> Token:
        """Create a Token from a token endpoint response.

        Args:
            response: Token endpoint JSON body
            issued_at: When the token request was sent
            previous_refresh_token: Refresh token to keep if the response has none

        Returns:
            Token instance

        Raises:
            KeyError: If the response has no access_token
        """
        expires_in = response.get("expires_in")
        if expires_in is None:
            expires_in = DEFAULT_EXPIRES_IN

        return cls(
            access_token=response["access_token"],
            refresh_token=response.get("refresh_token") or previous_refresh_token,
            expiry=issued_at + timedelta(seconds=int(expires_in)),
            token_type=response.get("token_type") or "Bearer",
        )

    def to_dict(self) -> dict[str, str | None]:
        """Serialize for storage."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expiry": format_expiry(self.expiry),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Token:
        """Deserialize from storage.

        Raises:
            ValueError: If required fields are missing or malformed
        """
        access_token = data.get("access_token")
        expiry = data.get("expiry")
        if not isinstance(access_token, str) or not access_token:
            msg = "token data has no access_token"
            raise ValueError(msg)
        if not isinstance(expiry, str):
            msg = "token data has no expiry"
            raise ValueError(msg)

        refresh_token = data.get("refresh_token")
        return cls(
            access_token=access_token,
            refresh_token=str(refresh_token) if refresh_token else None,
            expiry=parse_expiry(expiry),
            token_type=str(data.get("token_type") or "Bearer"),
        )
