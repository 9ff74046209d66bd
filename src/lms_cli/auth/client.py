"""Token endpoint client.

Talks to an instance's OAuth token endpoint for the initial code
exchange and for refreshes, and to the current-user endpoint for
token validation.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import httpx

from lms_cli.auth.tokens import Token
from lms_cli.exceptions import NetworkError, RefreshRevokedError
from lms_cli.logging_config import get_logger
from lms_cli.security import mask_sensitive_data, redact

if TYPE_CHECKING:
    from types import TracebackType

    from lms_cli.config import Instance

logger = get_logger(__name__)

# Default HTTP timeout for OAuth requests
DEFAULT_TIMEOUT = 30.0

AUTHORIZE_PATH = "/login/oauth2/auth"
TOKEN_PATH = "/login/oauth2/token"
CURRENT_USER_PATH = "/api/v1/users/self"

# Statuses with which a provider rejects a refresh grant for good
REVOKED_STATUS_CODES = frozenset({400, 401})


class TokenEndpointClient:
    """Client for an instance's OAuth token endpoint.

    Owns its httpx.AsyncClient unless one is passed in.
    """

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Instance base URL
            client_id: OAuth client identifier
            client_secret: OAuth client secret (None for public clients)
            http_client: Optional custom HTTP client
            timeout: Timeout for requests made with an owned client
        """
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    @classmethod
    def from_instance(
        cls,
        instance: Instance,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> TokenEndpointClient:
        """Build a client from a resolved instance record."""
        return cls(
            base_url=instance.url,
            client_id=instance.client_id,
            client_secret=instance.secret,
            http_client=http_client,
            timeout=timeout,
        )

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.base_url}{AUTHORIZE_PATH}"

    @property
    def token_endpoint(self) -> str:
        return f"{self.base_url}{TOKEN_PATH}"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client if we own it."""
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> TokenEndpointClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def _client_credentials(self) -> dict[str, str]:
        data = {"client_id": self.client_id}
        if self.client_secret:
            data["client_secret"] = self.client_secret
        return data

    async def _request_token(
        self,
        data: dict[str, str],
        previous_refresh_token: str | None = None,
    ) -> Token:
        """POST a grant to the token endpoint and parse the resulting token.

        Expiry is measured from when the request was sent, not from when
        the response arrived, so network latency never extends a token's life.
        """
        client = await self._get_client()
        logger.debug("POST %s %s", self.token_endpoint, mask_sensitive_data(data))

        issued_at = datetime.now(UTC)
        try:
            response = await client.post(
                self.token_endpoint,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.error("Token endpoint %s unreachable: %s", self.token_endpoint, e)
            raise NetworkError(f"Token endpoint unreachable: {e}") from e

        if response.is_error:
            logger.error(
                "Token request failed: %s %s",
                response.status_code,
                response.reason_phrase,
            )
            raise NetworkError(
                f"Token request failed: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
            )

        try:
            payload: dict[str, Any] = response.json()
            return Token.from_token_response(
                payload, issued_at, previous_refresh_token=previous_refresh_token
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Token endpoint returned an unusable body: %s", e)
            raise NetworkError(
                "Token endpoint returned an invalid response",
                status_code=response.status_code,
                response_body=response.text,
            ) from e

    async def exchange_code(
        self,
        code: str,
        code_verifier: str,
        redirect_uri: str,
    ) -> Token:
        """Exchange an authorization code for a token.

        Args:
            code: Authorization code from the redirect
            code_verifier: PKCE verifier generated for this flow
            redirect_uri: Redirect URI used in the authorization request

        Returns:
            New Token

        Raises:
            NetworkError: If the exchange fails
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
            **self._client_credentials(),
        }

        token = await self._request_token(data)
        logger.info("Exchanged authorization code (expires %s)", token.expiry.isoformat())
        return token

    async def refresh(self, token: Token) -> Token:
        """Use a token's refresh token to obtain a new access token.

        A response without a refresh_token keeps the current one.

        Args:
            token: Token to refresh

        Returns:
            New Token

        Raises:
            RefreshRevokedError: If there is no refresh token or the grant is rejected
            NetworkError: If the endpoint is unreachable or fails otherwise
        """
        if not token.refresh_token:
            raise RefreshRevokedError("Token expired and no refresh token is available")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": token.refresh_token,
            **self._client_credentials(),
        }

        logger.debug(
            "Refreshing access token (client: %s, secret: %s)",
            self.client_id,
            redact(self.client_secret),
        )

        try:
            new_token = await self._request_token(
                data, previous_refresh_token=token.refresh_token
            )
        except NetworkError as e:
            if e.status_code in REVOKED_STATUS_CODES:
                raise RefreshRevokedError(
                    f"Refresh rejected by provider ({e.status_code})"
                ) from e
            raise

        logger.info("Refreshed access token (expires %s)", new_token.expiry.isoformat())
        return new_token

    async def get_current_user(self, token: Token) -> httpx.Response:
        """Call the current-user endpoint with a token.

        Raises:
            NetworkError: If the endpoint is unreachable
        """
        client = await self._get_client()
        try:
            return await client.get(
                f"{self.base_url}{CURRENT_USER_PATH}",
                headers={
                    "Authorization": f"{token.token_type} {token.access_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"Current-user endpoint unreachable: {e}") from e
