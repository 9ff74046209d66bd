"""Auto-refreshing token source.

Hands out a currently valid token for one instance, refreshing it
shortly before it expires. Concurrent callers that find the token stale
share a single refresh.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING

from lms_cli.auth.tokens import format_expiry
from lms_cli.exceptions import StoreUnavailableError
from lms_cli.logging_config import get_logger

if TYPE_CHECKING:
    from lms_cli.auth.client import TokenEndpointClient
    from lms_cli.auth.token_store import TokenStore
    from lms_cli.auth.tokens import Token

logger = get_logger(__name__)

# Refresh tokens this long before they expire
DEFAULT_REFRESH_MARGIN = timedelta(minutes=5)


class AutoRefreshTokenSource:
    """Valid-token provider for one instance.

    The held token is loaded from the store on first use. When it is
    within the refresh margin of expiry the first caller starts a
    refresh and every other caller waits for that same refresh, so the
    token endpoint sees one request no matter how many callers arrive.
    A successful refresh is written back to the store; a failed one
    reaches every waiter and leaves the store untouched.
    """

    def __init__(
        self,
        client: TokenEndpointClient,
        store: TokenStore,
        instance_name: str,
        token: Token | None = None,
        refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
    ) -> None:
        """Initialize the token source.

        Args:
            client: Token endpoint client for the instance
            store: Store to load from and write refreshed tokens to
            instance_name: Instance name the token is stored under
            token: Initial token, loaded from the store when None
            refresh_margin: Refresh when the token expires within this window
        """
        self._client = client
        self._store = store
        self._instance_name = instance_name
        self._token = token
        self._refresh_margin = refresh_margin
        self._lock = asyncio.Lock()
        self._inflight: asyncio.Task[Token] | None = None

    @property
    def instance_name(self) -> str:
        return self._instance_name

    def _is_stale(self, token: Token) -> bool:
        return token.expires_within(self._refresh_margin)

    def is_expired(self) -> bool:
        """Whether the held token needs a refresh (True if none is loaded yet)."""
        return self._token is None or self._is_stale(self._token)

    async def _current(self) -> Token:
        if self._token is None:
            async with self._lock:
                if self._token is None:
                    self._token = await self._store.load(self._instance_name)
        return self._token

    async def token(self) -> Token:
        """Return a valid token, refreshing it if it is about to expire.

        Raises:
            TokenNotFoundError: If nothing is stored for the instance
            RefreshRevokedError: If the provider rejects the refresh
            NetworkError: If the token endpoint is unreachable
        """
        current = await self._current()
        if not self._is_stale(current):
            return current

        async with self._lock:
            if self._inflight is None:
                # Another caller may have finished a refresh while we waited
                current = self._token or current
                if not self._is_stale(current):
                    return current
                self._inflight = asyncio.create_task(self._refresh(current))
            inflight = self._inflight

        return await asyncio.shield(inflight)

    async def access_token(self) -> str:
        """Return a valid access token string."""
        return (await self.token()).access_token

    async def _refresh(self, stale: Token) -> Token:
        try:
            logger.info(
                "Access token for %s expires %s, refreshing",
                self._instance_name,
                format_expiry(stale.expiry),
            )
            fresh = await self._client.refresh(stale)
            try:
                await self._store.save(self._instance_name, fresh)
            except StoreUnavailableError as e:
                logger.warning(
                    "Refreshed token for %s could not be saved: %s", self._instance_name, e
                )
            self._token = fresh
            return fresh
        finally:
            self._inflight = None
