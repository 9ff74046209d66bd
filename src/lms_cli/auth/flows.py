"""OAuth 2.0 Authorization Code flow with PKCE for LMS instances.

A flow builds the authorization URL, gets the code back through a
redirect receiver and exchanges it for a token. The whole attempt runs
under a single deadline.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from lms_cli.auth.client import DEFAULT_TIMEOUT, TokenEndpointClient
from lms_cli.auth.pkce import CHALLENGE_METHOD, create_pkce_pair, generate_state
from lms_cli.auth.receivers import (
    CALLBACK_PATH,
    DEFAULT_CALLBACK_HOST,
    LocalCallbackReceiver,
    OutOfBandReceiver,
    RedirectReceiver,
    RedirectResult,
    open_in_browser,
)
from lms_cli.config import Config, OAuthMode
from lms_cli.exceptions import (
    AuthError,
    AuthorizationDeniedError,
    ConfigurationError,
    ReceiverBindError,
    StateMismatchError,
    UserCancelledError,
)
from lms_cli.logging_config import get_logger
from lms_cli.security import constant_time_equals

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    import httpx

    from lms_cli.auth.tokens import Token
    from lms_cli.config import Instance

logger = get_logger(__name__)

# Seconds allowed for a complete login
DEFAULT_LOGIN_TIMEOUT = 300.0


class FlowStage(str, Enum):
    """Stages of a login attempt, in order."""

    INITIALIZED = "initialized"
    AUTHORIZATION_URL_BUILT = "authorization_url_built"
    AWAITING_REDIRECT = "awaiting_redirect"
    CODE_RECEIVED = "code_received"
    EXCHANGING_TOKEN = "exchanging_token"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class AuthorizationRequest:
    """Parameters of one authorization request.

    The state and code verifier are generated fresh for every login
    attempt and never reused.
    """

    client_id: str
    redirect_uri: str
    state: str
    code_verifier: str
    code_challenge: str
    scope: str | None = None
    code_challenge_method: str = CHALLENGE_METHOD

    def to_query_params(self) -> dict[str, str]:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "state": self.state,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
        }
        if self.scope:
            params["scope"] = self.scope
        return params


class OAuthFlow:
    """Interactive login against one LMS instance.

    Chooses a redirect receiver according to the mode. In AUTO mode a
    callback port that cannot be bound falls back to the out-of-band
    prompt once; in LOCAL mode the bind error is raised.
    """

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str | None = None,
        scope: str | None = None,
        mode: OAuthMode | str = OAuthMode.AUTO,
        callback_host: str = DEFAULT_CALLBACK_HOST,
        callback_port: int = 0,
        callback_path: str = CALLBACK_PATH,
        timeout: float = DEFAULT_LOGIN_TIMEOUT,
        open_browser: bool = True,
        browser: Callable[[str], Any] = open_in_browser,
        prompt: Callable[[str], str] = input,
        echo: Callable[[str], None] | None = None,
        http_client: httpx.AsyncClient | None = None,
        http_timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Initialize the flow.

        Args:
            base_url: Instance base URL
            client_id: OAuth client identifier
            client_secret: OAuth client secret (None for public clients)
            scope: Space-separated scopes, None for the client's defaults
            mode: Redirect mode
            callback_host: Host for the local callback server
            callback_port: Port for the local callback server (0 = ephemeral)
            callback_path: Path for the local callback server
            timeout: Seconds allowed for the whole login
            open_browser: Whether to open the authorization URL automatically
            browser: Callable that opens a URL in a browser
            prompt: Callable that reads a pasted code in out-of-band mode
            echo: Callable used to print instructions (stderr by default)
            http_client: Optional custom HTTP client
            http_timeout: Timeout for token endpoint requests

        Raises:
            ConfigurationError: If the base URL or client ID is missing
        """
        if not base_url:
            raise ConfigurationError("Instance URL is required", stage=FlowStage.INITIALIZED)
        if not client_id:
            raise ConfigurationError(
                "OAuth client ID is required. Create a developer key in the LMS admin "
                "settings and pass its ID with --client-id",
                stage=FlowStage.INITIALIZED,
            )

        self.scope = scope
        self.mode = OAuthMode(mode)
        self.timeout = timeout
        self.stage = FlowStage.INITIALIZED
        # Mode actually used by the last authenticate() call
        self.active_mode: OAuthMode | None = None

        self._callback_host = callback_host
        self._callback_port = callback_port
        self._callback_path = callback_path
        self._open_browser = open_browser
        self._browser = browser
        self._prompt = prompt
        self._echo = echo
        self._client = TokenEndpointClient(
            base_url,
            client_id,
            client_secret,
            http_client=http_client,
            timeout=http_timeout,
        )

    @classmethod
    def from_instance(
        cls,
        instance: Instance,
        config: Config | None = None,
        **kwargs: Any,
    ) -> OAuthFlow:
        """Build a flow for an instance using configured login settings."""
        config = config or Config()
        options: dict[str, Any] = {
            "scope": config.oauth_scope,
            "mode": config.oauth_mode,
            "callback_host": config.callback_host,
            "callback_port": config.callback_port,
            "callback_path": config.callback_path,
            "timeout": config.login_timeout,
            "open_browser": config.open_browser,
            "http_timeout": config.http_timeout,
        }
        options.update(kwargs)
        return cls(instance.url, instance.client_id, instance.secret, **options)

    @property
    def client(self) -> TokenEndpointClient:
        return self._client

    async def close(self) -> None:
        await self._client.close()

    async def __aenter__(self) -> OAuthFlow:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def build_authorization_request(self, redirect_uri: str) -> AuthorizationRequest:
        """Generate fresh PKCE and state values for one login attempt."""
        pkce = create_pkce_pair()
        return AuthorizationRequest(
            client_id=self._client.client_id,
            redirect_uri=redirect_uri,
            state=generate_state(),
            code_verifier=pkce.code_verifier,
            code_challenge=pkce.code_challenge,
            scope=self.scope,
            code_challenge_method=pkce.method,
        )

    def create_authorization_url(self, request: AuthorizationRequest) -> str:
        """Render the authorization URL for a request."""
        url = f"{self._client.authorization_endpoint}?{urlencode(request.to_query_params())}"
        logger.debug("Created authorization URL for client %s", request.client_id)
        return url

    def _out_of_band(self) -> OutOfBandReceiver:
        if self._echo is None:
            return OutOfBandReceiver(prompt=self._prompt)
        return OutOfBandReceiver(prompt=self._prompt, echo=self._echo)

    def _open_receiver(self) -> RedirectReceiver:
        """Pick the receiver for this attempt, binding the callback port if needed."""
        if self.mode is OAuthMode.OOB:
            self.active_mode = OAuthMode.OOB
            return self._out_of_band()

        options: dict[str, Any] = {
            "host": self._callback_host,
            "port": self._callback_port,
            "path": self._callback_path,
            "open_browser": self._open_browser,
            "browser": self._browser,
        }
        if self._echo is not None:
            options["echo"] = self._echo
        local = LocalCallbackReceiver(**options)

        try:
            local.bind()
        except ReceiverBindError as e:
            if self.mode is OAuthMode.LOCAL:
                raise
            logger.warning("%s; falling back to out-of-band login", e.message)
            self.active_mode = OAuthMode.OOB
            return self._out_of_band()

        self.active_mode = OAuthMode.LOCAL
        return local

    def _check_redirect(
        self,
        result: RedirectResult,
        request: AuthorizationRequest,
        receiver: RedirectReceiver,
    ) -> str:
        """Validate a redirect and return its authorization code."""
        # A bare pasted code carries no state; anything that does must match
        if receiver.delivers_state or result.state is not None:
            if not constant_time_equals(result.state, request.state):
                logger.warning("OAuth state mismatch, rejecting redirect")
                raise StateMismatchError("State parameter mismatch, possible CSRF attempt")

        if result.error:
            raise AuthorizationDeniedError(result.error, result.error_description)

        if not result.code:
            raise AuthError("Redirect did not include an authorization code")

        return result.code

    async def _run(self) -> Token:
        receiver = self._open_receiver()
        async with receiver:
            request = self.build_authorization_request(receiver.redirect_uri)
            url = self.create_authorization_url(request)
            self.stage = FlowStage.AUTHORIZATION_URL_BUILT

            self.stage = FlowStage.AWAITING_REDIRECT
            result = await receiver.wait_for_redirect(url)

        self.stage = FlowStage.CODE_RECEIVED
        code = self._check_redirect(result, request, receiver)

        self.stage = FlowStage.EXCHANGING_TOKEN
        token = await self._client.exchange_code(code, request.code_verifier, request.redirect_uri)

        self.stage = FlowStage.COMPLETED
        return token

    async def authenticate(self) -> Token:
        """Run the complete login.

        Returns:
            Token from the code exchange

        Raises:
            UserCancelledError: If the deadline passes or the user aborts
            StateMismatchError: If the redirect state does not match
            AuthorizationDeniedError: If the provider returned an error
            ReceiverBindError: If LOCAL mode cannot bind the callback port
            NetworkError: If the code exchange fails
        """
        self.stage = FlowStage.INITIALIZED
        try:
            async with asyncio.timeout(self.timeout):
                token = await self._run()
        except TimeoutError as e:
            error = UserCancelledError(
                f"Login timed out after {self.timeout:g} seconds", stage=self.stage
            )
            self.stage = FlowStage.FAILED
            raise error from e
        except AuthError as e:
            if e.stage is None:
                e.stage = self.stage
            logger.error("Login failed during %s: %s", self.stage.value, e.message)
            self.stage = FlowStage.FAILED
            raise
        except asyncio.CancelledError:
            self.stage = FlowStage.FAILED
            raise

        logger.info("Login completed for client %s", self._client.client_id)
        return token

    async def refresh_token(self, token: Token) -> Token:
        """Refresh a token through this flow's token endpoint."""
        return await self._client.refresh(token)

    async def validate_token(self, token: Token | None) -> bool:
        """Check whether a token is accepted by the instance.

        Raises:
            NetworkError: If the instance is unreachable
        """
        if token is None or token.is_expired:
            return False
        response = await self._client.get_current_user(token)
        return response.status_code == 200
