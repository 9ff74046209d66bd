"""Authentication for lms-cli.

Provides the OAuth 2.0 Authorization Code flow with PKCE, per-instance
token storage and an auto-refreshing token source.
"""

from lms_cli.auth.client import TokenEndpointClient
from lms_cli.auth.flows import AuthorizationRequest, FlowStage, OAuthFlow
from lms_cli.auth.pkce import PKCEPair, create_pkce_pair, generate_code_challenge, generate_code_verifier
from lms_cli.auth.receivers import (
    LocalCallbackReceiver,
    OutOfBandReceiver,
    RedirectReceiver,
    RedirectResult,
)
from lms_cli.auth.token_source import AutoRefreshTokenSource
from lms_cli.auth.token_store import (
    FallbackTokenStore,
    FileTokenStore,
    InMemoryTokenStore,
    KeyringTokenStore,
    TokenStore,
    build_token_store,
)
from lms_cli.auth.tokens import Token

__all__ = [
    "AuthorizationRequest",
    "AutoRefreshTokenSource",
    "FallbackTokenStore",
    "FileTokenStore",
    "FlowStage",
    "InMemoryTokenStore",
    "KeyringTokenStore",
    "LocalCallbackReceiver",
    "OAuthFlow",
    "OutOfBandReceiver",
    "PKCEPair",
    "RedirectReceiver",
    "RedirectResult",
    "Token",
    "TokenEndpointClient",
    "TokenStore",
    "build_token_store",
    "create_pkce_pair",
    "generate_code_challenge",
    "generate_code_verifier",
]
