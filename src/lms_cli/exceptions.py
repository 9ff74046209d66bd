"""Authentication error taxonomy.

Every error raised by the login flow, the token stores and the
refreshing token source derives from AuthError. Errors raised inside
the login flow carry the stage that produced them.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base exception for authentication errors.

    Attributes:
        message: Human-readable error message
        stage: Login flow stage that produced the error (if applicable)
    """

    def __init__(self, message: str, stage: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        if self.stage:
            return f"[{getattr(self.stage, 'value', self.stage)}] {self.message}"
        return self.message


class ConfigurationError(AuthError):
    """Raised when a setting such as the client ID or instance name is missing or unusable."""


class NetworkError(AuthError):
    """Raised when an endpoint is unreachable or answers with a non-2xx status.

    Attributes:
        status_code: HTTP status code (if a response was received)
        response_body: Raw response body (if available)
    """

    def __init__(
        self,
        message: str,
        stage: str | None = None,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message, stage)
        self.status_code = status_code
        self.response_body = response_body


class StateMismatchError(AuthError):
    """Raised when the callback state does not match the generated state."""


class AuthorizationDeniedError(AuthError):
    """Raised when the provider redirects back with an error parameter.

    Attributes:
        error: OAuth error code (e.g. access_denied)
        error_description: Optional provider description
    """

    def __init__(
        self,
        error: str,
        error_description: str | None = None,
        stage: str | None = None,
    ) -> None:
        message = f"Authorization denied: {error}"
        if error_description:
            message = f"{message} ({error_description})"
        super().__init__(message, stage)
        self.error = error
        self.error_description = error_description


class UserCancelledError(AuthError):
    """Raised on timeout or explicit abort. A normal, non-fatal outcome."""


class StoreUnavailableError(AuthError):
    """Raised when no token storage backend is writable."""


class TokenNotFoundError(AuthError):
    """Raised when no usable token is stored for an instance."""

    def __init__(self, instance_name: str, stage: str | None = None) -> None:
        super().__init__(f"No token stored for instance '{instance_name}'", stage)
        self.instance_name = instance_name


class RefreshRevokedError(AuthError):
    """Raised when the provider rejects a refresh. Requires a full login."""


class ReceiverBindError(AuthError):
    """Raised when the local callback server cannot bind its port."""
