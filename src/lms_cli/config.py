"""Configuration management for lms-cli.

Provides configuration loading from environment variables, .env files,
and optional configuration files with proper precedence handling, plus
the instance record consumed by the authentication subsystem.
"""

from __future__ import annotations

import contextlib
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "LMS_CLI_"

# Characters that cannot appear in an instance name (it doubles as a file name)
INVALID_NAME_CHARS = '/\\:*?"<>|'
MAX_INSTANCE_NAME_LENGTH = 100


class ConfigError(Exception):
    """Raised when configuration validation fails."""


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class OAuthMode(str, Enum):
    """How the authorization code gets back to the CLI.

    AUTO tries the local callback server and falls back to
    out-of-band when the port cannot be bound.
    """

    AUTO = "auto"
    LOCAL = "local"
    OOB = "oob"


def normalize_url(raw_url: str) -> str:
    """Normalize an instance URL.

    Adds an https scheme when missing and strips trailing slashes.

    Args:
        raw_url: URL as typed by the user

    Returns:
        Normalized URL

    Raises:
        ValueError: If the URL has no host
    """
    url = raw_url.strip()
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"

    parsed = urlparse(url)
    if not parsed.hostname:
        msg = f"Invalid URL: {raw_url!r}"
        raise ValueError(msg)

    return parsed._replace(path=parsed.path.rstrip("/")).geturl()


def sanitize_instance_name(name: str) -> str:
    """Replace characters that are unsafe in file names and trim the result."""
    cleaned = "".join("-" if c in INVALID_NAME_CHARS else c for c in name)
    return cleaned.strip()[:MAX_INSTANCE_NAME_LENGTH]


def instance_name_from_url(url: str) -> str:
    """Derive a default instance name from a URL's hostname.

    ``https://www.myschool.instructure.com`` becomes ``myschool``.
    """
    hostname = urlparse(normalize_url(url)).hostname or ""
    if hostname.startswith("www."):
        hostname = hostname[4:]
    return hostname.split(".", 1)[0]


class Instance(BaseModel):
    """A named, independently configured LMS server.

    Tokens are keyed by name, not URL: two names may share a URL.
    """

    name: str = Field(description="Instance name")
    url: str = Field(description="Instance base URL")
    client_id: str = Field(default="", description="OAuth client identifier")
    client_secret: SecretStr | None = Field(
        default=None, description="OAuth client secret (confidential clients)"
    )

    @field_validator("name")
    @classmethod
    def clean_name(cls, v: str) -> str:
        """Sanitize and require a non-empty name."""
        cleaned = sanitize_instance_name(v)
        if not cleaned:
            msg = "instance name must not be empty"
            raise ValueError(msg)
        return cleaned

    @field_validator("url")
    @classmethod
    def clean_url(cls, v: str) -> str:
        """Normalize the base URL."""
        return normalize_url(v)

    @property
    def secret(self) -> str | None:
        """Plain client secret, or None for public clients."""
        return self.client_secret.get_secret_value() if self.client_secret else None


class Config(BaseModel):
    """Main configuration model for lms-cli.

    Configuration can be loaded from:
    - Environment variables with LMS_CLI_ prefix
    - Optional .env file in the working directory
    - Optional configuration file passed via CLI
    """

    log_level: LogLevel = Field(default=LogLevel.WARNING, description="Logging level")
    config_dir: Path = Field(
        default_factory=lambda: Path.home() / ".lms-cli",
        description="Per-user configuration directory",
    )

    # Token storage
    keyring_service: str = Field(
        default="lms-cli", description="Service name used for OS keyring entries"
    )
    token_encryption_key: SecretStr | None = Field(
        default=None, description="Fernet key used to encrypt token files"
    )

    # Login flow
    oauth_mode: OAuthMode = Field(default=OAuthMode.AUTO, description="OAuth redirect mode")
    oauth_scope: str | None = Field(
        default=None, description="OAuth scopes (space-separated)"
    )
    callback_host: str = Field(default="127.0.0.1", description="Callback server host")
    callback_port: int = Field(
        default=0, ge=0, le=65535, description="Callback server port (0 = ephemeral)"
    )
    callback_path: str = Field(default="/oauth/callback", description="Callback path")
    login_timeout: float = Field(
        default=300.0, gt=0, description="Seconds allowed for the whole login flow"
    )
    open_browser: bool = Field(
        default=True, description="Open the authorization URL in a browser"
    )

    # Token endpoint and refresh
    http_timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")
    refresh_margin: float = Field(
        default=300.0,
        ge=0,
        description="Refresh access tokens this many seconds before they expire",
    )

    model_config = {
        "validate_assignment": True,
    }

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Normalize log level to uppercase."""
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("oauth_mode", mode="before")
    @classmethod
    def normalize_oauth_mode(cls, v: Any) -> Any:
        """Normalize OAuth mode to lowercase."""
        if isinstance(v, str):
            return v.lower()
        return v

    @field_validator("callback_path")
    @classmethod
    def validate_callback_path(cls, v: str) -> str:
        """Require an absolute callback path."""
        if not v.startswith("/"):
            msg = "callback_path must start with '/'"
            raise ValueError(msg)
        return v

    @field_validator("token_encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: SecretStr | None) -> SecretStr | None:
        """Reject keys Fernet cannot use."""
        if v is None:
            return v
        from cryptography.fernet import Fernet

        try:
            Fernet(v.get_secret_value().encode())
        except ValueError as e:
            msg = f"token_encryption_key is not a valid Fernet key: {e}"
            raise ValueError(msg) from e
        return v

    @property
    def token_dir(self) -> Path:
        """Directory holding file-backed tokens."""
        return self.config_dir / "tokens"


def _get_env_value(key: str, prefix: str = ENV_PREFIX) -> str | None:
    """Get environment variable value with prefix."""
    return os.environ.get(f"{prefix}{key.upper()}")


def _load_env_config() -> dict[str, Any]:
    """Load configuration from environment variables."""
    float_fields = ("login_timeout", "http_timeout", "refresh_margin")

    config: dict[str, Any] = {}
    for field_name in Config.model_fields:
        value: Any = _get_env_value(field_name)
        if value is None:
            continue
        if value.lower() in ("true", "false", "yes", "no"):
            value = value.lower() in ("true", "yes")
        elif field_name == "callback_port":
            with contextlib.suppress(ValueError):
                value = int(value)
        elif field_name in float_fields:
            with contextlib.suppress(ValueError):
                value = float(value)
        config[field_name] = value

    return config


def _load_file_config(path: str | Path) -> dict[str, Any]:
    """Load configuration from a file (JSON or YAML)."""
    import json

    path = Path(path)
    if not path.exists():
        msg = f"Configuration file not found: {path}"
        raise ConfigError(msg)

    suffix = path.suffix.lower()
    content = path.read_text()

    if suffix == ".json":
        return dict(json.loads(content))

    if suffix in (".yaml", ".yml"):
        try:
            import yaml
        except ImportError:
            msg = "PyYAML is required to load YAML configuration files"
            raise ConfigError(msg) from None
        return dict(yaml.safe_load(content) or {})

    msg = f"Unsupported configuration file format: {suffix}"
    raise ConfigError(msg)


def _redact_for_log(key: str, value: Any) -> str:
    """Redact sensitive values for logging."""
    if key == "token_encryption_key" and value:
        return "***"
    return str(value)


def load_config(
    path: str | Path | None = None,
    cli_args: dict[str, Any] | None = None,
) -> Config:
    """Load and validate configuration.

    Precedence (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Configuration file
    4. Model defaults

    Args:
        path: Optional path to configuration file
        cli_args: Optional CLI argument overrides

    Returns:
        Validated Config instance

    Raises:
        ConfigError: If configuration is invalid
    """
    load_dotenv()

    config_dict: dict[str, Any] = {}
    if path:
        logger.debug("Loading configuration from file: %s", path)
        config_dict.update(_load_file_config(path))

    for key, value in _load_env_config().items():
        config_dict[key] = value
        logger.debug("Config %s from environment: %s", key, _redact_for_log(key, value))

    if cli_args:
        for key, value in cli_args.items():
            if value is not None:
                config_dict[key] = value
                logger.debug("Config %s from CLI: %s", key, _redact_for_log(key, value))

    try:
        return Config(**config_dict)
    except Exception as e:
        msg = f"Configuration validation failed: {e}"
        raise ConfigError(msg) from e
