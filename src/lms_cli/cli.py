"""Command-line interface for lms-cli.

Provides the ``auth`` commands for logging in to LMS instances and
managing their stored tokens.
"""

from __future__ import annotations

import asyncio
import sys
from datetime import timedelta
from typing import TYPE_CHECKING, Any, NoReturn

import typer
from pydantic import ValidationError

from lms_cli import __version__
from lms_cli.auth.client import TokenEndpointClient
from lms_cli.auth.flows import OAuthFlow
from lms_cli.auth.token_source import AutoRefreshTokenSource
from lms_cli.auth.token_store import build_token_store
from lms_cli.auth.tokens import format_expiry
from lms_cli.config import (
    Config,
    ConfigError,
    Instance,
    instance_name_from_url,
    load_config,
    sanitize_instance_name,
)
from lms_cli.exceptions import (
    AuthError,
    AuthorizationDeniedError,
    ConfigurationError,
    NetworkError,
    ReceiverBindError,
    RefreshRevokedError,
    StateMismatchError,
    StoreUnavailableError,
    TokenNotFoundError,
    UserCancelledError,
)
from lms_cli.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from lms_cli.auth.token_store import FallbackTokenStore, TokenStore
    from lms_cli.auth.tokens import Token

app = typer.Typer(
    name="lms-cli",
    help="lms-cli - command-line client for LMS instances",
    add_completion=False,
)
auth_app = typer.Typer(help="Log in to LMS instances and manage stored tokens")
app.add_typer(auth_app, name="auth")

# Suggested next step for each kind of failure
REMEDIATION: dict[type[AuthError], str] = {
    ConfigurationError: "Check the instance URL and the OAuth client ID.",
    NetworkError: "Check your network connection and the instance URL, then try again.",
    StateMismatchError: "The redirect did not belong to this login. Run the login again.",
    AuthorizationDeniedError: "Access was not granted. Run the login again and approve access.",
    UserCancelledError: "Run the login again when you are ready.",
    StoreUnavailableError: "Check permissions on the lms-cli configuration directory.",
    TokenNotFoundError: "Run 'lms-cli auth login <url>' to authenticate.",
    RefreshRevokedError: "Your session has ended. Run 'lms-cli auth login <url>' again.",
    ReceiverBindError: "Use '--mode oob' to paste the authorization code instead.",
}


def remediation_for(error: AuthError) -> str | None:
    """Return the hint for an error's kind, if there is one."""
    for kind, hint in REMEDIATION.items():
        if isinstance(error, kind):
            return hint
    return None


def _fail(error: AuthError) -> NoReturn:
    if isinstance(error, UserCancelledError):
        typer.echo(f"Cancelled: {error.message}", err=True)
    else:
        typer.echo(f"Error: {error}", err=True)
    hint = remediation_for(error)
    if hint:
        typer.echo(hint, err=True)
    raise typer.Exit(code=1)


def _load(
    config_path: str | None,
    log_level: str | None,
    overrides: dict[str, Any] | None = None,
) -> Config:
    cli_args: dict[str, Any] = dict(overrides or {})
    if log_level:
        cli_args["log_level"] = log_level
    try:
        config = load_config(path=config_path, cli_args=cli_args)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1) from None
    setup_logging(config)
    return config


def _instance(
    url: str,
    name: str | None,
    client_id: str,
    client_secret: str | None,
) -> Instance:
    try:
        return Instance(
            name=name or instance_name_from_url(url),
            url=url,
            client_id=client_id,
            client_secret=client_secret or None,
        )
    except (ValidationError, ValueError) as e:
        typer.echo(f"Invalid instance: {e}", err=True)
        raise typer.Exit(code=1) from None


def _instance_name(name: str) -> str:
    """Clean a name given on the command line the way login stores it."""
    cleaned = sanitize_instance_name(name)
    if not cleaned:
        typer.echo(f"Invalid instance name: {name!r}", err=True)
        raise typer.Exit(code=1)
    return cleaned


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"lms-cli version {__version__}")
        typer.echo(f"Python {sys.version}")
        raise typer.Exit()


ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to configuration file (JSON or YAML)",
)
LogLevelOption = typer.Option(
    None,
    "--log-level",
    "-l",
    help="Log level override (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
)


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """lms-cli."""


@auth_app.command("login")
def login(
    url: str = typer.Argument(..., help="Instance URL, e.g. https://school.instructure.com"),
    instance: str | None = typer.Option(
        None,
        "--instance",
        "-i",
        help="Instance name (defaults to the first label of the hostname)",
    ),
    client_id: str | None = typer.Option(None, "--client-id", help="OAuth client ID"),
    client_secret: str | None = typer.Option(
        None, "--client-secret", help="OAuth client secret (confidential clients)"
    ),
    mode: str | None = typer.Option(
        None, "--mode", "-m", help="Redirect mode: auto, local or oob"
    ),
    scope: str | None = typer.Option(None, "--scope", help="Space-separated OAuth scopes"),
    config_path: str | None = ConfigOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Log in to an instance with OAuth 2.0 and store the token.

    The local mode opens a browser and receives the redirect on a port
    on 127.0.0.1. The oob mode prints a URL and asks for the code shown
    after approval, for hosts without a browser.
    """
    config = _load(config_path, log_level, {"oauth_mode": mode, "oauth_scope": scope})

    if not client_id:
        client_id = typer.prompt("OAuth client ID")
    record = _instance(url, instance, client_id, client_secret)

    typer.echo(f"Logging in to {record.url} as '{record.name}'", err=True)
    try:
        store = build_token_store(config)
        token = asyncio.run(_login(record, config, store))
    except AuthError as e:
        _fail(e)
    except KeyboardInterrupt:
        get_logger(__name__).info("Login interrupted")
        typer.echo("Cancelled: login interrupted", err=True)
        raise typer.Exit(code=1) from None

    typer.echo(f"Successfully authenticated with {record.name}")
    typer.echo(f"Token expires: {format_expiry(token.expiry)}")


async def _login(record: Instance, config: Config, store: FallbackTokenStore) -> Token:
    async with OAuthFlow.from_instance(record, config) as flow:
        token = await flow.authenticate()
    await store.save(record.name, token)
    get_logger(__name__).info(
        "Stored token for %s with the %s backend", record.name, store.backend_name
    )
    return token


@auth_app.command("logout")
def logout(
    name: str = typer.Argument(..., help="Instance name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    config_path: str | None = ConfigOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Delete the stored token for an instance."""
    config = _load(config_path, log_level)
    name = _instance_name(name)

    if not yes and not typer.confirm(f"Log out from {name}?"):
        typer.echo("Logout cancelled")
        return

    try:
        store = build_token_store(config)
        asyncio.run(store.delete(name))
    except AuthError as e:
        _fail(e)

    typer.echo(f"Logged out from {name}")


@auth_app.command("status")
def status(
    names: list[str] = typer.Argument(..., help="Instance names to check"),
    config_path: str | None = ConfigOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Show whether a token is stored for each instance."""
    config = _load(config_path, log_level)
    names = [_instance_name(name) for name in names]
    try:
        store = build_token_store(config)
    except AuthError as e:
        _fail(e)

    typer.echo(f"Token storage: {store.backend_name}\n")
    for name, line in asyncio.run(_status_lines(store, names)):
        typer.echo(name)
        typer.echo(f"  {line}")


async def _status_lines(store: TokenStore, names: list[str]) -> list[tuple[str, str]]:
    lines: list[tuple[str, str]] = []
    for name in names:
        try:
            token = await store.load(name)
        except TokenNotFoundError:
            lines.append((name, "Status: Not authenticated"))
            continue
        except AuthError as e:
            lines.append((name, f"Status: Unavailable ({e.message})"))
            continue

        if not token.is_expired:
            state = "Authenticated"
        elif token.refresh_token:
            state = "Expired (refreshes on next use)"
        else:
            state = "Expired"
        lines.append((name, f"Status: {state}, expires {format_expiry(token.expiry)}"))
    return lines


@auth_app.command("token")
def token(
    name: str = typer.Argument(..., help="Instance name"),
    url: str = typer.Option(..., "--url", help="Instance URL"),
    client_id: str = typer.Option(..., "--client-id", help="OAuth client ID"),
    client_secret: str | None = typer.Option(
        None, "--client-secret", help="OAuth client secret (confidential clients)"
    ),
    config_path: str | None = ConfigOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Print a valid access token, refreshing the stored one if needed."""
    config = _load(config_path, log_level)
    record = _instance(url, name, client_id, client_secret)

    try:
        store = build_token_store(config)
        access_token = asyncio.run(_access_token(record, config, store))
    except AuthError as e:
        _fail(e)

    typer.echo(access_token)


async def _access_token(record: Instance, config: Config, store: TokenStore) -> str:
    async with TokenEndpointClient.from_instance(record, timeout=config.http_timeout) as client:
        source = AutoRefreshTokenSource(
            client,
            store,
            record.name,
            refresh_margin=timedelta(seconds=config.refresh_margin),
        )
        return await source.access_token()


@app.command()
def version() -> None:
    """Print version information."""
    typer.echo(f"lms-cli version {__version__}")
    typer.echo(f"Python {sys.version}")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
