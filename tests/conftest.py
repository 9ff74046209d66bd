"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import keyring
import pytest
from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError

from lms_cli.auth.encryption import MACHINE_ID_ENV
from lms_cli.auth.tokens import Token
from lms_cli.config import Config, Instance, LogLevel
from lms_cli.logging_config import reset_logging


class MemoryKeyring(KeyringBackend):
    """Keyring backend that keeps passwords in a dict."""

    priority = 1  # type: ignore[assignment]

    def __init__(self) -> None:
        super().__init__()
        self.passwords: dict[tuple[str, str], str] = {}

    def get_password(self, service: str, username: str) -> str | None:
        return self.passwords.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        self.passwords[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        try:
            del self.passwords[(service, username)]
        except KeyError:
            raise PasswordDeleteError("Password not found") from None


@pytest.fixture(autouse=True)
def reset_logging_state() -> None:
    """Reset logging state before each test."""
    reset_logging()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep LMS_CLI_ variables and .env files of the host out of tests."""
    for key in list(os.environ):
        if key.startswith("LMS_CLI_"):
            monkeypatch.delenv(key)
    # Token files are keyed to the machine; pin it so hosts without
    # /etc/machine-id behave the same
    monkeypatch.setenv(MACHINE_ID_ENV, "test-machine-id")
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def memory_keyring() -> Iterator[MemoryKeyring]:
    """Install an in-memory keyring for the duration of a test."""
    previous = keyring.get_keyring()
    backend = MemoryKeyring()
    keyring.set_keyring(backend)
    yield backend
    keyring.set_keyring(previous)


@pytest.fixture
def unavailable_keyring() -> Iterator[None]:
    """Install the keyring backend used when no OS keyring exists."""
    from keyring.backends import fail

    previous = keyring.get_keyring()
    keyring.set_keyring(fail.Keyring())
    yield
    keyring.set_keyring(previous)


@pytest.fixture
def default_config(tmp_path: Path) -> Config:
    """Create a default configuration rooted in a temporary directory."""
    return Config(config_dir=tmp_path / "lms-cli")


@pytest.fixture
def debug_config(tmp_path: Path) -> Config:
    """Create a debug configuration for testing."""
    return Config(log_level=LogLevel.DEBUG, config_dir=tmp_path / "lms-cli")


@pytest.fixture
def instance() -> Instance:
    """Create an instance record for testing."""
    return Instance(
        name="school",
        url="https://school.example.com",
        client_id="client-123",
    )


@pytest.fixture
def make_token() -> Callable[..., Token]:
    """Factory for tokens that expire relative to now."""

    def _make(
        expires_in: timedelta = timedelta(hours=1),
        access_token: str = "access-1",
        refresh_token: str | None = "refresh-1",
    ) -> Token:
        return Token(
            access_token=access_token,
            refresh_token=refresh_token,
            expiry=datetime.now(UTC) + expires_in,
        )

    return _make
