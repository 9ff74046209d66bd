"""Token storage implementations.

Tokens are kept per instance name, either in the OS keyring or in
files under the user's configuration directory.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar

import keyring
from cryptography.fernet import InvalidToken
from keyring.errors import KeyringError, PasswordDeleteError

from lms_cli.auth.encryption import KeyCipher, MachineKeyCipher, TokenCipher
from lms_cli.auth.tokens import Token
from lms_cli.exceptions import ConfigurationError, StoreUnavailableError, TokenNotFoundError
from lms_cli.logging_config import get_logger
from lms_cli.security import generate_secure_token

if TYPE_CHECKING:
    from lms_cli.config import Config

logger = get_logger(__name__)

DEFAULT_KEYRING_SERVICE = "lms-cli"

# Keyring entry written and removed to check the backend works
PROBE_ENTRY = "__lms_cli_probe__"


def _encode(token: Token) -> str:
    return json.dumps(token.to_dict())


def _decode(raw: str | bytes, instance_name: str) -> Token:
    """Deserialize stored token data.

    Corrupt data is treated as absent so the user is sent back to login.
    """
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            msg = "token data is not an object"
            raise ValueError(msg)
        return Token.from_dict(data)
    except ValueError as e:
        logger.warning("Discarding unreadable token for %s: %s", instance_name, e)
        raise TokenNotFoundError(instance_name) from e


class TokenStore(ABC):
    """Abstract base class for token storage.

    Implementations keep at most one token per instance name. A later
    save for the same name replaces the earlier one.
    """

    name: ClassVar[str] = "store"

    @abstractmethod
    async def save(self, instance_name: str, token: Token) -> None:
        """Store the token for an instance.

        Args:
            instance_name: Instance name
            token: Token to store

        Raises:
            StoreUnavailableError: If the backend cannot be written
        """

    @abstractmethod
    async def load(self, instance_name: str) -> Token:
        """Load the token for an instance.

        Args:
            instance_name: Instance name

        Returns:
            Stored Token

        Raises:
            TokenNotFoundError: If nothing usable is stored
            StoreUnavailableError: If the backend cannot be read
        """

    @abstractmethod
    async def delete(self, instance_name: str) -> None:
        """Remove the token for an instance. Deleting a missing token is a no-op.

        Raises:
            StoreUnavailableError: If the backend cannot be written
        """

    async def exists(self, instance_name: str) -> bool:
        """Check whether a usable token is stored for an instance."""
        try:
            await self.load(instance_name)
        except TokenNotFoundError:
            return False
        except (StoreUnavailableError, ConfigurationError) as e:
            logger.warning("Cannot read token for %s: %s", instance_name, e)
            return False
        return True

    def probe(self) -> bool:
        """Check that the backend is usable."""
        return True


class InMemoryTokenStore(TokenStore):
    """In-memory token storage.

    Tokens are lost when the process exits. Useful for tests and for
    embedding the client where persistence is handled elsewhere.
    """

    name = "memory"

    def __init__(self) -> None:
        self._tokens: dict[str, Token] = {}
        self._lock = asyncio.Lock()

    async def save(self, instance_name: str, token: Token) -> None:
        async with self._lock:
            self._tokens[instance_name] = token
            logger.debug("Stored token for %s in memory", instance_name)

    async def load(self, instance_name: str) -> Token:
        async with self._lock:
            token = self._tokens.get(instance_name)
        if token is None:
            raise TokenNotFoundError(instance_name)
        return token

    async def delete(self, instance_name: str) -> None:
        async with self._lock:
            if self._tokens.pop(instance_name, None) is not None:
                logger.debug("Deleted token for %s", instance_name)

    def clear(self) -> None:
        """Clear all stored tokens."""
        self._tokens.clear()


class KeyringTokenStore(TokenStore):
    """Token storage in the OS keyring.

    Each instance is one entry under the configured service name. The
    keyring library is synchronous, so calls run in a worker thread.
    """

    name = "keyring"

    def __init__(self, service: str = DEFAULT_KEYRING_SERVICE) -> None:
        """Initialize keyring store.

        Args:
            service: Keyring service name for all entries
        """
        self.service = service

    def probe(self) -> bool:
        """Write, read back and delete a throwaway entry.

        Returns:
            True if the keyring round-trips a value
        """
        value = generate_secure_token(16)
        try:
            keyring.set_password(self.service, PROBE_ENTRY, value)
            stored = keyring.get_password(self.service, PROBE_ENTRY)
            keyring.delete_password(self.service, PROBE_ENTRY)
        except Exception as e:  # noqa: BLE001
            logger.debug("Keyring probe failed: %s", e)
            return False
        return stored == value

    async def save(self, instance_name: str, token: Token) -> None:
        try:
            await asyncio.to_thread(
                keyring.set_password, self.service, instance_name, _encode(token)
            )
        except KeyringError as e:
            raise StoreUnavailableError(f"Failed to save token to keyring: {e}") from e
        logger.debug("Stored token for %s in keyring", instance_name)

    async def load(self, instance_name: str) -> Token:
        try:
            raw = await asyncio.to_thread(keyring.get_password, self.service, instance_name)
        except KeyringError as e:
            raise StoreUnavailableError(f"Failed to read token from keyring: {e}") from e
        if raw is None:
            raise TokenNotFoundError(instance_name)
        return _decode(raw, instance_name)

    async def delete(self, instance_name: str) -> None:
        try:
            await asyncio.to_thread(keyring.delete_password, self.service, instance_name)
        except PasswordDeleteError:
            logger.debug("No keyring entry for %s", instance_name)
            return
        except KeyringError as e:
            raise StoreUnavailableError(f"Failed to delete token from keyring: {e}") from e
        logger.debug("Deleted token for %s from keyring", instance_name)


class FileTokenStore(TokenStore):
    """File-based token storage.

    One encrypted file per instance in the token directory. The directory
    is created with mode 0700 and files with 0600. Given a Fernet key the
    files are encrypted with it; otherwise with a key derived from this
    machine and user. Writes are atomic: a crash mid-write leaves the
    previous file intact.
    """

    name = "file"
    suffix = ".token.enc"

    def __init__(
        self,
        directory: str | Path,
        encryption_key: str | None = None,
        cipher: TokenCipher | None = None,
    ) -> None:
        """Initialize file store.

        Args:
            directory: Directory that holds token files
            encryption_key: Optional Fernet key
            cipher: Cipher to use instead of one built from encryption_key

        Raises:
            StoreUnavailableError: If the encryption key is invalid
        """
        self.directory = Path(directory)
        if cipher is None:
            cipher = KeyCipher(encryption_key) if encryption_key else MachineKeyCipher()
        self._cipher = cipher

    def path_for(self, instance_name: str) -> Path:
        """Path of the token file for an instance.

        Raises:
            ConfigurationError: If the name cannot be used as a file name
        """
        if (
            not instance_name
            or instance_name in (".", "..")
            or "/" in instance_name
            or "\\" in instance_name
            or "\x00" in instance_name
        ):
            msg = f"Invalid instance name for file storage: {instance_name!r}"
            raise ConfigurationError(msg)
        return self.directory / f"{instance_name}{self.suffix}"

    def _write_atomic(self, path: Path, data: bytes) -> None:
        self.directory.mkdir(mode=0o700, parents=True, exist_ok=True)

        fd, temp_path_str = tempfile.mkstemp(
            dir=self.directory, prefix=f".{path.name}.", suffix=".tmp"
        )
        temp_path = Path(temp_path_str)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(temp_path, 0o600)
            temp_path.replace(path)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

    def _save_sync(self, path: Path, token: Token) -> None:
        self._write_atomic(path, self._cipher.encrypt(_encode(token).encode()))

    def _load_sync(self, path: Path, instance_name: str) -> Token:
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            raise TokenNotFoundError(instance_name) from None
        except OSError as e:
            raise StoreUnavailableError(f"Failed to read token file {path}: {e}") from e

        try:
            data = self._cipher.decrypt(raw)
        except InvalidToken:
            logger.warning("Failed to decrypt token file %s - written with another key?", path)
            raise TokenNotFoundError(instance_name) from None
        return _decode(data, instance_name)

    async def save(self, instance_name: str, token: Token) -> None:
        path = self.path_for(instance_name)
        # Key derivation is slow, so encryption runs off the event loop too
        try:
            await asyncio.to_thread(self._save_sync, path, token)
        except OSError as e:
            raise StoreUnavailableError(f"Failed to write token file {path}: {e}") from e
        logger.debug("Stored token for %s in %s", instance_name, path)

    async def load(self, instance_name: str) -> Token:
        path = self.path_for(instance_name)
        return await asyncio.to_thread(self._load_sync, path, instance_name)

    async def delete(self, instance_name: str) -> None:
        path = self.path_for(instance_name)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StoreUnavailableError(f"Failed to delete token file {path}: {e}") from e
        logger.debug("Deleted token file %s", path)


class FallbackTokenStore(TokenStore):
    """Prefers a secure store and falls back to a file store.

    The choice is made once, when the store is created, and every later
    operation goes to the same backend. Tokens saved to one backend are
    never looked up in the other.
    """

    def __init__(self, secure: TokenStore, fallback: TokenStore) -> None:
        """Pick the backend.

        Args:
            secure: Preferred store, used if its probe succeeds
            fallback: Store used otherwise
        """
        if secure.probe():
            self._backend = secure
        else:
            logger.warning(
                "OS keyring unavailable, storing tokens with the %s backend", fallback.name
            )
            self._backend = fallback
        logger.debug("Token storage backend: %s", self._backend.name)

    @property
    def name(self) -> str:  # type: ignore[override]
        return self._backend.name

    @property
    def backend(self) -> TokenStore:
        return self._backend

    @property
    def backend_name(self) -> str:
        """Name of the pinned backend ("keyring" or "file")."""
        return self._backend.name

    async def save(self, instance_name: str, token: Token) -> None:
        await self._backend.save(instance_name, token)

    async def load(self, instance_name: str) -> Token:
        return await self._backend.load(instance_name)

    async def delete(self, instance_name: str) -> None:
        await self._backend.delete(instance_name)

    async def exists(self, instance_name: str) -> bool:
        return await self._backend.exists(instance_name)


def build_token_store(config: Config) -> FallbackTokenStore:
    """Create the token store described by the configuration.

    Args:
        config: Application configuration

    Returns:
        Keyring store with a file fallback under ``config.token_dir``
    """
    key = config.token_encryption_key
    return FallbackTokenStore(
        KeyringTokenStore(config.keyring_service),
        FileTokenStore(config.token_dir, key.get_secret_value() if key else None),
    )
