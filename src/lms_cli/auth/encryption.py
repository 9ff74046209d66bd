"""Encryption of token files at rest.

Token files are always encrypted. With a configured Fernet key that key
is used directly. Without one, each file gets a fresh random salt and a
Fernet key derived with PBKDF2 from this machine's identifier and the
current user name, so a copied file cannot be read on another machine
or by another account.

File layout without a configured key::

    [salt (16 bytes)][Fernet token]
"""

from __future__ import annotations

import base64
import getpass
import os
import subprocess
import sys
from pathlib import Path
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from lms_cli.exceptions import StoreUnavailableError
from lms_cli.logging_config import get_logger

logger = get_logger(__name__)

SALT_SIZE = 16
PBKDF2_ITERATIONS = 100_000
KEY_SIZE = 32

# Overrides machine detection, e.g. in containers without /etc/machine-id
MACHINE_ID_ENV = "LMS_CLI_MACHINE_ID"
MACHINE_ID_FILES = (Path("/etc/machine-id"), Path("/var/lib/dbus/machine-id"))

# Placeholder UUID reported by some virtual machines
UNSET_UUID = "FFFFFFFF-FFFF-FFFF-FFFF-FFFFFFFFFFFF"


def _read_first(paths: tuple[Path, ...]) -> str | None:
    for path in paths:
        try:
            value = path.read_text().strip()
        except OSError:
            continue
        if value:
            return value
    return None


def _platform_machine_id() -> str | None:
    """Ask the operating system for a hardware UUID (macOS and Windows)."""
    if sys.platform == "darwin":
        try:
            output = subprocess.run(
                ["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"],
                capture_output=True,
                text=True,
                check=True,
                timeout=5,
            ).stdout
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("ioreg failed: %s", e)
            return None
        for line in output.splitlines():
            if "IOPlatformUUID" in line:
                parts = line.split('"')
                if len(parts) >= 4 and parts[3]:
                    return parts[3]
        return None

    if sys.platform == "win32":
        import winreg

        try:
            with winreg.OpenKey(
                winreg.HKEY_LOCAL_MACHINE, r"SOFTWARE\Microsoft\Cryptography"
            ) as key:
                value, _ = winreg.QueryValueEx(key, "MachineGuid")
        except OSError as e:
            logger.debug("Cannot read MachineGuid: %s", e)
            return None
        value = str(value).strip()
        return value if value and value.upper() != UNSET_UUID else None

    return None


def get_machine_id() -> str:
    """Return a stable identifier for this machine.

    The hostname is never used; it is too easy to guess.

    Raises:
        StoreUnavailableError: If no identifier can be found
    """
    override = os.environ.get(MACHINE_ID_ENV, "").strip()
    if override:
        return override

    machine_id = _read_first(MACHINE_ID_FILES) or _platform_machine_id()
    if not machine_id:
        msg = (
            "Cannot determine a machine identifier for token file encryption; "
            f"set {MACHINE_ID_ENV} or configure token_encryption_key"
        )
        raise StoreUnavailableError(msg)
    return machine_id


def get_username() -> str:
    try:
        return getpass.getuser()
    except (OSError, KeyError):
        return "unknown"


def derive_key(salt: bytes, machine_id: str, username: str) -> bytes:
    """Derive a Fernet key from machine and user identity.

    Args:
        salt: Random per-file salt
        machine_id: Machine identifier
        username: Login name of the current user

    Returns:
        URL-safe base64 encoded 32-byte key
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    material = f"{machine_id}:{username}".encode()
    return base64.urlsafe_b64encode(kdf.derive(material))


class TokenCipher(Protocol):
    """Symmetric encryption of a token file body."""

    def encrypt(self, data: bytes) -> bytes: ...

    def decrypt(self, data: bytes) -> bytes: ...


class KeyCipher:
    """Encrypts with a configured Fernet key."""

    def __init__(self, key: str) -> None:
        """Initialize cipher.

        Raises:
            StoreUnavailableError: If the key is not a valid Fernet key
        """
        try:
            self._fernet = Fernet(key.encode())
        except ValueError as e:
            raise StoreUnavailableError(f"Invalid encryption key: {e}") from e

    def encrypt(self, data: bytes) -> bytes:
        return self._fernet.encrypt(data)

    def decrypt(self, data: bytes) -> bytes:
        return self._fernet.decrypt(data)


class MachineKeyCipher:
    """Encrypts with a key bound to this machine and user.

    The identity is looked up on first use, not at construction, so a
    store that is never touched never needs it.
    """

    def __init__(self, machine_id: str | None = None, username: str | None = None) -> None:
        self._machine_id = machine_id
        self._username = username

    def _identity(self) -> tuple[str, str]:
        if self._machine_id is None:
            self._machine_id = get_machine_id()
        if self._username is None:
            self._username = get_username()
        return self._machine_id, self._username

    def encrypt(self, data: bytes) -> bytes:
        salt = os.urandom(SALT_SIZE)
        key = derive_key(salt, *self._identity())
        return salt + Fernet(key).encrypt(data)

    def decrypt(self, data: bytes) -> bytes:
        """Decrypt a salted file body.

        Raises:
            InvalidToken: If the data is damaged or was written elsewhere
        """
        if len(data) <= SALT_SIZE:
            raise InvalidToken
        salt, body = data[:SALT_SIZE], data[SALT_SIZE:]
        return Fernet(derive_key(salt, *self._identity())).decrypt(body)
