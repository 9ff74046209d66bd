"""Tests for token storage implementations."""

from __future__ import annotations

import json
import logging
import os
import stat
from collections.abc import Callable
from pathlib import Path

import keyring
import pytest
from cryptography.fernet import Fernet
from keyring.backends import fail

from lms_cli.auth.encryption import MACHINE_ID_ENV
from lms_cli.auth.token_store import (
    PROBE_ENTRY,
    FallbackTokenStore,
    FileTokenStore,
    InMemoryTokenStore,
    KeyringTokenStore,
    build_token_store,
)
from lms_cli.auth.tokens import Token
from lms_cli.config import Config
from lms_cli.exceptions import ConfigurationError, StoreUnavailableError, TokenNotFoundError

posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")


class TestInMemoryTokenStore:
    """Tests for InMemoryTokenStore."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, make_token: Callable[..., Token]) -> None:
        """Test storing and retrieving a token."""
        store = InMemoryTokenStore()
        token = make_token()

        await store.save("school", token)

        assert await store.load("school") == token
        assert await store.exists("school") is True

    @pytest.mark.asyncio
    async def test_load_missing(self) -> None:
        """Test that a missing token raises TokenNotFoundError."""
        store = InMemoryTokenStore()

        with pytest.raises(TokenNotFoundError, match="'school'"):
            await store.load("school")
        assert await store.exists("school") is False

    @pytest.mark.asyncio
    async def test_delete(self, make_token: Callable[..., Token]) -> None:
        """Test deleting a token, twice."""
        store = InMemoryTokenStore()
        await store.save("school", make_token())

        await store.delete("school")
        await store.delete("school")

        assert await store.exists("school") is False


class TestKeyringTokenStore:
    """Tests for KeyringTokenStore."""

    @pytest.mark.asyncio
    async def test_round_trip(self, memory_keyring: object, make_token: Callable[..., Token]) -> None:
        """Test that a saved token loads back unchanged."""
        store = KeyringTokenStore("lms-test")
        token = make_token()

        await store.save("school", token)

        assert await store.load("school") == token
        stored = json.loads(keyring.get_password("lms-test", "school") or "")
        assert stored["access_token"] == token.access_token

    @pytest.mark.asyncio
    async def test_instances_are_independent(
        self, memory_keyring: object, make_token: Callable[..., Token]
    ) -> None:
        """Test that two instance names never share a token."""
        store = KeyringTokenStore()
        await store.save("school", make_token(access_token="a"))
        await store.save("school-test", make_token(access_token="b"))

        await store.delete("school")

        assert await store.exists("school") is False
        assert (await store.load("school-test")).access_token == "b"

    @pytest.mark.asyncio
    async def test_save_replaces(
        self, memory_keyring: object, make_token: Callable[..., Token]
    ) -> None:
        """Test that a second save replaces the first."""
        store = KeyringTokenStore()
        await store.save("school", make_token(access_token="old"))
        await store.save("school", make_token(access_token="new"))

        assert (await store.load("school")).access_token == "new"

    @pytest.mark.asyncio
    async def test_load_missing(self, memory_keyring: object) -> None:
        """Test that a missing entry raises TokenNotFoundError."""
        with pytest.raises(TokenNotFoundError):
            await KeyringTokenStore().load("school")

    @pytest.mark.asyncio
    async def test_delete_missing(self, memory_keyring: object) -> None:
        """Test that deleting a missing entry is not an error."""
        await KeyringTokenStore().delete("school")

    @pytest.mark.asyncio
    async def test_corrupt_entry(
        self, memory_keyring: object, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test that unreadable data is treated as absent and logged."""
        keyring.set_password("lms-cli", "school", "{not json")

        with caplog.at_level(logging.WARNING, logger="lms_cli"):
            with pytest.raises(TokenNotFoundError):
                await KeyringTokenStore().load("school")

        assert "unreadable token" in caplog.text

    def test_probe(self, memory_keyring: object) -> None:
        """Test that the probe succeeds and leaves nothing behind."""
        assert KeyringTokenStore().probe() is True
        assert keyring.get_password("lms-cli", PROBE_ENTRY) is None

    def test_probe_without_keyring(self, unavailable_keyring: None) -> None:
        """Test that the probe fails when no keyring exists."""
        assert KeyringTokenStore().probe() is False

    @pytest.mark.asyncio
    async def test_save_without_keyring(
        self, unavailable_keyring: None, make_token: Callable[..., Token]
    ) -> None:
        """Test that keyring failures raise StoreUnavailableError."""
        with pytest.raises(StoreUnavailableError):
            await KeyringTokenStore().save("school", make_token())


class TestFileTokenStore:
    """Tests for FileTokenStore."""

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path: Path, make_token: Callable[..., Token]) -> None:
        """Test that a saved token loads back unchanged."""
        store = FileTokenStore(tmp_path / "tokens")
        token = make_token()

        await store.save("school", token)

        assert await store.load("school") == token
        assert store.path_for("school") == tmp_path / "tokens" / "school.token.enc"

    @pytest.mark.asyncio
    async def test_encrypted_without_key(
        self, tmp_path: Path, make_token: Callable[..., Token]
    ) -> None:
        """Test that tokens are never written in clear text."""
        store = FileTokenStore(tmp_path)

        await store.save("school", make_token(access_token="SECRET-AT", refresh_token="SECRET-RT"))

        raw = store.path_for("school").read_bytes()
        assert b"SECRET-AT" not in raw
        assert b"SECRET-RT" not in raw
        assert b"access_token" not in raw

    @pytest.mark.asyncio
    async def test_other_machine_cannot_read(
        self,
        tmp_path: Path,
        make_token: Callable[..., Token],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that a file copied to another machine reads as absent."""
        await FileTokenStore(tmp_path).save("school", make_token())

        monkeypatch.setenv(MACHINE_ID_ENV, "another-machine")

        with pytest.raises(TokenNotFoundError):
            await FileTokenStore(tmp_path).load("school")

    @posix_only
    @pytest.mark.asyncio
    async def test_permissions(self, tmp_path: Path, make_token: Callable[..., Token]) -> None:
        """Test that token files are private to the user."""
        store = FileTokenStore(tmp_path / "tokens")

        await store.save("school", make_token())

        assert stat.S_IMODE(store.path_for("school").stat().st_mode) == 0o600
        assert stat.S_IMODE((tmp_path / "tokens").stat().st_mode) == 0o700

    @pytest.mark.asyncio
    async def test_overwrite_leaves_no_temp_files(
        self, tmp_path: Path, make_token: Callable[..., Token]
    ) -> None:
        """Test that repeated saves replace the file atomically."""
        store = FileTokenStore(tmp_path)
        await store.save("school", make_token(access_token="old"))
        await store.save("school", make_token(access_token="new"))

        assert (await store.load("school")).access_token == "new"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["school.token.enc"]

    @pytest.mark.asyncio
    async def test_configured_key(self, tmp_path: Path, make_token: Callable[..., Token]) -> None:
        """Test that a configured key encrypts files at rest."""
        key = Fernet.generate_key().decode()
        store = FileTokenStore(tmp_path, key)
        token = make_token(access_token="very-secret-access")

        await store.save("school", token)

        raw = store.path_for("school").read_bytes()
        assert b"very-secret-access" not in raw
        assert json.loads(Fernet(key.encode()).decrypt(raw))["access_token"] == "very-secret-access"
        assert await store.load("school") == token

    @pytest.mark.asyncio
    async def test_wrong_key(self, tmp_path: Path, make_token: Callable[..., Token]) -> None:
        """Test that a file encrypted with another key reads as absent."""
        await FileTokenStore(tmp_path, Fernet.generate_key().decode()).save("school", make_token())

        with pytest.raises(TokenNotFoundError):
            await FileTokenStore(tmp_path, Fernet.generate_key().decode()).load("school")

    def test_invalid_key(self, tmp_path: Path) -> None:
        """Test that an unusable key is rejected."""
        with pytest.raises(StoreUnavailableError, match="Invalid encryption key"):
            FileTokenStore(tmp_path, "not-a-key")

    @pytest.mark.asyncio
    async def test_plaintext_file_rejected(self, tmp_path: Path) -> None:
        """Test that an unencrypted file reads as absent."""
        store = FileTokenStore(tmp_path)
        store.path_for("school").write_text('{"access_token": "x"}')

        with pytest.raises(TokenNotFoundError):
            await store.load("school")

    @pytest.mark.asyncio
    async def test_corrupt_payload(self, tmp_path: Path) -> None:
        """Test that a decryptable file with bad content reads as absent."""
        key = Fernet.generate_key().decode()
        store = FileTokenStore(tmp_path, key)
        store.path_for("school").write_bytes(Fernet(key.encode()).encrypt(b'{"access_token": "x"}'))

        with pytest.raises(TokenNotFoundError):
            await store.load("school")

    @pytest.mark.asyncio
    async def test_load_missing_and_delete(self, tmp_path: Path) -> None:
        """Test missing files on load and delete."""
        store = FileTokenStore(tmp_path)

        with pytest.raises(TokenNotFoundError):
            await store.load("school")
        await store.delete("school")
        assert await store.exists("school") is False

    @pytest.mark.parametrize("name", ["", ".", "..", "a/b", "a\\b", "../escape"])
    def test_unsafe_names(self, tmp_path: Path, name: str) -> None:
        """Test that names that would leave the directory are rejected."""
        with pytest.raises(ConfigurationError, match="Invalid instance name"):
            FileTokenStore(tmp_path).path_for(name)

    @pytest.mark.asyncio
    async def test_exists_with_unsafe_name(self, tmp_path: Path) -> None:
        """Test that exists reports False instead of raising."""
        assert await FileTokenStore(tmp_path).exists("a/b") is False

    @pytest.mark.asyncio
    async def test_unwritable_directory(
        self, tmp_path: Path, make_token: Callable[..., Token]
    ) -> None:
        """Test that write failures raise StoreUnavailableError."""
        blocker = tmp_path / "tokens"
        blocker.write_text("not a directory")

        with pytest.raises(StoreUnavailableError, match="Failed to write"):
            await FileTokenStore(blocker).save("school", make_token())


class TestFallbackTokenStore:
    """Tests for FallbackTokenStore."""

    def test_prefers_keyring(self, memory_keyring: object, tmp_path: Path) -> None:
        """Test that a working keyring is chosen."""
        store = FallbackTokenStore(KeyringTokenStore(), FileTokenStore(tmp_path))
        assert store.backend_name == "keyring"

    @pytest.mark.asyncio
    async def test_falls_back_to_file(
        self, unavailable_keyring: None, tmp_path: Path, make_token: Callable[..., Token]
    ) -> None:
        """Test that the file store is used without a keyring."""
        store = FallbackTokenStore(KeyringTokenStore(), FileTokenStore(tmp_path))
        token = make_token()

        await store.save("school", token)

        assert store.backend_name == "file"
        assert (tmp_path / "school.token.enc").exists()
        assert await store.load("school") == token

    @pytest.mark.asyncio
    async def test_backend_stays_pinned(
        self, memory_keyring: object, tmp_path: Path, make_token: Callable[..., Token]
    ) -> None:
        """Test that a later keyring failure never switches backends."""
        store = FallbackTokenStore(KeyringTokenStore(), FileTokenStore(tmp_path))
        keyring.set_keyring(fail.Keyring())

        with pytest.raises(StoreUnavailableError):
            await store.save("school", make_token())

        assert store.backend_name == "keyring"
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_backends_not_mixed(
        self, memory_keyring: object, tmp_path: Path, make_token: Callable[..., Token]
    ) -> None:
        """Test that tokens in the other backend are not consulted."""
        await FileTokenStore(tmp_path).save("school", make_token())

        store = FallbackTokenStore(KeyringTokenStore(), FileTokenStore(tmp_path))

        assert await store.exists("school") is False


class TestBuildTokenStore:
    """Tests for build_token_store."""

    @pytest.mark.asyncio
    async def test_uses_config(
        self, memory_keyring: object, tmp_path: Path, make_token: Callable[..., Token]
    ) -> None:
        """Test that the service name comes from the configuration."""
        store = build_token_store(Config(config_dir=tmp_path, keyring_service="lms-test"))

        await store.save("school", make_token())

        assert keyring.get_password("lms-test", "school") is not None

    def test_file_fallback_location(self, unavailable_keyring: None, tmp_path: Path) -> None:
        """Test that the file fallback lives under the config directory."""
        store = build_token_store(Config(config_dir=tmp_path))

        assert store.backend_name == "file"
        assert isinstance(store.backend, FileTokenStore)
        assert store.backend.directory == tmp_path / "tokens"
