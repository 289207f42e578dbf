"""Tests for the User session and OAuth login flow."""

from __future__ import annotations

from typing import Any
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import pytest

from sendsafe.client.api import SendClient
from sendsafe.client.fxa import BUNDLE_PRIVATE_KEY, PKCE_VERIFIER_KEY, KeyManagerError
from sendsafe.client.storage import LocalStorage
from sendsafe.client.types import APIError, StateMismatchError
from sendsafe.client.user import KEYRING_SERVICE, OAUTH_STATE_KEY, User
from sendsafe.core.config import ServiceConfig
from sendsafe.core.crypto import hkdf


def sign_in(user: User, fake_server: Any, client: SendClient) -> None:
    code, state = fake_server.authorize(user.login())
    user.finish_login(code, state, client)


class TestAnonymousUser:
    """Tests for a user who never signed in."""

    def test_not_logged_in(self, storage: LocalStorage, service_config: ServiceConfig) -> None:
        """A fresh user is anonymous."""
        user = User(storage, service_config)
        assert user.logged_in is False
        assert user.bearer_token is None
        assert user.info == {}

    def test_no_file_list_key(self, storage: LocalStorage, service_config: ServiceConfig) -> None:
        """The file-list key is unavailable when signed out."""
        with pytest.raises(KeyManagerError):
            User(storage, service_config).file_list_key

    def test_anonymous_limits(self, storage: LocalStorage, service_config: ServiceConfig) -> None:
        """Anonymous users get the anonymous limits."""
        user = User(storage, service_config)
        limits = service_config.limits
        assert user.max_size == limits.anon_max_file_size
        assert user.max_expire_seconds == limits.anon_max_expire_seconds
        assert user.max_downloads == limits.anon_max_downloads


class TestLogin:
    """Tests for building the authorization URL."""

    def test_login_url(self, storage: LocalStorage, service_config: ServiceConfig) -> None:
        """The URL should carry PKCE, state, scope and the bundle key."""
        url = User(storage, service_config).login("alice@example.com")

        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == (
            service_config.auth.authorization_endpoint
        )
        assert params["client_id"] == "test-client"
        assert params["code_challenge_method"] == "S256"
        assert params["response_type"] == "code"
        assert params["scope"] == f"profile {service_config.auth.key_scope}"
        assert params["state"] == storage.get(OAUTH_STATE_KEY)
        assert params["email"] == "alice@example.com"
        assert "keys_jwk" in params
        assert storage.get(PKCE_VERIFIER_KEY) is not None
        assert storage.get(BUNDLE_PRIVATE_KEY) is not None

    def test_state_is_random(self, storage: LocalStorage, service_config: ServiceConfig) -> None:
        """Each login attempt gets a fresh state."""
        user = User(storage, service_config)
        user.login()
        first = storage.get(OAUTH_STATE_KEY)
        user.login()
        assert storage.get(OAUTH_STATE_KEY) != first


class TestFinishLogin:
    """Tests for completing a login."""

    def test_successful_login(
        self,
        storage: LocalStorage,
        service_config: ServiceConfig,
        fake_server: Any,
        client: SendClient,
    ) -> None:
        """A valid redirect signs the user in with the derived file-list key."""
        user = User(storage, service_config)
        sign_in(user, fake_server, client)

        assert user.logged_in is True
        assert user.id == "user-1"
        assert user.email == "alice@example.com"
        assert user.name == "Alice"
        assert user.bearer_token in fake_server.valid_tokens
        assert user.file_list_key == hkdf(fake_server.scoped_key, b"fileList", 16)
        assert user.max_downloads == service_config.limits.max_downloads

    def test_scratch_values_erased(
        self,
        storage: LocalStorage,
        service_config: ServiceConfig,
        fake_server: Any,
        client: SendClient,
    ) -> None:
        """Verifier, private key and state are erased after login."""
        sign_in(User(storage, service_config), fake_server, client)

        assert storage.get(PKCE_VERIFIER_KEY) is None
        assert storage.get(BUNDLE_PRIVATE_KEY) is None
        assert storage.get(OAUTH_STATE_KEY) is None

    def test_state_mismatch(
        self,
        storage: LocalStorage,
        service_config: ServiceConfig,
        fake_server: Any,
        client: SendClient,
    ) -> None:
        """A forged state fails before any network request."""
        user = User(storage, service_config)
        code, _ = fake_server.authorize(user.login())

        with pytest.raises(StateMismatchError):
            user.finish_login(code, "forged", client)

        assert fake_server.requests == []
        assert user.logged_in is False
        assert storage.get(PKCE_VERIFIER_KEY) is None
        assert storage.get(BUNDLE_PRIVATE_KEY) is None

    def test_without_login(
        self, storage: LocalStorage, service_config: ServiceConfig, client: SendClient
    ) -> None:
        """finish_login without a pending login is a state mismatch."""
        with pytest.raises(StateMismatchError):
            User(storage, service_config).finish_login("code", "state", client)

    def test_rejected_code(
        self,
        storage: LocalStorage,
        service_config: ServiceConfig,
        fake_server: Any,
        client: SendClient,
    ) -> None:
        """An unknown code fails and still erases the scratch values."""
        user = User(storage, service_config)
        user.login()
        state = storage.get(OAUTH_STATE_KEY)
        assert state is not None

        with pytest.raises(APIError):
            user.finish_login("bogus", state, client)

        assert user.logged_in is False
        assert storage.get(PKCE_VERIFIER_KEY) is None


class TestSessionPersistence:
    """Tests for restoring and ending sessions."""

    def test_session_restored(
        self,
        storage: LocalStorage,
        service_config: ServiceConfig,
        fake_server: Any,
        client: SendClient,
        fake_keyring: dict[tuple[str, str], str],
    ) -> None:
        """A new User on the same storage resumes the session."""
        user = User(storage, service_config)
        sign_in(user, fake_server, client)

        restored = User(storage, service_config)

        assert restored.logged_in is True
        assert restored.file_list_key == user.file_list_key
        assert (KEYRING_SERVICE, "user-1") in fake_keyring

    def test_key_not_stored_in_clear(
        self,
        storage: LocalStorage,
        service_config: ServiceConfig,
        fake_server: Any,
        client: SendClient,
    ) -> None:
        """The persisted record holds the key only sealed."""
        user = User(storage, service_config)
        sign_in(user, fake_server, client)

        record = storage.user
        assert user.file_list_key.hex() not in str(record)
        assert "fileListKey" in record
        assert "fileListKey" not in user.info

    def test_missing_keyring_entry(
        self,
        storage: LocalStorage,
        service_config: ServiceConfig,
        fake_server: Any,
        client: SendClient,
        fake_keyring: dict[tuple[str, str], str],
    ) -> None:
        """Without the wrapping key the stored session is dropped."""
        sign_in(User(storage, service_config), fake_server, client)
        fake_keyring.clear()

        restored = User(storage, service_config)

        assert restored.logged_in is False
        assert storage.user == {}

    def test_keyring_unavailable(
        self,
        storage: LocalStorage,
        service_config: ServiceConfig,
        fake_server: Any,
        client: SendClient,
    ) -> None:
        """Without a keyring the session works but is not persisted."""
        user = User(storage, service_config)
        with patch(
            "sendsafe.client.user.keyring.set_password", side_effect=RuntimeError("no backend")
        ):
            sign_in(user, fake_server, client)

        assert user.logged_in is True
        assert storage.user == {}
        assert User(storage, service_config).logged_in is False

    def test_logout(
        self,
        storage: LocalStorage,
        service_config: ServiceConfig,
        fake_server: Any,
        client: SendClient,
        fake_keyring: dict[tuple[str, str], str],
        make_owned_file: Any,
    ) -> None:
        """Logout zeroes the key and forgets files and the session."""
        user = User(storage, service_config)
        sign_in(user, fake_server, client)
        storage.add_file(make_owned_file("a"))
        key_buffer = user._file_list_key
        assert key_buffer is not None

        user.logout()

        assert user.logged_in is False
        assert bytes(key_buffer) == bytes(len(key_buffer))
        assert storage.files == []
        assert storage.user == {}
        assert fake_keyring == {}

    def test_avatar_default_hidden(
        self,
        storage: LocalStorage,
        service_config: ServiceConfig,
        fake_server: Any,
        client: SendClient,
    ) -> None:
        """The provider's default avatar is not shown."""
        fake_server.profile.update(avatar="https://img.test/a.png", avatarDefault=True)
        user = User(storage, service_config)
        sign_in(user, fake_server, client)
        assert user.avatar is None
