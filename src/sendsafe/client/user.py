"""Signed-in user session.

This module provides:
- User: the session object owning the access token and the file-list key

The file-list key is held in memory as a bytearray and zeroed on logout.
The persisted user record only contains it sealed with AES-GCM under a
random wrapping key kept in the OS keyring, so a copied state database does
not reveal it.
"""

from __future__ import annotations

import hmac
import logging
import os
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import keyring
from cryptography.exceptions import InvalidTag

from sendsafe.client.fxa import (
    BUNDLE_PRIVATE_KEY,
    PKCE_VERIFIER_KEY,
    KeyManagerError,
    get_file_list_key,
    prepare_pkce,
    prepare_scoped_bundle_key,
)
from sendsafe.client.types import StateMismatchError
from sendsafe.core.crypto import b64url_decode, b64url_encode, decrypt_chunk, encrypt_chunk

if TYPE_CHECKING:
    from sendsafe.client.api import SendClient
    from sendsafe.client.storage import LocalStorage
    from sendsafe.core.config import ServiceConfig

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "sendsafe"
OAUTH_STATE_KEY = "oauthState"
SEALED_KEY_FIELD = "fileListKey"


class User:
    """The current user, signed in or anonymous.

    The session is passed explicitly to the components that need it
    (file-list sync, uploads); there is no global user.
    """

    def __init__(self, storage: LocalStorage, config: ServiceConfig) -> None:
        """Restore the session persisted in local storage, if any."""
        self.storage = storage
        self._config = config
        self._info = storage.user
        self._file_list_key: bytearray | None = None

        if self._info.get("access_token"):
            self._file_list_key = self._unseal_file_list_key(self._info)
            if self._file_list_key is None:
                logger.warning("Stored session has no usable file-list key, signing out")
                self._info = {}
                storage.user = {}

    # === Profile ===

    @property
    def info(self) -> dict[str, Any]:
        """Profile fields of the session (no key material)."""
        return {k: v for k, v in self._info.items() if k != SEALED_KEY_FIELD}

    @property
    def id(self) -> str | None:
        """Account identifier."""
        return self._info.get("uid")

    @property
    def name(self) -> str | None:
        """Display name."""
        return self._info.get("displayName")

    @property
    def email(self) -> str | None:
        """Account email."""
        return self._info.get("email")

    @property
    def avatar(self) -> str | None:
        """Avatar URL, unless the provider reports its default avatar."""
        if self._info.get("avatarDefault"):
            return None
        return self._info.get("avatar")

    @property
    def logged_in(self) -> bool:
        """Whether an access token and the file-list key are available."""
        return bool(self._info.get("access_token")) and self._file_list_key is not None

    @property
    def bearer_token(self) -> str | None:
        """OAuth access token of the session."""
        return self._info.get("access_token")

    @property
    def file_list_key(self) -> bytes:
        """A copy of the file-list key.

        Raises:
            KeyManagerError: If not signed in.
        """
        if self._file_list_key is None:
            raise KeyManagerError("Not signed in")
        return bytes(self._file_list_key)

    # === Limits ===

    @property
    def max_size(self) -> int:
        """Largest upload allowed."""
        limits = self._config.limits
        return limits.max_file_size if self.logged_in else limits.anon_max_file_size

    @property
    def max_expire_seconds(self) -> int:
        """Longest lifetime allowed for an upload."""
        limits = self._config.limits
        return limits.max_expire_seconds if self.logged_in else limits.anon_max_expire_seconds

    @property
    def max_downloads(self) -> int:
        """Highest download limit allowed for an upload."""
        limits = self._config.limits
        return limits.max_downloads if self.logged_in else limits.anon_max_downloads

    # === Login flow ===

    def login(self, email: str | None = None) -> str:
        """Prepare a login and build the authorization URL.

        Generates the anti-CSRF state, the scoped bundle keypair and the PKCE
        verifier, all kept in local storage until finish_login.

        Returns:
            URL the user must open to authenticate.
        """
        auth = self._config.auth
        state = b64url_encode(os.urandom(16))
        self.storage.set(OAUTH_STATE_KEY, state)
        keys_jwk = prepare_scoped_bundle_key(self.storage)
        challenge = prepare_pkce(self.storage)

        params = {
            "client_id": auth.client_id,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
            "response_type": "code",
            "scope": f"profile {auth.key_scope}",
            "state": state,
            "keys_jwk": keys_jwk,
        }
        if email:
            params["email"] = email
        return f"{auth.authorization_endpoint}?{urlencode(params)}"

    def finish_login(self, code: str, state: str, client: SendClient) -> None:
        """Complete a login with the provider's redirect parameters.

        The state check happens before any request is made. The PKCE
        verifier and the scoped private key are erased whatever the outcome.

        Raises:
            StateMismatchError: If ``state`` differs from the stored value.
            KeyManagerError: If login scratch values are missing or invalid.
            APIError: If the token or userinfo request fails.
        """
        local_state = self.storage.get(OAUTH_STATE_KEY)
        self.storage.remove(OAUTH_STATE_KEY)
        try:
            if not local_state or not hmac.compare_digest(
                state.encode("utf-8"), local_state.encode("utf-8")
            ):
                raise StateMismatchError("OAuth state mismatch")

            verifier = self.storage.get(PKCE_VERIFIER_KEY)
            if not verifier:
                raise KeyManagerError("No PKCE verifier stored for this login")

            auth = self._config.auth
            tokens = client.exchange_code(auth.token_endpoint, code, auth.client_id, verifier)
            access_token = tokens["access_token"]
            profile = client.get_user_info(auth.userinfo_endpoint, access_token)
            key = get_file_list_key(self.storage, tokens["keys_jwe"], auth.key_scope)
            self._start_session(profile, access_token, key)
        finally:
            self.storage.remove(PKCE_VERIFIER_KEY)
            self.storage.remove(BUNDLE_PRIVATE_KEY)

        logger.info("Signed in")

    def logout(self) -> None:
        """End the session, forgetting local files and key material."""
        self.storage.clear_local_files()
        self._drop_key()
        account = _account_name(self._info)
        try:
            keyring.delete_password(KEYRING_SERVICE, account)
        except Exception as e:  # noqa: BLE001 - keyring backends raise their own types
            logger.debug(f"No keyring entry removed: {e}")
        self._info = {}
        self.storage.user = {}
        logger.info("Signed out")

    # === Session persistence ===

    def _start_session(self, profile: dict[str, Any], access_token: str, key: bytes) -> None:
        self._drop_key()
        info = dict(profile)
        info["access_token"] = access_token
        self._file_list_key = bytearray(key)

        sealed = self._seal_file_list_key(info, key)
        if sealed is not None:
            self.storage.user = {**info, SEALED_KEY_FIELD: sealed}
        else:
            self.storage.user = {}
        self._info = info

    def _seal_file_list_key(self, info: dict[str, Any], key: bytes) -> str | None:
        wrapping_key = os.urandom(32)
        try:
            keyring.set_password(
                KEYRING_SERVICE, _account_name(info), b64url_encode(wrapping_key)
            )
        except Exception as e:  # noqa: BLE001 - keyring backends raise their own types
            logger.warning(f"OS keyring unavailable, session will not persist: {e}")
            return None
        return b64url_encode(encrypt_chunk(key, wrapping_key))

    def _unseal_file_list_key(self, info: dict[str, Any]) -> bytearray | None:
        sealed = info.get(SEALED_KEY_FIELD)
        if not sealed:
            return None
        try:
            wrapping_key = keyring.get_password(KEYRING_SERVICE, _account_name(info))
        except Exception as e:  # noqa: BLE001 - keyring backends raise their own types
            logger.warning(f"OS keyring unavailable: {e}")
            return None
        if not wrapping_key:
            return None
        try:
            return bytearray(decrypt_chunk(b64url_decode(sealed), b64url_decode(wrapping_key)))
        except (InvalidTag, ValueError):
            return None

    def _drop_key(self) -> None:
        if self._file_list_key is not None:
            for i in range(len(self._file_list_key)):
                self._file_list_key[i] = 0
            self._file_list_key = None


def _account_name(info: dict[str, Any]) -> str:
    return str(info.get("uid") or info.get("email") or "default")
