"""HTTP client for the send service API.

This module provides:
- SendClient: HTTP client for communicating with the service
- File content operations (upload, metadata, download, delete)
- Owner operations (info, params, password)
- File-list manifest storage and OAuth token exchange
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING, Any

import httpx

from sendsafe.client.types import APIError, AuthError, NetworkError, NotFoundError
from sendsafe.core.config import ServiceConfig
from sendsafe.core.crypto import b64url_decode

if TYPE_CHECKING:
    from sendsafe.client.keychain import Keychain

logger = logging.getLogger(__name__)

AUTH_SCHEME = "send-v1"


def parse_nonce(header: str | None) -> str | None:
    """Extract the nonce from a ``WWW-Authenticate: send-v1 <nonce>`` header."""
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    nonce = value.strip()
    if scheme != AUTH_SCHEME or not nonce:
        return None
    try:
        b64url_decode(nonce)
    except ValueError:
        logger.debug("Ignoring undecodable nonce")
        return None
    return nonce


class SendClient:
    """HTTP client for the send service API."""

    def __init__(
        self,
        config: ServiceConfig,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Service configuration (base URL, timeout, TLS).
            transport: Optional transport, used to plug in test servers.
        """
        self._config = config
        self._client = httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            transport=transport,
        )

    @property
    def server_url(self) -> str:
        """Base URL of the service."""
        return self._config.server_url

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> SendClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code == 401:
            raise AuthError("Invalid password or credentials", 401)
        if response.status_code == 404:
            raise NotFoundError("File not found or expired", 404)
        if response.status_code >= 400:
            raise APIError(_error_detail(response), response.status_code)
        return response

    def _send(self, request: httpx.Request, stream: bool = False) -> httpx.Response:
        try:
            return self._client.send(request, stream=stream)
        except httpx.TransportError as e:
            raise NetworkError(f"{request.method} {request.url.path} failed: {e}") from e

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return self._send(self._client.build_request(method, url, **kwargs))

    def _request_with_auth(
        self,
        method: str,
        url: str,
        keychain: Keychain,
        stream: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request answering the server's nonce challenge.

        The server rotates its nonce on every response. A 401 carrying a
        nonce we have not signed yet is retried once with the new nonce.
        """
        response = self._send_signed(method, url, keychain, stream, **kwargs)
        if self._update_nonce(response, keychain):
            response.close()
            logger.debug(f"Retrying {url} with fresh nonce")
            response = self._send_signed(method, url, keychain, stream, **kwargs)
            self._update_nonce(response, keychain)
        return response

    def _send_signed(
        self,
        method: str,
        url: str,
        keychain: Keychain,
        stream: bool,
        **kwargs: Any,
    ) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = keychain.auth_header()
        request = self._client.build_request(method, url, headers=headers, **kwargs)
        return self._send(request, stream=stream)

    @staticmethod
    def _update_nonce(response: httpx.Response, keychain: Keychain) -> bool:
        """Store the server's next nonce; return True if a retry is worthwhile."""
        nonce = parse_nonce(response.headers.get("WWW-Authenticate"))
        should_retry = (
            response.status_code == 401 and nonce is not None and nonce != keychain.nonce
        )
        if nonce is not None:
            keychain.nonce = nonce
        return should_retry

    # === File content operations ===

    def upload_file(
        self,
        content: Iterable[bytes],
        metadata: str,
        auth_key: str,
        owner_token: str,
        time_limit: int,
        dlimit: int,
        bearer_token: str | None = None,
    ) -> dict[str, Any]:
        """Upload an encrypted file.

        The body is sent with chunked transfer encoding, so ``content`` may be
        a generator producing ciphertext while it is being sent.

        Args:
            content: Ciphertext chunks.
            metadata: Sealed metadata (see Keychain.encrypt_metadata).
            auth_key: Base64url auth key registered for downloads.
            owner_token: Token granting owner operations on the file.
            time_limit: Seconds before the file expires.
            dlimit: Number of downloads allowed.
            bearer_token: Access token of a signed-in user.

        Returns:
            Response payload with ``id``, ``url`` and optionally ``owner``.
        """
        headers = {
            "Content-Type": "application/octet-stream",
            "Authorization": f"{AUTH_SCHEME} {auth_key}",
            "X-File-Metadata": metadata,
            "X-Owner-Token": owner_token,
            "X-Time-Limit": str(time_limit),
            "X-Download-Limit": str(dlimit),
        }
        if bearer_token:
            headers["X-Bearer"] = bearer_token
        response = self._handle_response(
            self._request("POST", "/api/upload", content=content, headers=headers)
        )
        result: dict[str, Any] = response.json()
        return result

    def exists(self, file_id: str) -> dict[str, Any]:
        """Check whether a file exists and whether it needs a password.

        Returns:
            Payload with ``requiresPassword``.

        Raises:
            NotFoundError: If the file is unknown or expired.
        """
        response = self._handle_response(self._request("GET", f"/api/exists/{file_id}"))
        result: dict[str, Any] = response.json()
        return result

    def get_metadata(self, file_id: str, keychain: Keychain) -> dict[str, Any]:
        """Fetch the sealed metadata of a file.

        Returns:
            Payload with ``metadata`` (sealed) and ``ttl`` (milliseconds).

        Raises:
            AuthError: If the password is missing or wrong.
            NotFoundError: If the file is unknown or expired.
        """
        response = self._handle_response(
            self._request_with_auth("GET", f"/api/metadata/{file_id}", keychain)
        )
        result: dict[str, Any] = response.json()
        return result

    @contextlib.contextmanager
    def download(self, file_id: str, keychain: Keychain) -> Iterator[httpx.Response]:
        """Open a streaming download of a file's ciphertext.

        The response is closed when the context exits, whether the body was
        fully read or not.

        Raises:
            AuthError: If the password is missing or wrong.
            NotFoundError: If the file is unknown or expired.
            NetworkError: If the connection drops while the body is read.
        """
        response = self._request_with_auth(
            "GET", f"/api/download/{file_id}", keychain, stream=True
        )
        try:
            if response.status_code >= 400:
                response.read()
                self._handle_response(response)
            yield response
        except httpx.TransportError as e:
            raise NetworkError(f"Download of {file_id} interrupted: {e}") from e
        finally:
            response.close()

    def delete_file(self, file_id: str, owner_token: str) -> None:
        """Delete a file from the service."""
        self._handle_response(
            self._request(
                "DELETE", f"/api/delete/{file_id}", json={"owner_token": owner_token}
            )
        )

    # === Owner operations ===

    def file_info(self, file_id: str, owner_token: str) -> dict[str, Any]:
        """Get download counters of an owned file.

        Returns:
            Payload with ``dlimit``, ``dtotal`` and ``ttl``.
        """
        response = self._handle_response(
            self._request("POST", f"/api/info/{file_id}", json={"owner_token": owner_token})
        )
        result: dict[str, Any] = response.json()
        return result

    def set_params(
        self,
        file_id: str,
        owner_token: str,
        params: dict[str, Any],
        bearer_token: str | None = None,
    ) -> None:
        """Change parameters (download limit) of an owned file."""
        headers = {"Authorization": f"Bearer {bearer_token}"} if bearer_token else {}
        self._handle_response(
            self._request(
                "POST",
                f"/api/params/{file_id}",
                json={"owner_token": owner_token, **params},
                headers=headers,
            )
        )

    def set_password(self, file_id: str, owner_token: str, keychain: Keychain) -> None:
        """Register the keychain's current (password-derived) auth key."""
        self._handle_response(
            self._request(
                "POST",
                f"/api/password/{file_id}",
                json={"owner_token": owner_token, "auth": keychain.auth_key_b64()},
            )
        )

    # === File list operations ===

    def get_file_list(self, bearer_token: str) -> bytes:
        """Download the encrypted file-list manifest of the account.

        Raises:
            AuthError: If the access token expired.
            NotFoundError: If the account has no manifest yet.
        """
        response = self._handle_response(
            self._request(
                "GET", "/api/filelist", headers={"Authorization": f"Bearer {bearer_token}"}
            )
        )
        return response.content

    def set_file_list(self, bearer_token: str, data: bytes) -> None:
        """Replace the encrypted file-list manifest of the account."""
        self._handle_response(
            self._request(
                "PUT",
                "/api/filelist",
                content=data,
                headers={
                    "Authorization": f"Bearer {bearer_token}",
                    "Content-Type": "application/octet-stream",
                },
            )
        )

    # === OAuth ===

    def exchange_code(
        self,
        token_endpoint: str,
        code: str,
        client_id: str,
        code_verifier: str,
    ) -> dict[str, Any]:
        """Exchange an authorization code for an access token.

        Returns:
            Payload with ``access_token`` and ``keys_jwe``.
        """
        response = self._handle_response(
            self._request(
                "POST",
                token_endpoint,
                json={
                    "code": code,
                    "client_id": client_id,
                    "code_verifier": code_verifier,
                },
            )
        )
        result: dict[str, Any] = response.json()
        return result

    def get_user_info(self, userinfo_endpoint: str, access_token: str) -> dict[str, Any]:
        """Fetch the profile of the signed-in user."""
        response = self._handle_response(
            self._request(
                "GET", userinfo_endpoint, headers={"Authorization": f"Bearer {access_token}"}
            )
        )
        result: dict[str, Any] = response.json()
        return result


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        return str(data.get("detail") or data.get("error") or f"HTTP {response.status_code}")
    return f"HTTP {response.status_code}"
