"""Shared fixtures: an in-process fake send service and a fake OS keyring."""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import struct
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from sendsafe.client.api import SendClient
from sendsafe.client.fxa import load_public_jwk, public_jwk
from sendsafe.client.keychain import Keychain
from sendsafe.client.owned_file import OwnedFile
from sendsafe.client.storage import LocalStorage
from sendsafe.core.config import AuthConfig, ServiceConfig
from sendsafe.core.crypto import b64url_decode, b64url_encode

SERVER_URL = "http://send.test"
KEY_SCOPE = "https://identity.test/apps/send"
DOWNLOAD_CHUNK = 16 * 1024


def make_keys_jwe(recipient_jwk: dict[str, Any], payload: dict[str, Any]) -> str:
    """Encrypt ``payload`` to a P-256 public JWK as an ECDH-ES/A256GCM JWE.

    The Concat KDF is spelled out with hashlib so the client's implementation
    is checked against an independent one.
    """
    recipient = load_public_jwk(recipient_jwk)
    ephemeral = ec.generate_private_key(ec.SECP256R1())
    shared = ephemeral.exchange(ec.ECDH(), recipient)

    header = {"alg": "ECDH-ES", "enc": "A256GCM", "epk": public_jwk(ephemeral.public_key())}
    protected = b64url_encode(json.dumps(header).encode("utf-8"))

    def field(data: bytes) -> bytes:
        return struct.pack(">I", len(data)) + data

    otherinfo = field(b"A256GCM") + field(b"") + field(b"") + struct.pack(">I", 256)
    cek = hashlib.sha256(struct.pack(">I", 1) + shared + otherinfo).digest()

    iv = os.urandom(12)
    sealed = AESGCM(cek).encrypt(iv, json.dumps(payload).encode("utf-8"), protected.encode())
    ciphertext, tag = sealed[:-16], sealed[-16:]
    return ".".join([protected, "", b64url_encode(iv), b64url_encode(ciphertext), b64url_encode(tag)])


class _DroppedStream(httpx.SyncByteStream):
    """Body that breaks off after its first bytes."""

    def __init__(self, head: bytes) -> None:
        self._head = head

    def __iter__(self) -> Iterator[bytes]:
        yield self._head
        raise httpx.ReadError("connection reset")


class FakeSendServer:
    """Minimal send service: file store, nonce challenge, file lists, OAuth."""

    def __init__(self, base_url: str = SERVER_URL) -> None:
        self.base_url = base_url
        self.files: dict[str, dict[str, Any]] = {}
        self.file_lists: dict[str, bytes] = {}
        self.requests: list[httpx.Request] = []
        self.valid_tokens: set[str] = set()
        self.scoped_key = os.urandom(32)
        self.profile = {"uid": "user-1", "email": "alice@example.com", "displayName": "Alice"}
        self._codes: dict[str, dict[str, str]] = {}
        self.unreachable: set[str] = set()
        self.drop_downloads = False
        self.transport = httpx.MockTransport(self.handle)

    # === Helpers for tests ===

    def requests_to(self, path_prefix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.startswith(path_prefix)]

    def authorize(self, authorization_url: str) -> tuple[str, str]:
        """Play the identity provider's part of a login.

        Returns:
            The (code, state) pair the provider would redirect with.
        """
        params = {k: v[0] for k, v in parse_qs(urlparse(authorization_url).query).items()}
        recipient = json.loads(b64url_decode(params["keys_jwk"]))
        bundle = {KEY_SCOPE: {"kty": "oct", "scope": KEY_SCOPE, "k": b64url_encode(self.scoped_key)}}
        code = secrets.token_hex(8)
        self._codes[code] = {
            "challenge": params["code_challenge"],
            "keys_jwe": make_keys_jwe(recipient, bundle),
        }
        return code, params["state"]

    def expire_tokens(self) -> None:
        self.valid_tokens.clear()

    # === Request handling ===

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        parts = request.url.path.strip("/").split("/")
        if len(parts) > 1 and parts[1] in self.unreachable:
            raise httpx.ConnectError("blip", request=request)
        method = request.method

        if parts[:2] == ["api", "upload"] and method == "POST":
            return self._upload(request)
        if parts[:2] == ["api", "filelist"]:
            return self._file_list(request)
        if parts[0] == "oauth":
            return self._oauth(request, parts[1])
        if parts[0] == "api" and len(parts) == 3:
            record = self.files.get(parts[2])
            if record is None:
                return httpx.Response(404, json={"error": "not found"})
            return self._file_route(request, parts[1], parts[2], record)
        return httpx.Response(404)

    def _upload(self, request: httpx.Request) -> httpx.Response:
        scheme, _, key = request.headers["Authorization"].partition(" ")
        assert scheme == "send-v1"
        file_id = secrets.token_hex(5)
        self.files[file_id] = {
            "data": request.content,
            "metadata": request.headers["X-File-Metadata"],
            "auth_key": b64url_decode(key),
            "owner": request.headers["X-Owner-Token"],
            "dlimit": int(request.headers["X-Download-Limit"]),
            "time_limit": int(request.headers["X-Time-Limit"]),
            "dtotal": 0,
            "has_password": False,
            "nonce": b64url_encode(os.urandom(16)),
            "bearer": request.headers.get("X-Bearer"),
        }
        return httpx.Response(
            200,
            json={"id": file_id, "url": f"{self.base_url}/download/{file_id}/"},
        )

    def _file_route(
        self, request: httpx.Request, action: str, file_id: str, record: dict[str, Any]
    ) -> httpx.Response:
        if action == "exists":
            return httpx.Response(200, json={"requiresPassword": record["has_password"]})

        if action in ("metadata", "download"):
            denied = self._check_auth(request, record)
            if denied is not None:
                return denied
            headers = {"WWW-Authenticate": f"send-v1 {record['nonce']}"}
            if action == "metadata":
                return httpx.Response(
                    200,
                    json={"metadata": record["metadata"], "ttl": record["time_limit"] * 1000},
                    headers=headers,
                )
            record["dtotal"] += 1
            if record["dtotal"] >= record["dlimit"]:
                del self.files[file_id]
            data = record["data"]
            if self.drop_downloads:
                return httpx.Response(200, stream=_DroppedStream(data[:100]), headers=headers)
            chunks = [data[i:i + DOWNLOAD_CHUNK] for i in range(0, len(data), DOWNLOAD_CHUNK)]
            return httpx.Response(200, content=iter(chunks), headers=headers)

        body = json.loads(request.content or b"{}")
        if body.get("owner_token") != record["owner"]:
            return httpx.Response(401, json={"error": "bad owner token"})
        if action == "delete":
            del self.files[file_id]
            return httpx.Response(200)
        if action == "info":
            return httpx.Response(
                200,
                json={"dlimit": record["dlimit"], "dtotal": record["dtotal"], "ttl": 1000},
            )
        if action == "params":
            record["dlimit"] = int(body["dlimit"])
            return httpx.Response(200)
        if action == "password":
            record["auth_key"] = b64url_decode(body["auth"])
            record["has_password"] = True
            return httpx.Response(200)
        return httpx.Response(404)

    def _check_auth(self, request: httpx.Request, record: dict[str, Any]) -> httpx.Response | None:
        expected = hmac.new(
            record["auth_key"], b64url_decode(record["nonce"]), hashlib.sha256
        ).digest()
        given = request.headers.get("Authorization", "")
        record["nonce"] = b64url_encode(os.urandom(16))
        if given != f"send-v1 {b64url_encode(expected)}":
            return httpx.Response(
                401, headers={"WWW-Authenticate": f"send-v1 {record['nonce']}"}
            )
        return None

    def _bearer(self, request: httpx.Request) -> str | None:
        scheme, _, token = request.headers.get("Authorization", "").partition(" ")
        if scheme != "Bearer" or token not in self.valid_tokens:
            return None
        return token

    def _file_list(self, request: httpx.Request) -> httpx.Response:
        if self._bearer(request) is None:
            return httpx.Response(401)
        uid = self.profile["uid"]
        if request.method == "PUT":
            self.file_lists[uid] = request.content
            return httpx.Response(200)
        if uid not in self.file_lists:
            return httpx.Response(404)
        return httpx.Response(200, content=self.file_lists[uid])

    def _oauth(self, request: httpx.Request, endpoint: str) -> httpx.Response:
        if endpoint == "token":
            body = json.loads(request.content)
            pending = self._codes.pop(body["code"], None)
            verifier = body["code_verifier"].encode("ascii")
            challenge = b64url_encode(hashlib.sha256(verifier).digest())
            if pending is None or challenge != pending["challenge"]:
                return httpx.Response(400, json={"error": "invalid_grant"})
            token = secrets.token_hex(16)
            self.valid_tokens.add(token)
            return httpx.Response(200, json={"access_token": token, "keys_jwe": pending["keys_jwe"]})
        if endpoint == "userinfo":
            if self._bearer(request) is None:
                return httpx.Response(401)
            return httpx.Response(200, json=self.profile)
        return httpx.Response(404)


@pytest.fixture(autouse=True)
def fake_keyring() -> Iterator[dict[tuple[str, str], str]]:
    """Replace the OS keyring with a dictionary."""
    store: dict[tuple[str, str], str] = {}
    with patch("sendsafe.client.user.keyring") as mock_keyring:
        mock_keyring.set_password.side_effect = lambda s, u, p: store.__setitem__((s, u), p)
        mock_keyring.get_password.side_effect = lambda s, u: store.get((s, u))
        mock_keyring.delete_password.side_effect = lambda s, u: store.pop((s, u))
        yield store


@pytest.fixture
def service_config() -> ServiceConfig:
    """Service configuration pointing at the fake server."""
    return ServiceConfig(
        server_url=SERVER_URL,
        auth=AuthConfig(
            client_id="test-client",
            authorization_endpoint=f"{SERVER_URL}/oauth/authorize",
            token_endpoint=f"{SERVER_URL}/oauth/token",
            userinfo_endpoint=f"{SERVER_URL}/oauth/userinfo",
            key_scope=KEY_SCOPE,
        ),
    )


@pytest.fixture
def fake_server() -> FakeSendServer:
    """A fresh fake send service."""
    return FakeSendServer()


@pytest.fixture
def client(service_config: ServiceConfig, fake_server: FakeSendServer) -> Iterator[SendClient]:
    """API client wired to the fake server."""
    with SendClient(service_config, transport=fake_server.transport) as send_client:
        yield send_client


@pytest.fixture
def storage(tmp_path: Path) -> Iterator[LocalStorage]:
    """Local storage in a temporary directory."""
    local = LocalStorage(tmp_path / "state.db")
    yield local
    local.close()


@pytest.fixture
def keys_jwe() -> Callable[[dict[str, Any], dict[str, Any]], str]:
    """Builder of key bundles encrypted to a public JWK."""
    return make_keys_jwe


@pytest.fixture
def key_scope() -> str:
    """Scope under which the fake provider delivers the bundle key."""
    return KEY_SCOPE


@pytest.fixture
def make_owned_file() -> Callable[..., OwnedFile]:
    """Factory for OwnedFile records with consistent link and secret."""

    def factory(file_id: str = "file1", **overrides: Any) -> OwnedFile:
        secret = Keychain().secret_key
        values: dict[str, Any] = {
            "id": file_id,
            "url": f"{SERVER_URL}/download/{file_id}/#{secret}",
            "name": f"{file_id}.txt",
            "size": 10,
            "secret_key": secret,
            "owner_token": f"owner-{file_id}",
            "time_limit": 3600,
            "dlimit": 5,
        }
        values.update(overrides)
        return OwnedFile(**values)

    return factory
