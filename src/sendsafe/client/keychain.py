"""Per-file key material.

Every shared file has a random 16-byte secret that travels only in the
fragment of the share link. All other keys are derived from it:

- encryption key: keys the content stream cipher
- metadata key: seals name, size, type and manifest
- auth key: HMAC key answering the server's download challenge; replaced by
  a password-derived key once the owner sets a password
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
from collections.abc import Iterable, Iterator
from typing import Any
from urllib.parse import urldefrag

from cryptography.exceptions import InvalidTag

from sendsafe.core.crypto import (
    b64url_decode,
    b64url_encode,
    decrypt_chunk,
    derive_key,
    encrypt_chunk,
    hkdf,
)
from sendsafe.core.ece import AuthenticationError, decrypt_stream, encrypt_stream

SECRET_SIZE = 16
AUTH_KEY_SIZE = 64


def password_salt(url: str) -> bytes:
    """Salt for password-derived auth keys, bound to the share link.

    The fragment is dropped so sender and recipient derive the same salt.
    """
    return hashlib.sha256(urldefrag(url).url.encode("utf-8")).digest()[:16]


class Keychain:
    """Key material for one shared file."""

    def __init__(self, secret_key: str | None = None, nonce: str | None = None) -> None:
        """Create a keychain.

        Args:
            secret_key: Base64url secret from a share link, or None to
                generate a fresh secret for a new upload.
            nonce: Last authentication nonce received from the server.
        """
        if secret_key:
            self.raw_secret = b64url_decode(secret_key)
        else:
            self.raw_secret = os.urandom(SECRET_SIZE)
        self.nonce = nonce
        self.encrypt_key = hkdf(self.raw_secret, b"encryption", 16)
        self.meta_key = hkdf(self.raw_secret, b"metadata", 16)
        self.auth_key = hkdf(self.raw_secret, b"authentication", AUTH_KEY_SIZE)

    @property
    def secret_key(self) -> str:
        """Base64url form of the secret, as placed in the link fragment."""
        return b64url_encode(self.raw_secret)

    def set_password(self, password: str, share_url: str) -> None:
        """Replace the auth key with one derived from a password."""
        self.auth_key = derive_key(password, password_salt(share_url))

    def auth_key_b64(self) -> str:
        """Auth key encoded for registration with the server."""
        return b64url_encode(self.auth_key)

    def auth_header(self) -> str:
        """Answer the current server nonce.

        Returns:
            Value for the Authorization header.
        """
        challenge = b64url_decode(self.nonce) if self.nonce else b""
        signature = hmac.new(self.auth_key, challenge, hashlib.sha256).digest()
        return f"send-v1 {b64url_encode(signature)}"

    def encrypt_stream(self, source: Iterable[bytes]) -> Iterator[bytes]:
        """Encrypt file content with this file's encryption key."""
        return encrypt_stream(source, self.encrypt_key)

    def decrypt_stream(self, source: Iterable[bytes]) -> Iterator[bytes]:
        """Decrypt file content with this file's encryption key."""
        return decrypt_stream(source, self.encrypt_key)

    def encrypt_metadata(self, metadata: dict[str, Any]) -> str:
        """Seal file metadata for the X-File-Metadata header."""
        payload = json.dumps(metadata, separators=(",", ":")).encode("utf-8")
        return b64url_encode(encrypt_chunk(payload, self.meta_key))

    def decrypt_metadata(self, sealed: str) -> dict[str, Any]:
        """Open metadata sealed by encrypt_metadata.

        Raises:
            AuthenticationError: If the secret is wrong or data was tampered.
        """
        try:
            payload = decrypt_chunk(b64url_decode(sealed), self.meta_key)
        except (InvalidTag, ValueError) as e:
            raise AuthenticationError("Metadata failed authentication") from e
        result: dict[str, Any] = json.loads(payload)
        return result
