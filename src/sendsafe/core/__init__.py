"""Core module - Stream cipher, crypto primitives and configuration."""

from sendsafe.core.config import AuthConfig, Limits, ServiceConfig
from sendsafe.core.crypto import (
    b64url_decode,
    b64url_encode,
    decrypt_chunk,
    derive_key,
    encrypt_chunk,
    hkdf,
)
from sendsafe.core.ece import (
    RECORD_SIZE,
    AuthenticationError,
    decrypt_bytes,
    decrypt_stream,
    encrypt_bytes,
    encrypt_stream,
    encrypted_size,
)

__all__ = [
    # Config
    "AuthConfig",
    "Limits",
    "ServiceConfig",
    # Crypto
    "b64url_decode",
    "b64url_encode",
    "decrypt_chunk",
    "derive_key",
    "encrypt_chunk",
    "hkdf",
    # Stream cipher
    "RECORD_SIZE",
    "AuthenticationError",
    "decrypt_bytes",
    "decrypt_stream",
    "encrypt_bytes",
    "encrypt_stream",
    "encrypted_size",
]
