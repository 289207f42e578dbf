"""Cryptographic primitives for sendsafe.

This module provides:
- Key derivation from passwords using Argon2id
- HKDF-SHA256 sub-key derivation
- Authenticated sealing of small payloads using AES-GCM
- URL-safe base64 helpers used on the wire
"""

from __future__ import annotations

import base64
import os

from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

# Argon2id parameters (OWASP recommendations for password hashing)
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MiB
ARGON2_PARALLELISM = 4
ARGON2_HASH_LEN = 32  # 256 bits

# AES-GCM constants
NONCE_SIZE = 12  # 96 bits (recommended for AES-GCM)


def derive_key(password: str, salt: bytes) -> bytes:
    """Derive a 256-bit key from a password using Argon2id.

    Args:
        password: The password typed by the user.
        salt: At least 8 bytes of salt.

    Returns:
        32 bytes derived key.
    """
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=ARGON2_HASH_LEN,
        type=Type.ID,
    )


def hkdf(key: bytes, info: bytes, length: int, salt: bytes = b"") -> bytes:
    """Derive a sub-key with HKDF-SHA256.

    An empty salt is treated as a zero-filled salt, as in RFC 5869.
    """
    return HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt or None,
        info=info,
    ).derive(key)


def encrypt_chunk(data: bytes, key: bytes) -> bytes:
    """Encrypt data using AES-GCM with a random nonce.

    Args:
        data: Plaintext data to encrypt.
        key: 16 or 32 byte key.

    Returns:
        Encrypted data in format: nonce (12 bytes) || ciphertext || auth_tag (16 bytes)
    """
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, data, None)
    return nonce + ciphertext


def decrypt_chunk(encrypted: bytes, key: bytes) -> bytes:
    """Decrypt data encrypted with encrypt_chunk.

    Args:
        encrypted: Data in format: nonce (12 bytes) || ciphertext || auth_tag (16 bytes)
        key: 16 or 32 byte key.

    Returns:
        Decrypted plaintext data.

    Raises:
        cryptography.exceptions.InvalidTag: If authentication fails (wrong key or tampered data).
    """
    nonce = encrypted[:NONCE_SIZE]
    ciphertext = encrypted[NONCE_SIZE:]
    aesgcm = AESGCM(key)
    return aesgcm.decrypt(nonce, ciphertext, None)


def b64url_encode(data: bytes) -> str:
    """Encode bytes as unpadded URL-safe base64."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    """Decode URL-safe base64, with or without padding.

    Standard alphabet characters are accepted too.
    """
    data = data.replace("+", "-").replace("/", "_").rstrip("=")
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
