"""Account key management for OAuth logins.

This module provides:
- prepare_pkce: PKCE verifier/challenge generation (RFC 7636, S256)
- prepare_scoped_bundle_key: ephemeral P-256 key the provider encrypts
  the scoped key bundle to
- decrypt_bundle: compact JWE decryption (ECDH-ES + A256GCM, RFC 7518)
- get_file_list_key: derivation of the key protecting the file-list manifest

The verifier and the private key live in local storage only between the
login redirect and the token exchange; User.finish_login erases them.
"""

from __future__ import annotations

import hashlib
import json
import os
import struct
from typing import TYPE_CHECKING, Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.concatkdf import ConcatKDFHash

from sendsafe.client.types import SendError
from sendsafe.core.crypto import b64url_decode, b64url_encode, hkdf
from sendsafe.core.ece import AuthenticationError

if TYPE_CHECKING:
    from sendsafe.client.storage import LocalStorage

PKCE_VERIFIER_KEY = "pkceVerifier"
BUNDLE_PRIVATE_KEY = "scopedBundlePrivateKey"

FILE_LIST_KEY_INFO = b"fileList"
FILE_LIST_KEY_SIZE = 16

JWE_ALG = "ECDH-ES"
JWE_ENC = "A256GCM"
JWE_KEY_BITS = 256
P256_COORDINATE_SIZE = 32


class KeyManagerError(SendError):
    """Key material is missing or malformed."""


def prepare_pkce(storage: LocalStorage) -> str:
    """Generate and store a PKCE verifier.

    Args:
        storage: Local store keeping the verifier until the token exchange.

    Returns:
        The S256 code challenge for the authorization request.
    """
    verifier = b64url_encode(os.urandom(32))
    storage.set(PKCE_VERIFIER_KEY, verifier)
    return code_challenge(verifier)


def code_challenge(verifier: str) -> str:
    """S256 challenge of a PKCE verifier."""
    return b64url_encode(hashlib.sha256(verifier.encode("ascii")).digest())


def prepare_scoped_bundle_key(storage: LocalStorage) -> str:
    """Generate the ephemeral keypair for this login attempt.

    The private JWK is stored locally; the public JWK is returned encoded
    for the ``keys_jwk`` authorization parameter.
    """
    private_key = ec.generate_private_key(ec.SECP256R1())
    storage.set(BUNDLE_PRIVATE_KEY, json.dumps(private_jwk(private_key)))
    public = public_jwk(private_key.public_key())
    return b64url_encode(json.dumps(public, separators=(",", ":")).encode("utf-8"))


def public_jwk(public_key: ec.EllipticCurvePublicKey) -> dict[str, str]:
    """Encode a P-256 public key as a JWK."""
    numbers = public_key.public_numbers()
    return {
        "kty": "EC",
        "crv": "P-256",
        "x": b64url_encode(numbers.x.to_bytes(P256_COORDINATE_SIZE, "big")),
        "y": b64url_encode(numbers.y.to_bytes(P256_COORDINATE_SIZE, "big")),
    }


def private_jwk(private_key: ec.EllipticCurvePrivateKey) -> dict[str, str]:
    """Encode a P-256 private key as a JWK."""
    jwk = public_jwk(private_key.public_key())
    d = private_key.private_numbers().private_value
    jwk["d"] = b64url_encode(d.to_bytes(P256_COORDINATE_SIZE, "big"))
    return jwk


def load_public_jwk(jwk: dict[str, Any]) -> ec.EllipticCurvePublicKey:
    """Decode a P-256 public JWK."""
    if jwk.get("kty") != "EC" or jwk.get("crv") != "P-256":
        raise KeyManagerError("Unsupported key type, expected EC P-256")
    x = int.from_bytes(b64url_decode(jwk["x"]), "big")
    y = int.from_bytes(b64url_decode(jwk["y"]), "big")
    try:
        return ec.EllipticCurvePublicNumbers(x, y, ec.SECP256R1()).public_key()
    except ValueError as e:
        raise KeyManagerError("Invalid EC public key") from e


def load_private_jwk(jwk: dict[str, Any]) -> ec.EllipticCurvePrivateKey:
    """Decode a P-256 private JWK."""
    if jwk.get("kty") != "EC" or jwk.get("crv") != "P-256" or "d" not in jwk:
        raise KeyManagerError("Unsupported private key, expected EC P-256")
    d = int.from_bytes(b64url_decode(jwk["d"]), "big")
    return ec.derive_private_key(d, ec.SECP256R1())


def concat_kdf(
    shared_secret: bytes,
    algorithm: str,
    apu: bytes = b"",
    apv: bytes = b"",
    key_bits: int = JWE_KEY_BITS,
) -> bytes:
    """Concat KDF of RFC 7518 section 4.6.2 for ECDH-ES direct key agreement."""
    otherinfo = (
        _length_prefixed(algorithm.encode("ascii"))
        + _length_prefixed(apu)
        + _length_prefixed(apv)
        + struct.pack(">I", key_bits)
    )
    return ConcatKDFHash(
        algorithm=hashes.SHA256(),
        length=key_bits // 8,
        otherinfo=otherinfo,
    ).derive(shared_secret)


def decrypt_jwe(token: str, private_key: ec.EllipticCurvePrivateKey) -> bytes:
    """Decrypt a compact-serialized ECDH-ES/A256GCM JWE.

    Raises:
        KeyManagerError: If the token is malformed or uses other algorithms.
        AuthenticationError: If the ciphertext fails verification.
    """
    parts = token.split(".")
    if len(parts) != 5:
        raise KeyManagerError("Malformed JWE: expected 5 segments")
    protected, encrypted_key, iv, ciphertext, tag = parts
    try:
        header = json.loads(b64url_decode(protected))
    except ValueError as e:
        raise KeyManagerError("Malformed JWE header") from e

    if header.get("alg") != JWE_ALG or header.get("enc") != JWE_ENC:
        raise KeyManagerError(
            f"Unsupported JWE algorithms: {header.get('alg')}/{header.get('enc')}"
        )
    if encrypted_key:
        raise KeyManagerError("ECDH-ES direct agreement carries no encrypted key")

    epk = load_public_jwk(header.get("epk") or {})
    shared_secret = private_key.exchange(ec.ECDH(), epk)
    cek = concat_kdf(
        shared_secret,
        JWE_ENC,
        apu=b64url_decode(header.get("apu", "")),
        apv=b64url_decode(header.get("apv", "")),
    )
    try:
        return AESGCM(cek).decrypt(
            b64url_decode(iv),
            b64url_decode(ciphertext) + b64url_decode(tag),
            protected.encode("ascii"),
        )
    except InvalidTag as e:
        raise AuthenticationError("Key bundle failed authentication") from e


def decrypt_bundle(storage: LocalStorage, keys_jwe: str) -> dict[str, Any]:
    """Decrypt the scoped key bundle delivered by the identity provider.

    Returns:
        Mapping of scope to JWK.
    """
    stored = storage.get(BUNDLE_PRIVATE_KEY)
    if not stored:
        raise KeyManagerError("No scoped bundle key was prepared for this login")
    private_key = load_private_jwk(json.loads(stored))
    bundle: dict[str, Any] = json.loads(decrypt_jwe(keys_jwe, private_key))
    return bundle


def get_file_list_key(storage: LocalStorage, keys_jwe: str, key_scope: str) -> bytes:
    """Unwrap the provider's key bundle and derive the file-list key.

    Args:
        storage: Local store holding the scoped bundle private key.
        keys_jwe: The ``keys_jwe`` value from the token response.
        key_scope: Scope whose key protects the file list.

    Returns:
        16-byte file-list key.
    """
    bundle = decrypt_bundle(storage, keys_jwe)
    jwk = bundle.get(key_scope)
    if not isinstance(jwk, dict) or "k" not in jwk:
        raise KeyManagerError(f"Key bundle has no key for scope {key_scope}")
    return hkdf(b64url_decode(jwk["k"]), FILE_LIST_KEY_INFO, FILE_LIST_KEY_SIZE)


def _length_prefixed(data: bytes) -> bytes:
    return struct.pack(">I", len(data)) + data
