"""Chunked authenticated encryption of byte streams.

This module implements the ``aes128gcm`` content coding of RFC 8188:

    header  = salt (16) || record size (uint32 BE) || idlen (1) || keyid
    record  = AES-128-GCM(data || delimiter || padding)

Every record except the last carries RECORD_SIZE bytes of ciphertext. The
delimiter byte is 0x01 for intermediate records and 0x02 for the final one,
so the decoder finds the end of the stream without knowing its length and
detects truncation. Record nonces are derived from the key, the per-stream
salt and the record index, so reordered records fail authentication.

Both directions are lazy generators: nothing is read from the source until
the first output chunk is requested, and the full plaintext is never held in
memory.
"""

from __future__ import annotations

import os
import struct
from collections.abc import Iterable, Iterator

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from sendsafe.core.crypto import hkdf

RECORD_SIZE = 64 * 1024
TAG_LENGTH = 16
KEY_LENGTH = 16
NONCE_LENGTH = 12
SALT_LENGTH = 16
HEADER_LENGTH = SALT_LENGTH + 5  # salt || rs || idlen

# Plaintext bytes carried by one full record (tag and delimiter excluded)
PLAINTEXT_RECORD_SIZE = RECORD_SIZE - TAG_LENGTH - 1

DELIMITER = 0x01
FINAL_DELIMITER = 0x02

MAX_RECORDS = 2 ** (8 * NONCE_LENGTH)

CEK_INFO = b"Content-Encoding: aes128gcm\x00"
NONCE_INFO = b"Content-Encoding: nonce\x00"


class AuthenticationError(Exception):
    """Ciphertext failed verification.

    Raised for a wrong key, tampered, reordered or truncated records and
    malformed headers. Callers treat it like a wrong password.
    """


def derive_record_keys(key: bytes, salt: bytes) -> tuple[bytes, bytes]:
    """Derive the content-encryption key and nonce base for one stream.

    Args:
        key: Input keying material (16 to 32 bytes).
        salt: The 16-byte salt from the stream header.

    Returns:
        Tuple of (content encryption key, nonce base).
    """
    cek = hkdf(key, CEK_INFO, KEY_LENGTH, salt=salt)
    nonce_base = hkdf(key, NONCE_INFO, NONCE_LENGTH, salt=salt)
    return cek, nonce_base


def record_nonce(nonce_base: bytes, seq: int) -> bytes:
    """Return the nonce for record number ``seq``.

    XOR of the nonce base with the 96-bit big-endian sequence number, which
    is a bijection: distinct indexes always give distinct nonces.
    """
    if not 0 <= seq < MAX_RECORDS:
        raise ValueError(f"Record index out of range: {seq}")
    value = int.from_bytes(nonce_base, "big") ^ seq
    return value.to_bytes(NONCE_LENGTH, "big")


def encrypted_size(size: int) -> int:
    """Return the ciphertext length produced for ``size`` plaintext bytes."""
    records = max(1, -(-size // PLAINTEXT_RECORD_SIZE))
    return HEADER_LENGTH + size + records * (TAG_LENGTH + 1)


def encrypt_stream(source: Iterable[bytes], key: bytes) -> Iterator[bytes]:
    """Encrypt a stream of byte chunks.

    Args:
        source: Iterable of plaintext chunks of any size.
        key: Stream key (16 to 32 bytes). A copy is taken immediately.

    Returns:
        Iterator over the header followed by one chunk per record.
    """
    return _encrypt(iter(source), bytes(key))


def decrypt_stream(source: Iterable[bytes], key: bytes) -> Iterator[bytes]:
    """Decrypt a stream produced by encrypt_stream.

    Args:
        source: Iterable of ciphertext chunks of any size.
        key: Stream key. A copy is taken immediately.

    Returns:
        Iterator over plaintext chunks.

    Raises:
        AuthenticationError: While iterating, on the first record that fails
            verification or when the stream ends before the final record.
    """
    return _decrypt(iter(source), bytes(key))


def encrypt_bytes(data: bytes, key: bytes) -> bytes:
    """Encrypt an in-memory payload with the stream format."""
    return b"".join(encrypt_stream([data], key))


def decrypt_bytes(data: bytes, key: bytes) -> bytes:
    """Decrypt an in-memory payload produced by encrypt_bytes."""
    return b"".join(decrypt_stream([data], key))


def _encrypt(chunks: Iterator[bytes], key: bytes) -> Iterator[bytes]:
    salt = os.urandom(SALT_LENGTH)
    cek, nonce_base = derive_record_keys(key, salt)
    aesgcm = AESGCM(cek)
    yield salt + struct.pack(">IB", RECORD_SIZE, 0)

    seq = 0
    buffer = bytearray()
    for chunk in chunks:
        buffer += chunk
        # Hold back a full record until more input proves it is not the last
        while len(buffer) > PLAINTEXT_RECORD_SIZE:
            data = bytes(buffer[:PLAINTEXT_RECORD_SIZE])
            del buffer[:PLAINTEXT_RECORD_SIZE]
            yield _seal(aesgcm, nonce_base, seq, data, final=False)
            seq += 1

    yield _seal(aesgcm, nonce_base, seq, bytes(buffer), final=True)


def _decrypt(chunks: Iterator[bytes], key: bytes) -> Iterator[bytes]:
    aesgcm: AESGCM | None = None
    nonce_base = b""
    seq = 0
    buffer = bytearray()

    for chunk in chunks:
        buffer += chunk
        if aesgcm is None:
            header_length = _header_length(buffer)
            if header_length is None:
                continue
            aesgcm, nonce_base = _read_header(buffer, key)
            del buffer[:header_length]

        # A record is only known to be intermediate once bytes follow it
        while len(buffer) > RECORD_SIZE:
            record = bytes(buffer[:RECORD_SIZE])
            del buffer[:RECORD_SIZE]
            data = _open(aesgcm, nonce_base, seq, record, final=False)
            seq += 1
            if data:
                yield data

    if aesgcm is None:
        raise AuthenticationError("Stream ended inside the header")

    data = _open(aesgcm, nonce_base, seq, bytes(buffer), final=True)
    if data:
        yield data


def _header_length(buffer: bytearray) -> int | None:
    if len(buffer) < HEADER_LENGTH:
        return None
    length = HEADER_LENGTH + buffer[HEADER_LENGTH - 1]
    return length if len(buffer) >= length else None


def _read_header(buffer: bytearray, key: bytes) -> tuple[AESGCM, bytes]:
    salt = bytes(buffer[:SALT_LENGTH])
    (rs,) = struct.unpack(">I", buffer[SALT_LENGTH:SALT_LENGTH + 4])
    if rs != RECORD_SIZE:
        raise AuthenticationError(f"Unsupported record size: {rs}")
    cek, nonce_base = derive_record_keys(key, salt)
    return AESGCM(cek), nonce_base


def _seal(aesgcm: AESGCM, nonce_base: bytes, seq: int, data: bytes, final: bool) -> bytes:
    delimiter = FINAL_DELIMITER if final else DELIMITER
    return aesgcm.encrypt(record_nonce(nonce_base, seq), data + bytes([delimiter]), None)


def _open(aesgcm: AESGCM, nonce_base: bytes, seq: int, record: bytes, final: bool) -> bytes:
    if len(record) <= TAG_LENGTH:
        raise AuthenticationError(f"Stream truncated at record {seq}")
    try:
        padded = aesgcm.decrypt(record_nonce(nonce_base, seq), record, None)
    except InvalidTag as e:
        raise AuthenticationError(f"Record {seq} failed authentication") from e

    data = padded.rstrip(b"\x00")
    if not data:
        raise AuthenticationError(f"Record {seq} has no delimiter")
    expected = FINAL_DELIMITER if final else DELIMITER
    if data[-1] != expected:
        if final:
            raise AuthenticationError(f"Stream truncated after record {seq}")
        raise AuthenticationError(f"Unexpected final record at index {seq}")
    return data[:-1]
