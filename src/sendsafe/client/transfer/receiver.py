"""Download of a shared file.

The ciphertext is streamed from the service through the decrypting stream
cipher. Plaintext is either collected in memory or, when a destination is
given, written straight to disk: every file goes to a temporary file first
and all of them are renamed into place only once the whole stream has
authenticated, so a tampered or truncated download leaves nothing behind.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sendsafe.client.archive import manifest_entries, safe_file_name
from sendsafe.client.keychain import Keychain
from sendsafe.client.link import ShareLink
from sendsafe.client.transfer.base import CancelToken, Transfer
from sendsafe.client.types import ArchiveError, AuthError, TransferPhase
from sendsafe.core.ece import encrypted_size

if TYPE_CHECKING:
    from sendsafe.client.api import SendClient

logger = logging.getLogger(__name__)


@dataclass
class ReceivedFile:
    """A file reference obtained from a share link.

    Attributes:
        id: Server-side file identifier.
        secret_key: Base64url secret from the link fragment.
        url: Share link without its fragment.
        password: Password supplied by the recipient.
        requires_password: Whether the service demands a password.
        name: File name (from metadata).
        size: Plaintext size (from metadata).
        type: MIME type (from metadata).
        manifest: Archive manifest (from metadata).
        ttl: Milliseconds until expiry (from metadata).
        nonce: Last authentication nonce seen.
    """

    id: str
    secret_key: str
    url: str
    password: str | None = None
    requires_password: bool = False
    name: str = ""
    size: int = 0
    type: str = ""
    manifest: dict[str, Any] = field(default_factory=dict)
    ttl: int = 0
    nonce: str | None = None

    @classmethod
    def from_link(cls, url: str, password: str | None = None) -> ReceivedFile:
        """Create from a share link.

        Raises:
            InvalidLinkError: If the link is malformed.
        """
        link = ShareLink.parse(url)
        return cls(id=link.file_id, secret_key=link.secret_key, url=link.url, password=password)


class FileReceiver(Transfer):
    """Fetches metadata for, then downloads and decrypts, one shared file."""

    transfer_type = "download"

    def __init__(
        self,
        file_info: ReceivedFile,
        client: SendClient,
        cancel_token: CancelToken | None = None,
    ) -> None:
        super().__init__(cancel_token)
        self.file_info = file_info
        self._client = client
        self.keychain = Keychain(file_info.secret_key, file_info.nonce)
        self._metadata_ready = False

    @property
    def metadata_ready(self) -> bool:
        """Whether get_metadata has succeeded."""
        return self._metadata_ready

    def get_metadata(self) -> ReceivedFile:
        """Fetch and decrypt the file's metadata.

        Raises:
            AuthError: If a password is required but missing, or is wrong.
            NotFoundError: If the file is unknown or expired.
            AuthenticationError: If the secret key does not open the metadata.
        """
        info = self.file_info
        exists = self._client.exists(info.id)
        info.requires_password = bool(exists.get("requiresPassword"))
        if info.requires_password:
            if not info.password:
                raise AuthError("Password required", 401)
            self.keychain.set_password(info.password, info.url)

        result = self._client.get_metadata(info.id, self.keychain)
        metadata = self.keychain.decrypt_metadata(result["metadata"])
        info.name = str(metadata.get("name", ""))
        info.size = int(metadata.get("size", 0))
        info.type = str(metadata.get("type", ""))
        info.manifest = dict(metadata.get("manifest") or {})
        info.ttl = int(result.get("ttl", 0))
        info.nonce = self.keychain.nonce
        self._metadata_ready = True
        logger.info(f"Metadata loaded for {info.id}: {info.size} bytes")
        return info

    def download(self, stream: bool = False, dest: Path | str | None = None) -> bytes | list[Path]:
        """Download and decrypt the file.

        Metadata is fetched first when get_metadata has not run yet.

        Args:
            stream: Write to disk as data arrives instead of buffering.
            dest: Destination file or directory, required for streaming.
                Multi-file archives are split into a directory.

        Returns:
            The plaintext, or the written paths when streaming to disk.

        Raises:
            CancelledError: If cancelled; no destination file is left.
            AuthenticationError: If the ciphertext fails verification.
            AuthError, NotFoundError, NetworkError: On service failures.
        """
        if not self._metadata_ready:
            self.get_metadata()
        if stream and dest is None:
            logger.debug("No destination for streaming, buffering in memory")
            stream = False
        return self._run(lambda: self._download(Path(dest) if stream and dest else None))

    def _download(self, dest: Path | None) -> bytes | list[Path]:
        info = self.file_info
        total = encrypted_size(info.size)
        self._phase(TransferPhase.DOWNLOADING)
        with self._client.download(info.id, self.keychain) as response:
            ciphertext = self._receive(response.iter_bytes(), total)
            plaintext = self.keychain.decrypt_stream(ciphertext)
            if dest is not None:
                result: bytes | list[Path] = self._write_files(plaintext, dest)
            else:
                result = b"".join(plaintext)
        info.nonce = self.keychain.nonce
        return result

    def _receive(self, chunks: Iterable[bytes], total: int) -> Iterator[bytes]:
        received = 0
        for chunk in chunks:
            self.cancel_token.check()
            received += len(chunk)
            self._set_progress(received, total)
            yield chunk
        self.cancel_token.check()
        self._phase(TransferPhase.DECRYPTING)

    def _write_files(self, plaintext: Iterator[bytes], dest: Path) -> list[Path]:
        info = self.file_info
        entries = manifest_entries(info.name, info.size, info.manifest)

        if len(entries) == 1 and not dest.is_dir():
            targets = [dest]
        else:
            dest.mkdir(parents=True, exist_ok=True)
            targets = [dest / safe_file_name(entry["name"]) for entry in entries]
        if len(set(targets)) != len(targets):
            raise ArchiveError("unsafeName", "Archive contains duplicate file names")

        reader = _ChunkReader(plaintext)
        tmp_paths: list[Path] = []
        try:
            for entry, target in zip(entries, targets, strict=True):
                target.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = target.with_name(target.name + ".tmp")
                tmp_paths.append(tmp_path)
                with open(tmp_path, "wb") as f:
                    for piece in reader.read(entry["size"]):
                        f.write(piece)
            if not reader.at_end():
                raise ArchiveError("badManifest", "Archive is longer than its manifest")

            for tmp_path, target in zip(tmp_paths, targets, strict=True):
                tmp_path.replace(target)
        except Exception:
            for tmp_path in tmp_paths:
                with contextlib.suppress(OSError):
                    tmp_path.unlink()
            raise

        logger.info(f"Saved {len(targets)} file(s) to {dest}")
        return targets


class _ChunkReader:
    """Reads exact byte counts from an iterator of chunks."""

    def __init__(self, chunks: Iterator[bytes]) -> None:
        self._chunks = chunks
        self._buffer = b""

    def read(self, size: int) -> Iterator[bytes]:
        remaining = size
        while remaining > 0:
            if not self._buffer:
                self._buffer = next(self._chunks, b"")
                if not self._buffer:
                    raise ArchiveError("badManifest", "Archive is shorter than its manifest")
            piece = self._buffer[:remaining]
            self._buffer = self._buffer[remaining:]
            remaining -= len(piece)
            yield piece

    def at_end(self) -> bool:
        """Consume the rest of the stream; True if no data was left.

        Draining the decrypting iterator is what authenticates the final
        record.
        """
        while not self._buffer:
            chunk = next(self._chunks, None)
            if chunk is None:
                return True
            self._buffer = chunk
        return False
