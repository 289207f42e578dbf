"""Upload of an archive.

Encryption is pipelined with the network write: the request body is a
generator that reads the archive, encrypts it record by record and checks
for cancellation before every chunk, so neither the plaintext nor the
ciphertext is ever held in memory as a whole.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Iterator
from contextlib import closing
from typing import TYPE_CHECKING

from sendsafe.client.keychain import Keychain
from sendsafe.client.owned_file import OwnedFile, now_ms
from sendsafe.client.transfer.base import CancelToken, Transfer
from sendsafe.client.types import ArchiveError, TransferPhase
from sendsafe.core.ece import encrypted_size

if TYPE_CHECKING:
    from sendsafe.client.api import SendClient
    from sendsafe.client.archive import Archive

logger = logging.getLogger(__name__)


class FileSender(Transfer):
    """Encrypts and uploads one archive."""

    transfer_type = "upload"

    def __init__(self, client: SendClient, cancel_token: CancelToken | None = None) -> None:
        super().__init__(cancel_token)
        self._client = client
        self.keychain: Keychain | None = None

    def upload(self, archive: Archive, bearer_token: str | None = None) -> OwnedFile:
        """Upload an archive.

        Args:
            archive: Files and sharing options.
            bearer_token: Access token when signed in.

        Returns:
            The new OwnedFile.

        Raises:
            CancelledError: If cancelled; no OwnedFile is created.
            ArchiveError: If the archive is empty.
            APIError: If the service rejects the upload.
            NetworkError: On transport failure.
        """
        return self._run(lambda: self._upload(archive, bearer_token))

    def _upload(self, archive: Archive, bearer_token: str | None) -> OwnedFile:
        if not archive.files:
            raise ArchiveError("noFiles", "Nothing to upload")

        keychain = Keychain()
        self.keychain = keychain
        owner_token = secrets.token_hex(16)
        total = encrypted_size(archive.size)
        logger.info(f"Uploading {archive.num_files} file(s), {archive.size} bytes")

        self._phase(TransferPhase.ENCRYPTING)
        metadata = keychain.encrypt_metadata(archive.metadata())
        start = time.time()
        with closing(self._body(keychain.encrypt_stream(archive.stream()), total)) as body:
            result = self._client.upload_file(
                body,
                metadata,
                keychain.auth_key_b64(),
                owner_token,
                archive.time_limit,
                archive.dlimit,
                bearer_token,
            )
        elapsed = time.time() - start

        file_id = result["id"]
        share_url = result.get("url") or f"{self._client.server_url}/download/{file_id}/"
        created_at = now_ms()
        return OwnedFile(
            id=file_id,
            url=f"{share_url}#{keychain.secret_key}",
            name=archive.name,
            size=archive.size,
            secret_key=keychain.secret_key,
            owner_token=result.get("owner") or owner_token,
            created_at=created_at,
            expires_at=created_at + archive.time_limit * 1000,
            time_limit=archive.time_limit,
            dlimit=archive.dlimit,
            manifest=archive.manifest,
            time=int(elapsed * 1000),
            speed=archive.size / elapsed if elapsed > 0 else 0.0,
            type=archive.type,
            nonce=keychain.nonce,
        )

    def _body(self, chunks: Iterator[bytes], total: int) -> Iterator[bytes]:
        with closing(chunks):
            sent = 0
            for i, chunk in enumerate(chunks):
                self.cancel_token.check()
                if i == 0:
                    self._phase(TransferPhase.UPLOADING)
                yield chunk
                sent += len(chunk)
                logger.debug(f"Sent {sent}/{total} bytes")
                self._set_progress(sent, total)
            self.cancel_token.check()
