"""Synchronization of the owned-file list with the account.

The account's manifest is stored by the service only as ciphertext under the
file-list key. A sync downloads and decrypts it, merges it into local
storage, and uploads the merged list when the remote copy is stale.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from sendsafe.client.types import APIError, AuthError, NetworkError, SyncResult
from sendsafe.core.ece import AuthenticationError, decrypt_bytes, encrypt_bytes

if TYPE_CHECKING:
    from sendsafe.client.api import SendClient
    from sendsafe.client.storage import LocalStorage
    from sendsafe.client.user import User

logger = logging.getLogger(__name__)


class FileListSync:
    """Reconciles local owned files with the account's remote manifest."""

    def __init__(self, user: User, storage: LocalStorage, client: SendClient) -> None:
        self._user = user
        self._storage = storage
        self._client = client

    def sync(self) -> SyncResult:
        """Synchronize once.

        Fetch and decrypt failures degrade to an empty remote list, except an
        expired access token (401), which ends the session.

        Returns:
            SyncResult with ``incoming``, ``outgoing`` and ``download_count``.
        """
        if not self._user.logged_in:
            return self._storage.merge()

        try:
            remote = self._fetch()
        except AuthError:
            logger.warning("Access token rejected, signing out")
            self._user.logout()
            return SyncResult(incoming=True)

        result = self._storage.merge(remote, self._client)
        if result.outgoing:
            self._push()

        logger.info(
            f"File list synced: incoming={result.incoming}, "
            f"outgoing={result.outgoing}, download_count={result.download_count}"
        )
        return result

    def _fetch(self) -> list[dict[str, Any]]:
        bearer = self._user.bearer_token or ""
        try:
            encrypted = self._client.get_file_list(bearer)
            data = json.loads(decrypt_bytes(encrypted, self._user.file_list_key))
        except AuthError:
            raise
        except (APIError, NetworkError) as e:
            logger.warning(f"Could not fetch file list: {e}")
            return []
        except (AuthenticationError, ValueError) as e:
            logger.warning(f"Could not read file list: {e}")
            return []

        files = data.get("files") if isinstance(data, dict) else data
        if not isinstance(files, list):
            logger.warning("File list has an unexpected shape, ignoring it")
            return []
        return files

    def _push(self) -> None:
        payload = json.dumps({"files": [f.to_dict() for f in self._storage.files]})
        encrypted = encrypt_bytes(payload.encode("utf-8"), self._user.file_list_key)
        try:
            self._client.set_file_list(self._user.bearer_token or "", encrypted)
        except (APIError, NetworkError) as e:
            logger.warning(f"Could not upload file list: {e}")
