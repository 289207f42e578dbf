"""Local persistent state for the sendsafe client.

This module provides:
- LocalStorage: SQLite-backed key-value store and owned-file record

Architecture:
    Owned files are cached in memory and written through to SQLite on every
    change. All access goes through one re-entrant lock so transfers running
    on worker threads and a background file-list sync never interleave
    writes.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sendsafe.client.owned_file import OwnedFile
from sendsafe.client.types import SyncResult

if TYPE_CHECKING:
    from sendsafe.client.api import SendClient

logger = logging.getLogger(__name__)

USER_KEY = "user"
TOTAL_UPLOADS_KEY = "totalUploads"
TOTAL_DOWNLOADS_KEY = "totalDownloads"


class LocalStorage:
    """SQLite-based local state.

    Holds small key-value entries (user record, login scratch values,
    counters) and the list of files owned by this client.
    """

    def __init__(self, db_path: Path | str) -> None:
        """Initialize local state database.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            self._db_path,
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")

        self._create_tables()
        self._files = self._load_files()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT
            );

            CREATE TABLE IF NOT EXISTS owned_files (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );
        """)

    def _load_files(self) -> dict[str, OwnedFile]:
        files: dict[str, OwnedFile] = {}
        rows = self._conn.execute(
            "SELECT id, data FROM owned_files ORDER BY created_at"
        ).fetchall()
        for row in rows:
            try:
                files[row["id"]] = OwnedFile.from_dict(json.loads(row["data"]))
            except (KeyError, ValueError) as e:
                logger.warning(f"Dropping unreadable file record {row['id']}: {e}")
                self._conn.execute("DELETE FROM owned_files WHERE id = ?", (row["id"],))
        return files

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    # === Key-value operations ===

    def get(self, key: str) -> str | None:
        """Get a stored value."""
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM kv WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        """Store a value."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                (key, value),
            )

    def remove(self, key: str) -> None:
        """Remove a stored value, or an owned file when ``key`` is a file id."""
        with self._lock:
            if key in self._files:
                self.remove_file(key)
            self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    @property
    def user(self) -> dict[str, Any]:
        """The persisted user record (empty when signed out)."""
        value = self.get(USER_KEY)
        if not value:
            return {}
        result: dict[str, Any] = json.loads(value)
        return result

    @user.setter
    def user(self, info: dict[str, Any]) -> None:
        self.set(USER_KEY, json.dumps(info))

    @property
    def total_uploads(self) -> int:
        """Number of uploads completed from this client."""
        return int(self.get(TOTAL_UPLOADS_KEY) or 0)

    @total_uploads.setter
    def total_uploads(self, value: int) -> None:
        self.set(TOTAL_UPLOADS_KEY, str(value))

    @property
    def total_downloads(self) -> int:
        """Number of downloads completed from this client."""
        return int(self.get(TOTAL_DOWNLOADS_KEY) or 0)

    @total_downloads.setter
    def total_downloads(self, value: int) -> None:
        self.set(TOTAL_DOWNLOADS_KEY, str(value))

    # === Owned file operations ===

    @property
    def files(self) -> list[OwnedFile]:
        """Owned files, oldest first."""
        with self._lock:
            return sorted(self._files.values(), key=lambda f: f.created_at)

    def get_file_by_id(self, file_id: str) -> OwnedFile | None:
        """Get an owned file by id."""
        with self._lock:
            return self._files.get(file_id)

    def add_file(self, file: OwnedFile) -> None:
        """Start tracking an owned file."""
        with self._lock:
            self._files[file.id] = file
            self.write_file(file)

    def write_file(self, file: OwnedFile) -> None:
        """Persist the current state of an owned file."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO owned_files (id, data, created_at) VALUES (?, ?, ?)",
                (file.id, json.dumps(file.to_dict()), file.created_at),
            )

    def remove_file(self, file_id: str) -> None:
        """Stop tracking an owned file."""
        with self._lock:
            self._files.pop(file_id, None)
            self._conn.execute("DELETE FROM owned_files WHERE id = ?", (file_id,))

    def clear_local_files(self) -> None:
        """Forget every owned file (used on logout)."""
        with self._lock:
            self._files.clear()
            self._conn.execute("DELETE FROM owned_files")

    # === Merge ===

    def merge(
        self,
        files: list[dict[str, Any]] | None = None,
        client: SendClient | None = None,
    ) -> SyncResult:
        """Reconcile local files with a remote manifest.

        Policy: union by id. Remote-only records are added; records known on
        both sides keep the local copy. Counters are refreshed from the
        service when a client is given, and a file the service no longer
        knows counts as used up. Expired files are dropped. The remote
        manifest is stale whenever a local file is missing from it or was
        dropped here.

        Args:
            files: Remote manifest records (manifest wire format).
            client: Service client for download counter refresh.

        Returns:
            SyncResult describing local and remote changes.
        """
        remote = files or []
        result = SyncResult()

        with self._lock:
            remote_ids: set[str] = set()
            for record in remote:
                try:
                    remote_file = OwnedFile.from_dict(record)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Ignoring malformed manifest record: {e}")
                    continue
                remote_ids.add(remote_file.id)
                if remote_file.id not in self._files:
                    self.add_file(remote_file)
                    result.incoming = True

            for file in self.files:
                if client is not None and file.update_download_count(client):
                    self.write_file(file)
                    result.download_count = True

                if file.expired:
                    logger.info(f"Removing expired file {file.id}")
                    self.remove_file(file.id)
                    result.outgoing = True
                elif file.id not in remote_ids:
                    result.outgoing = True

        return result
