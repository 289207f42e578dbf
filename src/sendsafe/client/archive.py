"""Bundles of files selected for upload.

A multi-file upload is sent as the plain concatenation of its files, in
order, and the metadata carries a manifest listing each file's name, size
and type. The receiver cuts the decrypted stream back into files using the
manifest sizes.
"""

from __future__ import annotations

import logging
import mimetypes
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sendsafe.client.types import ArchiveError
from sendsafe.core.config import DEFAULT_DOWNLOAD_LIMIT, DEFAULT_EXPIRE_SECONDS

logger = logging.getLogger(__name__)

ARCHIVE_NAME = "Send-Archive.zip"
ARCHIVE_TYPE = "send-archive"
DEFAULT_TYPE = "application/octet-stream"
READ_SIZE = 64 * 1024


@dataclass
class ArchiveEntry:
    """One file of an archive.

    Attributes:
        path: Local path of the file.
        name: Name shown to recipients.
        size: Size in bytes when the file was added.
        type: MIME type.
    """

    path: Path
    name: str
    size: int
    type: str = DEFAULT_TYPE

    @classmethod
    def from_path(cls, path: Path | str) -> ArchiveEntry:
        """Describe a local file.

        Raises:
            ArchiveError: If the path is not a regular file.
        """
        path = Path(path)
        if not path.is_file():
            raise ArchiveError("notAFile", f"Not a file: {path}")
        mime_type, _ = mimetypes.guess_type(path.name)
        return cls(
            path=path,
            name=path.name,
            size=path.stat().st_size,
            type=mime_type or DEFAULT_TYPE,
        )

    def to_manifest(self) -> dict[str, Any]:
        """Manifest record of this entry."""
        return {"name": self.name, "size": self.size, "type": self.type}


@dataclass
class Archive:
    """Files selected for one upload, plus its sharing options.

    Attributes:
        files: Entries in upload order.
        password: Optional password applied once the upload completes.
        time_limit: Requested lifetime in seconds.
        dlimit: Requested number of downloads.
    """

    files: list[ArchiveEntry] = field(default_factory=list)
    password: str | None = None
    time_limit: int = DEFAULT_EXPIRE_SECONDS
    dlimit: int = DEFAULT_DOWNLOAD_LIMIT

    @property
    def name(self) -> str:
        """Upload name: the file's own name, or a generic archive name."""
        if len(self.files) == 1:
            return self.files[0].name
        return ARCHIVE_NAME

    @property
    def type(self) -> str:
        """Upload type: the file's MIME type, or the archive marker."""
        if len(self.files) == 1:
            return self.files[0].type
        return ARCHIVE_TYPE

    @property
    def size(self) -> int:
        """Total plaintext size."""
        return sum(entry.size for entry in self.files)

    @property
    def num_files(self) -> int:
        return len(self.files)

    @property
    def manifest(self) -> dict[str, Any]:
        """Manifest describing how to split the plaintext."""
        return {"files": [entry.to_manifest() for entry in self.files]}

    def metadata(self) -> dict[str, Any]:
        """Metadata sealed into the upload."""
        return {
            "name": self.name,
            "size": self.size,
            "type": self.type,
            "manifest": self.manifest,
        }

    def add_files(
        self,
        paths: Iterable[Path | str],
        max_size: int | None = None,
        max_files: int | None = None,
    ) -> None:
        """Add files, enforcing the caller's limits.

        Nothing is added when any limit would be exceeded.

        Raises:
            ArchiveError: ``tooManyFiles``, ``fileTooBig`` or ``notAFile``.
        """
        entries = [ArchiveEntry.from_path(p) for p in paths]
        if max_files is not None and len(self.files) + len(entries) > max_files:
            raise ArchiveError("tooManyFiles", f"At most {max_files} files per upload")
        new_size = self.size + sum(entry.size for entry in entries)
        if max_size is not None and new_size > max_size:
            raise ArchiveError("fileTooBig", f"Upload exceeds {max_size} bytes")
        self.files.extend(entries)

    def remove(self, name: str) -> None:
        """Remove the first entry with the given name."""
        for i, entry in enumerate(self.files):
            if entry.name == name:
                del self.files[i]
                return

    def clear(self) -> None:
        """Drop all files and reset the sharing options."""
        self.files = []
        self.password = None
        self.time_limit = DEFAULT_EXPIRE_SECONDS
        self.dlimit = DEFAULT_DOWNLOAD_LIMIT

    def stream(self, read_size: int = READ_SIZE) -> Iterator[bytes]:
        """Yield the concatenated content of all files.

        Raises:
            ArchiveError: If a file shrank since it was added, which would
                break the manifest.
        """
        for entry in self.files:
            remaining = entry.size
            with open(entry.path, "rb") as f:
                while remaining > 0:
                    data = f.read(min(read_size, remaining))
                    if not data:
                        raise ArchiveError("fileChanged", f"{entry.name} changed while uploading")
                    remaining -= len(data)
                    yield data


def manifest_entries(name: str, size: int, manifest: dict[str, Any]) -> list[dict[str, Any]]:
    """Files contained in a received upload.

    Single-file uploads may carry no manifest; they hold one file named after
    the upload.
    """
    files = manifest.get("files") if manifest else None
    if not files:
        return [{"name": name, "size": size}]
    entries = [{"name": str(f["name"]), "size": int(f["size"])} for f in files]
    if sum(e["size"] for e in entries) != size:
        raise ArchiveError("badManifest", "Manifest sizes do not match the upload size")
    return entries


def safe_file_name(name: str) -> str:
    """Reduce a received name to a single safe path component.

    Raises:
        ArchiveError: If the name tries to leave the destination directory.
    """
    parts = [part for part in name.replace("\\", "/").split("/") if part and part != "."]
    if ".." in parts:
        raise ArchiveError("unsafeName", f"Path traversal in file name: {name!r}")
    if not parts:
        raise ArchiveError("unsafeName", "File name is empty")
    base = parts[-1]
    if len(base) == 2 and base[1] == ":" and base[0].isalpha():
        raise ArchiveError("unsafeName", f"Drive letter as file name: {name!r}")
    return base
