"""Share link parsing.

URL Format:
    https://send.example.com/download/<file id>/#<secret key>

The secret key stays in the fragment so it is never sent to the server.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urlparse

from sendsafe.core.crypto import b64url_decode

_ID_PATTERN = re.compile(r"^[0-9A-Za-z_-]+$")
_DOWNLOAD_PATH = re.compile(r"^/download/(?P<id>[^/]+)/?$")


class InvalidLinkError(ValueError):
    """Raised when a share link is malformed."""


@dataclass
class ShareLink:
    """Parsed share link.

    Attributes:
        server_url: Scheme and host of the service.
        file_id: Server-side file identifier.
        secret_key: Base64url file secret from the fragment.
        raw_url: The original URL string.
    """

    server_url: str
    file_id: str
    secret_key: str
    raw_url: str

    @property
    def url(self) -> str:
        """The link without its fragment."""
        return f"{self.server_url}/download/{self.file_id}/"

    @classmethod
    def parse(cls, url: str) -> ShareLink:
        """Parse a share link.

        Args:
            url: The URL to parse.

        Returns:
            Parsed ShareLink.

        Raises:
            InvalidLinkError: If the scheme, path, id or secret is invalid.
        """
        if not url:
            raise InvalidLinkError("URL cannot be empty")

        parsed = urlparse(url.strip())
        if parsed.scheme not in ("http", "https"):
            raise InvalidLinkError(f"Invalid scheme: {parsed.scheme!r}")
        if not parsed.netloc:
            raise InvalidLinkError("Missing host in URL")

        match = _DOWNLOAD_PATH.match(parsed.path)
        if match is None:
            raise InvalidLinkError(f"Not a download link: {parsed.path}")
        file_id = match.group("id")
        if not _ID_PATTERN.match(file_id):
            raise InvalidLinkError(f"Invalid file id: {file_id!r}")

        secret_key = parsed.fragment
        if not secret_key:
            raise InvalidLinkError("Missing secret key in URL fragment")
        try:
            b64url_decode(secret_key)
        except ValueError as e:
            raise InvalidLinkError("Secret key is not valid base64") from e

        return cls(
            server_url=f"{parsed.scheme}://{parsed.netloc}",
            file_id=file_id,
            secret_key=secret_key,
            raw_url=url,
        )
