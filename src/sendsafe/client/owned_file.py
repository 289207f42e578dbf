"""Files owned by the current user.

An OwnedFile is created when an upload completes and is kept in the local
store and in the encrypted file-list manifest. Its dictionary form (camelCase
keys) is the manifest wire format.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sendsafe.client.keychain import Keychain
from sendsafe.client.link import ShareLink
from sendsafe.client.retry import retry_with_backoff
from sendsafe.client.types import APIError, NetworkError, NotFoundError
from sendsafe.core.config import DEFAULT_DOWNLOAD_LIMIT, DEFAULT_EXPIRE_SECONDS

if TYPE_CHECKING:
    from sendsafe.client.api import SendClient

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


@dataclass
class OwnedFile:
    """A file uploaded by the current user.

    Attributes:
        id: Server-side file identifier.
        url: Share link including the ``#secret`` fragment.
        name: File name (or archive name for multi-file uploads).
        size: Plaintext size in bytes.
        secret_key: Base64url file secret.
        owner_token: Token authorizing owner operations.
        created_at: Upload time (ms since epoch).
        expires_at: Expiry time (ms since epoch).
        time_limit: Lifetime requested at upload, in seconds.
        dlimit: Number of downloads allowed.
        dtotal: Number of downloads so far.
        has_password: Whether a password protects the file.
        manifest: Archive manifest ({"files": [...]}).
        time: Upload duration in milliseconds.
        speed: Upload speed in bytes per second.
        type: MIME type, or "send-archive".
        nonce: Last authentication nonce seen for this file.
    """

    id: str
    url: str
    name: str
    size: int
    secret_key: str
    owner_token: str
    created_at: int = field(default_factory=now_ms)
    expires_at: int = 0
    time_limit: int = DEFAULT_EXPIRE_SECONDS
    dlimit: int = DEFAULT_DOWNLOAD_LIMIT
    dtotal: int = 0
    has_password: bool = False
    manifest: dict[str, Any] = field(default_factory=dict)
    time: int = 0
    speed: float = 0.0
    type: str = ""
    nonce: str | None = None
    password: str | None = field(default=None, repr=False, compare=False)
    keychain: Keychain = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        """Derive the keychain and default the expiry from the time limit."""
        self.keychain = Keychain(self.secret_key, self.nonce)
        if not self.expires_at:
            self.expires_at = self.created_at + self.time_limit * 1000

    @property
    def expired(self) -> bool:
        """Whether the download limit is used up or the file timed out."""
        return self.dtotal >= self.dlimit or now_ms() > self.expires_at

    def set_password(
        self,
        password: str,
        client: SendClient,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        """Protect the file with a password.

        The auth key is re-derived from the password and registered with the
        service. Network failures are retried with backoff; re-sending the
        same key is harmless. On failure the previous state is restored.
        """
        previous_key = self.keychain.auth_key
        self.password = password
        self.has_password = True
        try:
            self.keychain.set_password(password, ShareLink.parse(self.url).url)
            retry_with_backoff(
                lambda: client.set_password(self.id, self.owner_token, self.keychain),
                sleep=sleep or time.sleep,
            )
        except Exception:
            self.password = None
            self.has_password = False
            self.keychain.auth_key = previous_key
            raise
        logger.info(f"Password set for {self.id}")

    def delete(self, client: SendClient) -> None:
        """Delete the file from the service."""
        client.delete_file(self.id, self.owner_token)
        logger.info(f"Deleted {self.id}")

    def change_limit(
        self,
        dlimit: int,
        client: SendClient,
        bearer_token: str | None = None,
    ) -> bool:
        """Change the download limit.

        Returns:
            True if the limit changed.
        """
        if self.dlimit == dlimit:
            return False
        client.set_params(self.id, self.owner_token, {"dlimit": dlimit}, bearer_token)
        self.dlimit = dlimit
        return True

    def update_download_count(self, client: SendClient) -> bool:
        """Refresh download counters from the service.

        A file the service no longer knows is marked as used up, which makes
        it expired. Other service or network failures keep the previous
        counters.

        Returns:
            True if the counter or the limit changed.
        """
        old_total, old_limit = self.dtotal, self.dlimit
        try:
            info = client.file_info(self.id, self.owner_token)
            self.dtotal = int(info["dtotal"])
            self.dlimit = int(info["dlimit"])
        except NotFoundError:
            logger.info(f"{self.id} is gone from the service")
            self.dtotal = self.dlimit
        except (APIError, NetworkError) as e:
            logger.warning(f"Could not refresh download count of {self.id}: {e}")
        return old_total != self.dtotal or old_limit != self.dlimit

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the manifest wire format."""
        return {
            "id": self.id,
            "url": self.url,
            "name": self.name,
            "size": self.size,
            "type": self.type,
            "manifest": self.manifest,
            "time": self.time,
            "speed": self.speed,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "secretKey": self.secret_key,
            "ownerToken": self.owner_token,
            "dlimit": self.dlimit,
            "dtotal": self.dtotal,
            "hasPassword": self.has_password,
            "timeLimit": self.time_limit,
            "nonce": self.keychain.nonce,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OwnedFile:
        """Create from a manifest record."""
        return cls(
            id=data["id"],
            url=data["url"],
            name=data["name"],
            size=int(data["size"]),
            secret_key=data["secretKey"],
            owner_token=data["ownerToken"],
            created_at=int(data.get("createdAt") or now_ms()),
            expires_at=int(data.get("expiresAt") or 0),
            time_limit=int(data.get("timeLimit", DEFAULT_EXPIRE_SECONDS)),
            dlimit=int(data.get("dlimit", DEFAULT_DOWNLOAD_LIMIT)),
            dtotal=int(data.get("dtotal", 0)),
            has_password=bool(data.get("hasPassword", False)),
            manifest=dict(data.get("manifest") or {}),
            time=int(data.get("time", 0)),
            speed=float(data.get("speed", 0.0)),
            type=data.get("type", ""),
            nonce=data.get("nonce"),
        )
