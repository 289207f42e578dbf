"""Shared configuration classes for sendsafe.

This module defines the service endpoints, OAuth settings and upload limits
used by the client components.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

DEFAULT_SERVER_URL = "https://send.example.com"
DEFAULT_EXPIRE_SECONDS = 86400  # 1 day
DEFAULT_DOWNLOAD_LIMIT = 1
KEY_SCOPE = "https://identity.example.com/apps/send"

GB = 1024 * 1024 * 1024


@dataclass
class AuthConfig:
    """OAuth client settings for the identity provider.

    Attributes:
        client_id: Public OAuth client identifier.
        authorization_endpoint: URL the user is sent to for login.
        token_endpoint: URL exchanging an authorization code for tokens.
        userinfo_endpoint: URL returning the profile for a bearer token.
        key_scope: Scope under which the provider delivers the bundle key.
    """

    client_id: str = ""
    authorization_endpoint: str = ""
    token_endpoint: str = ""
    userinfo_endpoint: str = ""
    key_scope: str = KEY_SCOPE


@dataclass
class Limits:
    """Upload limits for anonymous and signed-in users."""

    anon_max_file_size: int = 1 * GB
    anon_max_expire_seconds: int = 86400
    anon_max_downloads: int = 1
    max_file_size: int = int(2.5 * GB)
    max_expire_seconds: int = 7 * 86400
    max_downloads: int = 100
    max_files_per_archive: int = 64
    max_archives_per_user: int = 16


@dataclass
class ServiceConfig:
    """Configuration for connecting to a send service.

    Attributes:
        server_url: Base URL of the service (e.g., "https://send.example.com").
        timeout: Request/connection timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
        auth: OAuth settings for signed-in use.
        limits: Upload limits.
    """

    server_url: str = DEFAULT_SERVER_URL
    timeout: float = 30.0
    verify_ssl: bool = True
    auth: AuthConfig = field(default_factory=AuthConfig)
    limits: Limits = field(default_factory=Limits)

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS."""
        return self.server_url.startswith("https://")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServiceConfig:
        """Build a config from the JSON settings file contents.

        Unknown keys are ignored so older config files keep loading.
        """
        auth_data = dict(data.get("auth") or {})
        auth = AuthConfig(
            **{k: str(v) for k, v in auth_data.items() if k in AuthConfig.__dataclass_fields__}
        )
        limits_data = dict(data.get("limits") or {})
        limits = Limits(
            **{k: int(v) for k, v in limits_data.items() if k in Limits.__dataclass_fields__}
        )
        return cls(
            server_url=str(data.get("server_url", DEFAULT_SERVER_URL)),
            timeout=float(data.get("timeout", 30.0)),
            verify_ssl=bool(data.get("verify_ssl", True)),
            auth=auth,
            limits=limits,
        )
