"""Shared types and exceptions for the sendsafe client.

This module provides:
- SendError and its subclasses: the client error taxonomy
- SyncResult: outcome of a file-list synchronization
- TransferState, TransferPhase: lifecycle of uploads and downloads
- Listener: callback type for transfer events
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any


class SendError(Exception):
    """Base exception for client errors."""


class APIError(SendError):
    """The service answered with an error status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def code(self) -> str:
        """Status code as a string ("401", "404", ...), empty if unknown."""
        return str(self.status_code) if self.status_code is not None else ""


class AuthError(APIError):
    """Missing or invalid credential or password (401)."""


class NotFoundError(APIError):
    """Unknown or expired file (404)."""


class NetworkError(SendError):
    """Transport-level failure (connection refused, reset, timeout)."""


class CancelledError(SendError):
    """A transfer was cancelled by the user.

    This is a normal terminal state, not a failure.
    """


class StateMismatchError(SendError):
    """OAuth state returned by the provider does not match the stored one."""


class ArchiveError(SendError):
    """Files could not be added to an archive.

    Attributes:
        reason: Machine-readable reason ("tooManyFiles", "fileTooBig", "noFiles").
    """

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message or reason)
        self.reason = reason


@dataclass
class SyncResult:
    """Result of a file-list synchronization.

    Attributes:
        incoming: The local view changed (files added, or the session ended).
        outgoing: The remote manifest is stale and must be uploaded.
        download_count: A download counter or limit changed.
    """

    incoming: bool = False
    outgoing: bool = False
    download_count: bool = False


class TransferState(Enum):
    """Lifecycle state of a transfer."""

    IDLE = auto()
    ACTIVE = auto()
    COMPLETED = auto()
    CANCELLED = auto()
    FAILED = auto()


class TransferPhase(str, Enum):
    """Phase names delivered to ``phase`` listeners."""

    ENCRYPTING = "encrypting"
    UPLOADING = "uploading"
    DOWNLOADING = "downloading"
    DECRYPTING = "decrypting"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    FAILED = "failed"


# Type alias for transfer listeners
Listener = Callable[[Any], None]
