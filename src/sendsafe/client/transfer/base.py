"""Base transfer class with cancellation support.

This module provides:
- CancelToken: thread-safe cancellation flag checked at chunk boundaries
- Transfer: lifecycle, listener registry and progress bookkeeping shared by
  uploads and downloads
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TypeVar

from sendsafe.client.types import CancelledError, Listener, TransferPhase, TransferState

logger = logging.getLogger(__name__)

T = TypeVar("T")

EVENTS = ("progress", "phase", "complete", "error")


class CancelToken:
    """Cooperative cancellation flag.

    May be set from any thread; the transfer notices it at its next chunk
    boundary.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Whether cancellation was requested."""
        return self._event.is_set()

    def check(self) -> None:
        """Raise CancelledError if cancellation was requested."""
        if self._event.is_set():
            raise CancelledError("Transfer cancelled")


class Transfer:
    """Shared lifecycle of uploads and downloads.

    State goes IDLE -> ACTIVE -> COMPLETED | CANCELLED | FAILED. Listeners
    registered with on() receive, in order:

    - ``progress``: ratio in [0, 1], never decreasing within a run
    - ``phase``: phase name (TransferPhase value)
    - ``complete``: the result of a successful run
    - ``error``: the exception of a failed run

    The last event of every run is ``phase`` with "complete", "cancelled" or
    "failed". Cancellation is not an error: it emits no ``error`` event and
    is logged at INFO.

    Usage:
        sender = FileSender(client)
        sender.on("progress", lambda ratio: print(f"{ratio:.0%}"))
        owned = sender.upload(archive)
    """

    transfer_type = "transfer"

    def __init__(self, cancel_token: CancelToken | None = None) -> None:
        self._state = TransferState.IDLE
        self._lock = threading.Lock()
        self._listeners: dict[str, list[Listener]] = {event: [] for event in EVENTS}
        self._progress = 0.0
        self.cancel_token = cancel_token or CancelToken()

    @property
    def state(self) -> TransferState:
        """Get current transfer state."""
        return self._state

    @property
    def progress(self) -> float:
        """Last reported progress ratio."""
        return self._progress

    def on(self, event: str, callback: Listener) -> None:
        """Subscribe to a lifecycle event.

        Raises:
            ValueError: If the event name is unknown.
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown event: {event}")
        self._listeners[event].append(callback)

    def cancel(self) -> bool:
        """Request cancellation.

        Returns:
            True if a run was in progress.
        """
        with self._lock:
            self.cancel_token.cancel()
            if self._state != TransferState.ACTIVE:
                return False
            logger.info(f"{self.transfer_type}: cancellation requested")
            return True

    def reset(self) -> None:
        """Return to IDLE so the transfer can be run again.

        Raises:
            RuntimeError: If a run is in progress.
        """
        with self._lock:
            if self._state == TransferState.ACTIVE:
                raise RuntimeError(f"Cannot reset an active {self.transfer_type}")
            self._state = TransferState.IDLE
            self._progress = 0.0
            self.cancel_token = CancelToken()

    def _emit(self, event: str, value: object) -> None:
        for callback in list(self._listeners[event]):
            callback(value)

    def _phase(self, phase: TransferPhase) -> None:
        self._emit("phase", phase.value)

    def _set_progress(self, done: int, total: int) -> None:
        ratio = min(max(done / total, 0.0), 1.0) if total > 0 else 1.0
        if ratio > self._progress:
            self._progress = ratio
            self._emit("progress", ratio)

    def _run(self, work: Callable[[], T]) -> T:
        """Run ``work`` through the lifecycle.

        Raises:
            RuntimeError: If a run is already in progress.
            CancelledError: If the run was cancelled.
            Exception: Whatever ``work`` raised.
        """
        with self._lock:
            if self._state == TransferState.ACTIVE:
                raise RuntimeError(f"{self.transfer_type} already running")
            self._state = TransferState.ACTIVE
            self._progress = 0.0

        start_time = time.time()
        try:
            result = work()
        except CancelledError:
            self._state = TransferState.CANCELLED
            logger.info(f"{self.transfer_type}: cancelled after {time.time() - start_time:.2f}s")
            self._phase(TransferPhase.CANCELLED)
            raise
        except Exception as e:
            self._state = TransferState.FAILED
            logger.error(f"{self.transfer_type} failed: {e}")
            self._emit("error", e)
            self._phase(TransferPhase.FAILED)
            raise

        self._state = TransferState.COMPLETED
        logger.info(f"{self.transfer_type}: completed in {time.time() - start_time:.2f}s")
        self._set_progress(1, 1)
        self._emit("complete", result)
        self._phase(TransferPhase.COMPLETE)
        return result
