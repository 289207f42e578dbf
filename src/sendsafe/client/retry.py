"""Backoff for idempotent owner requests interrupted by the network."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from sendsafe.client.types import NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_with_backoff(
    func: Callable[[], T],
    max_retries: int = 3,
    initial_backoff: float = 1.0,
    max_backoff: float = 30.0,
    retryable: tuple[type[Exception], ...] = (NetworkError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` until it succeeds, doubling the wait after each failure.

    Only ``retryable`` exceptions are retried. Once ``max_retries`` retries
    have failed the last exception propagates.
    """
    backoff = initial_backoff
    failures = 0
    while True:
        try:
            return func()
        except retryable as e:
            failures += 1
            if failures > max_retries:
                logger.error(f"Giving up after {failures} attempts: {e}")
                raise
            logger.warning(f"Attempt {failures} failed ({e}), retrying in {backoff:.1f}s")
            sleep(backoff)
            backoff = min(backoff * 2, max_backoff)
