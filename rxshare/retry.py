"""Bounded exponential backoff for transient store failures."""

from __future__ import annotations

import time
from typing import Callable, TypeVar

import structlog

from rxshare.errors import TransientStoreError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

BACKOFF_INITIAL = 0.05
BACKOFF_MULTIPLIER = 2.0
BACKOFF_MAX = 1.0
MAX_ATTEMPTS = 3


def calculate_backoff(attempt: int) -> float:
    delay = BACKOFF_INITIAL * (BACKOFF_MULTIPLIER ** (attempt - 1))
    return min(delay, BACKOFF_MAX)


def retry_transient(
    operation: str,
    func: Callable[[], T],
    *,
    attempts: int = MAX_ATTEMPTS,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` retrying :class:`TransientStoreError` up to ``attempts`` times.

    ``func`` must run its own transaction so a failed attempt leaves nothing
    behind.  The last error propagates unchanged.
    """

    attempt = 1
    while True:
        try:
            return func()
        except TransientStoreError:
            if attempt >= attempts:
                logger.warning("transient_retry_exhausted", operation=operation, attempts=attempt)
                raise
            delay = calculate_backoff(attempt)
            logger.info("transient_retry", operation=operation, attempt=attempt, retry_in=delay)
            sleep(delay)
            attempt += 1


__all__ = ["calculate_backoff", "retry_transient"]
