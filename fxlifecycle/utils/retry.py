"""
Lightweight retry utility with capped exponential backoff.

Only transient collaborator I/O (broker session expiry, rate limiting)
is retried.  The position state machine itself never retries.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Tuple, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

MAX_DELAY_SECONDS = 30.0


def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    max_retries: int = 3,
    backoff_factor: float = 0.5,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    max_delay: float = MAX_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """Call `func`, retrying on `retry_on` with exponential backoff.

    Parameters
    ----------
    func : callable
        Function to call.
    max_retries : int
        Number of retry attempts before the last error is re‑raised.
    backoff_factor : float
        Initial sleep duration in seconds; doubles each retry.
    retry_on : tuple of exception types
        Exceptions that trigger a retry; anything else propagates at once.
    max_delay : float
        Upper bound on a single sleep.
    sleep : callable
        Sleep function, replaceable in tests.
    """
    delay = backoff_factor
    attempt = 0
    while True:
        try:
            return func(*args, **kwargs)
        except retry_on as exc:
            attempt += 1
            if attempt > max_retries:
                logger.error("Retry exhausted after %s attempts: %s", attempt - 1, exc)
                raise
            logger.warning("Retrying attempt %s/%s after error: %s", attempt, max_retries, exc)
            sleep(min(delay, max_delay))
            delay *= 2

