"""Retry policy for flaky HTTP calls.

Transient (retried):
- connection refused/reset
- timeouts
- transport failures while sending the request or reading its body

Never retried:
- any HTTP status; the response is handed back to the caller as-is
- anything else
"""

import random
import threading
import time
from typing import Callable, Optional, Tuple, TypeVar

import requests

from mxtester.errors import TesterError

T = TypeVar("T")

# The backoff of attempt `n` is `n * n * uniform(*BASE_INTERVAL_SECONDS)`.
BASE_INTERVAL_SECONDS: Tuple[float, float] = (0.3, 1.0)

TRANSIENT_ERRORS = (
    requests.ConnectionError,
    requests.Timeout,
    requests.exceptions.ChunkedEncodingError,
)


def is_transient_error(error: Exception) -> bool:
    if isinstance(error, requests.HTTPError):
        return False
    return isinstance(error, TRANSIENT_ERRORS)


def backoff_seconds(attempt: int, uniform: Callable[[float, float], float] = random.uniform) -> float:
    return attempt * attempt * uniform(*BASE_INTERVAL_SECONDS)


def auto_retry(
    send: Callable[[], T],
    max_attempts: int,
    logger,
    sleep: Callable[[float], None] = time.sleep,
    uniform: Optional[Callable[[float, float], float]] = None,
    cancelled: Optional[threading.Event] = None,
) -> T:
    """Call `send` until it succeeds, backing off on transient errors.

    Setting `cancelled` stops the loop before the next attempt.

    Raises:
        The last error, once `max_attempts` is reached or if it is not transient.
        TesterError, if `cancelled` is set.
    """
    uniform = uniform or random.uniform
    attempt = 1
    while True:
        if cancelled is not None and cancelled.is_set():
            raise TesterError(f"auto_retry: cancelled before attempt {attempt}")
        try:
            result = send()
        except Exception as exc:
            logger.debug("auto_retry: attempt %s/%s failed: %r", attempt, max_attempts, exc)
            if attempt >= max_attempts or not is_transient_error(exc):
                logger.debug("auto_retry: giving up")
                raise
            duration = backoff_seconds(attempt, uniform)
            attempt += 1
            logger.debug("auto_retry: sleeping %.3fs", duration)
            sleep(duration)
            continue
        logger.debug("auto_retry: success after %s attempt(s)", attempt)
        return result
