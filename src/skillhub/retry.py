from __future__ import annotations

import errno
import logging
import subprocess
import time
from typing import Callable, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY_S = 0.3
DEFAULT_FACTOR = 3.0

TRANSIENT_ERROR_CODES = {
    "ECONNRESET",
    "ECONNREFUSED",
    "ETIMEDOUT",
    "EAI_AGAIN",
    "ENOTFOUND",
    "ESOCKETTIMEDOUT",
    "ERR_SOCKET_CONNECTION_TIMEOUT",
    "ABORT_ERR",
    "ERR_STREAM_PREMATURE_CLOSE",
}

TRANSIENT_ERRNOS = {
    errno.ECONNRESET,
    errno.ECONNREFUSED,
    errno.ETIMEDOUT,
    errno.ECONNABORTED,
    errno.EPIPE,
}

_TRANSIENT_MESSAGE_HINTS = (
    "timeout",
    "timed out",
    "network",
    "socket hang up",
    "temporarily unavailable",
    "econnreset",
)


class RetryError(RuntimeError):
    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


def is_transient_error(error: BaseException) -> bool:
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "status", None)
    if isinstance(status, int) and not isinstance(status, bool):
        return status == 429 or status >= 500

    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, subprocess.TimeoutExpired)):
        return True

    code = getattr(error, "code", None)
    if isinstance(code, str) and code in TRANSIENT_ERROR_CODES:
        return True
    if isinstance(error, OSError) and error.errno in TRANSIENT_ERRNOS:
        return True

    message = str(error).lower()
    return any(hint in message for hint in _TRANSIENT_MESSAGE_HINTS)


def retry_call(
    fn: Callable[[], T],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay_s: float = DEFAULT_INITIAL_DELAY_S,
    factor: float = DEFAULT_FACTOR,
    should_retry: Callable[[BaseException], bool] = is_transient_error,
    label: str | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``fn`` until it succeeds, retrying transient failures with exponential backoff.

    Non-transient errors (or the last attempt) raise RetryError chained to the
    original exception; the message reports how many attempts were made.
    """
    delay_s = initial_delay_s
    attempt = 1
    while True:
        try:
            return fn()
        except Exception as e:  # noqa: BLE001 - classified below, re-raised as RetryError
            can_retry = attempt < max_attempts and should_retry(e)
            if not can_retry:
                prefix = f"{label} failed" if label else "Operation failed"
                raise RetryError(f"{prefix} after {attempt} attempt(s): {e}", attempts=attempt) from e
            logger.debug("%s: attempt %d failed (%s); retrying in %.2fs", label or "operation", attempt, e, delay_s)
            sleep(delay_s)
            delay_s *= factor
            attempt += 1
