"""
Bounded retry with exponential backoff keyed to the error class.

Explicit throttling signals back off longer than generic transient failures;
anything else is not retried. Used inside workers around the editing
capability's slow native operations (open, save).
"""

from __future__ import annotations

import errno
import logging
import time
from typing import Any, Callable, Optional

from ..config import RetryConfig
from ..errors import DocumentError, ThrottledError, TransientInfrastructureError

logger = logging.getLogger("m365_link_repair.engine.retry")

THROTTLED = "throttled"
TRANSIENT = "transient"
PERMANENT = "permanent"

_TRANSIENT_ERRNOS = {errno.EAGAIN, errno.EBUSY, errno.ETIMEDOUT, errno.EINTR}
# Windows sharing/lock violations surface as PermissionError with these winerrors
_TRANSIENT_WINERRORS = {32, 33}

_THROTTLE_MARKERS = ("throttl", "429", "retry later", "call was rejected", "server busy", "too many requests")
_TRANSIENT_MARKERS = ("timed out", "timeout", "temporarily", "busy", "locked by", "try again")


class RetryExhausted(DocumentError):
    """All attempts failed; the last error is surfaced as the unit's failure."""

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            operation,
            f"failed after {attempts} attempts: {type(last_error).__name__}: {last_error}",
        )


def classify_error(error: BaseException) -> str:
    """Classify an exception as throttled, transient or permanent."""
    if isinstance(error, ThrottledError):
        return THROTTLED
    if isinstance(error, (TransientInfrastructureError, TimeoutError)):
        return TRANSIENT
    if isinstance(error, OSError):
        if getattr(error, "winerror", None) in _TRANSIENT_WINERRORS:
            return TRANSIENT
        if error.errno in _TRANSIENT_ERRNOS:
            return TRANSIENT
        return PERMANENT

    msg = str(error).lower()
    if any(m in msg for m in _THROTTLE_MARKERS):
        return THROTTLED
    if any(m in msg for m in _TRANSIENT_MARKERS):
        return TRANSIENT
    return PERMANENT


def compute_delay(config: RetryConfig, error_class: str, attempt: int,
                  retry_after: Optional[float] = None) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    base = config.throttled_backoff if error_class == THROTTLED else config.transient_backoff
    delay = base * (config.multiplier ** (attempt - 1))
    if retry_after is not None:
        delay = max(delay, retry_after)
    return min(delay, config.max_backoff)


def call_with_retry(
    fn: Callable[..., Any],
    *args: Any,
    operation: str = "operation",
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> Any:
    """
    Run ``fn`` and retry throttled/transient failures up to
    ``config.max_attempts`` total attempts.

    Raises:
        RetryExhausted: retryable failures persisted through every attempt.
        Exception: a permanent failure, re-raised unchanged on first sight.
    """
    config = config or RetryConfig()
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            error_class = classify_error(e)
            if error_class == PERMANENT:
                raise
            if attempt >= config.max_attempts:
                raise RetryExhausted(operation, attempt, e) from e
            delay = compute_delay(config, error_class, attempt, getattr(e, "retry_after", None))
            logger.warning(
                f"{operation}: {error_class} failure ({type(e).__name__}: {e}). "
                f"Retry {attempt}/{config.max_attempts - 1} in {delay:.1f}s"
            )
            sleep(delay)
