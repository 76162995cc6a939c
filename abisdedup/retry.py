"""
Bounded retry and circuit breaking for transient failures.

Only failures that may go away on their own are retried: the ABIS channel
refusing a payload and the database being locked or unreachable. Protocol
errors (unknown request, wrong state) surface on the first attempt.
"""

import functools
import threading
import time
from typing import Callable, Optional, Tuple, Type

from .errors import DedupError
from .logger import get_logger

logger = get_logger()

# Substrings of driver and HTTP error messages that indicate a transient cause
TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection",
    "temporary failure",
    "service unavailable",
    "database is locked",
    "500",
    "502",
    "503",
    "429",
)

RETRYABLE_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class RetryError(Exception):
    """All attempts failed; ``__cause__`` is the last failure."""


class CircuitOpenError(Exception):
    """The breaker is open and the call was not attempted."""


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    retry_if: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable] = None,
):
    """
    Decorator retrying a call with exponentially growing pauses.

    Args:
        max_retries: Attempts after the first one (0 = no retries)
        base_delay: Pause before the first retry, in seconds
        max_delay: Upper bound for any single pause
        exponential_base: Factor applied to the pause after each retry
        exceptions: Exception types that are candidates for a retry
        retry_if: Predicate on a caught exception; when it returns False
            the exception is re-raised at once
        on_retry: Callback(attempt, exception, delay) before each pause

    Raises:
        RetryError: Every attempt failed
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            delay = base_delay
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if retry_if is not None and not retry_if(e):
                        raise
                    if attempt >= max_retries:
                        raise RetryError(f"Failed after {attempt + 1} attempts: {e}") from e
                    attempt += 1
                    pause = min(delay, max_delay)
                    if on_retry:
                        on_retry(attempt, e, pause)
                    time.sleep(pause)
                    delay *= exponential_base

        return wrapper
    return decorator


class CircuitBreaker:
    """
    Stops calling the ABIS channel after repeated failures.

    CLOSED passes calls through. After ``failure_threshold`` consecutive
    failures the breaker is OPEN and rejects calls for ``recovery_timeout``
    seconds; the next call is then let through HALF_OPEN and its outcome
    closes or re-opens the breaker. Safe to share between threads.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        expected_exception: Type[Exception] = Exception,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception

        self._lock = threading.Lock()
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self.state = self.CLOSED

    def call(self, func: Callable, *args, **kwargs):
        """
        Run ``func`` unless the breaker is open.

        Raises:
            CircuitOpenError: Breaker is open
            Exception: Whatever ``func`` raised
        """
        with self._lock:
            if self.state == self.OPEN:
                remaining = self.recovery_timeout - (time.monotonic() - self.opened_at)
                if remaining > 0:
                    raise CircuitOpenError(
                        f"Circuit breaker is OPEN, ABIS channel unavailable. Retry after {remaining:.0f}s"
                    )
                self.state = self.HALF_OPEN

        try:
            result = func(*args, **kwargs)
        except self.expected_exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def _record_success(self) -> None:
        with self._lock:
            if self.state != self.CLOSED:
                logger.info("Circuit breaker closed")
            self.failure_count = 0
            self.opened_at = None
            self.state = self.CLOSED

    def _record_failure(self) -> None:
        with self._lock:
            self.failure_count += 1
            if self.state == self.HALF_OPEN or self.failure_count >= self.failure_threshold:
                if self.state != self.OPEN:
                    logger.warning("Circuit breaker opened", failures=self.failure_count,
                                   recovery_seconds=self.recovery_timeout)
                self.state = self.OPEN
                self.opened_at = time.monotonic()

    def reset(self) -> None:
        with self._lock:
            self.failure_count = 0
            self.opened_at = None
            self.state = self.CLOSED


def is_transient_error(exception: Exception) -> bool:
    """
    True when retrying ``exception`` may succeed.

    Dedup errors answer through their kind; anything else is judged by its
    message (timeouts, dropped connections, 5xx, SQLite lock contention).
    """
    if isinstance(exception, DedupError):
        return exception.retryable
    message = str(exception).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


def should_retry_http_status(status_code: int) -> bool:
    return status_code in RETRYABLE_HTTP_STATUSES
