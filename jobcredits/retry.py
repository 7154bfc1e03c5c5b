"""
Retry with exponential backoff, and a circuit breaker.

Payment provider lookups go through both: transient HTTP failures are
retried with growing delays, and a provider that keeps failing trips the
breaker so a reconciliation sweep stops hammering it for the rest of the run.
"""

import functools
import time
from typing import Callable, Iterator, Optional, Tuple, Type


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""
    pass


class CircuitOpenError(Exception):
    """Raised when a call is blocked by an open circuit breaker."""
    pass


def backoff_delays(
    retries: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
) -> Iterator[float]:
    """Yield the sleep before each retry: base, base*k, base*k^2, ... capped at max_delay."""
    delay = base_delay
    for _ in range(retries):
        yield min(delay, max_delay)
        delay *= exponential_base


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable] = None,
    should_retry: Optional[Callable[[Exception], bool]] = None,
):
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_retries: Retries after the first call (0 = call once)
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay
        exponential_base: Multiplier applied to the delay after each retry
        exceptions: Exception types that may be retried
        on_retry: Optional callback(attempt, exception, delay) before sleeping
        should_retry: Optional predicate; a caught exception it rejects is
            re-raised immediately

    Raises:
        RetryError: From the last retryable failure once retries run out

    Example:
        @exponential_backoff(max_retries=3, exceptions=(requests.Timeout,))
        def fetch_session(session_id):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            delays = backoff_delays(max_retries, base_delay, max_delay, exponential_base)
            attempt = 0
            while True:
                attempt += 1
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if should_retry is not None and not should_retry(e):
                        raise
                    delay = next(delays, None)
                    if delay is None:
                        raise RetryError(f"Failed after {attempt} attempts: {e}") from e
                    if on_retry:
                        on_retry(attempt, e, delay)
                    time.sleep(delay)

        return wrapper
    return decorator


class CircuitBreaker:
    """
    Stops calling a dependency after repeated failures.

    CLOSED passes calls through and counts consecutive failures. Reaching
    failure_threshold moves to OPEN, where calls are refused with
    CircuitOpenError until recovery_timeout seconds have passed. The next
    call is then a HALF_OPEN trial: success closes the circuit, failure
    reopens it.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        expected_exception: Type[Exception] = Exception,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self._clock = clock

        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self.state = self.CLOSED

    def call(self, func: Callable, *args, **kwargs):
        """
        Call func unless the circuit is open.

        Raises:
            CircuitOpenError: While OPEN and the recovery timeout has not passed
            Whatever func raises, after counting it if it is expected_exception
        """
        if self.state == self.OPEN:
            wait = self.seconds_until_trial()
            if wait > 0:
                raise CircuitOpenError(f"Circuit breaker is OPEN. Retry after {wait:.0f}s")
            self.state = self.HALF_OPEN

        try:
            result = func(*args, **kwargs)
        except self.expected_exception:
            self._record_failure()
            raise
        self.reset()
        return result

    def seconds_until_trial(self) -> float:
        if self.opened_at is None:
            return 0
        return max(0.0, self.recovery_timeout - (self._clock() - self.opened_at))

    def _record_failure(self):
        self.failure_count += 1
        if self.state == self.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self.state = self.OPEN
            self.opened_at = self._clock()

    def reset(self):
        """Close the circuit and forget past failures."""
        self.failure_count = 0
        self.opened_at = None
        self.state = self.CLOSED


TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection",
    "temporary failure",
    "service unavailable",
    "database is locked",
    "429",
    "500",
    "502",
    "503",
    "504",
)

RETRYABLE_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


def is_transient_error(exception: Exception) -> bool:
    """Whether an error message looks like a network blip, overload or lock contention."""
    text = str(exception).lower()
    return any(marker in text for marker in TRANSIENT_MARKERS)


def should_retry_http_status(status_code: int) -> bool:
    """Request timeout, rate limiting and 5xx gateway/server errors are retryable."""
    return status_code in RETRYABLE_HTTP_STATUSES
