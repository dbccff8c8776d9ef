"""
Retry executor with pluggable backoff and an optional circuit breaker.
"""
import random
import threading
import time
import logging
from typing import Callable, Optional, TypeVar

from .backoff import RetryPolicy, compute_delay
from .circuit_breaker import CircuitBreaker
from .errors import RetryCancelledError, is_retryable

logger = logging.getLogger("resilience.retry")

T = TypeVar("T")


class RetryExecutor:
    """
    Repeatedly invokes an operation until it succeeds, fails with a
    non-retryable error, or the policy's attempt budget runs out.

    When a breaker is supplied, every attempt goes through it, so an open
    circuit ends the sequence immediately with CircuitOpenError.

    Usage:
        executor = RetryExecutor(RetryPolicy(max_attempts=3))
        data = executor.execute(lambda: fetch_forecast(city), context="forecast")
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        breaker: Optional[CircuitBreaker] = None,
        retryable: Callable[[BaseException], bool] = is_retryable,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the executor.

        Args:
            policy: Retry policy (defaults to RetryPolicy())
            breaker: Optional circuit breaker wrapped around each attempt
            retryable: Predicate deciding whether a failure is retried
            sleep: Used for backoff delays when no cancel token is given
            clock: Monotonic time source for call deadlines
            rng: Random source for exponential jitter
        """
        self.policy = policy or RetryPolicy()
        self.breaker = breaker
        self._retryable = retryable
        self._sleep = sleep
        self._clock = clock
        self._rng = rng
        self._retry_count = 0
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings, breaker: Optional[CircuitBreaker] = None) -> "RetryExecutor":
        """Build an executor using the default retry settings."""
        policy = RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )
        return cls(policy=policy, breaker=breaker)

    @property
    def retry_count(self) -> int:
        """Retries made by the current (or last failed) sequence."""
        with self._lock:
            return self._retry_count

    def reset(self) -> None:
        with self._lock:
            self._retry_count = 0

    def execute(
        self,
        operation: Callable[[], T],
        context: str = "",
        cancel_token: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> T:
        """
        Run the operation under the retry policy.

        Args:
            operation: Zero-argument callable to invoke
            context: Label for log messages
            cancel_token: Event that, once set, stops further attempts
            timeout: Overall deadline in seconds for the whole sequence

        Returns:
            The operation's result from the first successful attempt

        Raises:
            RetryCancelledError: If cancelled or past the deadline before
                the sequence finished
            Exception: The last error observed, when it is non-retryable
                or the final attempt fails
        """
        deadline = self._clock() + timeout if timeout is not None else None
        label = context or getattr(operation, "__name__", "operation")
        last_error: Optional[BaseException] = None

        for attempt in range(self.policy.max_attempts):
            self._check_cancelled(cancel_token, deadline, label, last_error)

            with self._lock:
                self._retry_count = attempt
            if attempt > 0:
                logger.info(f"Retry attempt {attempt} for {label}")

            try:
                result = self._invoke(operation)
            except Exception as e:
                last_error = e

                if attempt == self.policy.max_attempts - 1:
                    break

                if not self._retryable(e):
                    logger.info(f"Not retrying {label}: {type(e).__name__}: {e}")
                    raise

                delay = compute_delay(attempt, self.policy, self._rng)
                logger.info(f"Attempt {attempt + 1} failed for {label} ({e}), retrying in {delay:.2f}s")
                self._pause(delay, cancel_token, deadline, label, last_error)
                continue

            with self._lock:
                self._retry_count = 0
            return result

        # Cancellation during the final attempt wins over exhaustion
        self._check_cancelled(cancel_token, deadline, label, last_error)
        logger.error(f"All {self.policy.max_attempts} attempts failed for {label}")
        raise last_error

    def _invoke(self, operation: Callable[[], T]) -> T:
        if self.breaker is not None:
            return self.breaker.execute(operation)
        return operation()

    def _check_cancelled(
        self,
        cancel_token: Optional[threading.Event],
        deadline: Optional[float],
        label: str,
        last_error: Optional[BaseException],
    ) -> None:
        if cancel_token is not None and cancel_token.is_set():
            raise RetryCancelledError(f"Retry of {label} was cancelled") from last_error
        if deadline is not None and self._clock() >= deadline:
            raise RetryCancelledError(f"Retry of {label} timed out") from last_error

    def _pause(
        self,
        delay: float,
        cancel_token: Optional[threading.Event],
        deadline: Optional[float],
        label: str,
        last_error: Optional[BaseException],
    ) -> None:
        """Wait out a backoff delay, waking early on cancellation or deadline."""
        if deadline is not None:
            remaining = deadline - self._clock()
            if remaining < delay:
                # The next attempt could not start before the deadline
                self._wait(max(0.0, remaining), cancel_token)
                raise RetryCancelledError(f"Retry of {label} timed out") from last_error

        if self._wait(delay, cancel_token):
            raise RetryCancelledError(f"Retry of {label} was cancelled") from last_error

    def _wait(self, delay: float, cancel_token: Optional[threading.Event]) -> bool:
        """Returns True if the wait ended because the token was set."""
        if cancel_token is None:
            self._sleep(delay)
            return False
        return cancel_token.wait(delay)
