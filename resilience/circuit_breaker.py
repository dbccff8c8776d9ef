"""
Circuit breaker that fails fast while an upstream is judged unhealthy.

State machine:
- CLOSED: calls pass through; consecutive failures are counted
- OPEN: calls are refused with CircuitOpenError until reset_timeout elapses
- HALF_OPEN: one trial call decides between CLOSED and OPEN
"""
import threading
import time
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

from .errors import CircuitOpenError

logger = logging.getLogger("resilience.circuit_breaker")

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitStats:
    """Point-in-time snapshot of a breaker."""
    name: str
    state: CircuitState
    consecutive_failures: int
    failure_threshold: int
    reset_timeout: float
    opened_at: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutiveFailures": self.consecutive_failures,
            "failureThreshold": self.failure_threshold,
            "resetTimeout": self.reset_timeout,
            "openedAt": self.opened_at,
        }


class CircuitBreaker:
    """
    Wraps an operation and stops invoking it after repeated failures.

    State is only changed by the outcome of calls made through execute().
    The lock guards the state fields; the operation itself runs unlocked.

    Usage:
        breaker = CircuitBreaker(failure_threshold=5, reset_timeout=60.0)
        data = breaker.execute(lambda: fetch_forecast(city))
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the breaker.

        Args:
            failure_threshold: Consecutive failures that open the circuit
            reset_timeout: Seconds the circuit stays open before a trial call
            name: Label used in logs and errors
            clock: Monotonic time source (injectable for tests)
        """
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {failure_threshold}")
        if reset_timeout < 0:
            raise ValueError(f"reset_timeout must be >= 0, got {reset_timeout}")

        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        # Bumped on every transition; call outcomes only count within the
        # generation they were admitted in
        self._generation = 0

    @classmethod
    def from_settings(cls, settings, name: str = "default") -> "CircuitBreaker":
        """Build a breaker from a Settings object."""
        return cls(
            failure_threshold=settings.breaker_failure_threshold,
            reset_timeout=settings.breaker_reset_timeout_seconds,
            name=name,
        )

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    @property
    def opened_at(self) -> Optional[float]:
        with self._lock:
            return self._opened_at

    def allows_request(self) -> bool:
        """Whether a call made now would reach the operation. Does not change state."""
        with self._lock:
            if self._state is not CircuitState.OPEN:
                return True
            return self._reset_timeout_elapsed()

    def execute(self, operation: Callable[[], T]) -> T:
        """
        Run the operation through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open and the reset timeout
                has not elapsed (the operation is not invoked)
            Exception: Any error from the operation is propagated after
                being recorded as a failure
        """
        with self._lock:
            if self._state is CircuitState.OPEN:
                if self._reset_timeout_elapsed():
                    self._transition(CircuitState.HALF_OPEN)
                else:
                    raise CircuitOpenError(f"Circuit '{self.name}' is OPEN")
            generation = self._generation

        try:
            result = operation()
        except Exception:
            self._on_failure(generation)
            raise

        self._on_success(generation)
        return result

    def get_stats(self) -> CircuitStats:
        with self._lock:
            return CircuitStats(
                name=self.name,
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                failure_threshold=self.failure_threshold,
                reset_timeout=self.reset_timeout,
                opened_at=self._opened_at,
            )

    def _reset_timeout_elapsed(self) -> bool:
        return (
            self._opened_at is not None
            and self._clock() - self._opened_at >= self.reset_timeout
        )

    def _on_success(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                # Admitted under an earlier state; the outcome no longer counts
                return
            self._consecutive_failures = 0
            if self._state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED)

    def _on_failure(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._consecutive_failures += 1
            if self._state is CircuitState.HALF_OPEN:
                self._open()
            elif self._consecutive_failures >= self.failure_threshold:
                self._open()

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        # Caller holds the lock
        old_state = self._state
        self._state = new_state
        self._generation += 1
        logger.info(
            f"Circuit '{self.name}': {old_state.value} -> {new_state.value} "
            f"(failures={self._consecutive_failures})"
        )
