"""
Unit tests for RetryExecutor: attempt budget, backoff sequencing,
non-retryable failures, breaker composition and cancellation.
"""
import threading

import pytest

from resilience.backoff import BackoffStrategy, RetryPolicy
from resilience.circuit_breaker import CircuitBreaker, CircuitState
from resilience.errors import (
    CircuitOpenError,
    NetworkError,
    RetryCancelledError,
    UpstreamError,
    ValidationError,
)
from resilience.retry import RetryExecutor


class FlakyOperation:
    """Fails with the given errors in order, then returns result."""

    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.fixture
def linear_policy():
    return RetryPolicy(max_attempts=3, base_delay=0.1, max_delay=10.0, strategy=BackoffStrategy.LINEAR)


@pytest.fixture
def executor(linear_policy, sleeper, clock):
    return RetryExecutor(linear_policy, sleep=sleeper, clock=clock)


# =============================================================================
# Attempts and delays
# =============================================================================

def test_success_on_first_attempt_has_no_delay(executor, sleeper):
    operation = FlakyOperation([])
    assert executor.execute(operation) == "ok"
    assert operation.calls == 1
    assert sleeper.delays == []


def test_two_failures_then_success_uses_linear_delays(executor, sleeper):
    """Fails on attempts 0 and 1: waits 100ms then 200ms, returns success"""
    operation = FlakyOperation([NetworkError("down"), NetworkError("down")], result="forecast")
    assert executor.execute(operation, context="forecast") == "forecast"
    assert operation.calls == 3
    assert sleeper.delays == pytest.approx([0.1, 0.2])


def test_final_failure_raises_last_error(executor, sleeper):
    errors = [NetworkError("first"), UpstreamError("second"), NetworkError("last")]
    operation = FlakyOperation(errors)
    with pytest.raises(NetworkError, match="last"):
        executor.execute(operation)
    assert operation.calls == 3
    # No delay after the final attempt
    assert len(sleeper.delays) == 2


def test_validation_failure_is_not_retried(executor, sleeper):
    operation = FlakyOperation([ValidationError("bad city")])
    with pytest.raises(ValidationError):
        executor.execute(operation)
    assert operation.calls == 1
    assert sleeper.delays == []


def test_single_attempt_policy_never_sleeps(sleeper, clock):
    executor = RetryExecutor(RetryPolicy(max_attempts=1), sleep=sleeper, clock=clock)
    with pytest.raises(NetworkError):
        executor.execute(FlakyOperation([NetworkError("down")]))
    assert sleeper.delays == []


def test_custom_retryable_predicate(linear_policy, sleeper, clock):
    executor = RetryExecutor(linear_policy, retryable=lambda e: False, sleep=sleeper, clock=clock)
    operation = FlakyOperation([NetworkError("down")])
    with pytest.raises(NetworkError):
        executor.execute(operation)
    assert operation.calls == 1


# =============================================================================
# Retry counter
# =============================================================================

def test_retry_count_resets_after_success(executor):
    executor.execute(FlakyOperation([NetworkError("down")]))
    assert executor.retry_count == 0


def test_retry_count_reflects_failed_sequence(executor):
    with pytest.raises(NetworkError):
        executor.execute(FlakyOperation([NetworkError("x")] * 3))
    assert executor.retry_count == 2
    executor.reset()
    assert executor.retry_count == 0


# =============================================================================
# Breaker composition
# =============================================================================

def test_attempts_go_through_breaker(linear_policy, sleeper, clock):
    breaker = CircuitBreaker(failure_threshold=5, reset_timeout=60.0, clock=clock)
    executor = RetryExecutor(linear_policy, breaker=breaker, sleep=sleeper, clock=clock)

    executor.execute(FlakyOperation([NetworkError("a"), NetworkError("b")]))

    assert breaker.state is CircuitState.CLOSED
    assert breaker.consecutive_failures == 0


def test_open_circuit_stops_retrying(linear_policy, sleeper, clock):
    """Breaker opens mid-sequence; CircuitOpenError ends it without more calls"""
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout=60.0, clock=clock)
    executor = RetryExecutor(
        RetryPolicy(max_attempts=5, base_delay=0.1, strategy=BackoffStrategy.LINEAR),
        breaker=breaker,
        sleep=sleeper,
        clock=clock,
    )
    operation = FlakyOperation([NetworkError("x")] * 5)

    with pytest.raises(CircuitOpenError):
        executor.execute(operation)

    assert operation.calls == 2
    assert breaker.state is CircuitState.OPEN


# =============================================================================
# Cancellation and deadlines
# =============================================================================

def test_cancel_token_set_before_start(executor):
    token = threading.Event()
    token.set()
    operation = FlakyOperation([])
    with pytest.raises(RetryCancelledError):
        executor.execute(operation, cancel_token=token)
    assert operation.calls == 0


def test_cancel_during_backoff_raises_cancelled_not_last_error(linear_policy):
    token = threading.Event()

    def operation():
        token.set()
        raise NetworkError("down")

    executor = RetryExecutor(linear_policy)
    with pytest.raises(RetryCancelledError) as exc_info:
        executor.execute(operation, cancel_token=token)
    assert isinstance(exc_info.value.__cause__, NetworkError)


def test_cancel_during_final_attempt_raises_cancelled(sleeper, clock):
    """Token set while the last attempt runs: cancelled, not exhausted"""
    token = threading.Event()
    executor = RetryExecutor(RetryPolicy(max_attempts=2, base_delay=0.0), sleep=sleeper, clock=clock)
    calls = []

    def operation():
        calls.append(1)
        if len(calls) == 2:
            token.set()
        raise NetworkError("down")

    with pytest.raises(RetryCancelledError) as exc_info:
        executor.execute(operation, cancel_token=token)
    assert len(calls) == 2
    assert isinstance(exc_info.value.__cause__, NetworkError)


def test_deadline_passing_during_final_attempt_raises_cancelled(sleeper, clock):
    executor = RetryExecutor(RetryPolicy(max_attempts=1), sleep=sleeper, clock=clock)

    def operation():
        clock.advance(5.0)
        raise NetworkError("slow and down")

    with pytest.raises(RetryCancelledError):
        executor.execute(operation, timeout=1.0)


def test_timeout_stops_scheduling_attempts(sleeper, clock):
    policy = RetryPolicy(max_attempts=10, base_delay=1.0, strategy=BackoffStrategy.LINEAR)
    executor = RetryExecutor(policy, sleep=sleeper, clock=clock)
    operation = FlakyOperation([NetworkError("x")] * 10)

    with pytest.raises(RetryCancelledError):
        executor.execute(operation, timeout=2.5)

    # Attempts at t=0 and t=1; the 2s delay would overrun the deadline
    assert operation.calls == 2
    assert clock.now - 1_000_000.0 == pytest.approx(2.5)
