"""
Unit tests for the CircuitBreaker state machine.
"""
import threading

import pytest

from resilience.circuit_breaker import CircuitBreaker, CircuitState
from resilience.errors import CircuitOpenError, UpstreamError


class CountingOperation:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.fail:
            raise UpstreamError("upstream 503", status=503)
        return "ok"


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(failure_threshold=3, reset_timeout=30.0, name="weather", clock=clock)


def _fail(breaker, times=1):
    for _ in range(times):
        with pytest.raises(UpstreamError):
            breaker.execute(CountingOperation(fail=True))


# =============================================================================
# CLOSED
# =============================================================================

def test_starts_closed(breaker):
    assert breaker.state is CircuitState.CLOSED
    assert breaker.consecutive_failures == 0
    assert breaker.opened_at is None


def test_success_returns_result_and_stays_closed(breaker):
    assert breaker.execute(lambda: 42) == 42
    assert breaker.state is CircuitState.CLOSED


def test_failures_below_threshold_stay_closed(breaker):
    _fail(breaker, 2)
    assert breaker.state is CircuitState.CLOSED
    assert breaker.consecutive_failures == 2


def test_success_resets_failure_count(breaker):
    _fail(breaker, 2)
    breaker.execute(lambda: "ok")
    assert breaker.consecutive_failures == 0
    _fail(breaker, 2)
    assert breaker.state is CircuitState.CLOSED


# =============================================================================
# OPEN
# =============================================================================

def test_threshold_failures_open_circuit(breaker, clock):
    _fail(breaker, 3)
    assert breaker.state is CircuitState.OPEN
    assert breaker.opened_at == clock.now


def test_open_circuit_fails_fast_without_invoking(breaker, clock):
    _fail(breaker, 3)
    clock.advance(29.9)

    operation = CountingOperation()
    with pytest.raises(CircuitOpenError):
        breaker.execute(operation)

    assert operation.calls == 0
    assert breaker.state is CircuitState.OPEN
    assert not breaker.allows_request()


# =============================================================================
# HALF_OPEN
# =============================================================================

def test_trial_success_closes_circuit(breaker, clock):
    _fail(breaker, 3)
    clock.advance(30.0)
    assert breaker.allows_request()

    operation = CountingOperation()
    assert breaker.execute(operation) == "ok"

    assert operation.calls == 1
    assert breaker.state is CircuitState.CLOSED
    assert breaker.consecutive_failures == 0


def test_trial_failure_reopens_with_new_timestamp(breaker, clock):
    _fail(breaker, 3)
    clock.advance(31.0)

    _fail(breaker, 1)

    assert breaker.state is CircuitState.OPEN
    assert breaker.opened_at == clock.now
    with pytest.raises(CircuitOpenError):
        breaker.execute(CountingOperation())


def test_trial_enters_half_open_before_invoking(breaker, clock):
    _fail(breaker, 3)
    clock.advance(30.0)
    seen = []

    breaker.execute(lambda: seen.append(breaker.state))

    assert seen == [CircuitState.HALF_OPEN]


# =============================================================================
# Calls that finish after the state changed
# =============================================================================

def _start_slow_call(breaker, succeed=True):
    """Admit a call while CLOSED and hold it until released."""
    admitted = threading.Event()
    release = threading.Event()
    outcome = []

    def operation():
        admitted.set()
        release.wait(timeout=2.0)
        if not succeed:
            raise UpstreamError("late failure", status=503)
        return "late"

    def run():
        try:
            outcome.append(breaker.execute(operation))
        except UpstreamError as e:
            outcome.append(e)

    thread = threading.Thread(target=run)
    thread.start()
    assert admitted.wait(timeout=2.0)
    return thread, release, outcome


def test_late_success_does_not_close_open_circuit(clock):
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=30.0, clock=clock)
    thread, release, outcome = _start_slow_call(breaker, succeed=True)

    _fail(breaker, 1)
    assert breaker.state is CircuitState.OPEN

    release.set()
    thread.join(timeout=2.0)

    assert outcome == ["late"]
    assert breaker.state is CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        breaker.execute(CountingOperation())


def test_late_failure_does_not_count_while_open(clock):
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=30.0, clock=clock)
    thread, release, outcome = _start_slow_call(breaker, succeed=False)

    _fail(breaker, 1)
    opened_at = breaker.opened_at
    clock.advance(10.0)

    release.set()
    thread.join(timeout=2.0)

    assert isinstance(outcome[0], UpstreamError)
    assert breaker.consecutive_failures == 1
    assert breaker.opened_at == opened_at


# =============================================================================
# Stats and validation
# =============================================================================

def test_stats_snapshot(breaker):
    _fail(breaker, 3)
    stats = breaker.get_stats().to_dict()
    assert stats["name"] == "weather"
    assert stats["state"] == "open"
    assert stats["consecutiveFailures"] == 3
    assert stats["failureThreshold"] == 3


@pytest.mark.parametrize("kwargs", [
    {"failure_threshold": 0},
    {"reset_timeout": -1.0},
])
def test_rejects_invalid_configuration(kwargs):
    with pytest.raises(ValueError):
        CircuitBreaker(**kwargs)
