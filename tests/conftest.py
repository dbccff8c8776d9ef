"""
Shared fixtures: a manually advanced clock and a recording sleep.
"""
import pytest


class FakeClock:
    """Callable time source that only moves when told to."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Records requested delays and advances the clock instead of sleeping."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.delays = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        self.clock.advance(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper(clock):
    return RecordingSleep(clock)
