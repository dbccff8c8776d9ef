"""
Backoff strategies and the immutable retry policy they read from.
"""
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple


class BackoffStrategy(Enum):
    """How the delay grows between attempts."""
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    FIBONACCI = "fibonacci"
    CUSTOM = "custom"


# Multipliers for the fibonacci strategy; larger attempts reuse the last term
FIBONACCI_SEQUENCE: Tuple[int, ...] = (1, 1, 2, 3, 5, 8, 13, 21, 34, 55)

# Exponential jitter is drawn from [0, JITTER_RATIO * computed)
JITTER_RATIO = 0.1


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration. Immutable once constructed.

    max_attempts counts the initial try plus retries. Delays are in seconds.
    custom_delays is only read by the CUSTOM strategy.
    """
    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 10.0
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    custom_delays: Tuple[float, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {self.base_delay}")
        if self.max_delay < 0:
            raise ValueError(f"max_delay must be >= 0, got {self.max_delay}")
        if not isinstance(self.strategy, BackoffStrategy):
            object.__setattr__(self, "strategy", BackoffStrategy(self.strategy))
        # Accept any sequence but store a tuple so the policy stays immutable
        object.__setattr__(self, "custom_delays", tuple(self.custom_delays))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "max_attempts": self.max_attempts,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "strategy": self.strategy.value,
            "custom_delays": list(self.custom_delays),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        """
        Create from dictionary.

        Also accepts the retry-count form (max_retries), which excludes the
        initial attempt.
        """
        if "max_attempts" in data:
            max_attempts = data["max_attempts"]
        elif "max_retries" in data:
            max_attempts = data["max_retries"] + 1
        else:
            max_attempts = cls.max_attempts

        return cls(
            max_attempts=max_attempts,
            base_delay=data.get("base_delay", cls.base_delay),
            max_delay=data.get("max_delay", cls.max_delay),
            strategy=BackoffStrategy(data.get("strategy", BackoffStrategy.EXPONENTIAL.value)),
            custom_delays=tuple(data.get("custom_delays", ())),
        )


def _fibonacci_multiplier(attempt: int) -> int:
    return FIBONACCI_SEQUENCE[min(attempt, len(FIBONACCI_SEQUENCE) - 1)]


def _custom_delay(attempt: int, delays: Sequence[float], fallback: float) -> float:
    if attempt < len(delays):
        return delays[attempt]
    return fallback


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay in seconds to wait after a failed attempt.

    Args:
        attempt: Zero-based index of the attempt that just failed
        policy: Retry policy supplying strategy and bounds
        rng: Random source for exponential jitter (defaults to the module RNG)

    Returns:
        Delay clamped to [0, policy.max_delay]
    """
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")

    strategy = policy.strategy
    if strategy is BackoffStrategy.LINEAR:
        delay = policy.base_delay * (attempt + 1)
    elif strategy is BackoffStrategy.EXPONENTIAL:
        computed = policy.base_delay * (2 ** attempt)
        jitter = (rng or random).random() * JITTER_RATIO * computed
        delay = computed + jitter
    elif strategy is BackoffStrategy.FIBONACCI:
        delay = policy.base_delay * _fibonacci_multiplier(attempt)
    elif strategy is BackoffStrategy.CUSTOM:
        delay = _custom_delay(attempt, policy.custom_delays, policy.max_delay)
    else:
        raise ValueError(f"Unknown backoff strategy: {strategy!r}")

    return max(0.0, min(float(delay), policy.max_delay))
