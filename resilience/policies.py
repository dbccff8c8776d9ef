"""
Per-category retry policies and the dispatcher that applies them.
"""
import threading
import logging
from typing import Callable, Dict, List, Optional, TypeVar, Union

from .backoff import BackoffStrategy, RetryPolicy
from .circuit_breaker import CircuitBreaker
from .errors import ErrorCategory
from .retry import RetryExecutor

logger = logging.getLogger("resilience.policies")

T = TypeVar("T")

CategoryLabel = Union[ErrorCategory, str]

# Category used when a label has no registered policy
FALLBACK_CATEGORY = ErrorCategory.NETWORK.value

DEFAULT_POLICIES: Dict[str, RetryPolicy] = {
    # Network errors - exponential backoff
    ErrorCategory.NETWORK.value: RetryPolicy(
        max_attempts=4,
        base_delay=1.0,
        max_delay=10.0,
        strategy=BackoffStrategy.EXPONENTIAL,
    ),
    # Upstream API errors - linear backoff
    ErrorCategory.UPSTREAM.value: RetryPolicy(
        max_attempts=3,
        base_delay=2.0,
        max_delay=10.0,
        strategy=BackoffStrategy.LINEAR,
    ),
    # Rate limits - hand-tuned table
    ErrorCategory.RATE_LIMITED.value: RetryPolicy(
        max_attempts=6,
        base_delay=1.0,
        max_delay=30.0,
        strategy=BackoffStrategy.CUSTOM,
        custom_delays=(1.0, 2.0, 5.0, 10.0, 30.0),
    ),
}


def _label(category: CategoryLabel) -> str:
    if isinstance(category, ErrorCategory):
        return category.value
    return category


class PolicyRegistry:
    """
    Maps error-category labels to retry policies.

    Seeded with DEFAULT_POLICIES. Re-registering a label replaces its policy.
    """

    def __init__(self, policies: Optional[Dict[CategoryLabel, RetryPolicy]] = None):
        self._lock = threading.Lock()
        self._policies: Dict[str, RetryPolicy] = dict(DEFAULT_POLICIES)
        for category, policy in (policies or {}).items():
            self._policies[_label(category)] = policy

    def register(self, category: CategoryLabel, policy: RetryPolicy) -> None:
        with self._lock:
            self._policies[_label(category)] = policy
        logger.debug(f"Registered retry policy for {_label(category)}: {policy}")

    def get_policy(self, category: CategoryLabel) -> RetryPolicy:
        """Policy for a category, falling back to the network-failure policy."""
        with self._lock:
            policy = self._policies.get(_label(category))
            if policy is None:
                policy = self._policies[FALLBACK_CATEGORY]
            return policy

    def categories(self) -> List[str]:
        with self._lock:
            return list(self._policies.keys())


class PolicyDispatcher:
    """
    Runs operations under the retry policy registered for an error category.

    A fresh RetryExecutor is built per call; an optional breaker is shared
    across calls so repeated failures trip it regardless of category.

    Usage:
        dispatcher = PolicyDispatcher()
        data = dispatcher.execute(fetch, ErrorCategory.RATE_LIMITED, context="forecast")
    """

    def __init__(
        self,
        registry: Optional[PolicyRegistry] = None,
        breaker: Optional[CircuitBreaker] = None,
        executor_factory: Callable[..., RetryExecutor] = RetryExecutor,
    ):
        self.registry = registry or PolicyRegistry()
        self.breaker = breaker
        self._executor_factory = executor_factory

    def register_policy(self, category: CategoryLabel, policy: RetryPolicy) -> None:
        self.registry.register(category, policy)

    def build_executor(self, category: CategoryLabel) -> RetryExecutor:
        policy = self.registry.get_policy(category)
        return self._executor_factory(policy=policy, breaker=self.breaker)

    def execute(
        self,
        operation: Callable[[], T],
        error_category: CategoryLabel = ErrorCategory.NETWORK,
        context: str = "",
        cancel_token: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> T:
        executor = self.build_executor(error_category)
        logger.debug(
            f"Dispatching {context or 'operation'} with {_label(error_category)} policy "
            f"({executor.policy.strategy.value}, max_attempts={executor.policy.max_attempts})"
        )
        return executor.execute(
            operation,
            context=context,
            cancel_token=cancel_token,
            timeout=timeout,
        )
