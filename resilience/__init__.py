"""
Resilience layer for calls to an unreliable upstream service: a TTL/LRU cache,
backoff policies, a retry executor, a circuit breaker and per-category
retry dispatch.
"""
from .backoff import BackoffStrategy, RetryPolicy, compute_delay
from .cache import CacheStore, InMemoryKeyValueStore, KeyValueStore, SQLiteKeyValueStore
from .circuit_breaker import CircuitBreaker, CircuitState, CircuitStats
from .errors import (
    AuthenticationError,
    CacheDestroyedError,
    CircuitOpenError,
    ErrorCategory,
    NetworkError,
    PermissionDeniedError,
    RateLimitedError,
    ResilienceError,
    RetryCancelledError,
    UpstreamError,
    ValidationError,
    classify_error,
    is_retryable,
)
from .policies import DEFAULT_POLICIES, PolicyDispatcher, PolicyRegistry
from .retry import RetryExecutor

__all__ = [
    # Cache
    "CacheStore",
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "SQLiteKeyValueStore",
    # Backoff
    "BackoffStrategy",
    "RetryPolicy",
    "compute_delay",
    # Retry / breaker
    "RetryExecutor",
    "CircuitBreaker",
    "CircuitState",
    "CircuitStats",
    # Policies
    "DEFAULT_POLICIES",
    "PolicyRegistry",
    "PolicyDispatcher",
    # Errors
    "ErrorCategory",
    "ResilienceError",
    "NetworkError",
    "UpstreamError",
    "ValidationError",
    "AuthenticationError",
    "PermissionDeniedError",
    "RateLimitedError",
    "CircuitOpenError",
    "CacheDestroyedError",
    "RetryCancelledError",
    "classify_error",
    "is_retryable",
]
