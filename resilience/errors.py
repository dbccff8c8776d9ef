"""
Error taxonomy for the resilience layer.

Every error raised by this package carries an ErrorCategory. Foreign errors
(requests exceptions, builtin network errors, anything with a status code)
are mapped onto the same categories by classify_error().
"""
from enum import Enum
from typing import Optional

import requests


class ErrorCategory(Enum):
    """Categories of failure, used for retry decisions and policy lookup."""
    NETWORK = "network"
    UPSTREAM = "upstream"
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    RATE_LIMITED = "rate_limited"
    CIRCUIT_OPEN = "circuit_open"
    LIFECYCLE = "lifecycle"
    CANCELLED = "cancelled"
    UNCLASSIFIED = "unclassified"


# Never retried regardless of status
NON_RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.VALIDATION,
    ErrorCategory.AUTHENTICATION,
    ErrorCategory.PERMISSION,
    ErrorCategory.CIRCUIT_OPEN,
    ErrorCategory.LIFECYCLE,
    ErrorCategory.CANCELLED,
})


class ResilienceError(Exception):
    """Base class for all errors raised by this package."""
    category: ErrorCategory = ErrorCategory.UNCLASSIFIED

    def __init__(self, message: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class NetworkError(ResilienceError):
    category = ErrorCategory.NETWORK


class UpstreamError(ResilienceError):
    """API-level failure reported by the upstream service."""
    category = ErrorCategory.UPSTREAM


class ValidationError(ResilienceError):
    category = ErrorCategory.VALIDATION


class AuthenticationError(ResilienceError):
    category = ErrorCategory.AUTHENTICATION


class PermissionDeniedError(ResilienceError):
    category = ErrorCategory.PERMISSION


class RateLimitedError(ResilienceError):
    category = ErrorCategory.RATE_LIMITED

    def __init__(self, message: str = "", status: Optional[int] = 429):
        super().__init__(message, status)


class CircuitOpenError(ResilienceError):
    """Raised by a breaker that refuses to invoke its operation."""
    category = ErrorCategory.CIRCUIT_OPEN


class CacheDestroyedError(ResilienceError):
    """Operation attempted on a cache store after destroy()."""
    category = ErrorCategory.LIFECYCLE


class RetryCancelledError(ResilienceError):
    """A retry sequence was cancelled or ran past its deadline."""
    category = ErrorCategory.CANCELLED


def _status_of(error: BaseException) -> Optional[int]:
    """Extract an HTTP-like status from an error, if it carries one."""
    if isinstance(error, requests.HTTPError) and error.response is not None:
        return error.response.status_code

    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def classify_error(error: BaseException) -> ErrorCategory:
    """
    Map any exception onto an ErrorCategory.

    Order of precedence:
    1. Errors from this package keep their own category
    2. requests connection errors and timeouts, and builtin
       ConnectionError/TimeoutError, are network failures
    3. A status code decides the rest (401, 403, 429, other 4xx, 5xx)
    4. Everything else is unclassified
    """
    if isinstance(error, ResilienceError) and error.category != ErrorCategory.UNCLASSIFIED:
        return error.category

    if isinstance(error, (requests.ConnectionError, requests.Timeout)):
        return ErrorCategory.NETWORK
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorCategory.NETWORK

    status = _status_of(error)
    if status is None:
        return ErrorCategory.UNCLASSIFIED
    if status == 401:
        return ErrorCategory.AUTHENTICATION
    if status == 403:
        return ErrorCategory.PERMISSION
    if status == 429:
        return ErrorCategory.RATE_LIMITED
    if 400 <= status < 500:
        return ErrorCategory.VALIDATION
    if status >= 500:
        return ErrorCategory.UPSTREAM
    return ErrorCategory.UNCLASSIFIED


def is_retryable(error: BaseException) -> bool:
    """
    Decide whether a failed attempt should be retried.

    Named non-retryable categories are never retried. A 4xx status is not
    retried except 429. Network failures, 5xx, 429 and unclassified errors are.
    """
    if classify_error(error) in NON_RETRYABLE_CATEGORIES:
        return False

    status = _status_of(error)
    if status is not None and 400 <= status < 500 and status != 429:
        return False

    return True
