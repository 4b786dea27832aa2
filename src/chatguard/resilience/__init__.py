"""Resilience kernel: retry, circuit breaker, rate limiting, timeouts, fallbacks.

Every call to an unreliable external service goes through this package.

Public API
----------
- :func:`retry` / :class:`RetryPolicy`: exponential back-off
- :class:`CircuitBreaker`: per-dependency fail-fast state machine
- :class:`RateLimiter`: token bucket; :class:`SharedRateLimiter`: cross-process budget
- :func:`with_timeout`, :func:`resilient`, :func:`graceful`
- :class:`DependencyGuard`: one dependency's full resilience profile
"""

from chatguard.resilience.breaker import CircuitBreaker, CircuitBreakerState, CircuitState
from chatguard.resilience.errors import (
    ChatGuardError,
    CircuitOpenError,
    DependencyError,
    OperationTimeoutError,
    RateLimitedError,
)
from chatguard.resilience.rate_limiter import RateLimiter, RateLimitResult, SharedRateLimiter
from chatguard.resilience.retry import RetryPolicy, retry
from chatguard.resilience.wrappers import DependencyGuard, graceful, resilient, with_timeout

__all__ = [
    "ChatGuardError",
    "CircuitBreaker",
    "CircuitBreakerState",
    "CircuitOpenError",
    "CircuitState",
    "DependencyError",
    "DependencyGuard",
    "OperationTimeoutError",
    "RateLimitResult",
    "RateLimitedError",
    "RateLimiter",
    "RetryPolicy",
    "SharedRateLimiter",
    "graceful",
    "resilient",
    "retry",
    "with_timeout",
]
