"""Exceptions raised by the resilience layer."""

from __future__ import annotations


class ChatGuardError(Exception):
    """Base exception for ChatGuard."""


class DependencyError(ChatGuardError):
    """An external dependency could not serve a request."""

    def __init__(self, message: str, dependency: str = "unknown") -> None:
        super().__init__(message)
        self.dependency = dependency


class OperationTimeoutError(DependencyError, TimeoutError):
    """A guarded call did not complete within its time budget."""


class CircuitOpenError(DependencyError):
    """The circuit breaker for a dependency is open; the call was not attempted."""

    def __init__(self, dependency: str, retry_after: float) -> None:
        super().__init__(
            f"Circuit breaker [{dependency}] is OPEN - service unavailable",
            dependency=dependency,
        )
        self.retry_after = retry_after


class RateLimitedError(DependencyError):
    """No request budget is left for a dependency."""
