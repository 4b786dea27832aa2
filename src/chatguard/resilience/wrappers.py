"""Composable wrappers: timeout, retry + breaker composition, graceful fallback."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from chatguard import metrics
from chatguard.logging import get_logger
from chatguard.resilience.breaker import CircuitBreaker
from chatguard.resilience.errors import OperationTimeoutError, RateLimitedError
from chatguard.resilience.rate_limiter import RateLimiter
from chatguard.resilience.retry import RetryPolicy, retry

log = get_logger("chatguard.resilience.wrappers")

T = TypeVar("T")


async def with_timeout(
    op: Callable[[], Awaitable[T]],
    seconds: float,
    *,
    name: str = "operation",
) -> T:
    """Run *op*, turning a hang longer than *seconds* into a regular failure.

    Raises:
        OperationTimeoutError: *op* did not finish in time.
    """
    try:
        return await asyncio.wait_for(op(), timeout=seconds)
    except TimeoutError as e:
        raise OperationTimeoutError(
            f"{name} timed out after {seconds:.1f}s", dependency=name
        ) from e


async def resilient(
    op: Callable[[], Awaitable[T]],
    *,
    retry_policy: RetryPolicy | None = None,
    breaker: CircuitBreaker | None = None,
    timeout: float | None = None,
) -> T:
    """Wrap *op* with timeout, then breaker, then retry (innermost first).

    Each retry attempt passes through the breaker, so an opened circuit stops
    the remaining attempts (an open circuit is not retryable unless the
    policy lists :class:`~chatguard.resilience.errors.CircuitOpenError`).
    """
    wrapped: Callable[[], Awaitable[T]] = op

    if timeout is not None:
        timed_inner = wrapped

        async def timed() -> T:
            return await with_timeout(
                timed_inner, timeout, name=breaker.name if breaker else "operation"
            )

        wrapped = timed

    if breaker is not None:
        guarded_inner = wrapped

        async def guarded() -> T:
            return await breaker.execute(guarded_inner)

        wrapped = guarded

    if retry_policy is not None:
        return await retry(wrapped, retry_policy)
    return await wrapped()


async def graceful(
    op: Callable[[], Awaitable[T]],
    fallback: T,
    *,
    log_error: bool = True,
    name: str = "operation",
) -> T:
    """Run *op*; on any failure return *fallback* instead of raising."""
    try:
        return await op()
    except Exception as e:
        if log_error:
            log.warning(
                "graceful_degradation",
                operation=name,
                error=str(e),
                error_type=type(e).__name__,
            )
        return fallback


class DependencyGuard:
    """Resilience profile for one external dependency.

    Bundles the dependency's circuit breaker, optional token bucket, retry
    policy and timeout so that every call site applies them identically.
    """

    def __init__(
        self,
        name: str,
        *,
        breaker: CircuitBreaker | None = None,
        limiter: RateLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = None,
        wait_for_budget: bool = False,
    ) -> None:
        """Initialize the guard.

        Args:
            name: Dependency name.
            breaker: Breaker for this dependency (one is created if omitted).
            limiter: Optional token bucket charged once per call.
            retry_policy: Retry configuration; ``None`` disables retries.
            timeout: Per-attempt timeout in seconds.
            wait_for_budget: Wait for limiter tokens instead of failing fast
                with :class:`RateLimitedError`.
        """
        self.name = name
        self.breaker = breaker or CircuitBreaker(name)
        self.limiter = limiter
        self.retry_policy = retry_policy
        self.timeout = timeout
        self._wait_for_budget = wait_for_budget

    async def call(self, op: Callable[[], Awaitable[T]]) -> T:
        """Run *op* through the limiter, then timeout/breaker/retry.

        Every call is counted in the API metrics, labelled with the outcome.
        """
        if self.limiter is not None:
            if self._wait_for_budget:
                await self.limiter.acquire()
            elif not self.limiter.try_acquire():
                metrics.record_api_error(self.name, RateLimitedError.__name__)
                raise RateLimitedError(
                    f"{self.name} request budget exhausted", dependency=self.name
                )

        start = time.perf_counter()
        try:
            result = await resilient(
                op,
                retry_policy=self.retry_policy,
                breaker=self.breaker,
                timeout=self.timeout,
            )
        except Exception as e:
            metrics.record_api_call(self.name, "error", time.perf_counter() - start)
            metrics.record_api_error(self.name, type(e).__name__)
            raise
        metrics.record_api_call(self.name, "success", time.perf_counter() - start)
        return result
