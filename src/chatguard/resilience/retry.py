"""Exponential back-off retry for async operations."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from chatguard.logging import get_logger
from chatguard.resilience.errors import CircuitOpenError

log = get_logger("chatguard.resilience.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently to retry a failing operation.

    Delays are in seconds. ``retry_on`` lists the exception classes worth
    retrying; an empty tuple retries every :class:`Exception` except an open
    circuit.
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retry_on: tuple[type[BaseException], ...] = ()

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got: {self.max_attempts}")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Return the sleep before retrying after failed *attempt* (1-based)."""
        delay = self.initial_delay * self.backoff_multiplier ** (attempt - 1)
        return float(min(delay, self.max_delay))

    def is_retryable(self, error: BaseException) -> bool:
        """Return whether *error* should trigger another attempt."""
        if self.retry_on:
            return isinstance(error, self.retry_on)
        if isinstance(error, CircuitOpenError):
            return False
        return isinstance(error, Exception)


async def retry(
    op: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> T:
    """Run *op*, retrying retryable failures with exponential back-off.

    Args:
        op: Zero-argument coroutine factory; called once per attempt.
        policy: Retry configuration. Defaults to :class:`RetryPolicy`.
        on_retry: Called with ``(attempt, error)`` before each back-off sleep.

    Returns:
        The result of the first successful attempt.

    Raises:
        Exception: The last error, once it is not retryable or attempts are
            exhausted.
    """
    policy = policy or RetryPolicy()
    attempt = 1
    while True:
        try:
            return await op()
        except Exception as e:
            if not policy.is_retryable(e) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            log.warning(
                "retry_attempt",
                attempt=attempt,
                max_attempts=policy.max_attempts,
                error=str(e),
                error_type=type(e).__name__,
                delay=delay,
            )
            if on_retry is not None:
                on_retry(attempt, e)
            await asyncio.sleep(delay)
            attempt += 1
