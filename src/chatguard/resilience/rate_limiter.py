"""Rate limiting for outbound calls.

:class:`RateLimiter` is a process-local token bucket refilled lazily on
access.  :class:`SharedRateLimiter` keeps a fixed-window budget in the shared
counter store so that every process draws from the same allowance.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from chatguard.logging import get_logger

if TYPE_CHECKING:
    from chatguard.storage.base import CounterStore

log = get_logger("chatguard.resilience.rate_limiter")


class RateLimiter:
    """Token bucket rate limiter.

    ``tokens_per_interval`` tokens are added every ``interval`` seconds, up to
    ``max_tokens`` (defaults to ``tokens_per_interval``).  The bucket starts
    full.
    """

    def __init__(
        self,
        tokens_per_interval: float,
        interval: float = 1.0,
        *,
        max_tokens: float | None = None,
        name: str = "anonymous",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if tokens_per_interval <= 0 or interval <= 0:
            raise ValueError("tokens_per_interval and interval must be positive")
        self.name = name
        self._rate = tokens_per_interval
        self._interval = interval
        self._capacity = max_tokens if max_tokens is not None else tokens_per_interval
        self._clock = clock
        self._tokens = float(self._capacity)
        self._last_refill = clock()

    @property
    def capacity(self) -> float:
        """Maximum number of tokens the bucket holds."""
        return self._capacity

    @property
    def available_tokens(self) -> int:
        """Whole tokens currently available."""
        self._refill()
        return math.floor(self._tokens)

    def try_acquire(self, tokens: float = 1) -> bool:
        """Take *tokens* if available right now.

        Returns:
            ``True`` if the tokens were debited, ``False`` otherwise.
        """
        self._check_request(tokens)
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False

    async def acquire(self, tokens: float = 1) -> None:
        """Wait until *tokens* are available, then debit them."""
        self._check_request(tokens)
        self._refill()
        while self._tokens < tokens:
            wait = (tokens - self._tokens) / self._rate * self._interval
            log.debug("rate_limiter_waiting", limiter=self.name, wait=round(wait, 3))
            await asyncio.sleep(wait)
            self._refill()
        self._tokens -= tokens

    def _check_request(self, tokens: float) -> None:
        if tokens <= 0:
            raise ValueError(f"token request must be positive, got: {tokens}")
        if tokens > self._capacity:
            raise ValueError(
                f"Cannot acquire {tokens} tokens from a bucket of capacity {self._capacity}"
            )

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            added = elapsed / self._interval * self._rate
            self._tokens = min(self._tokens + added, float(self._capacity))
            self._last_refill = now


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a shared budget check."""

    allowed: bool
    current: int
    limit: int
    reset_in: float


class SharedRateLimiter:
    """Fixed-window request budget shared by every process.

    Each check atomically increments ``ratelimit:{action}:{key}`` and sets its
    expiry on the first hit of a window.  When the store is unreachable the
    check fails open.
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        action: str,
        limit: int,
        window_seconds: int,
    ) -> None:
        """Initialize the limiter.

        Args:
            store: Shared counter store.
            action: Budget name, e.g. ``"virustotal"`` or ``"command"``.
            limit: Calls allowed per window.
            window_seconds: Window length in seconds.
        """
        if limit < 1 or window_seconds < 1:
            raise ValueError("limit and window_seconds must be at least 1")
        self._store = store
        self._action = action
        self._limit = limit
        self._window = window_seconds

    def _key(self, key: str) -> str:
        return f"ratelimit:{self._action}:{key}"

    async def check(self, key: str = "global") -> RateLimitResult:
        """Consume one unit of *key*'s budget if any is left."""
        try:
            current, ttl = await self._store.increment_with_ttl(self._key(key), self._window)
        except Exception as e:
            log.error("shared_rate_limit_check_failed", action=self._action, key=key, error=str(e))
            return RateLimitResult(
                allowed=True, current=0, limit=self._limit, reset_in=float(self._window)
            )
        reset_in = float(ttl) if ttl > 0 else float(self._window)
        return RateLimitResult(
            allowed=current <= self._limit,
            current=current,
            limit=self._limit,
            reset_in=reset_in,
        )

    async def acquire(self, key: str = "global") -> RateLimitResult:
        """Wait for the window to reset until *key* has budget left."""
        while True:
            result = await self.check(key)
            if result.allowed:
                return result
            log.debug(
                "shared_rate_limit_waiting",
                action=self._action,
                key=key,
                reset_in=result.reset_in,
            )
            await asyncio.sleep(min(result.reset_in, float(self._window)))

    async def reset(self, key: str = "global") -> None:
        """Clear *key*'s budget."""
        try:
            await self._store.delete(self._key(key))
        except Exception as e:
            log.error("shared_rate_limit_reset_failed", action=self._action, key=key, error=str(e))
