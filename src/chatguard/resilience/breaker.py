"""Circuit breaker for external dependencies.

One breaker guards one dependency (a reputation API, an intel platform, the
AI classifier) for the lifetime of the process.  State is deliberately
process-local: it reflects this process's view of the dependency's health.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TypeVar

from chatguard.logging import get_logger
from chatguard.resilience.errors import CircuitOpenError

log = get_logger("chatguard.resilience.breaker")

T = TypeVar("T")


class CircuitState(StrEnum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject calls
    HALF_OPEN = "half_open"  # Testing recovery


StateChangeCallback = Callable[[str, CircuitState, CircuitState], None]


@dataclass(frozen=True)
class CircuitBreakerState:
    """Point-in-time copy of a breaker's counters."""

    state: CircuitState
    failure_count: int
    success_count: int
    next_attempt_at: float


class CircuitBreaker:
    """Fail fast while a dependency is unhealthy.

    - **closed**: calls run; each counted failure increments
      ``failure_count`` and reaching ``failure_threshold`` opens the circuit.
      A success resets ``failure_count``.
    - **open**: calls raise :class:`CircuitOpenError` without running until
      ``timeout`` seconds have elapsed, then the circuit goes half-open.
    - **half_open**: one trial call runs at a time, concurrent calls are
      rejected.  ``success_threshold`` successful trial calls close the circuit,
      a counted failure reopens it immediately.

    Only exceptions matching ``failure_on`` count as failures.  Anything else
    propagates without touching the counters, so a permanent error from one
    bad request does not open the circuit for the whole dependency.
    """

    def __init__(
        self,
        name: str = "anonymous",
        *,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        timeout: float = 60.0,
        failure_on: tuple[type[BaseException], ...] = (Exception,),
        on_state_change: StateChangeCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the breaker.

        Args:
            name: Dependency name used in logs and errors.
            failure_threshold: Consecutive closed-state failures before opening.
            success_threshold: Half-open successes required to close.
            timeout: Seconds to stay open before allowing a trial call.
            failure_on: Exception types that count as dependency failures.
            on_state_change: Called with ``(name, old_state, new_state)`` on
                every transition.
            clock: Monotonic time source (seconds).
        """
        if failure_threshold < 1 or success_threshold < 1:
            raise ValueError("breaker thresholds must be at least 1")
        self.name = name
        self._failure_threshold = failure_threshold
        self._success_threshold = success_threshold
        self._timeout = timeout
        self._failure_on = failure_on
        self._on_state_change = on_state_change
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._next_attempt_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        """Current state (does not trigger the open → half-open transition)."""
        return self._state

    def snapshot(self) -> CircuitBreakerState:
        """Return a copy of the breaker's counters."""
        return CircuitBreakerState(
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            next_attempt_at=self._next_attempt_at,
        )

    async def execute(self, op: Callable[[], Awaitable[T]]) -> T:
        """Run *op* under breaker protection.

        Raises:
            CircuitOpenError: The circuit is open and the cooldown has not
                elapsed, or a half-open trial call is already running; *op* was
                not called.
        """
        if self._state is CircuitState.OPEN:
            now = self._clock()
            if now < self._next_attempt_at:
                raise CircuitOpenError(self.name, retry_after=self._next_attempt_at - now)
            self._success_count = 0
            self._transition(CircuitState.HALF_OPEN)
            log.info("circuit_half_open", breaker=self.name)

        trial_call = self._state is CircuitState.HALF_OPEN
        if trial_call:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, retry_after=0.0)
            self._trial_in_flight = True

        try:
            result = await op()
        except self._failure_on:
            self._on_failure()
            raise
        finally:
            if trial_call:
                self._trial_in_flight = False
        self._on_success()
        return result

    def reset(self) -> None:
        """Manually close the circuit and clear counters."""
        self._transition(CircuitState.CLOSED)
        self._failure_count = 0
        self._success_count = 0
        self._next_attempt_at = 0.0
        self._trial_in_flight = False
        log.info("circuit_reset", breaker=self.name)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if old_state is not new_state and self._on_state_change is not None:
            self._on_state_change(self.name, old_state, new_state)

    def _on_success(self) -> None:
        self._failure_count = 0
        if self._state is CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self._success_threshold:
                self._success_count = 0
                self._transition(CircuitState.CLOSED)
                log.info("circuit_closed", breaker=self.name)

    def _on_failure(self) -> None:
        self._failure_count += 1
        self._success_count = 0
        if (
            self._state is CircuitState.HALF_OPEN
            or self._failure_count >= self._failure_threshold
        ):
            self._trip()

    def _trip(self) -> None:
        self._next_attempt_at = self._clock() + self._timeout
        self._transition(CircuitState.OPEN)
        log.error(
            "circuit_opened",
            breaker=self.name,
            failure_count=self._failure_count,
            retry_in=self._timeout,
        )
