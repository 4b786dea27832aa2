"""Storage interfaces: shared counter store and incident persistence."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from chatguard.detection.models import ThreatAnalysis
    from chatguard.incidents.models import ActionOutcome, IncidentAlert
    from chatguard.platform.events import MessageEvent


@runtime_checkable
class CounterStore(Protocol):
    """Atomic counters shared by every process.

    Every multi-step operation must be atomic on the store side; callers
    never read-modify-write.
    """

    async def increment_with_ttl(self, key: str, ttl_seconds: int) -> tuple[int, int]:
        """Increment *key*, setting its expiry on first use.

        Returns:
            ``(new_value, remaining_ttl_seconds)``.
        """
        ...

    async def record_in_window(
        self, key: str, member: str, timestamp: float, window_seconds: float, ttl_seconds: int
    ) -> int:
        """Prune entries older than the window, add *member*, refresh expiry.

        Returns:
            Number of entries left in the window, including *member*.
        """
        ...

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Set *key* only if it does not exist; ``True`` if it was set."""
        ...

    async def get(self, key: str) -> str | None: ...

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def push_capped(
        self, key: str, value: str, max_length: int, ttl_seconds: int
    ) -> None:
        """Prepend *value* to a list trimmed to *max_length* entries."""
        ...

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]: ...

    async def ttl(self, key: str) -> int: ...


@runtime_checkable
class IncidentStore(Protocol):
    """Persistence for alerts and their outcomes."""

    async def get_or_create(
        self, kind: str, key: str, attrs: dict[str, Any] | None = None
    ) -> dict[str, Any]: ...

    async def record_detection(self, event: MessageEvent, analysis: ThreatAnalysis) -> None:
        """Store one scored message, whether or not it raised an alert."""
        ...

    async def record_alert(self, alert: IncidentAlert) -> None: ...

    async def record_outcome(self, alert_id: str, outcome: ActionOutcome) -> None: ...

    async def count_active(self, kind: str, subject_id: int, community_id: int) -> int: ...
