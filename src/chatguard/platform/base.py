"""Platform gateway interface.

The core never talks to the chat platform directly; it calls a
:class:`PlatformGateway`.  Remediation calls report permission and API
failures as a :class:`RemediationResult` instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from chatguard.incidents.models import IncidentAlert
    from chatguard.platform.events import MemberRef


@dataclass(frozen=True)
class RemediationResult:
    """Outcome of one platform call."""

    success: bool
    action: str
    detail: str = ""

    @classmethod
    def ok(cls, action: str, detail: str = "") -> RemediationResult:
        return cls(True, action, detail)

    @classmethod
    def failed(cls, action: str, detail: str) -> RemediationResult:
        return cls(False, action, detail)


@runtime_checkable
class PlatformGateway(Protocol):
    """Remediation and notification operations on the hosting platform."""

    async def delete_message(
        self, channel_id: int, message_id: int, *, reason: str
    ) -> RemediationResult: ...

    async def timeout_member(
        self, community_id: int, user_id: int, duration: timedelta, *, reason: str
    ) -> RemediationResult: ...

    async def ban_member(
        self,
        community_id: int,
        user_id: int,
        *,
        reason: str,
        delete_message_seconds: int = 0,
    ) -> RemediationResult: ...

    async def remove_member(
        self, community_id: int, user_id: int, *, reason: str
    ) -> RemediationResult: ...

    async def raise_verification_level(
        self, community_id: int, *, reason: str
    ) -> RemediationResult: ...

    async def list_recent_members(
        self, community_id: int, since: datetime
    ) -> list[MemberRef]: ...

    async def send_notice(self, community_id: int, message: str) -> bool: ...

    async def post_alert(self, alert: IncidentAlert) -> int | None:
        """Post *alert* with one button per analyst action; return its message id."""
        ...

    async def update_alert(self, alert: IncidentAlert) -> bool:
        """Re-render a posted alert after it changed (e.g. was resolved)."""
        ...
