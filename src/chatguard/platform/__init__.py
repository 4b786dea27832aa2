"""Platform boundary: gateway interface and inbound event models."""

from chatguard.platform.base import PlatformGateway, RemediationResult
from chatguard.platform.events import (
    AttachmentRef,
    AuditLogEvent,
    ButtonClickEvent,
    MemberJoinEvent,
    MemberRef,
    MessageEvent,
)

__all__ = [
    "AttachmentRef",
    "AuditLogEvent",
    "ButtonClickEvent",
    "MemberJoinEvent",
    "MemberRef",
    "MessageEvent",
    "PlatformGateway",
    "RemediationResult",
]
