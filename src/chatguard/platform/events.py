"""Inbound platform events.

Each event kind is decoded once at the platform boundary into one of these
narrow models, carrying only the fields the core consumes.  Malformed input
fails here with a pydantic ``ValidationError``.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Nested references
# ---------------------------------------------------------------------------


class AttachmentRef(_Event):
    """A file attached to a message.

    Either ``sha256`` or ``data`` identifies the content; attachments with
    neither are not looked up.
    """

    filename: str = ""
    size: int = Field(default=0, ge=0)
    url: str | None = None
    content_type: str | None = None
    sha256: str | None = Field(default=None, pattern=r"^[a-fA-F0-9]{64}$")
    data: bytes | None = Field(default=None, repr=False)


class MemberRef(_Event):
    """A community member."""

    user_id: int
    username: str = ""
    is_bot: bool = False
    account_created_at: datetime | None = None
    joined_at: datetime | None = None


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class MessageEvent(_Event):
    """A message posted in a community channel."""

    message_id: int
    channel_id: int
    community_id: int | None = None  # None for direct messages
    author_id: int
    author_name: str = ""
    author_is_bot: bool = False
    content: str = ""
    attachments: tuple[AttachmentRef, ...] = ()
    created_at: datetime = Field(default_factory=_utcnow)


class MemberJoinEvent(_Event):
    """A member joined a community."""

    community_id: int
    member: MemberRef
    joined_at: datetime = Field(default_factory=_utcnow)


class ButtonClickEvent(_Event):
    """An analyst pressed an alert button."""

    custom_id: str = Field(min_length=1, max_length=100)
    user_id: int
    community_id: int | None = None
    channel_id: int | None = None
    message_id: int | None = None


class AuditLogEvent(_Event):
    """A moderation audit-log entry."""

    community_id: int
    entry_id: int
    action: str
    actor_id: int | None = None
    target_id: int | None = None
    reason: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
