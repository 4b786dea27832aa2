"""Decode discord.py objects into ChatGuard event models.

This is the only place that reads discord.py models; everything downstream
works on the narrow pydantic events.
"""

from __future__ import annotations

import discord

from chatguard.logging import get_logger
from chatguard.platform.events import (
    AttachmentRef,
    AuditLogEvent,
    ButtonClickEvent,
    MemberJoinEvent,
    MemberRef,
    MessageEvent,
)

log = get_logger("chatguard.discord.decode")

# discord.py AuditLogAction names that differ from ChatGuard's action names
_AUDIT_ACTION_NAMES = {
    "ban": "member_ban_add",
    "unban": "member_ban_remove",
    "kick": "member_kick",
}


def member_ref(member: discord.Member | discord.User) -> MemberRef:
    return MemberRef(
        user_id=member.id,
        username=str(member),
        is_bot=member.bot,
        account_created_at=member.created_at,
        joined_at=getattr(member, "joined_at", None),
    )


async def attachment_ref(attachment: discord.Attachment, max_bytes: int) -> AttachmentRef:
    """Describe *attachment*, downloading its bytes if it is small enough."""
    data = None
    if 0 < attachment.size <= max_bytes:
        try:
            data = await attachment.read()
        except discord.HTTPException as e:
            log.warning("attachment_download_failed", filename=attachment.filename, error=str(e))
    else:
        log.debug("attachment_too_large", filename=attachment.filename, size=attachment.size)

    return AttachmentRef(
        filename=attachment.filename,
        size=attachment.size,
        url=attachment.url,
        content_type=attachment.content_type,
        data=data,
    )


async def message_event(message: discord.Message, *, max_attachment_bytes: int) -> MessageEvent:
    attachments = [await attachment_ref(a, max_attachment_bytes) for a in message.attachments]
    return MessageEvent(
        message_id=message.id,
        channel_id=message.channel.id,
        community_id=message.guild.id if message.guild else None,
        author_id=message.author.id,
        author_name=str(message.author),
        author_is_bot=message.author.bot,
        content=message.content or "",
        attachments=tuple(attachments),
        created_at=message.created_at,
    )


def member_join_event(member: discord.Member) -> MemberJoinEvent:
    return MemberJoinEvent(
        community_id=member.guild.id,
        member=member_ref(member),
        joined_at=member.joined_at or discord.utils.utcnow(),
    )


def button_click_event(interaction: discord.Interaction) -> ButtonClickEvent:
    data = interaction.data or {}
    return ButtonClickEvent(
        custom_id=str(data.get("custom_id", "")),
        user_id=interaction.user.id,
        community_id=interaction.guild_id,
        channel_id=interaction.channel_id,
        message_id=interaction.message.id if interaction.message else None,
    )


def audit_log_event(entry: discord.AuditLogEntry) -> AuditLogEvent:
    action = _AUDIT_ACTION_NAMES.get(entry.action.name, entry.action.name)
    target = entry.target
    return AuditLogEvent(
        community_id=entry.guild.id,
        entry_id=entry.id,
        action=action,
        actor_id=entry.user_id,
        target_id=getattr(target, "id", None),
        reason=entry.reason,
        created_at=entry.created_at,
    )
