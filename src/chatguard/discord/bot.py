"""Discord client that feeds gateway events into ChatGuard."""

from __future__ import annotations

from uuid import uuid4

import discord
import structlog
from pydantic import ValidationError

from chatguard.discord import decode
from chatguard.guard import ChatGuard
from chatguard.incidents.models import ROUTING_PREFIX
from chatguard.logging import get_logger

log = get_logger("chatguard.discord.bot")

DEFAULT_MAX_ATTACHMENT_BYTES = 8 * 1024 * 1024


class ChatGuardBot(discord.Client):
    """ChatGuard Discord bot.

    The client only decodes events; all decisions are made by the attached
    :class:`~chatguard.guard.ChatGuard`.  Events that arrive before a guard
    is attached are dropped.
    """

    def __init__(self, *, max_attachment_bytes: int = DEFAULT_MAX_ATTACHMENT_BYTES) -> None:
        intents = discord.Intents.default()
        intents.message_content = True
        intents.members = True
        intents.moderation = True

        super().__init__(intents=intents)

        self._max_attachment_bytes = max_attachment_bytes
        self._guard: ChatGuard | None = None

    def attach_guard(self, guard: ChatGuard) -> None:
        self._guard = guard

    async def on_ready(self) -> None:
        """Called when the bot is fully ready."""
        log.info("bot_ready", user=str(self.user), guilds=len(self.guilds))

    async def on_message(self, message: discord.Message) -> None:
        """Score every community message."""
        if self._guard is None or message.author == self.user:
            return
        if message.author.bot or message.guild is None:
            return

        structlog.contextvars.bind_contextvars(
            request_id=str(uuid4())[:12],
            user_id=message.author.id,
            channel_id=message.channel.id,
        )
        try:
            event = await decode.message_event(
                message, max_attachment_bytes=self._max_attachment_bytes
            )
        except ValidationError as e:
            log.warning("event_decode_failed", event_type="message", error=str(e))
            return
        else:
            await self._guard.on_message(event)
        finally:
            structlog.contextvars.clear_contextvars()

    async def on_member_join(self, member: discord.Member) -> None:
        if self._guard is None:
            return
        try:
            event = decode.member_join_event(member)
        except ValidationError as e:
            log.warning("event_decode_failed", event_type="member_join", error=str(e))
            return
        await self._guard.on_member_join(event)

    async def on_interaction(self, interaction: discord.Interaction) -> None:
        """Route ChatGuard alert buttons; other interactions are ignored."""
        if self._guard is None or interaction.type is not discord.InteractionType.component:
            return
        custom_id = str((interaction.data or {}).get("custom_id", ""))
        if not custom_id.startswith(f"{ROUTING_PREFIX}:"):
            return

        try:
            event = decode.button_click_event(interaction)
        except ValidationError as e:
            log.warning("event_decode_failed", event_type="button_click", error=str(e))
            return

        try:
            await interaction.response.defer(ephemeral=True, thinking=True)
        except discord.HTTPException as e:
            log.warning("interaction_defer_failed", custom_id=custom_id, error=str(e))
        message = await self._guard.on_button_click(event)
        try:
            await interaction.followup.send(message, ephemeral=True)
        except discord.HTTPException as e:
            log.error("interaction_followup_failed", custom_id=custom_id, error=str(e))

    async def on_audit_log_entry_create(self, entry: discord.AuditLogEntry) -> None:
        if self._guard is None:
            return
        try:
            event = decode.audit_log_event(entry)
        except ValidationError as e:
            log.warning("event_decode_failed", event_type="audit_log_entry", error=str(e))
            return
        await self._guard.on_audit_log_entry(event)
