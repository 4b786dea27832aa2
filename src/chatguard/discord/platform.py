"""discord.py implementation of the platform gateway.

Every remediation call turns discord.py's ``Forbidden`` / ``NotFound`` /
``HTTPException`` into a failed :class:`RemediationResult`, so permission
problems reach the analyst as an outcome instead of an exception.
"""

from __future__ import annotations

from collections.abc import Awaitable
from datetime import datetime, timedelta
from typing import Any

import discord

from chatguard.incidents.models import AnalystAction, IncidentAlert
from chatguard.logging import get_logger
from chatguard.platform.base import RemediationResult
from chatguard.platform.events import MemberRef

log = get_logger("chatguard.discord.platform")

_BUTTONS: dict[AnalystAction, tuple[str, discord.ButtonStyle]] = {
    AnalystAction.BAN: ("Ban User", discord.ButtonStyle.danger),
    AnalystAction.TIMEOUT: ("Timeout", discord.ButtonStyle.primary),
    AnalystAction.DELETE: ("Delete Message", discord.ButtonStyle.secondary),
    AnalystAction.IGNORE: ("Ignore (False Positive)", discord.ButtonStyle.success),
}


def severity(score: float) -> tuple[str, discord.Color]:
    """Severity label and embed colour for a 0-100 score."""
    if score >= 90:
        return "CRITICAL", discord.Color.dark_red()
    if score >= 80:
        return "HIGH", discord.Color.red()
    if score >= 50:
        return "MEDIUM", discord.Color.orange()
    return "LOW", discord.Color.gold()


class AlertView(discord.ui.View):
    """Four analyst buttons whose ``custom_id`` is the alert's routing key.

    Button presses are handled by the client's interaction listener, so the
    view carries no callbacks and survives restarts.
    """

    def __init__(self, alert: IncidentAlert) -> None:
        super().__init__(timeout=None)
        for action, key in alert.routing_keys().items():
            label, style = _BUTTONS[action]
            self.add_item(
                discord.ui.Button(
                    label=label,
                    style=style,
                    custom_id=key,
                    disabled=not alert.is_open,
                )
            )


def build_alert_embed(alert: IncidentAlert) -> discord.Embed:
    """Render an alert as a Discord embed."""
    level, color = severity(alert.score)
    embed = discord.Embed(
        title=f"Threat detected: {alert.threat_type}",
        description=alert.description or "Threat detected",
        color=color if alert.is_open else discord.Color.dark_grey(),
        timestamp=alert.created_at,
    )
    embed.add_field(name="Severity", value=f"{level} ({alert.score:.0f}/100)", inline=True)
    embed.add_field(name="User", value=f"<@{alert.subject_user_id}>", inline=True)
    embed.add_field(name="Channel", value=f"<#{alert.channel_id}>", inline=True)
    embed.add_field(name="Suggested action", value=alert.suggested_action, inline=True)
    embed.add_field(name="Prior open incidents", value=str(alert.prior_incidents), inline=True)

    if alert.indicators:
        shown = "\n".join(f"`{i[:100]}`" for i in alert.indicators[:5])
        embed.add_field(name="Indicators", value=shown, inline=False)

    if alert.enrichment is not None:
        record = alert.enrichment
        lines = [
            f"**Source:** {record.source.value} ({record.record_id})",
            f"**Classification:** {record.classification or 'Unknown'}",
            f"**Confidence:** {record.confidence}/100",
            f"**Tags:** {', '.join(record.tags[:8]) or 'None'}",
        ]
        if record.galaxies:
            lines.append(f"**Galaxies:** {', '.join(record.galaxies[:5])}")
        embed.add_field(name="Threat intelligence", value="\n".join(lines), inline=False)

    if alert.resolution is not None:
        r = alert.resolution
        embed.add_field(
            name="Resolution",
            value=f"{r.action.value} by <@{r.analyst_id}> ({r.status.value})",
            inline=False,
        )

    embed.set_footer(text=f"ChatGuard alert {alert.id}")
    return embed


class DiscordPlatform:
    """:class:`~chatguard.platform.base.PlatformGateway` over a discord.py client."""

    def __init__(self, client: discord.Client, *, alert_channel_id: int | None = None) -> None:
        """Initialize the gateway.

        Args:
            client: Connected discord.py client.
            alert_channel_id: Channel receiving incident alerts; when unset,
                alerts and notices go to each community's system channel.
        """
        self._client = client
        self._alert_channel_id = alert_channel_id

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _guild(self, community_id: int) -> discord.Guild:
        guild = self._client.get_guild(community_id)
        if guild is None:
            guild = await self._client.fetch_guild(community_id)
        return guild

    async def _channel(self, channel_id: int) -> Any:
        channel = self._client.get_channel(channel_id)
        if channel is None:
            channel = await self._client.fetch_channel(channel_id)
        return channel

    async def _notice_channel(self, community_id: int) -> Any:
        if self._alert_channel_id is not None:
            return await self._channel(self._alert_channel_id)
        guild = await self._guild(community_id)
        if guild.system_channel is not None:
            return guild.system_channel
        me = guild.me
        for channel in guild.text_channels:
            if me is not None and channel.permissions_for(me).send_messages:
                return channel
        return None

    async def _run(self, action: str, op: Awaitable[Any], **context: Any) -> RemediationResult:
        try:
            await op
        except discord.Forbidden as e:
            log.warning("remediation_forbidden", action=action, error=str(e), **context)
            return RemediationResult.failed(action, "missing permissions")
        except discord.NotFound as e:
            log.warning("remediation_target_not_found", action=action, error=str(e), **context)
            return RemediationResult.failed(action, "target not found")
        except discord.HTTPException as e:
            log.error("remediation_failed", action=action, error=str(e), **context)
            return RemediationResult.failed(action, str(e))
        log.info("remediation_succeeded", action=action, **context)
        return RemediationResult.ok(action)

    # ------------------------------------------------------------------
    # Remediation
    # ------------------------------------------------------------------

    async def delete_message(
        self, channel_id: int, message_id: int, *, reason: str
    ) -> RemediationResult:
        async def op() -> None:
            channel = await self._channel(channel_id)
            await channel.get_partial_message(message_id).delete()

        return await self._run("delete_message", op(), channel_id=channel_id, message_id=message_id)

    async def timeout_member(
        self, community_id: int, user_id: int, duration: timedelta, *, reason: str
    ) -> RemediationResult:
        async def op() -> None:
            guild = await self._guild(community_id)
            member = guild.get_member(user_id) or await guild.fetch_member(user_id)
            await member.timeout(duration, reason=reason)

        return await self._run("timeout_member", op(), community_id=community_id, user_id=user_id)

    async def ban_member(
        self,
        community_id: int,
        user_id: int,
        *,
        reason: str,
        delete_message_seconds: int = 0,
    ) -> RemediationResult:
        async def op() -> None:
            guild = await self._guild(community_id)
            await guild.ban(
                discord.Object(id=user_id),
                reason=reason,
                delete_message_seconds=delete_message_seconds,
            )

        return await self._run("ban_member", op(), community_id=community_id, user_id=user_id)

    async def remove_member(
        self, community_id: int, user_id: int, *, reason: str
    ) -> RemediationResult:
        async def op() -> None:
            guild = await self._guild(community_id)
            await guild.kick(discord.Object(id=user_id), reason=reason)

        return await self._run("remove_member", op(), community_id=community_id, user_id=user_id)

    async def raise_verification_level(
        self, community_id: int, *, reason: str
    ) -> RemediationResult:
        async def op() -> None:
            guild = await self._guild(community_id)
            await guild.edit(verification_level=discord.VerificationLevel.highest, reason=reason)

        return await self._run("raise_verification_level", op(), community_id=community_id)

    async def list_recent_members(self, community_id: int, since: datetime) -> list[MemberRef]:
        guild = await self._guild(community_id)
        return [
            MemberRef(
                user_id=m.id,
                username=str(m),
                is_bot=m.bot,
                account_created_at=m.created_at,
                joined_at=m.joined_at,
            )
            for m in guild.members
            if m.joined_at is not None and m.joined_at >= since
        ]

    # ------------------------------------------------------------------
    # Notices and alerts
    # ------------------------------------------------------------------

    async def send_notice(self, community_id: int, message: str) -> bool:
        try:
            channel = await self._notice_channel(community_id)
            if channel is None:
                log.warning("notice_channel_not_found", community_id=community_id)
                return False
            await channel.send(message)
        except discord.HTTPException as e:
            log.error("notice_send_failed", community_id=community_id, error=str(e))
            return False
        return True

    async def post_alert(self, alert: IncidentAlert) -> int | None:
        try:
            channel = await self._notice_channel(alert.community_id)
            if channel is None:
                log.warning("alert_channel_not_found", community_id=alert.community_id)
                return None
            message = await channel.send(embed=build_alert_embed(alert), view=AlertView(alert))
        except discord.HTTPException as e:
            log.error("alert_post_failed", alert_id=alert.id, error=str(e))
            return None
        return message.id

    async def update_alert(self, alert: IncidentAlert) -> bool:
        if alert.alert_message_id is None:
            return False
        try:
            channel = await self._notice_channel(alert.community_id)
            if channel is None:
                return False
            await channel.get_partial_message(alert.alert_message_id).edit(
                embed=build_alert_embed(alert), view=AlertView(alert)
            )
        except discord.HTTPException as e:
            log.error("alert_update_failed", alert_id=alert.id, error=str(e))
            return False
        return True
