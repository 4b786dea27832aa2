"""Discord boundary: event decoding, gateway and client."""

from chatguard.discord.bot import ChatGuardBot
from chatguard.discord.platform import AlertView, DiscordPlatform, build_alert_embed

__all__ = [
    "AlertView",
    "ChatGuardBot",
    "DiscordPlatform",
    "build_alert_embed",
]
