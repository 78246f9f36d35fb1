# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

import logging
from typing import List, Optional, Tuple

import discord

from Utils.patrol_timer import PresenceSource

logger = logging.getLogger(__name__)


class DiscordPresenceSource(PresenceSource):
    """Reads voice membership straight from the bot's gateway cache"""

    def __init__(self, bot: discord.Client):
        self.bot = bot

    def _guild(self, guild_id: str) -> Optional[discord.Guild]:
        return self.bot.get_guild(int(guild_id))

    def guild_ids(self) -> List[str]:
        return [str(guild.id) for guild in self.bot.guilds]

    def category_of(self, guild_id: str, channel_id: str) -> Optional[str]:
        guild = self._guild(guild_id)
        if guild is None:
            return None
        channel = guild.get_channel(int(channel_id))
        if not isinstance(channel, discord.VoiceChannel) or channel.category_id is None:
            return None
        return str(channel.category_id)

    def members_in_category(self, guild_id: str, category_id: str) -> List[Tuple[str, str]]:
        guild = self._guild(guild_id)
        if guild is None:
            logger.warning(f"Guild {guild_id} not in cache during presence scan")
            return []

        category = guild.get_channel(int(category_id))
        if not isinstance(category, discord.CategoryChannel):
            logger.warning(f"Tracked category {category_id} not found in guild {guild_id}")
            return []

        present = []
        for channel in category.voice_channels:
            for member in channel.members:
                if member.bot:
                    continue
                present.append((str(member.id), str(channel.id)))
        return present
