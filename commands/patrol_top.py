# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

import discord
from discord.ext import commands, tasks
import logging
from datetime import datetime, time, timezone

from Utils.formatting import render_weekly_top
from Utils.models import LeaderboardScope

logger = logging.getLogger(__name__)

WEEKLY_TOP_LIMIT = 25
# Sunday, 03:00 UTC
WEEKLY_TOP_WEEKDAY = 6
WEEKLY_TOP_TIME = time(hour=3, minute=0, tzinfo=timezone.utc)


class PatrolTopCog(commands.Cog):
    """Weekly all-time patrol leaderboard post"""

    def __init__(self, bot):
        self.bot = bot
        self.timer = bot.patrol_timer
        logger.info("PatrolTopCog initialized")

    async def cog_load(self):
        self.weekly_top.start()
        logger.info("Patrol top schedule initialized. Will run at 3AM UTC every Sunday.")

    async def cog_unload(self):
        self.weekly_top.cancel()
        logger.info("Patrol top schedule stopped.")

    @tasks.loop(time=WEEKLY_TOP_TIME)
    async def weekly_top(self):
        if datetime.now(timezone.utc).weekday() != WEEKLY_TOP_WEEKDAY:
            return
        logger.info("Cron job triggered: Patrol top posting")
        await self.post_patrol_top()

    @weekly_top.before_loop
    async def before_weekly_top(self):
        await self.bot.wait_until_ready()

    async def post_patrol_top(self) -> int:
        """Post the all-time top to every configured channel; returns how many posts went out"""
        logger.info("Starting patrol top posting job...")
        try:
            configured = [settings for settings in await self.timer.store.list_settings() if settings.top_channel_id]
        except Exception as e:
            logger.error(f"Error in patrol top posting job: {e}")
            return 0

        if not configured:
            logger.info("No guilds configured with a patrol top channel")
            return 0

        posted = 0
        for settings in configured:
            try:
                guild = self.bot.get_guild(int(settings.guild_id))
                if guild is None:
                    logger.warning(f"Guild {settings.guild_id} not found")
                    continue

                channel = guild.get_channel(int(settings.top_channel_id))
                if not isinstance(channel, discord.abc.Messageable):
                    logger.warning(f"Channel {settings.top_channel_id} is missing or not text-based in guild {settings.guild_id}")
                    continue

                entries = await self.timer.get_leaderboard(settings.guild_id, LeaderboardScope.all_time(), WEEKLY_TOP_LIMIT)
                await channel.send(render_weekly_top(entries), allowed_mentions=discord.AllowedMentions.none())
                posted += 1
                logger.info(f"Posted patrol top to channel {settings.top_channel_id} in guild {settings.guild_id}")
            except Exception as e:
                logger.error(f"Failed to post patrol top for guild {settings.guild_id}: {e}")

        logger.info("Patrol top posting job completed")
        return posted


async def setup(bot):
    """Setup function for the cog"""
    await bot.add_cog(PatrolTopCog(bot))
    logger.info("PatrolTopCog loaded successfully")
