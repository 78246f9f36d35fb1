# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

import discord
from discord.ext import commands
from discord import app_commands
import logging
from typing import Optional

from Utils.errors import PatrolError

logger = logging.getLogger(__name__)


class PatrolSettingsCog(commands.Cog):
    """Per-server patrol configuration"""

    settings_group = app_commands.Group(
        name="patrol-settings",
        description="⚙️ Configure patrol tracking",
        guild_only=True,
        default_permissions=discord.Permissions(manage_guild=True)
    )

    def __init__(self, bot):
        self.bot = bot
        self.timer = bot.patrol_timer
        logger.info("PatrolSettingsCog initialized")

    async def _reply(self, interaction: discord.Interaction, message: str):
        await interaction.followup.send(message, ephemeral=True)

    async def _fail(self, interaction: discord.Interaction, error: Exception):
        if not isinstance(error, PatrolError):
            logger.error(f"Error updating patrol settings for guild {interaction.guild.id}: {error}")
        await interaction.followup.send(f"❌ Could not update settings: {error}", ephemeral=True)

    @settings_group.command(name="category", description="📂 Set the category whose voice channels count as patrol")
    @app_commands.describe(category="Category to track (leave empty to stop tracking)")
    async def category(self, interaction: discord.Interaction, category: Optional[discord.CategoryChannel] = None):
        await interaction.response.defer(ephemeral=True)
        try:
            await self.timer.set_category(interaction.guild.id, category.id if category else None)
            if category:
                await self._reply(interaction, f"📂 Patrol time is now tracked in **{category.name}**.")
            else:
                await self._reply(interaction, "📂 Patrol tracking disabled for this server.")
        except Exception as e:
            await self._fail(interaction, e)

    @settings_group.command(name="top-channel", description="🏆 Channel for the weekly patrol leaderboard")
    @app_commands.describe(channel="Text channel (leave empty to disable the weekly post)")
    async def top_channel(self, interaction: discord.Interaction, channel: Optional[discord.TextChannel] = None):
        await interaction.response.defer(ephemeral=True)
        try:
            await self.timer.update_settings(interaction.guild.id, top_channel_id=channel.id if channel else None)
            await self._reply(interaction, f"🏆 Weekly leaderboard channel: {channel.mention if channel else 'disabled'}")
        except Exception as e:
            await self._fail(interaction, e)

    @settings_group.command(name="log-channel", description="📝 Channel where finished patrols are logged")
    @app_commands.describe(channel="Text channel (leave empty to disable session logging)")
    async def log_channel(self, interaction: discord.Interaction, channel: Optional[discord.TextChannel] = None):
        await interaction.response.defer(ephemeral=True)
        try:
            await self.timer.update_settings(interaction.guild.id, log_channel_id=channel.id if channel else None)
            await self._reply(interaction, f"📝 Patrol log channel: {channel.mention if channel else 'disabled'}")
        except Exception as e:
            await self._fail(interaction, e)

    @settings_group.command(name="show", description="⚙️ Show the current patrol configuration")
    async def show(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True)
        try:
            settings = await self.timer.get_settings(interaction.guild.id)
            embed = discord.Embed(title="⚙️ Patrol Settings", color=discord.Color.blue())
            embed.add_field(name="📂 Category", value=f"<#{settings.category_id}>" if settings.category_id else "Not set", inline=False)
            embed.add_field(name="🏆 Weekly Top", value=f"<#{settings.top_channel_id}>" if settings.top_channel_id else "Not set", inline=True)
            embed.add_field(name="📝 Log", value=f"<#{settings.log_channel_id}>" if settings.log_channel_id else "Not set", inline=True)
            guild_paused = self.timer.pauses.is_guild_paused(str(interaction.guild.id))
            embed.add_field(name="⏸️ Server Paused", value="Yes" if guild_paused else "No", inline=True)
            await interaction.followup.send(embed=embed, ephemeral=True)
        except Exception as e:
            await self._fail(interaction, e)


async def setup(bot):
    """Setup function for the cog"""
    await bot.add_cog(PatrolSettingsCog(bot))
    logger.info("PatrolSettingsCog loaded successfully")
