# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

import discord
from discord.ext import commands
from discord import app_commands
import logging
from typing import Optional
from datetime import datetime, timezone

from Utils.errors import ConfigurationError, PatrolError, StorageError, ValidationError
from Utils.formatting import MONTH_NAMES, format_duration, parse_adjustment, render_leaderboard_lines
from Utils.models import FinalizedInterval, LeaderboardScope, PauseOutcome, PresenceEvent

logger = logging.getLogger(__name__)


class PatrolCog(commands.Cog):
    """Patrol time queries, admin controls and the voice state listener"""

    patrol_group = app_commands.Group(name="patrol", description="🛡️ Patrol time tracking", guild_only=True)
    admin_group = app_commands.Group(
        name="patrol-admin",
        description="👑 Patrol time administration",
        guild_only=True,
        default_permissions=discord.Permissions(manage_guild=True)
    )

    def __init__(self, bot):
        self.bot = bot
        self.timer = bot.patrol_timer

        self.command_metrics = {
            'voice_events': 0,
            'voice_event_errors': 0,
            'queries': 0,
            'admin_commands': 0,
        }

        logger.info("PatrolCog initialized")

    async def cog_load(self):
        self.timer.add_listener(self._log_session)
        logger.info("PatrolCog connected to patrol timer")

    async def cog_unload(self):
        self.timer.remove_listener(self._log_session)
        logger.info("PatrolCog unloaded")

    # ========================================================================
    # VOICE LISTENER
    # ========================================================================

    @commands.Cog.listener()
    async def on_voice_state_update(self, member: discord.Member,
                                    before: discord.VoiceState, after: discord.VoiceState):
        if member.guild is None:
            return

        event = PresenceEvent(
            guild_id=str(member.guild.id),
            user_id=str(member.id),
            previous_channel_id=str(before.channel.id) if before.channel else None,
            new_channel_id=str(after.channel.id) if after.channel else None,
            is_bot=member.bot,
        )
        self.command_metrics['voice_events'] += 1
        try:
            await self.timer.handle_event(event)
        except Exception as e:
            self.command_metrics['voice_event_errors'] += 1
            logger.error(f"Voice state update failed for {member.id} in guild {member.guild.id}: {e}")

    async def _log_session(self, interval: FinalizedInterval, credited_ms: int):
        settings = await self.timer.get_settings(interval.guild_id)
        if not settings.log_channel_id:
            return
        channel = self.bot.get_channel(int(settings.log_channel_id))
        if channel is None:
            logger.warning(f"Patrol log channel {settings.log_channel_id} not found in guild {interval.guild_id}")
            return
        await channel.send(
            f"🛡️ <@{interval.user_id}> patrolled **{format_duration(credited_ms)}** in <#{interval.channel_id}>",
            allowed_mentions=discord.AllowedMentions.none()
        )

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _create_error_embed(self, error: PatrolError) -> discord.Embed:
        titles = {
            ValidationError: "❌ Invalid Input",
            ConfigurationError: "⚙️ Not Configured",
            StorageError: "🔧 Storage Error",
        }
        embed = discord.Embed(
            title=titles.get(type(error), "❌ Error"),
            description=str(error),
            color=discord.Color.red()
        )
        return embed

    def _create_generic_error_embed(self, error: Exception) -> discord.Embed:
        embed = discord.Embed(
            title="❌ Unexpected Error",
            description="An unexpected error occurred.",
            color=discord.Color.red()
        )
        embed.add_field(name="🆔 Error ID", value=f"`{hash(str(error)) % 100000:05d}`", inline=True)
        return embed

    async def _send_error(self, interaction: discord.Interaction, error: Exception):
        if isinstance(error, PatrolError):
            embed = self._create_error_embed(error)
        else:
            logger.error(f"Unexpected error in /{interaction.command.qualified_name if interaction.command else '?'}: {error}")
            embed = self._create_generic_error_embed(error)
        await interaction.followup.send(embed=embed, ephemeral=True)

    @staticmethod
    def _current_month():
        now = datetime.now(timezone.utc)
        return now.year, now.month

    # ========================================================================
    # QUERY COMMANDS
    # ========================================================================

    @patrol_group.command(name="tracked", description="🛡️ Show who is being timed right now")
    async def tracked(self, interaction: discord.Interaction):
        await interaction.response.defer()
        try:
            await self.timer.require_configured(interaction.guild.id)
            entries = await self.timer.get_currently_tracked(interaction.guild.id)
            self.command_metrics['queries'] += 1

            embed = discord.Embed(title="🛡️ Currently on Patrol", color=discord.Color.blue())
            if not entries:
                embed.description = "Nobody is being tracked right now."
            else:
                embed.description = "\n".join(
                    f"<@{entry.user_id}> in <#{entry.channel_id}> — "
                    + ("⏸️ paused" if entry.paused else format_duration(entry.elapsed_ms))
                    for entry in entries
                )
            await interaction.followup.send(embed=embed, allowed_mentions=discord.AllowedMentions.none())
        except Exception as e:
            await self._send_error(interaction, e)

    @patrol_group.command(name="top", description="🏆 Patrol time leaderboard")
    @app_commands.describe(
        scope="All time, a single month, or members in one voice channel",
        year="Year for the monthly leaderboard (defaults to this year)",
        month="Month 1-12 for the monthly leaderboard (defaults to this month)",
        channel="Voice channel for the channel leaderboard",
        limit="Number of users to show (default: 10)"
    )
    @app_commands.choices(scope=[
        app_commands.Choice(name="All Time", value="all"),
        app_commands.Choice(name="Month", value="month"),
        app_commands.Choice(name="Channel", value="channel")
    ])
    async def top(self, interaction: discord.Interaction, scope: Optional[str] = "all",
                  year: Optional[int] = None, month: Optional[app_commands.Range[int, 1, 12]] = None,
                  channel: Optional[discord.VoiceChannel] = None,
                  limit: Optional[app_commands.Range[int, 1, 50]] = 10):
        await interaction.response.defer()
        try:
            await self.timer.require_configured(interaction.guild.id)
            member_ids = None

            if scope == "month":
                current_year, current_month = self._current_month()
                leaderboard_scope = LeaderboardScope.for_month(year or current_year, month or current_month)
                title = f"🏆 Patrol Top — {MONTH_NAMES[leaderboard_scope.month - 1]} {leaderboard_scope.year}"
            elif scope == "channel":
                if channel is None:
                    if not isinstance(interaction.user, discord.Member) or not interaction.user.voice or not interaction.user.voice.channel:
                        raise ValidationError("Pick a voice channel or join one first.")
                    channel = interaction.user.voice.channel
                leaderboard_scope = LeaderboardScope.for_channel(str(channel.id))
                member_ids = [str(member.id) for member in channel.members if not member.bot]
                title = f"🏆 Patrol Top — {channel.name}"
            else:
                leaderboard_scope = LeaderboardScope.all_time()
                title = "🏆 Patrol Top — All Time"

            entries = await self.timer.get_leaderboard(interaction.guild.id, leaderboard_scope, limit, member_ids)
            self.command_metrics['queries'] += 1

            embed = discord.Embed(title=title, color=discord.Color.gold())
            embed.description = "\n".join(render_leaderboard_lines(entries)) or "No patrol time recorded yet."
            embed.set_footer(text=f"Updated: {datetime.now(timezone.utc).strftime('%H:%M')} UTC")
            await interaction.followup.send(embed=embed, allowed_mentions=discord.AllowedMentions.none())
        except Exception as e:
            await self._send_error(interaction, e)

    @patrol_group.command(name="time", description="⏱️ Check patrol time for you or another member")
    @app_commands.describe(
        user="Member to check (defaults to you)",
        all_time="Show the all-time total instead of a month",
        year="Year (defaults to this year)",
        month="Month 1-12 (defaults to this month)"
    )
    async def time(self, interaction: discord.Interaction, user: Optional[discord.Member] = None,
                   all_time: Optional[bool] = False, year: Optional[int] = None,
                   month: Optional[app_commands.Range[int, 1, 12]] = None):
        await interaction.response.defer(ephemeral=True)
        try:
            target = user or interaction.user
            if all_time:
                total = await self.timer.get_all_time_total(interaction.guild.id, target.id)
                period = "all time"
            else:
                current_year, current_month = self._current_month()
                year, month = year or current_year, month or current_month
                total = await self.timer.get_month_total(interaction.guild.id, target.id, year, month)
                period = f"{MONTH_NAMES[month - 1]} {year}"
            self.command_metrics['queries'] += 1

            note = " (paused)" if self.timer.is_paused(interaction.guild.id, target.id) else ""
            await interaction.followup.send(
                f"⏱️ {target.mention} has **{format_duration(total)}** of patrol time for {period}{note}.",
                ephemeral=True
            )
        except Exception as e:
            await self._send_error(interaction, e)

    @patrol_group.command(name="history", description="📅 Years and months with recorded patrol time")
    @app_commands.describe(year="Show the months of one year")
    async def history(self, interaction: discord.Interaction, year: Optional[int] = None):
        await interaction.response.defer()
        try:
            embed = discord.Embed(title="📅 Patrol History", color=discord.Color.blue())
            if year is None:
                rows = await self.timer.get_available_years(interaction.guild.id)
                lines = [f"**{row.year}** — {row.user_count} members, {row.total_hours}h" for row in rows]
            else:
                rows = await self.timer.get_available_months(interaction.guild.id, year)
                lines = [
                    f"**{MONTH_NAMES[row.month - 1]} {row.year}** — {row.user_count} members, {row.total_hours}h"
                    for row in rows
                ]
            embed.description = "\n".join(lines) or "No patrol history yet."
            await interaction.followup.send(embed=embed)
        except Exception as e:
            await self._send_error(interaction, e)

    # ========================================================================
    # ADMIN COMMANDS
    # ========================================================================

    @admin_group.command(name="pause", description="⏸️ Pause patrol time for a member or the whole server")
    @app_commands.describe(user="Member to pause (leave empty to pause the whole server)")
    async def pause(self, interaction: discord.Interaction, user: Optional[discord.Member] = None):
        await interaction.response.defer(ephemeral=True)
        try:
            self.command_metrics['admin_commands'] += 1
            if user:
                outcome = await self.timer.pause_user(interaction.guild.id, user.id)
                if outcome is PauseOutcome.REJECTED:
                    message = f"❌ {user.mention} is on patrol right now. Pause them after they leave the patrol channels."
                else:
                    message = f"⏸️ Patrol time paused for {user.mention}."
            else:
                outcome = await self.timer.pause_guild(interaction.guild.id)
                if outcome is PauseOutcome.REJECTED:
                    message = "❌ Members are on patrol right now. Pause the server once the patrol channels are empty."
                else:
                    message = "⏸️ Patrol time paused for the whole server."
            await interaction.followup.send(message, ephemeral=True)
        except Exception as e:
            await self._send_error(interaction, e)

    @admin_group.command(name="unpause", description="▶️ Resume patrol time for a member or the whole server")
    @app_commands.describe(user="Member to resume (leave empty to resume the whole server)")
    async def unpause(self, interaction: discord.Interaction, user: Optional[discord.Member] = None):
        await interaction.response.defer(ephemeral=True)
        try:
            self.command_metrics['admin_commands'] += 1
            if user:
                await self.timer.unpause_user(interaction.guild.id, user.id)
                message = f"▶️ Patrol time resumed for {user.mention}."
            else:
                await self.timer.unpause_guild(interaction.guild.id)
                message = "▶️ Patrol time resumed for the whole server."
            await interaction.followup.send(message, ephemeral=True)
        except Exception as e:
            await self._send_error(interaction, e)

    @admin_group.command(name="adjust", description="✏️ Add or subtract patrol time")
    @app_commands.describe(
        user="Member to adjust",
        time="Signed duration, e.g. +1h30m or -45m",
        year="Year to adjust (defaults to this year)",
        month="Month 1-12 to adjust (defaults to this month)"
    )
    async def adjust(self, interaction: discord.Interaction, user: discord.Member, time: str,
                     year: Optional[int] = None, month: Optional[app_commands.Range[int, 1, 12]] = None):
        await interaction.response.defer(ephemeral=True)
        try:
            self.command_metrics['admin_commands'] += 1
            delta_ms = parse_adjustment(time)
            current_year, current_month = self._current_month()
            year, month = year or current_year, month or current_month

            await self.timer.adjust(interaction.guild.id, user.id, delta_ms, year, month)

            action, direction = ("Added", "to") if delta_ms > 0 else ("Subtracted", "from")
            await interaction.followup.send(
                f"✏️ {action} {format_duration(abs(delta_ms))} {direction} {user.mention}'s patrol time "
                f"for {MONTH_NAMES[month - 1]} {year}.",
                ephemeral=True
            )
        except Exception as e:
            await self._send_error(interaction, e)

    @admin_group.command(name="wipe", description="🧹 Reset all-time patrol totals")
    @app_commands.describe(user="Member to reset (leave empty to reset everyone)")
    async def wipe(self, interaction: discord.Interaction, user: Optional[discord.Member] = None):
        await interaction.response.defer(ephemeral=True)
        try:
            self.command_metrics['admin_commands'] += 1
            await self.timer.reset(interaction.guild.id, user.id if user else None)
            target = user.mention if user else "everyone"
            await interaction.followup.send(f"🧹 Reset all-time patrol time for {target}.", ephemeral=True)
        except Exception as e:
            await self._send_error(interaction, e)


# ========================================================================
# COG SETUP
# ========================================================================

async def setup(bot):
    """Setup function for the cog"""
    await bot.add_cog(PatrolCog(bot))
    logger.info("PatrolCog loaded successfully")
