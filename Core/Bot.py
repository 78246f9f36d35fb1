# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

import discord
from discord.ext import commands

import logging
import pathlib
import os

from Core.presence import DiscordPresenceSource
from Utils.errors import PatrolError
from Utils.patrol_timer import PatrolTimer
from Utils.storage import PatrolStore, create_store

logger = logging.getLogger(__name__)

COGS_DIR = pathlib.Path(__file__).resolve().parent.parent / 'commands'


class Bot(commands.Bot):
    def __init__(self, prefix: str, intents: discord.Intents, store: PatrolStore = None):
        super().__init__(command_prefix=prefix, intents=intents)
        self.added_cogs = []
        self.patrol_timer = PatrolTimer(store or create_store(), DiscordPresenceSource(self))

    async def setup_hook(self):
        try:
            await self.patrol_timer.store.ping()
            logger.log(logging.INFO, 'Patrol store reachable')
        except PatrolError as e:
            logger.log(logging.ERROR, f'Patrol store unreachable, tracking will degrade: {e}')

        for dir in os.walk(COGS_DIR):
            for file in dir[2]:
                if file.endswith('.py') and not file.startswith('__'):
                    path = pathlib.Path(dir[0]) / file
                    relative = path.relative_to(COGS_DIR.parent).with_suffix('')
                    cog = '.'.join(relative.parts)
                    try:
                        await self.load_extension(cog)
                        self.added_cogs.append(cog)
                        logger.log(logging.INFO, f'Loaded cog: {cog}')
                    except Exception as e:
                        logger.log(logging.ERROR, f'Failed to load cog {cog}: {e}')
        synced = await self.tree.sync()
        logger.log(logging.INFO, f'Synced {len(synced)} application commands.')

        if os.getenv('API_ENABLED', 'false').lower() in ('1', 'true', 'yes'):
            from API import start_api_thread
            start_api_thread(self)

    async def on_ready(self):
        logger.log(logging.INFO, f'Logged in as {self.user} (ID: {self.user.id})')
        # on_ready fires again after reconnects; recovery must only run once
        if not self.patrol_timer.ready:
            try:
                await self.patrol_timer.bootstrap()
            except Exception as e:
                logger.log(logging.ERROR, f'Patrol bootstrap failed: {e}')

    async def on_command_error(self, ctx: commands.Context, error):
        logger.log(logging.ERROR, f'Error occurred in command "{ctx.command}": {error}')

    async def close(self):
        await super().close()
        await self.patrol_timer.close()
