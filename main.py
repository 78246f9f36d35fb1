# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

import logging
import os

import discord
from dotenv import load_dotenv

from Core.Bot import Bot
from Utils.log import setup_logging

load_dotenv()

setup_logging()
logger = logging.getLogger(__name__)


def main():
    TOKEN = os.getenv("DISCORD_AUTH_TOKEN")
    PREFIX = os.getenv("COMMAND_PREFIX", ".")

    if not TOKEN:
        logger.error("No token provided (DISCORD_AUTH_TOKEN). Exiting.")
        raise SystemExit(1)

    intents = discord.Intents.default()
    intents.members = True
    intents.voice_states = True

    bot = Bot(prefix=PREFIX, intents=intents)
    bot.run(TOKEN, log_handler=None)


if __name__ == '__main__':
    main()
