# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

import logging
from typing import Dict, Set

from .models import PauseOutcome, PauseSnapshot
from .registry import SessionRegistry
from .storage import PatrolStore

logger = logging.getLogger(__name__)


class PauseController:
    """Per-user and per-guild pause flags

    Pausing is refused while the user (or anyone in the guild) has an open
    session, and resuming restarts the clock of open sessions, so paused time
    is never credited retroactively. Callers restart the clocks; this class
    only owns the flags and their durable copy.
    """

    def __init__(self, registry: SessionRegistry, store: PatrolStore):
        self.registry = registry
        self.store = store
        self._paused_guilds: Set[str] = set()
        self._paused_users: Dict[str, Set[str]] = {}

    def load(self, snapshot: PauseSnapshot):
        self._paused_guilds = set(snapshot.paused_guilds)
        self._paused_users = {guild_id: set(users) for guild_id, users in snapshot.paused_users.items()}
        if self._paused_guilds or self._paused_users:
            logger.info(
                f"Restored pause state: {len(self._paused_guilds)} guild(s), "
                f"{sum(len(users) for users in self._paused_users.values())} user(s)"
            )

    def is_paused(self, guild_id: str, user_id: str) -> bool:
        if guild_id in self._paused_guilds:
            return True
        return user_id in self._paused_users.get(guild_id, ())

    def is_guild_paused(self, guild_id: str) -> bool:
        return guild_id in self._paused_guilds

    async def pause_user(self, guild_id: str, user_id: str) -> PauseOutcome:
        if self.registry.has(guild_id, user_id):
            return PauseOutcome.REJECTED

        users = self._paused_users.setdefault(guild_id, set())
        already = user_id in users
        users.add(user_id)
        try:
            await self.store.set_user_paused(guild_id, user_id, True)
        except Exception:
            if not already:
                users.discard(user_id)
            raise
        logger.info(f"Paused patrol time for user {user_id} in guild {guild_id}")
        return PauseOutcome.OK

    async def unpause_user(self, guild_id: str, user_id: str) -> bool:
        """Clear the user flag; returns whether it was set"""
        users = self._paused_users.get(guild_id, set())
        was_paused = user_id in users
        await self.store.set_user_paused(guild_id, user_id, False)
        users.discard(user_id)
        logger.info(f"Unpaused patrol time for user {user_id} in guild {guild_id}")
        return was_paused

    async def pause_guild(self, guild_id: str) -> PauseOutcome:
        if self.registry.has_any(guild_id):
            return PauseOutcome.REJECTED

        already = guild_id in self._paused_guilds
        self._paused_guilds.add(guild_id)
        try:
            await self.store.set_guild_paused(guild_id, True)
        except Exception:
            if not already:
                self._paused_guilds.discard(guild_id)
            raise
        logger.info(f"Paused patrol time for guild {guild_id}")
        return PauseOutcome.OK

    async def unpause_guild(self, guild_id: str) -> bool:
        was_paused = guild_id in self._paused_guilds
        await self.store.set_guild_paused(guild_id, False)
        self._paused_guilds.discard(guild_id)
        logger.info(f"Unpaused patrol time for guild {guild_id}")
        return was_paused
