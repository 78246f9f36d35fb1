# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

import logging
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from .models import FinalizedInterval, TrackedSession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """In-memory map of (guild, user) -> TrackedSession

    The only owner of TrackedSession objects. It never decides whether a
    voice move counts as an enter or a leave; callers do that and hold the
    per-(guild, user) lock while they mutate.
    """

    def __init__(self):
        # guild_id -> user_id -> session
        self._sessions: Dict[str, Dict[str, TrackedSession]] = {}

    def __len__(self) -> int:
        return sum(len(users) for users in self._sessions.values())

    def __iter__(self) -> Iterator[TrackedSession]:
        for users in list(self._sessions.values()):
            yield from list(users.values())

    def get(self, guild_id: str, user_id: str) -> Optional[TrackedSession]:
        return self._sessions.get(guild_id, {}).get(user_id)

    def has(self, guild_id: str, user_id: str) -> bool:
        return self.get(guild_id, user_id) is not None

    def has_any(self, guild_id: str) -> bool:
        return bool(self._sessions.get(guild_id))

    def start(self, guild_id: str, user_id: str, channel_id: str, started_at: datetime) -> Tuple[TrackedSession, bool]:
        """Create a session unless one exists; returns (session, created)"""
        existing = self.get(guild_id, user_id)
        if existing is not None:
            return existing, False
        session = TrackedSession(guild_id, user_id, channel_id, started_at)
        self._sessions.setdefault(guild_id, {})[user_id] = session
        return session, True

    def stop(self, guild_id: str, user_id: str, ended_at: datetime) -> Optional[FinalizedInterval]:
        """Remove the session and return its interval, or None if untracked"""
        users = self._sessions.get(guild_id)
        if not users or user_id not in users:
            return None
        session = users.pop(user_id)
        if not users:
            del self._sessions[guild_id]
        return FinalizedInterval(guild_id, user_id, session.channel_id, session.started_at, ended_at)

    def restart_clock(self, guild_id: str, user_id: str, now: datetime) -> Optional[TrackedSession]:
        session = self.get(guild_id, user_id)
        if session is not None:
            session.started_at = now
        return session

    def move(self, guild_id: str, user_id: str, channel_id: str) -> Optional[TrackedSession]:
        """Point an existing session at another channel, keeping its start time"""
        session = self.get(guild_id, user_id)
        if session is not None:
            session.channel_id = channel_id
        return session

    def list_active(self, guild_id: str) -> List[TrackedSession]:
        return list(self._sessions.get(guild_id, {}).values())

    def guild_ids(self) -> List[str]:
        return list(self._sessions.keys())
