from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from Utils.models import GuildPatrolSettings, PresenceEvent  # noqa: E402
from Utils.patrol_timer import PatrolTimer, PresenceSource  # noqa: E402
from Utils.storage import MemoryPatrolStore  # noqa: E402

GUILD = "100"
CATEGORY = "900"
PATROL_A = "901"
PATROL_B = "902"
LOBBY = "500"
OTHER_CATEGORY = "800"


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakePresence(PresenceSource):
    def __init__(self) -> None:
        self.channels: Dict[Tuple[str, str], str] = {}
        self.members: Dict[str, List[Tuple[str, str]]] = {}
        self.guilds: List[str] = []
        self.broken_guilds: set = set()

    def add_channel(self, guild_id: str, channel_id: str, category_id: str) -> None:
        self.channels[(guild_id, channel_id)] = category_id
        if guild_id not in self.guilds:
            self.guilds.append(guild_id)

    def place(self, guild_id: str, user_id: str, channel_id: str) -> None:
        self.members.setdefault(guild_id, []).append((user_id, channel_id))

    def guild_ids(self) -> List[str]:
        return list(self.guilds)

    def category_of(self, guild_id: str, channel_id: str) -> Optional[str]:
        return self.channels.get((guild_id, channel_id))

    def members_in_category(self, guild_id: str, category_id: str) -> List[Tuple[str, str]]:
        if guild_id in self.broken_guilds:
            raise RuntimeError("member cache unavailable")
        return [
            (user_id, channel_id)
            for user_id, channel_id in self.members.get(guild_id, [])
            if self.channels.get((guild_id, channel_id)) == category_id
        ]


class YieldingStore(MemoryPatrolStore):
    """Writes give up the loop once, like a round trip to Redis"""

    async def upsert_active_session(self, record):
        await asyncio.sleep(0)
        await super().upsert_active_session(record)

    async def delete_active_session(self, guild_id, user_id):
        await asyncio.sleep(0)
        await super().delete_active_session(guild_id, user_id)

    async def increment_totals(self, guild_id, user_id, total_ms, monthly):
        await asyncio.sleep(0)
        await super().increment_totals(guild_id, user_id, total_ms, monthly)

    async def reset_totals(self, guild_id, user_id=None):
        await asyncio.sleep(0)
        await super().reset_totals(guild_id, user_id)

    async def set_user_paused(self, guild_id, user_id, paused):
        await asyncio.sleep(0)
        await super().set_user_paused(guild_id, user_id, paused)

    async def set_guild_paused(self, guild_id, paused):
        await asyncio.sleep(0)
        await super().set_guild_paused(guild_id, paused)


def move(guild_id: str, user_id: str, previous: Optional[str], new: Optional[str], is_bot: bool = False) -> PresenceEvent:
    return PresenceEvent(guild_id, user_id, previous, new, is_bot)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 3, 10, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def store() -> MemoryPatrolStore:
    store = MemoryPatrolStore()
    store.settings[GUILD] = GuildPatrolSettings(GUILD, category_id=CATEGORY)
    return store


@pytest.fixture
def presence() -> FakePresence:
    presence = FakePresence()
    presence.add_channel(GUILD, PATROL_A, CATEGORY)
    presence.add_channel(GUILD, PATROL_B, CATEGORY)
    presence.add_channel(GUILD, LOBBY, OTHER_CATEGORY)
    return presence


@pytest.fixture
def timer(store: MemoryPatrolStore, presence: FakePresence, clock: FakeClock) -> PatrolTimer:
    return PatrolTimer(store, presence, clock=clock)


@pytest.fixture
def yielding_timer(presence: FakePresence, clock: FakeClock) -> PatrolTimer:
    store = YieldingStore()
    store.settings[GUILD] = GuildPatrolSettings(GUILD, category_id=CATEGORY)
    return PatrolTimer(store, presence, clock=clock)
