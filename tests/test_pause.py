from __future__ import annotations

import asyncio

import pytest

from Utils.errors import StorageError
from Utils.models import PauseOutcome
from Utils.pause import PauseController
from Utils.registry import SessionRegistry
from Utils.storage import MemoryPatrolStore

from conftest import GUILD, PATROL_A, PATROL_B, move


def test_pause_rejected_while_session_open(timer, store, clock):
    async def scenario():
        await timer.bootstrap()
        await timer.handle_event(move(GUILD, "1", None, PATROL_A))
        rejected = await timer.pause_user(GUILD, "1")
        clock.advance(seconds=10)
        await timer.handle_event(move(GUILD, "1", PATROL_A, None))
        accepted = await timer.pause_user(GUILD, "1")
        return rejected, accepted

    assert asyncio.run(scenario()) == (PauseOutcome.REJECTED, PauseOutcome.OK)
    assert timer.is_paused(GUILD, "1")
    assert store.paused_users[GUILD] == {"1"}
    assert store.totals[GUILD]["1"] == 10_000


def test_paused_session_is_discarded(timer, store, clock):
    async def scenario():
        await timer.bootstrap()
        assert await timer.pause_user(GUILD, "1") is PauseOutcome.OK
        await timer.handle_event(move(GUILD, "1", None, PATROL_A))
        clock.advance(minutes=10)
        await timer.handle_event(move(GUILD, "1", PATROL_A, None))

    asyncio.run(scenario())
    assert store.totals.get(GUILD, {}).get("1", 0) == 0
    assert store.active == {}
    assert timer.metrics['sessions_discarded_paused'] == 1


def test_unpause_restarts_open_clock(timer, store, clock):
    async def scenario():
        await timer.bootstrap()
        await timer.pause_user(GUILD, "1")
        await timer.handle_event(move(GUILD, "1", None, PATROL_A))
        clock.advance(minutes=10)
        was_paused = await timer.unpause_user(GUILD, "1")
        clock.advance(seconds=30)
        await timer.handle_event(move(GUILD, "1", PATROL_A, None))
        return was_paused

    assert asyncio.run(scenario()) is True
    assert store.totals[GUILD]["1"] == 30_000
    assert store.paused_users[GUILD] == set()


def test_guild_pause_covers_every_member(timer, store, clock):
    async def scenario():
        await timer.bootstrap()
        assert await timer.pause_guild(GUILD) is PauseOutcome.OK
        await timer.handle_event(move(GUILD, "1", None, PATROL_A))
        await timer.handle_event(move(GUILD, "2", None, PATROL_A))
        clock.advance(minutes=1)
        tracked = await timer.get_currently_tracked(GUILD)
        rejected = await timer.pause_guild(GUILD)
        await timer.unpause_guild(GUILD)
        resumed_at = clock.now
        clock.advance(seconds=5)
        await timer.handle_event(move(GUILD, "1", PATROL_A, None))
        return tracked, rejected, resumed_at

    tracked, rejected, resumed_at = asyncio.run(scenario())
    assert all(entry.paused and entry.elapsed_ms == 0 for entry in tracked)
    assert rejected is PauseOutcome.REJECTED
    assert store.totals[GUILD] == {"1": 5000}
    assert timer.registry.get(GUILD, "2").started_at == resumed_at
    assert store.active[(GUILD, "2")].started_at == resumed_at


def test_pause_rolls_back_when_persisting_fails():
    class BrokenStore(MemoryPatrolStore):
        async def set_user_paused(self, guild_id, user_id, paused):
            raise StorageError("write failed")

    controller = PauseController(SessionRegistry(), BrokenStore())
    with pytest.raises(StorageError):
        asyncio.run(controller.pause_user("g", "u"))
    assert controller.is_paused("g", "u") is False


def test_leave_during_guild_unpause_credits_no_paused_time(yielding_timer, clock):
    timer = yielding_timer
    store = timer.store

    async def scenario():
        await timer.bootstrap()
        await timer.pause_guild(GUILD)
        await timer.handle_event(move(GUILD, "1", None, PATROL_A))
        await timer.handle_event(move(GUILD, "2", None, PATROL_B))
        clock.advance(hours=2)
        await asyncio.gather(
            timer.unpause_guild(GUILD),
            timer.handle_event(move(GUILD, "2", PATROL_B, None)),
        )
        clock.advance(seconds=10)
        await timer.handle_event(move(GUILD, "1", PATROL_A, None))

    asyncio.run(scenario())
    assert store.totals[GUILD] == {"1": 10_000}
    assert not timer.is_paused(GUILD, "2")


def test_leave_during_user_unpause_credits_no_paused_time(yielding_timer, clock):
    timer = yielding_timer
    store = timer.store

    async def scenario():
        await timer.bootstrap()
        await timer.pause_user(GUILD, "1")
        await timer.handle_event(move(GUILD, "1", None, PATROL_A))
        clock.advance(hours=2)
        results = await asyncio.gather(
            timer.unpause_user(GUILD, "1"),
            timer.handle_event(move(GUILD, "1", PATROL_A, None)),
        )
        return results[0]

    assert asyncio.run(scenario()) is True
    assert store.totals.get(GUILD, {}).get("1", 0) == 0
    assert store.active == {}
    assert not timer.is_paused(GUILD, "1")
