from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from Utils.errors import ValidationError
from Utils.models import ActiveSessionRecord, LeaderboardScope

from conftest import GUILD, PATROL_A, PATROL_B, move


def test_leaderboard_merges_live_time(timer, store, clock):
    store.totals[GUILD].update({"1": 5000, "2": 6500})

    async def scenario():
        await timer.bootstrap()
        await timer.handle_event(move(GUILD, "1", None, PATROL_A))
        clock.advance(seconds=2)
        return await timer.get_leaderboard(GUILD)

    board = asyncio.run(scenario())
    assert [(e.rank, e.user_id, e.total_ms) for e in board] == [(1, "1", 7000), (2, "2", 6500)]


def test_paused_live_time_counts_as_zero(timer, store, clock):
    store.totals[GUILD]["1"] = 5000

    async def scenario():
        await timer.bootstrap()
        await timer.pause_user(GUILD, "1")
        await timer.handle_event(move(GUILD, "1", None, PATROL_A))
        clock.advance(minutes=1)
        return (
            await timer.get_all_time_total(GUILD, "1"),
            await timer.get_leaderboard(GUILD),
            await timer.get_currently_tracked(GUILD),
        )

    total, board, tracked = asyncio.run(scenario())
    assert total == 5000
    assert board[0].total_ms == 5000
    assert tracked[0].paused is True
    assert tracked[0].elapsed_ms == 0


def test_ties_break_by_user_id_and_limit_applies(timer, store):
    store.totals[GUILD].update({"b": 10, "a": 10, "c": 30, "d": 5})

    async def scenario():
        await timer.bootstrap()
        return await timer.get_leaderboard(GUILD, limit=3), await timer.get_leaderboard(GUILD, limit=0)

    limited, unlimited = asyncio.run(scenario())
    assert [e.user_id for e in limited] == ["c", "a", "b"]
    assert len(unlimited) == 4


def test_month_total_counts_only_overlap_with_month(timer, store, clock):
    store.monthly[(GUILD, 2025, 3)]["1"] = 1000
    store.active[(GUILD, "1")] = ActiveSessionRecord(
        GUILD, "1", PATROL_A, datetime(2025, 2, 28, 23, 0, tzinfo=timezone.utc)
    )
    clock.now = datetime(2025, 3, 1, 1, 0, tzinfo=timezone.utc)

    async def scenario():
        timer.presence.place(GUILD, "1", PATROL_A)
        await timer.bootstrap()
        return (
            await timer.get_month_total(GUILD, "1", 2025, 3),
            await timer.get_month_total(GUILD, "1", 2025, 2),
            await timer.get_month_total(GUILD, "1", 2025, 4),
            await timer.get_all_time_total(GUILD, "1"),
        )

    march, february, april, all_time = asyncio.run(scenario())
    assert march == 1000 + 3_600_000
    assert february == 3_600_000
    assert april == 0
    assert all_time == 7_200_000


def test_month_leaderboard(timer, store, clock):
    store.monthly[(GUILD, 2025, 3)].update({"1": 4000, "2": 9000})
    store.monthly[(GUILD, 2025, 2)].update({"3": 99_000})

    async def scenario():
        await timer.bootstrap()
        await timer.handle_event(move(GUILD, "1", None, PATROL_A))
        clock.advance(seconds=6)
        return await timer.get_leaderboard(GUILD, LeaderboardScope.for_month(2025, 3))

    board = asyncio.run(scenario())
    assert [(e.user_id, e.total_ms) for e in board] == [("1", 10_000), ("2", 9000)]


def test_channel_leaderboard_uses_channel_occupants(timer, store, clock):
    store.totals[GUILD].update({"1": 1000, "2": 50_000, "3": 2000})

    async def scenario():
        await timer.bootstrap()
        await timer.handle_event(move(GUILD, "1", None, PATROL_A))
        await timer.handle_event(move(GUILD, "2", None, PATROL_B))
        await timer.handle_event(move(GUILD, "3", None, PATROL_A))
        clock.advance(seconds=5)
        from_registry = await timer.get_leaderboard(GUILD, LeaderboardScope.for_channel(PATROL_A))
        from_members = await timer.get_leaderboard(GUILD, LeaderboardScope.for_channel(PATROL_A), member_ids=["1", "9"])
        empty = await timer.get_leaderboard(GUILD, LeaderboardScope.for_channel("777"))
        return from_registry, from_members, empty

    from_registry, from_members, empty = asyncio.run(scenario())
    assert [(e.user_id, e.total_ms) for e in from_registry] == [("3", 7000), ("1", 6000)]
    assert [(e.user_id, e.total_ms) for e in from_members] == [("1", 6000), ("9", 0)]
    assert empty == []


def test_adjust_floors_at_zero(timer, store):
    store.totals[GUILD]["1"] = 60_000
    store.monthly[(GUILD, 2025, 3)]["1"] = 60_000

    async def scenario():
        await timer.bootstrap()
        down = await timer.adjust(GUILD, "1", -3_600_000)
        up = await timer.adjust(GUILD, "1", 90_000, year=2025, month=1)
        return down, up

    down, up = asyncio.run(scenario())
    assert down == (0, 0)
    assert up == (90_000, 90_000)
    assert store.monthly[(GUILD, 2025, 1)]["1"] == 90_000


def test_adjust_rejects_invalid_month(timer):
    with pytest.raises(ValidationError):
        asyncio.run(timer.adjust(GUILD, "1", 1000, year=2025, month=13))


def test_reset_zeroes_totals_and_restarts_clock(timer, store, clock):
    store.totals[GUILD].update({"1": 5000, "2": 8000})
    store.monthly[(GUILD, 2025, 3)]["1"] = 5000

    async def scenario():
        await timer.bootstrap()
        await timer.handle_event(move(GUILD, "1", None, PATROL_A))
        clock.advance(minutes=2)
        await timer.reset(GUILD, "1")
        single = await timer.get_all_time_total(GUILD, "1")
        other = await timer.get_all_time_total(GUILD, "2")
        await timer.reset(GUILD)
        return single, other, await timer.get_leaderboard(GUILD)

    single, other, board = asyncio.run(scenario())
    assert single == 0
    assert other == 8000
    assert board == []
    assert store.monthly[(GUILD, 2025, 3)]["1"] == 5000
    assert store.active[(GUILD, "1")].started_at == clock.now


def test_currently_tracked_sorted_by_elapsed(timer, clock):
    async def scenario():
        await timer.bootstrap()
        await timer.handle_event(move(GUILD, "1", None, PATROL_A))
        clock.advance(seconds=30)
        await timer.handle_event(move(GUILD, "2", None, PATROL_B))
        clock.advance(seconds=10)
        return await timer.get_currently_tracked(GUILD)

    tracked = asyncio.run(scenario())
    assert [(t.user_id, t.elapsed_ms) for t in tracked] == [("1", 40_000), ("2", 10_000)]


def test_available_years_and_months(timer, store):
    store.monthly[(GUILD, 2024, 12)].update({"1": 7_200_000})
    store.monthly[(GUILD, 2025, 1)].update({"1": 3_600_000, "2": 1_800_000})
    store.monthly[(GUILD, 2025, 2)].update({"2": 5_400_000})
    store.monthly[("other", 2023, 5)].update({"1": 3_600_000})

    async def scenario():
        return (
            await timer.get_available_years(GUILD),
            await timer.get_available_months(GUILD),
            await timer.get_available_months(GUILD, 2025),
        )

    years, months, months_2025 = asyncio.run(scenario())
    assert [(y.year, y.user_count, y.total_hours) for y in years] == [(2025, 2, 3), (2024, 1, 2)]
    assert [(m.year, m.month) for m in months] == [(2025, 2), (2025, 1), (2024, 12)]
    assert [(m.month, m.user_count, m.total_hours) for m in months_2025] == [(2, 1, 1), (1, 2, 1)]


def test_scope_validation():
    with pytest.raises(ValidationError):
        LeaderboardScope.for_month(2025, 0)
    with pytest.raises(ValidationError):
        LeaderboardScope.for_channel("")
    assert LeaderboardScope.for_month(2025, 12).month == 12


@pytest.mark.parametrize("user_id", ["1", None])
def test_leave_during_reset_keeps_totals_cleared(yielding_timer, clock, user_id):
    timer = yielding_timer
    store = timer.store

    async def scenario():
        await timer.bootstrap()
        await timer.handle_event(move(GUILD, "1", None, PATROL_A))
        clock.advance(hours=2)
        await asyncio.gather(
            timer.reset(GUILD, user_id),
            timer.handle_event(move(GUILD, "1", PATROL_A, None)),
        )
        return await timer.get_all_time_total(GUILD, "1")

    assert asyncio.run(scenario()) == 0
    assert store.totals.get(GUILD, {}).get("1", 0) == 0
    assert store.monthly[(GUILD, 2025, 3)] == {}
