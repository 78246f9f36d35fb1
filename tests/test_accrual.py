from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from Utils.accrual import MonthlyAccrualEngine, next_month_start, split_by_month
from Utils.storage import MemoryPatrolStore


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_split_across_month_boundary():
    slices = split_by_month(_utc(2025, 1, 31, 23, 59), _utc(2025, 2, 1, 0, 1))
    assert slices == [(2025, 1, 60_000), (2025, 2, 60_000)]


def test_split_within_one_month():
    assert split_by_month(_utc(2025, 3, 10, 12, 0), _utc(2025, 3, 10, 12, 0, 5)) == [(2025, 3, 5000)]


def test_split_across_year_end_and_several_months():
    start = _utc(2024, 11, 30, 23, 0)
    end = _utc(2025, 1, 1, 1, 0)
    slices = split_by_month(start, end)

    assert [(year, month) for year, month, _ in slices] == [(2024, 11), (2024, 12), (2025, 1)]
    assert slices[0][2] == 3_600_000
    assert slices[1][2] == 31 * 86_400_000
    assert slices[2][2] == 3_600_000
    assert sum(ms for _, _, ms in slices) == int((end - start).total_seconds() * 1000)


def test_split_truncates_sub_millisecond_ends():
    start = _utc(2025, 1, 31, 23, 59, 59, 999_999)
    end = _utc(2025, 2, 1, 0, 0, 0, 1_500)
    assert split_by_month(start, end) == [(2025, 1, 1), (2025, 2, 1)]


def test_split_empty_for_non_positive_interval():
    moment = _utc(2025, 5, 1)
    assert split_by_month(moment, moment) == []
    assert split_by_month(moment, _utc(2025, 4, 30)) == []


def test_next_month_start_rolls_year():
    assert next_month_start(_utc(2025, 12, 15, 8)) == _utc(2026, 1, 1)
    assert next_month_start(_utc(2025, 2, 28)) == _utc(2025, 3, 1)


def test_accrue_writes_all_time_and_monthly_slices():
    store = MemoryPatrolStore()
    engine = MonthlyAccrualEngine(store)

    async def scenario():
        credited = await engine.accrue("g", "u", _utc(2025, 1, 31, 23, 59), _utc(2025, 2, 1, 0, 1))
        return (
            credited,
            await store.get_total("g", "u"),
            await store.get_month_total("g", "u", 2025, 1),
            await store.get_month_total("g", "u", 2025, 2),
        )

    assert asyncio.run(scenario()) == (120_000, 120_000, 60_000, 60_000)


def test_accrue_skips_empty_interval():
    store = MemoryPatrolStore()
    engine = MonthlyAccrualEngine(store)
    moment = _utc(2025, 1, 1)

    assert asyncio.run(engine.accrue("g", "u", moment, moment)) == 0
    assert store.totals == {}
