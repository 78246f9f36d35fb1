# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

import logging
from datetime import datetime, timezone
from typing import List, Tuple

from .models import ms_between
from .storage import PatrolStore

logger = logging.getLogger(__name__)


def month_start(year: int, month: int) -> datetime:
    return datetime(year, month, 1, tzinfo=timezone.utc)


def next_month_start(moment: datetime) -> datetime:
    if moment.month == 12:
        return month_start(moment.year + 1, 1)
    return month_start(moment.year, moment.month + 1)


def _truncate_ms(moment: datetime) -> datetime:
    moment = moment.astimezone(timezone.utc)
    return moment.replace(microsecond=moment.microsecond - moment.microsecond % 1000)


def split_by_month(started_at: datetime, ended_at: datetime) -> List[Tuple[int, int, int]]:
    """Split [started_at, ended_at) at UTC month boundaries

    Returns (year, month, ms) slices whose ms add up exactly to the whole
    interval. Both ends are truncated to the millisecond first so every cut
    lands on a whole millisecond.
    """
    current = _truncate_ms(started_at)
    end = _truncate_ms(ended_at)
    slices = []

    while current < end:
        boundary = min(end, next_month_start(current))
        ms = ms_between(current, boundary)
        if ms > 0:
            slices.append((current.year, current.month, ms))
        current = boundary

    return slices


class MonthlyAccrualEngine:
    """Turns finalized intervals into durable total increments"""

    def __init__(self, store: PatrolStore):
        self.store = store

    async def accrue(self, guild_id: str, user_id: str, started_at: datetime, ended_at: datetime) -> int:
        """Credit the interval; returns the milliseconds added to the all-time total"""
        slices = split_by_month(started_at, ended_at)
        total_ms = sum(ms for _, _, ms in slices)
        if total_ms <= 0:
            return 0

        await self.store.increment_totals(guild_id, user_id, total_ms, slices)
        logger.debug(f"Accrued {total_ms}ms for user {user_id} in guild {guild_id} over {len(slices)} month(s)")
        return total_ms
