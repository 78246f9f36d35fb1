# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from .accrual import month_start, next_month_start
from .errors import ValidationError
from .models import (
    LeaderboardEntry, LeaderboardScope, MonthSummary, ScopeKind, TrackedEntry,
    TrackedSession, YearSummary, clamp_limit, ms_between, validate_month,
)
from .pause import PauseController
from .registry import SessionRegistry
from .storage import PatrolStore

logger = logging.getLogger(__name__)

MS_PER_HOUR = 3_600_000


class QueryEngine:
    """Read side: durable totals merged with live, unpaused session deltas"""

    def __init__(self, registry: SessionRegistry, pauses: PauseController,
                 store: PatrolStore, clock: Callable[[], datetime]):
        self.registry = registry
        self.pauses = pauses
        self.store = store
        self.clock = clock

    def _live_ms(self, session: TrackedSession, now: datetime,
                 window_start: Optional[datetime] = None,
                 window_end: Optional[datetime] = None) -> int:
        if self.pauses.is_paused(session.guild_id, session.user_id):
            return 0
        start = session.started_at if window_start is None else max(session.started_at, window_start)
        end = now if window_end is None else min(now, window_end)
        return ms_between(start, end)

    def _merge_live(self, totals: Dict[str, int], sessions: Iterable[TrackedSession], now: datetime,
                    window_start: Optional[datetime] = None,
                    window_end: Optional[datetime] = None) -> Dict[str, int]:
        merged = dict(totals)
        for session in sessions:
            delta = self._live_ms(session, now, window_start, window_end)
            if delta > 0:
                merged[session.user_id] = merged.get(session.user_id, 0) + delta
        return merged

    @staticmethod
    def _rank(totals: Dict[str, int], limit: Optional[int]) -> List[LeaderboardEntry]:
        ordered = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
        limit = clamp_limit(limit)
        if limit is not None:
            ordered = ordered[:limit]
        return [
            LeaderboardEntry(rank=index + 1, user_id=user_id, total_ms=max(0, total_ms))
            for index, (user_id, total_ms) in enumerate(ordered)
        ]

    # ========================================================================
    # PER-USER
    # ========================================================================

    async def currently_tracked(self, guild_id: str) -> List[TrackedEntry]:
        now = self.clock()
        entries = [
            TrackedEntry(
                user_id=session.user_id,
                channel_id=session.channel_id,
                started_at=session.started_at,
                elapsed_ms=self._live_ms(session, now),
                paused=self.pauses.is_paused(guild_id, session.user_id),
            )
            for session in self.registry.list_active(guild_id)
        ]
        entries.sort(key=lambda entry: (-entry.elapsed_ms, entry.user_id))
        return entries

    async def all_time_total(self, guild_id: str, user_id: str) -> int:
        total = await self.store.get_total(guild_id, user_id)
        session = self.registry.get(guild_id, user_id)
        if session is not None:
            total += self._live_ms(session, self.clock())
        return total

    async def month_total(self, guild_id: str, user_id: str, year: int, month: int) -> int:
        validate_month(month)
        total = await self.store.get_month_total(guild_id, user_id, year, month)
        session = self.registry.get(guild_id, user_id)
        if session is not None:
            start = month_start(year, month)
            total += self._live_ms(session, self.clock(), start, next_month_start(start))
        return total

    # ========================================================================
    # LEADERBOARDS
    # ========================================================================

    async def leaderboard(self, guild_id: str, scope: LeaderboardScope, limit: Optional[int] = 10,
                          member_ids: Optional[Iterable[str]] = None) -> List[LeaderboardEntry]:
        """Top totals for a scope

        For channel scope, member_ids are the users currently in the channel
        (from live voice state); without them the registry's sessions in that
        channel are used.
        """
        now = self.clock()
        sessions = self.registry.list_active(guild_id)

        if scope.kind is ScopeKind.ALL_TIME:
            totals = self._merge_live(await self.store.get_totals(guild_id), sessions, now)

        elif scope.kind is ScopeKind.MONTH:
            start = month_start(scope.year, scope.month)
            rows = await self.store.get_month_totals(guild_id, scope.year, scope.month)
            totals = self._merge_live(rows, sessions, now, start, next_month_start(start))

        elif scope.kind is ScopeKind.CHANNEL:
            in_channel = [session for session in sessions if session.channel_id == scope.channel_id]
            if member_ids is None:
                users = {session.user_id for session in in_channel}
            else:
                users = {str(member_id) for member_id in member_ids}
            if not users:
                return []
            all_rows = await self.store.get_totals(guild_id)
            rows = {user_id: all_rows.get(user_id, 0) for user_id in users}
            totals = self._merge_live(rows, [s for s in in_channel if s.user_id in users], now)

        else:
            raise ValidationError(f"Unknown leaderboard scope {scope.kind!r}")

        return self._rank(totals, limit)

    # ========================================================================
    # HISTORY
    # ========================================================================

    async def available_years(self, guild_id: str) -> List[YearSummary]:
        users = defaultdict(set)
        totals = defaultdict(int)
        for year, _, user_id, ms in await self.store.list_monthly_rows(guild_id):
            users[year].add(user_id)
            totals[year] += ms
        return [
            YearSummary(year=year, user_count=len(users[year]), total_hours=totals[year] // MS_PER_HOUR)
            for year in sorted(totals, reverse=True)
        ]

    async def available_months(self, guild_id: str, year: Optional[int] = None) -> List[MonthSummary]:
        users = defaultdict(set)
        totals = defaultdict(int)
        for row_year, row_month, user_id, ms in await self.store.list_monthly_rows(guild_id, year):
            users[(row_year, row_month)].add(user_id)
            totals[(row_year, row_month)] += ms
        return [
            MonthSummary(year=key[0], month=key[1], user_count=len(users[key]), total_hours=totals[key] // MS_PER_HOUR)
            for key in sorted(totals, reverse=True)
        ]
