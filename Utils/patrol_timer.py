# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Optional, Set, Tuple

from cachetools import TTLCache

from .accrual import MonthlyAccrualEngine
from .errors import ConfigurationError, PatrolError
from .models import (
    MIN_SESSION_MS, ActiveSessionRecord, FinalizedInterval, GuildPatrolSettings,
    LeaderboardEntry, LeaderboardScope, MonthSummary, PauseOutcome, PresenceEvent,
    TrackedEntry, YearSummary, utcnow, validate_month,
)
from .pause import PauseController
from .queries import QueryEngine
from .registry import SessionRegistry
from .storage import PatrolStore

logger = logging.getLogger(__name__)

SessionListener = Callable[[FinalizedInterval, int], Awaitable[None]]


# ============================================================================
# COLLABORATORS
# ============================================================================

class PresenceSource(ABC):
    """Live view of the chat platform's voice state"""

    @abstractmethod
    def guild_ids(self) -> List[str]:
        """Guilds the bot can currently see"""

    @abstractmethod
    def category_of(self, guild_id: str, channel_id: str) -> Optional[str]:
        """Parent category of a voice channel, None if unknown or not a voice channel"""

    @abstractmethod
    def members_in_category(self, guild_id: str, category_id: str) -> List[Tuple[str, str]]:
        """(user_id, channel_id) for every non-bot member in the category's voice channels"""


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it"""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._refs: Dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]


# ============================================================================
# PATROL TIMER
# ============================================================================

class PatrolTimer:
    """Measures time members spend inside each guild's tracked voice category

    Wires the session registry, pause controller, monthly accrual and query
    engine around one PatrolStore. Voice moves go through handle_event();
    bootstrap() must run once, after the gateway is ready, before any event
    is applied.
    """

    def __init__(self, store: PatrolStore, presence: Optional[PresenceSource] = None,
                 clock: Callable[[], datetime] = utcnow, settings_ttl: int = 300):
        self.store = store
        self.presence = presence
        self.clock = clock

        self.registry = SessionRegistry()
        self.pauses = PauseController(self.registry, store)
        self.accrual = MonthlyAccrualEngine(store)
        self.queries = QueryEngine(self.registry, self.pauses, store, clock)

        self.settings_cache = TTLCache(maxsize=2000, ttl=settings_ttl)
        self._locks = KeyedLock()
        self._ready = asyncio.Event()
        self._bootstrapped = False
        self._listeners: List[SessionListener] = []

        self.metrics = {
            'sessions_started': 0,
            'sessions_finalized': 0,
            'sessions_credited': 0,
            'sessions_discarded_short': 0,
            'sessions_discarded_paused': 0,
            'ms_credited': 0,
            'ms_lost': 0,
            'storage_errors': 0,
        }

        logger.info("PatrolTimer initialized")

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def add_listener(self, listener: SessionListener):
        """Register a coroutine called with (interval, credited_ms) after each credited session"""
        self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def close(self):
        await self.store.close()

    # ========================================================================
    # SETTINGS
    # ========================================================================

    async def get_settings(self, guild_id: str) -> GuildPatrolSettings:
        guild_id = str(guild_id)
        cached = self.settings_cache.get(guild_id)
        if cached is not None:
            return cached
        settings = await self.store.get_settings(guild_id)
        self.settings_cache[guild_id] = settings
        return settings

    async def update_settings(self, guild_id: str, **changes) -> GuildPatrolSettings:
        """Change top_channel_id / log_channel_id; use set_category for the category"""
        guild_id = str(guild_id)
        settings = await self.store.get_settings(guild_id)
        for name, value in changes.items():
            if name not in ('top_channel_id', 'log_channel_id'):
                raise PatrolError(f"Unknown setting '{name}'", context={'guild_id': guild_id})
            setattr(settings, name, str(value) if value else None)
        await self.store.save_settings(settings)
        self.settings_cache.pop(guild_id, None)
        logger.info(f"Updated patrol settings for guild {guild_id}: {changes}")
        return settings

    async def set_category(self, guild_id: str, category_id: Optional[str]) -> GuildPatrolSettings:
        """Point the guild at another tracked category

        Open sessions belonged to the old category, so they are finalized
        now; members already sitting in the new category start fresh.
        """
        guild_id = str(guild_id)
        settings = await self.store.get_settings(guild_id)
        settings.category_id = str(category_id) if category_id else None
        await self.store.save_settings(settings)
        self.settings_cache.pop(guild_id, None)
        logger.info(f"Tracked category for guild {guild_id} set to {settings.category_id}")

        if self.ready:
            now = self.clock()
            for session in self.registry.list_active(guild_id):
                await self._finalize_locked(guild_id, session.user_id, now)
            if settings.configured:
                await self._resume_from_presence(guild_id, settings, now)
        return settings

    def _in_category(self, guild_id: str, channel_id: Optional[str], category_id: str) -> bool:
        if not channel_id or self.presence is None:
            return False
        try:
            return self.presence.category_of(guild_id, channel_id) == category_id
        except Exception as e:
            logger.warning(f"Could not resolve category of channel {channel_id} in guild {guild_id}: {e}")
            return False

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    async def handle_event(self, event: PresenceEvent):
        """Apply one voice move: stop and credit on leave, start on enter"""
        if event.is_bot:
            return

        await self._ready.wait()

        guild_id, user_id = str(event.guild_id), str(event.user_id)
        previous = str(event.previous_channel_id) if event.previous_channel_id else None
        new = str(event.new_channel_id) if event.new_channel_id else None

        settings = await self.get_settings(guild_id)
        if not settings.configured:
            return

        was_tracked = self._in_category(guild_id, previous, settings.category_id)
        now_tracked = self._in_category(guild_id, new, settings.category_id)
        if not was_tracked and not now_tracked:
            return

        credited = None
        async with self._locks.hold((guild_id, user_id)):
            now = self.clock()
            if was_tracked and (not now_tracked or previous != new):
                credited = await self._finalize(guild_id, user_id, now)
            if now_tracked and (not was_tracked or previous != new):
                await self._start(guild_id, user_id, new, now)

        if credited is not None:
            await self._notify(*credited)

    async def _start(self, guild_id: str, user_id: str, channel_id: str, started_at: datetime) -> bool:
        """Caller holds the (guild, user) lock. Returns whether a session was created"""
        if self.registry.has(guild_id, user_id):
            return False

        try:
            await self.store.upsert_active_session(ActiveSessionRecord(guild_id, user_id, channel_id, started_at))
        except PatrolError:
            self.metrics['storage_errors'] += 1
            raise

        self.registry.start(guild_id, user_id, channel_id, started_at)
        self.metrics['sessions_started'] += 1
        logger.info(f"Started patrol session for user {user_id} in channel {channel_id} (guild {guild_id})")
        return True

    async def _finalize(self, guild_id: str, user_id: str,
                        ended_at: datetime) -> Optional[Tuple[FinalizedInterval, int]]:
        """Caller holds the (guild, user) lock

        Returns (interval, credited_ms) when time was credited, for the caller
        to hand to listeners once the lock is released. A failed record delete
        raises and leaves the session open; a failed accrual only loses this
        interval.
        """
        if not self.registry.has(guild_id, user_id):
            return None

        # Record goes first: a crash before accrual loses the interval
        # instead of crediting it twice on recovery.
        try:
            await self.store.delete_active_session(guild_id, user_id)
        except PatrolError:
            self.metrics['storage_errors'] += 1
            raise

        interval = self.registry.stop(guild_id, user_id, ended_at)
        self.metrics['sessions_finalized'] += 1

        if self.pauses.is_paused(guild_id, user_id):
            self.metrics['sessions_discarded_paused'] += 1
            logger.info(f"Discarded {interval.duration_ms}ms for paused user {user_id} (guild {guild_id})")
            return None

        if interval.duration_ms < MIN_SESSION_MS:
            self.metrics['sessions_discarded_short'] += 1
            logger.debug(f"Ignored {interval.duration_ms}ms session for user {user_id} (guild {guild_id})")
            return None

        try:
            credited = await self.accrual.accrue(guild_id, user_id, interval.started_at, interval.ended_at)
        except PatrolError as e:
            self.metrics['storage_errors'] += 1
            self.metrics['ms_lost'] += interval.duration_ms
            logger.error(f"Lost {interval.duration_ms}ms for user {user_id} in guild {guild_id}: {e}")
            return None

        self.metrics['sessions_credited'] += 1
        self.metrics['ms_credited'] += credited
        logger.info(f"Credited {credited}ms to user {user_id} from channel {interval.channel_id} (guild {guild_id})")
        return interval, credited

    async def _finalize_locked(self, guild_id: str, user_id: str, ended_at: datetime):
        async with self._locks.hold((guild_id, user_id)):
            credited = await self._finalize(guild_id, user_id, ended_at)
        if credited is not None:
            await self._notify(*credited)

    async def _notify(self, interval: FinalizedInterval, credited: int):
        for listener in self._listeners:
            try:
                await listener(interval, credited)
            except Exception as e:
                logger.warning(f"Session listener {getattr(listener, '__name__', listener)} failed: {e}")

    # ========================================================================
    # RECOVERY / BOOTSTRAP
    # ========================================================================

    async def bootstrap(self) -> Dict[str, int]:
        """Reconcile persisted sessions with live voice state; runs once

        Persisted sessions whose member is no longer in the category are
        credited up to now. The real disconnect time during downtime is
        unknown, so this over-credits by at most the outage length.
        """
        summary = {'seeded': 0, 'resumed': 0, 'started': 0, 'finalized': 0}
        if self._bootstrapped:
            return summary

        try:
            now = self.clock()

            try:
                for record in await self.store.list_active_sessions():
                    _, created = self.registry.start(record.guild_id, record.user_id, record.channel_id, record.started_at)
                    summary['seeded'] += int(created)
            except PatrolError as e:
                logger.error(f"Could not load persisted patrol sessions: {e}")

            try:
                self.pauses.load(await self.store.load_pause_state())
            except PatrolError as e:
                logger.error(f"Could not load pause state, starting unpaused: {e}")

            present: Set[Tuple[str, str]] = set()
            guild_ids = set(self.registry.guild_ids())
            if self.presence is not None:
                guild_ids.update(str(guild_id) for guild_id in self.presence.guild_ids())

            for guild_id in sorted(guild_ids):
                try:
                    settings = await self.get_settings(guild_id)
                    if not settings.configured:
                        continue
                    counts = await self._resume_from_presence(guild_id, settings, now, present)
                    summary['resumed'] += counts['resumed']
                    summary['started'] += counts['started']
                except Exception as e:
                    logger.error(f"Failed to resume patrol sessions for guild {guild_id}: {e}")

            for session in list(self.registry):
                if session.key in present:
                    continue
                try:
                    await self._finalize_locked(session.guild_id, session.user_id, now)
                    summary['finalized'] += 1
                except Exception as e:
                    logger.error(f"Failed to finalize stale session {session.guild_id}/{session.user_id}: {e}")
        finally:
            self._bootstrapped = True
            self._ready.set()

        logger.info(
            f"Patrol bootstrap complete - seeded: {summary['seeded']}, resumed: {summary['resumed']}, "
            f"started: {summary['started']}, finalized: {summary['finalized']}"
        )
        return summary

    async def _resume_from_presence(self, guild_id: str, settings: GuildPatrolSettings, now: datetime,
                                    present: Optional[Set[Tuple[str, str]]] = None) -> Dict[str, int]:
        counts = {'resumed': 0, 'started': 0}
        if self.presence is None:
            return counts

        for user_id, channel_id in self.presence.members_in_category(guild_id, settings.category_id):
            user_id, channel_id = str(user_id), str(channel_id)
            if present is not None:
                present.add((guild_id, user_id))
            try:
                async with self._locks.hold((guild_id, user_id)):
                    existing = self.registry.get(guild_id, user_id)
                    if existing is None:
                        await self._start(guild_id, user_id, channel_id, now)
                        counts['started'] += 1
                        continue
                    if existing.channel_id != channel_id:
                        await self.store.upsert_active_session(
                            ActiveSessionRecord(guild_id, user_id, channel_id, existing.started_at)
                        )
                        self.registry.move(guild_id, user_id, channel_id)
                    counts['resumed'] += 1
            except PatrolError as e:
                logger.error(f"Could not resume user {user_id} in guild {guild_id}: {e}")
        return counts

    # ========================================================================
    # CONTROL
    # ========================================================================

    async def _restart_clock(self, guild_id: str, user_id: str, now: datetime) -> bool:
        """Caller holds the (guild, user) lock"""
        session = self.registry.get(guild_id, user_id)
        if session is None:
            return False
        await self.store.upsert_active_session(ActiveSessionRecord(guild_id, user_id, session.channel_id, now))
        self.registry.restart_clock(guild_id, user_id, now)
        return True

    async def _restart_clock_locked(self, guild_id: str, user_id: str, now: datetime) -> bool:
        async with self._locks.hold((guild_id, user_id)):
            return await self._restart_clock(guild_id, user_id, now)

    async def pause_user(self, guild_id: str, user_id: str) -> PauseOutcome:
        guild_id, user_id = str(guild_id), str(user_id)
        async with self._locks.hold((guild_id, user_id)):
            return await self.pauses.pause_user(guild_id, user_id)

    async def unpause_user(self, guild_id: str, user_id: str) -> bool:
        """Clear the user flag; an open session restarts from now before the flag drops"""
        guild_id, user_id = str(guild_id), str(user_id)
        async with self._locks.hold((guild_id, user_id)):
            await self._restart_clock(guild_id, user_id, self.clock())
            return await self.pauses.unpause_user(guild_id, user_id)

    async def pause_guild(self, guild_id: str) -> PauseOutcome:
        return await self.pauses.pause_guild(str(guild_id))

    async def unpause_guild(self, guild_id: str) -> bool:
        """Restart every open clock while the guild still counts as paused, then clear the flag"""
        guild_id = str(guild_id)
        now = self.clock()
        for session in self.registry.list_active(guild_id):
            await self._restart_clock_locked(guild_id, session.user_id, now)
        return await self.pauses.unpause_guild(guild_id)

    def is_paused(self, guild_id: str, user_id: str) -> bool:
        return self.pauses.is_paused(str(guild_id), str(user_id))

    async def adjust(self, guild_id: str, user_id: str, delta_ms: int,
                     year: Optional[int] = None, month: Optional[int] = None) -> Tuple[int, int]:
        """Add (or subtract, floored at zero) delta_ms to all-time and one month's total"""
        guild_id, user_id = str(guild_id), str(user_id)
        now = self.clock()
        year = now.year if year is None else year
        month = validate_month(now.month if month is None else month)

        async with self._locks.hold((guild_id, user_id)):
            new_total, new_month = await self.store.adjust_totals(guild_id, user_id, int(delta_ms), year, month)

        logger.info(f"Adjusted user {user_id} in guild {guild_id} by {delta_ms}ms for {year}-{month:02d}")
        return new_total, new_month

    async def reset(self, guild_id: str, user_id: Optional[str] = None):
        """Zero all-time totals for one user or the whole guild; open sessions restart from now"""
        guild_id = str(guild_id)
        user_id = str(user_id) if user_id else None
        now = self.clock()

        if user_id:
            async with self._locks.hold((guild_id, user_id)):
                await self.store.reset_totals(guild_id, user_id)
                await self._restart_clock(guild_id, user_id, now)
        else:
            for session in self.registry.list_active(guild_id):
                await self._restart_clock_locked(guild_id, session.user_id, now)
            await self.store.reset_totals(guild_id)

        logger.info(f"Reset patrol totals in guild {guild_id} for {'user ' + user_id if user_id else 'all users'}")

    # ========================================================================
    # QUERIES
    # ========================================================================

    async def get_currently_tracked(self, guild_id: str) -> List[TrackedEntry]:
        return await self.queries.currently_tracked(str(guild_id))

    async def get_all_time_total(self, guild_id: str, user_id: str) -> int:
        return await self.queries.all_time_total(str(guild_id), str(user_id))

    async def get_month_total(self, guild_id: str, user_id: str, year: int, month: int) -> int:
        return await self.queries.month_total(str(guild_id), str(user_id), year, month)

    async def get_leaderboard(self, guild_id: str, scope: LeaderboardScope = None, limit: Optional[int] = 10,
                              member_ids: Optional[Iterable[str]] = None) -> List[LeaderboardEntry]:
        return await self.queries.leaderboard(str(guild_id), scope or LeaderboardScope.all_time(), limit, member_ids)

    async def get_available_years(self, guild_id: str) -> List[YearSummary]:
        return await self.queries.available_years(str(guild_id))

    async def get_available_months(self, guild_id: str, year: Optional[int] = None) -> List[MonthSummary]:
        return await self.queries.available_months(str(guild_id), year)

    async def require_configured(self, guild_id: str) -> GuildPatrolSettings:
        settings = await self.get_settings(guild_id)
        if not settings.configured:
            raise ConfigurationError(
                "No patrol category configured for this server. Use /patrol-settings category first.",
                context={'guild_id': str(guild_id)}
            )
        return settings

    async def health_check(self) -> Dict[str, Any]:
        try:
            store_ok = await self.store.ping()
        except PatrolError as e:
            logger.warning(f"Store health check failed: {e}")
            store_ok = False
        return {
            'status': 'healthy' if store_ok and self.ready else 'degraded',
            'ready': self.ready,
            'store': store_ok,
            'active_sessions': len(self.registry),
            'metrics': dict(self.metrics),
        }
