# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

import json
import logging
import os
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from .errors import StorageError
from .models import ActiveSessionRecord, GuildPatrolSettings, PauseSnapshot

logger = logging.getLogger(__name__)

# (year, month, ms)
MonthlyIncrement = Tuple[int, int, int]
# (year, month, user_id, ms)
MonthlyRow = Tuple[int, int, str, int]


def _month_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def _parse_month_key(value: str) -> Tuple[int, int]:
    year, month = value.split('-', 1)
    return int(year), int(month)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ============================================================================
# REPOSITORY INTERFACE
# ============================================================================

class PatrolStore(ABC):
    """Durable storage for active sessions, totals, pause flags and settings"""

    # Active sessions

    @abstractmethod
    async def upsert_active_session(self, record: ActiveSessionRecord) -> None: ...

    @abstractmethod
    async def delete_active_session(self, guild_id: str, user_id: str) -> None: ...

    @abstractmethod
    async def list_active_sessions(self) -> List[ActiveSessionRecord]: ...

    # Totals

    @abstractmethod
    async def increment_totals(self, guild_id: str, user_id: str, total_ms: int,
                               monthly: Iterable[MonthlyIncrement]) -> None:
        """Atomically add total_ms to the all-time row and each monthly slice"""

    @abstractmethod
    async def get_total(self, guild_id: str, user_id: str) -> int: ...

    @abstractmethod
    async def get_totals(self, guild_id: str) -> Dict[str, int]: ...

    @abstractmethod
    async def get_month_total(self, guild_id: str, user_id: str, year: int, month: int) -> int: ...

    @abstractmethod
    async def get_month_totals(self, guild_id: str, year: int, month: int) -> Dict[str, int]: ...

    @abstractmethod
    async def adjust_totals(self, guild_id: str, user_id: str, delta_ms: int,
                            year: int, month: int) -> Tuple[int, int]:
        """Add delta_ms to all-time and one month, floored at zero; returns the new values"""

    @abstractmethod
    async def reset_totals(self, guild_id: str, user_id: Optional[str] = None) -> None: ...

    @abstractmethod
    async def list_monthly_rows(self, guild_id: str, year: Optional[int] = None) -> List[MonthlyRow]: ...

    # Pause flags

    @abstractmethod
    async def load_pause_state(self) -> PauseSnapshot: ...

    @abstractmethod
    async def set_user_paused(self, guild_id: str, user_id: str, paused: bool) -> None: ...

    @abstractmethod
    async def set_guild_paused(self, guild_id: str, paused: bool) -> None: ...

    # Settings

    @abstractmethod
    async def get_settings(self, guild_id: str) -> GuildPatrolSettings: ...

    @abstractmethod
    async def save_settings(self, settings: GuildPatrolSettings) -> None: ...

    @abstractmethod
    async def list_settings(self) -> List[GuildPatrolSettings]: ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


# ============================================================================
# REDIS IMPLEMENTATION
# ============================================================================

class RedisPatrolStore(PatrolStore):
    """PatrolStore over redis.asyncio

    Layout:
        patrol:active:{guild}            hash user -> {"channel_id", "started_at"}
        patrol:total:{guild}             hash user -> ms
        patrol:monthly:{guild}:{YYYY-MM} hash user -> ms
        patrol:months:{guild}            set of YYYY-MM with monthly rows
        patrol:paused:{guild}            set of paused users
        patrol:paused_guilds             set of paused guilds
        patrol:settings:{guild}          hash of GuildPatrolSettings fields
    """

    PREFIX = "patrol"
    MAX_WATCH_RETRIES = 10

    def __init__(self, client: "redis.Redis"):
        self.redis = client

    @classmethod
    def from_url(cls, redis_url: str = None, pool_size: int = 20, timeout: int = 10) -> "RedisPatrolStore":
        """Build a store on a pooled client"""
        redis_url = redis_url or os.getenv('REDIS_URL', 'redis://localhost:6379')
        pool = redis.ConnectionPool.from_url(
            redis_url,
            encoding='utf-8',
            decode_responses=True,
            max_connections=pool_size,
            socket_connect_timeout=timeout,
            socket_timeout=timeout,
            retry_on_timeout=True,
            health_check_interval=30
        )
        return cls(redis.Redis(connection_pool=pool))

    # Keys

    def _active_key(self, guild_id: str) -> str:
        return f"{self.PREFIX}:active:{guild_id}"

    def _total_key(self, guild_id: str) -> str:
        return f"{self.PREFIX}:total:{guild_id}"

    def _monthly_key(self, guild_id: str, year: int, month: int) -> str:
        return f"{self.PREFIX}:monthly:{guild_id}:{_month_key(year, month)}"

    def _months_key(self, guild_id: str) -> str:
        return f"{self.PREFIX}:months:{guild_id}"

    def _paused_key(self, guild_id: str) -> str:
        return f"{self.PREFIX}:paused:{guild_id}"

    def _paused_guilds_key(self) -> str:
        return f"{self.PREFIX}:paused_guilds"

    def _settings_key(self, guild_id: str) -> str:
        return f"{self.PREFIX}:settings:{guild_id}"

    @staticmethod
    def _guild_from_key(key: str) -> str:
        return key.rsplit(':', 1)[-1]

    @asynccontextmanager
    async def _guard(self, operation: str, **context):
        try:
            yield
        except RedisError as e:
            logger.error(f"Redis {operation} failed: {e} ({context})")
            raise StorageError(f"Storage {operation} failed: {e}", context={'operation': operation, **context}, cause=e) from e

    # Active sessions

    async def upsert_active_session(self, record: ActiveSessionRecord) -> None:
        payload = json.dumps({
            'channel_id': record.channel_id,
            'started_at': _as_utc(record.started_at).isoformat(),
        })
        async with self._guard('upsert_active_session', guild_id=record.guild_id, user_id=record.user_id):
            await self.redis.hset(self._active_key(record.guild_id), record.user_id, payload)

    async def delete_active_session(self, guild_id: str, user_id: str) -> None:
        async with self._guard('delete_active_session', guild_id=guild_id, user_id=user_id):
            await self.redis.hdel(self._active_key(guild_id), user_id)

    async def list_active_sessions(self) -> List[ActiveSessionRecord]:
        records = []
        async with self._guard('list_active_sessions'):
            async for key in self.redis.scan_iter(match=f"{self.PREFIX}:active:*", count=100):
                guild_id = self._guild_from_key(key)
                for user_id, raw in (await self.redis.hgetall(key)).items():
                    try:
                        data = json.loads(raw)
                        started_at = _as_utc(datetime.fromisoformat(data['started_at']))
                        records.append(ActiveSessionRecord(guild_id, user_id, data['channel_id'], started_at))
                    except (ValueError, KeyError, TypeError) as e:
                        logger.warning(f"Skipping unreadable active session {guild_id}/{user_id}: {e}")
        return records

    # Totals

    async def increment_totals(self, guild_id: str, user_id: str, total_ms: int,
                               monthly: Iterable[MonthlyIncrement]) -> None:
        async with self._guard('increment_totals', guild_id=guild_id, user_id=user_id, total_ms=total_ms):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hincrby(self._total_key(guild_id), user_id, total_ms)
                for year, month, ms in monthly:
                    pipe.hincrby(self._monthly_key(guild_id, year, month), user_id, ms)
                    pipe.sadd(self._months_key(guild_id), _month_key(year, month))
                await pipe.execute()

    async def get_total(self, guild_id: str, user_id: str) -> int:
        async with self._guard('get_total', guild_id=guild_id, user_id=user_id):
            value = await self.redis.hget(self._total_key(guild_id), user_id)
        return int(value) if value else 0

    async def get_totals(self, guild_id: str) -> Dict[str, int]:
        async with self._guard('get_totals', guild_id=guild_id):
            rows = await self.redis.hgetall(self._total_key(guild_id))
        return {user_id: int(value) for user_id, value in rows.items()}

    async def get_month_total(self, guild_id: str, user_id: str, year: int, month: int) -> int:
        async with self._guard('get_month_total', guild_id=guild_id, user_id=user_id, year=year, month=month):
            value = await self.redis.hget(self._monthly_key(guild_id, year, month), user_id)
        return int(value) if value else 0

    async def get_month_totals(self, guild_id: str, year: int, month: int) -> Dict[str, int]:
        async with self._guard('get_month_totals', guild_id=guild_id, year=year, month=month):
            rows = await self.redis.hgetall(self._monthly_key(guild_id, year, month))
        return {user_id: int(value) for user_id, value in rows.items()}

    async def adjust_totals(self, guild_id: str, user_id: str, delta_ms: int,
                            year: int, month: int) -> Tuple[int, int]:
        total_key = self._total_key(guild_id)
        monthly_key = self._monthly_key(guild_id, year, month)

        async with self._guard('adjust_totals', guild_id=guild_id, user_id=user_id, delta_ms=delta_ms):
            async with self.redis.pipeline(transaction=True) as pipe:
                for _ in range(self.MAX_WATCH_RETRIES):
                    try:
                        await pipe.watch(total_key, monthly_key)
                        current_total = int(await pipe.hget(total_key, user_id) or 0)
                        current_month = int(await pipe.hget(monthly_key, user_id) or 0)
                        new_total = max(0, current_total + delta_ms)
                        new_month = max(0, current_month + delta_ms)

                        pipe.multi()
                        pipe.hset(total_key, user_id, new_total)
                        pipe.hset(monthly_key, user_id, new_month)
                        pipe.sadd(self._months_key(guild_id), _month_key(year, month))
                        await pipe.execute()
                        return new_total, new_month
                    except WatchError:
                        logger.debug(f"Adjustment for {guild_id}/{user_id} raced a concurrent write, retrying")
                        continue

        raise StorageError(
            "Adjustment kept conflicting with concurrent writes",
            context={'guild_id': guild_id, 'user_id': user_id, 'delta_ms': delta_ms}
        )

    async def reset_totals(self, guild_id: str, user_id: Optional[str] = None) -> None:
        async with self._guard('reset_totals', guild_id=guild_id, user_id=user_id):
            if user_id:
                await self.redis.hdel(self._total_key(guild_id), user_id)
            else:
                await self.redis.delete(self._total_key(guild_id))

    async def list_monthly_rows(self, guild_id: str, year: Optional[int] = None) -> List[MonthlyRow]:
        rows = []
        async with self._guard('list_monthly_rows', guild_id=guild_id, year=year):
            for month_key in await self.redis.smembers(self._months_key(guild_id)):
                row_year, row_month = _parse_month_key(month_key)
                if year is not None and row_year != year:
                    continue
                totals = await self.redis.hgetall(self._monthly_key(guild_id, row_year, row_month))
                rows.extend((row_year, row_month, user_id, int(value)) for user_id, value in totals.items())
        return rows

    # Pause flags

    async def load_pause_state(self) -> PauseSnapshot:
        snapshot = PauseSnapshot()
        async with self._guard('load_pause_state'):
            snapshot.paused_guilds = set(await self.redis.smembers(self._paused_guilds_key()))
            async for key in self.redis.scan_iter(match=f"{self.PREFIX}:paused:*", count=100):
                members = await self.redis.smembers(key)
                if members:
                    snapshot.paused_users[self._guild_from_key(key)] = set(members)
        return snapshot

    async def set_user_paused(self, guild_id: str, user_id: str, paused: bool) -> None:
        async with self._guard('set_user_paused', guild_id=guild_id, user_id=user_id, paused=paused):
            if paused:
                await self.redis.sadd(self._paused_key(guild_id), user_id)
            else:
                await self.redis.srem(self._paused_key(guild_id), user_id)

    async def set_guild_paused(self, guild_id: str, paused: bool) -> None:
        async with self._guard('set_guild_paused', guild_id=guild_id, paused=paused):
            if paused:
                await self.redis.sadd(self._paused_guilds_key(), guild_id)
            else:
                await self.redis.srem(self._paused_guilds_key(), guild_id)

    # Settings

    async def get_settings(self, guild_id: str) -> GuildPatrolSettings:
        async with self._guard('get_settings', guild_id=guild_id):
            data = await self.redis.hgetall(self._settings_key(guild_id))
        return GuildPatrolSettings(
            guild_id=guild_id,
            category_id=data.get('category_id') or None,
            top_channel_id=data.get('top_channel_id') or None,
            log_channel_id=data.get('log_channel_id') or None,
        )

    async def save_settings(self, settings: GuildPatrolSettings) -> None:
        key = self._settings_key(settings.guild_id)
        async with self._guard('save_settings', guild_id=settings.guild_id):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                mapping = settings.to_mapping()
                if mapping:
                    pipe.hset(key, mapping=mapping)
                await pipe.execute()

    async def list_settings(self) -> List[GuildPatrolSettings]:
        guild_ids = []
        async with self._guard('list_settings'):
            async for key in self.redis.scan_iter(match=f"{self.PREFIX}:settings:*", count=100):
                guild_ids.append(self._guild_from_key(key))
        return [await self.get_settings(guild_id) for guild_id in guild_ids]

    async def ping(self) -> bool:
        async with self._guard('ping'):
            return bool(await self.redis.ping())

    async def close(self) -> None:
        try:
            await self.redis.aclose()
            logger.info("Redis connection closed")
        except RedisError as e:
            logger.error(f"Error closing Redis connection: {e}")


# ============================================================================
# IN-PROCESS IMPLEMENTATION
# ============================================================================

class MemoryPatrolStore(PatrolStore):
    """Dict-backed PatrolStore for local runs (REDIS_URL=memory://) and tests"""

    def __init__(self):
        self.active: Dict[Tuple[str, str], ActiveSessionRecord] = {}
        self.totals: Dict[str, Dict[str, int]] = defaultdict(dict)
        self.monthly: Dict[Tuple[str, int, int], Dict[str, int]] = defaultdict(dict)
        self.paused_guilds = set()
        self.paused_users: Dict[str, set] = defaultdict(set)
        self.settings: Dict[str, GuildPatrolSettings] = {}

    async def upsert_active_session(self, record: ActiveSessionRecord) -> None:
        self.active[(record.guild_id, record.user_id)] = ActiveSessionRecord(
            record.guild_id, record.user_id, record.channel_id, _as_utc(record.started_at)
        )

    async def delete_active_session(self, guild_id: str, user_id: str) -> None:
        self.active.pop((guild_id, user_id), None)

    async def list_active_sessions(self) -> List[ActiveSessionRecord]:
        return list(self.active.values())

    async def increment_totals(self, guild_id: str, user_id: str, total_ms: int,
                               monthly: Iterable[MonthlyIncrement]) -> None:
        totals = self.totals[guild_id]
        totals[user_id] = totals.get(user_id, 0) + total_ms
        for year, month, ms in monthly:
            bucket = self.monthly[(guild_id, year, month)]
            bucket[user_id] = bucket.get(user_id, 0) + ms

    async def get_total(self, guild_id: str, user_id: str) -> int:
        return self.totals.get(guild_id, {}).get(user_id, 0)

    async def get_totals(self, guild_id: str) -> Dict[str, int]:
        return dict(self.totals.get(guild_id, {}))

    async def get_month_total(self, guild_id: str, user_id: str, year: int, month: int) -> int:
        return self.monthly.get((guild_id, year, month), {}).get(user_id, 0)

    async def get_month_totals(self, guild_id: str, year: int, month: int) -> Dict[str, int]:
        return dict(self.monthly.get((guild_id, year, month), {}))

    async def adjust_totals(self, guild_id: str, user_id: str, delta_ms: int,
                            year: int, month: int) -> Tuple[int, int]:
        totals = self.totals[guild_id]
        bucket = self.monthly[(guild_id, year, month)]
        totals[user_id] = max(0, totals.get(user_id, 0) + delta_ms)
        bucket[user_id] = max(0, bucket.get(user_id, 0) + delta_ms)
        return totals[user_id], bucket[user_id]

    async def reset_totals(self, guild_id: str, user_id: Optional[str] = None) -> None:
        if user_id:
            self.totals.get(guild_id, {}).pop(user_id, None)
        else:
            self.totals.pop(guild_id, None)

    async def list_monthly_rows(self, guild_id: str, year: Optional[int] = None) -> List[MonthlyRow]:
        return [
            (row_year, row_month, user_id, ms)
            for (row_guild, row_year, row_month), bucket in self.monthly.items()
            if row_guild == guild_id and (year is None or row_year == year)
            for user_id, ms in bucket.items()
        ]

    async def load_pause_state(self) -> PauseSnapshot:
        return PauseSnapshot(
            paused_guilds=set(self.paused_guilds),
            paused_users={guild_id: set(users) for guild_id, users in self.paused_users.items() if users},
        )

    async def set_user_paused(self, guild_id: str, user_id: str, paused: bool) -> None:
        if paused:
            self.paused_users[guild_id].add(user_id)
        else:
            self.paused_users[guild_id].discard(user_id)

    async def set_guild_paused(self, guild_id: str, paused: bool) -> None:
        if paused:
            self.paused_guilds.add(guild_id)
        else:
            self.paused_guilds.discard(guild_id)

    async def get_settings(self, guild_id: str) -> GuildPatrolSettings:
        stored = self.settings.get(guild_id)
        if stored is None:
            return GuildPatrolSettings(guild_id=guild_id)
        return GuildPatrolSettings(**vars(stored))

    async def save_settings(self, settings: GuildPatrolSettings) -> None:
        self.settings[settings.guild_id] = GuildPatrolSettings(**vars(settings))

    async def list_settings(self) -> List[GuildPatrolSettings]:
        return [GuildPatrolSettings(**vars(settings)) for settings in self.settings.values()]


def create_store(url: str = None) -> PatrolStore:
    """Pick a store from a URL; memory:// selects the in-process store"""
    url = url or os.getenv('REDIS_URL', 'redis://localhost:6379')
    if url.startswith('memory://'):
        logger.warning("Using in-process patrol store; totals will not survive a restart")
        return MemoryPatrolStore()
    return RedisPatrolStore.from_url(url)
