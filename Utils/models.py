# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Dict, Optional, Tuple

from .errors import ValidationError


MIN_SESSION_MS = 3000
MAX_LEADERBOARD_LIMIT = 1000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ms_between(start: datetime, end: datetime) -> int:
    """Whole milliseconds in [start, end); negative spans count as zero"""
    delta = end - start
    if delta.total_seconds() <= 0:
        return 0
    return (delta.days * 86400 + delta.seconds) * 1000 + delta.microseconds // 1000


# ============================================================================
# SESSIONS
# ============================================================================

@dataclass
class TrackedSession:
    """A user currently being timed inside the tracked category"""
    guild_id: str
    user_id: str
    channel_id: str
    started_at: datetime

    @property
    def key(self) -> Tuple[str, str]:
        return (self.guild_id, self.user_id)


@dataclass
class ActiveSessionRecord:
    """Durable mirror of a TrackedSession, used only for recovery"""
    guild_id: str
    user_id: str
    channel_id: str
    started_at: datetime


@dataclass
class FinalizedInterval:
    """What Session Registry hands back on stop"""
    guild_id: str
    user_id: str
    channel_id: str
    started_at: datetime
    ended_at: datetime

    @property
    def duration_ms(self) -> int:
        return ms_between(self.started_at, self.ended_at)


@dataclass
class PresenceEvent:
    """A member moved from one voice channel to another (either side may be None)"""
    guild_id: str
    user_id: str
    previous_channel_id: Optional[str]
    new_channel_id: Optional[str]
    is_bot: bool = False


# ============================================================================
# CONFIGURATION AND STATE
# ============================================================================

@dataclass
class GuildPatrolSettings:
    """Per-guild configuration"""
    guild_id: str
    category_id: Optional[str] = None
    top_channel_id: Optional[str] = None
    log_channel_id: Optional[str] = None

    @property
    def configured(self) -> bool:
        return bool(self.category_id)

    def to_mapping(self) -> Dict[str, str]:
        return {
            name: value
            for name, value in (
                ('category_id', self.category_id),
                ('top_channel_id', self.top_channel_id),
                ('log_channel_id', self.log_channel_id),
            )
            if value
        }


@dataclass
class PauseSnapshot:
    """Persisted pause flags"""
    paused_guilds: set = field(default_factory=set)
    paused_users: Dict[str, set] = field(default_factory=dict)


class PauseOutcome(Enum):
    OK = auto()
    REJECTED = auto()


# ============================================================================
# QUERY RESULTS
# ============================================================================

class ScopeKind(Enum):
    ALL_TIME = "all"
    MONTH = "month"
    CHANNEL = "channel"


@dataclass(frozen=True)
class LeaderboardScope:
    kind: ScopeKind
    year: Optional[int] = None
    month: Optional[int] = None
    channel_id: Optional[str] = None

    @classmethod
    def all_time(cls) -> "LeaderboardScope":
        return cls(ScopeKind.ALL_TIME)

    @classmethod
    def for_month(cls, year: int, month: int) -> "LeaderboardScope":
        validate_month(month)
        return cls(ScopeKind.MONTH, year=year, month=month)

    @classmethod
    def for_channel(cls, channel_id: str) -> "LeaderboardScope":
        if not channel_id:
            raise ValidationError("Channel scope needs a channel id")
        return cls(ScopeKind.CHANNEL, channel_id=str(channel_id))


@dataclass
class LeaderboardEntry:
    rank: int
    user_id: str
    total_ms: int


@dataclass
class TrackedEntry:
    user_id: str
    channel_id: str
    started_at: datetime
    elapsed_ms: int
    paused: bool


@dataclass
class YearSummary:
    year: int
    user_count: int
    total_hours: int


@dataclass
class MonthSummary:
    year: int
    month: int
    user_count: int
    total_hours: int


def validate_month(month: int) -> int:
    if not isinstance(month, int) or not 1 <= month <= 12:
        raise ValidationError(f"Invalid month {month!r}; must be between 1 and 12", context={'month': month})
    return month


def clamp_limit(limit: Optional[int]) -> Optional[int]:
    if limit is None or limit <= 0:
        return None
    return min(limit, MAX_LEADERBOARD_LIMIT)
