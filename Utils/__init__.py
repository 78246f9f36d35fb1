# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

from .errors import ConfigurationError, PatrolError, StorageError, ValidationError
from .models import (
    MIN_SESSION_MS, ActiveSessionRecord, FinalizedInterval, GuildPatrolSettings,
    LeaderboardEntry, LeaderboardScope, MonthSummary, PauseOutcome, PresenceEvent,
    ScopeKind, TrackedEntry, TrackedSession, YearSummary,
)
from .patrol_timer import KeyedLock, PatrolTimer, PresenceSource
from .storage import MemoryPatrolStore, PatrolStore, RedisPatrolStore, create_store
