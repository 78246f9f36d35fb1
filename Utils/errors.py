# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class PatrolError(Exception):
    """Base exception with detailed context"""
    def __init__(self, message: str, context: Dict[str, Any] = None, cause: Optional[Exception] = None):
        super().__init__(message)
        self.context = context or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)
        self.traceback_str = traceback.format_exc() if cause else None


class StorageError(PatrolError):
    """Durable store read/write failures"""
    pass


class ValidationError(PatrolError):
    """Input validation with detailed field errors"""
    pass


class ConfigurationError(PatrolError):
    """Guild is missing the configuration an operation needs"""
    pass
