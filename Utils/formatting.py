# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

import re

from .errors import ValidationError

MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]

_ADJUSTMENT_PART = re.compile(r'(\d+(?:\.\d+)?)([hms])')
_UNIT_SECONDS = {'h': 3600, 'm': 60, 's': 1}


def format_duration(ms: int) -> str:
    """Format milliseconds as e.g. '2d 5h 30m 15s'"""
    seconds = max(0, int(ms)) // 1000
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)

    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if seconds or not parts:
        parts.append(f"{seconds}s")
    return " ".join(parts)


def parse_adjustment(value: str) -> int:
    """Parse '+1h30m', '-45m', '+1.5h' into signed milliseconds

    The sign is mandatory, units are h/m/s, each unit may appear once and
    the whole string must be made of unit parts.
    """
    text = (value or "").strip()
    if len(text) < 2 or text[0] not in "+-":
        raise ValidationError(
            "Adjustment must start with + or - followed by a duration like 1h30m",
            context={'value': value}
        )

    sign = -1 if text[0] == "-" else 1
    body = text[1:]
    matches = list(_ADJUSTMENT_PART.finditer(body))
    if not matches or "".join(m.group(0) for m in matches) != body:
        raise ValidationError(f"Invalid duration '{value}'. Use units h, m and s, e.g. +1h30m", context={'value': value})

    seen = set()
    total_seconds = 0.0
    for match in matches:
        unit = match.group(2)
        if unit in seen:
            raise ValidationError(f"Unit '{unit}' given more than once in '{value}'", context={'value': value})
        seen.add(unit)
        total_seconds += float(match.group(1)) * _UNIT_SECONDS[unit]

    ms = int(round(total_seconds * 1000))
    if ms == 0:
        raise ValidationError("Time adjustment must be non-zero", context={'value': value})
    return sign * ms


def render_leaderboard_lines(entries) -> list:
    """'1. <@id> — 2h 5m' per LeaderboardEntry"""
    return [f"{entry.rank}. <@{entry.user_id}> — {format_duration(entry.total_ms)}" for entry in entries]


def render_weekly_top(entries) -> str:
    if not entries:
        return "**Weekly Patrol Top**\nNo data available."
    return "**Weekly Patrol Top (All-Time):**\n" + "\n".join(render_leaderboard_lines(entries))
