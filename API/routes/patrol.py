# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

from flask import Blueprint, jsonify, request

from Utils.errors import ValidationError
from Utils.models import LeaderboardScope

from ..helpers import get_timer, run_async, serialize
from ..middleware.auth import require_api_key

patrol_bp = Blueprint('patrol', __name__)


def _int_arg(name: str, default=None):
    value = request.args.get(name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"Query parameter '{name}' must be an integer", context={name: value})


def _scope_from_args() -> LeaderboardScope:
    scope = request.args.get('scope', 'all')
    if scope == 'all':
        return LeaderboardScope.all_time()
    if scope == 'month':
        year, month = _int_arg('year'), _int_arg('month')
        if year is None or month is None:
            raise ValidationError("Monthly leaderboard needs 'year' and 'month'")
        return LeaderboardScope.for_month(year, month)
    if scope == 'channel':
        return LeaderboardScope.for_channel(request.args.get('channel_id', ''))
    raise ValidationError(f"Unknown scope '{scope}'; use all, month or channel")


@patrol_bp.route('/tracked', methods=['GET'])
@require_api_key
def tracked(guild_id: int):
    """Members currently being timed"""
    entries = run_async(get_timer().get_currently_tracked(str(guild_id)))
    return jsonify({'guild_id': str(guild_id), 'tracked': serialize(entries)}), 200


@patrol_bp.route('/leaderboard', methods=['GET'])
@require_api_key
def leaderboard(guild_id: int):
    """Leaderboard for all time, one month, or one channel"""
    scope = _scope_from_args()
    limit = max(1, min(_int_arg('limit', 10), 100))
    entries = run_async(get_timer().get_leaderboard(str(guild_id), scope, limit))
    return jsonify({
        'guild_id': str(guild_id),
        'scope': scope.kind.value,
        'year': scope.year,
        'month': scope.month,
        'channel_id': scope.channel_id,
        'leaderboard': serialize(entries),
    }), 200


@patrol_bp.route('/users/<int:user_id>', methods=['GET'])
@require_api_key
def user_totals(guild_id: int, user_id: int):
    """All-time total and, when year/month are given, that month's total"""
    timer = get_timer()
    year, month = _int_arg('year'), _int_arg('month')

    async def fetch():
        result = {'all_time_ms': await timer.get_all_time_total(str(guild_id), str(user_id))}
        if year is not None and month is not None:
            result['month_ms'] = await timer.get_month_total(str(guild_id), str(user_id), year, month)
        return result

    data = run_async(fetch())
    return jsonify({
        'guild_id': str(guild_id),
        'user_id': str(user_id),
        'paused': timer.is_paused(str(guild_id), str(user_id)),
        **data,
    }), 200


@patrol_bp.route('/history', methods=['GET'])
@require_api_key
def history(guild_id: int):
    """Years with data, or the months of one year"""
    timer = get_timer()
    year = _int_arg('year')
    if year is None:
        rows = run_async(timer.get_available_years(str(guild_id)))
    else:
        rows = run_async(timer.get_available_months(str(guild_id), year))
    return jsonify({'guild_id': str(guild_id), 'year': year, 'history': serialize(rows)}), 200
