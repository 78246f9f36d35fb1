# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

from flask import Blueprint, jsonify
from datetime import datetime, timezone

from ..helpers import get_timer, run_async

status_bp = Blueprint('status', __name__)


@status_bp.route('/status', methods=['GET'])
def api_status():
    """Get API and tracker status"""
    health = run_async(get_timer().health_check())
    return jsonify({
        'status': 'operational' if health['status'] == 'healthy' else 'degraded',
        'version': '1.0.0',
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'tracker': health,
    }), 200
