# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

import logging
import secrets
from functools import wraps

from flask import current_app, jsonify, request

logger = logging.getLogger(__name__)


def require_api_key(view):
    """Reject requests without the configured X-API-Key header"""
    @wraps(view)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get('API_KEY')
        if not expected:
            return jsonify({'error': 'API key not configured on this server', 'code': 'API_DISABLED'}), 503

        provided = request.headers.get('X-API-Key', '')
        if not secrets.compare_digest(provided.encode(), expected.encode()):
            logger.warning(f"Rejected API request to {request.path} from {request.remote_addr}")
            return jsonify({'error': 'Invalid or missing API key', 'code': 'UNAUTHORIZED'}), 401

        return view(*args, **kwargs)
    return wrapper
