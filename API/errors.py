# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

import logging

from flask import jsonify

from Utils.errors import ConfigurationError, StorageError, ValidationError

logger = logging.getLogger(__name__)


def register_error_handlers(app):
    """Register error handlers for the Flask app"""

    @app.errorhandler(ValidationError)
    def validation_error(error):
        return jsonify({
            'error': 'Bad request',
            'message': str(error),
            'code': 'VALIDATION_ERROR'
        }), 400

    @app.errorhandler(ConfigurationError)
    def configuration_error(error):
        return jsonify({
            'error': 'Not configured',
            'message': str(error),
            'code': 'NOT_CONFIGURED'
        }), 409

    @app.errorhandler(StorageError)
    def storage_error(error):
        logger.error(f"Storage error serving API request: {error}")
        return jsonify({
            'error': 'Storage unavailable',
            'message': str(error),
            'code': 'STORAGE_ERROR'
        }), 503

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'error': 'Not found',
            'message': 'The requested endpoint does not exist',
            'code': 'HTTP_404'
        }), 404

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({
            'error': 'Internal server error',
            'message': 'An unexpected error occurred',
            'code': 'HTTP_500'
        }), 500
