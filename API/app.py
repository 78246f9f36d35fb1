# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

from flask import Flask
from flask_cors import CORS
import logging
import os
import threading

logger = logging.getLogger(__name__)


def create_app(timer, loop=None, api_key: str = None):
    """Create and configure the Flask application"""
    app = Flask(__name__)
    app.json.ensure_ascii = False
    app.json.sort_keys = False

    # Enable CORS
    CORS(app, resources={
        r"/api/*": {
            "origins": os.getenv("ALLOWED_ORIGINS", "*").split(","),
            "methods": ["GET"],
            "allow_headers": ["Content-Type", "X-API-Key"]
        }
    })

    app.config['PATROL_TIMER'] = timer
    app.config['LOOP'] = loop
    app.config['API_KEY'] = api_key if api_key is not None else os.getenv('API_KEY')

    from .routes import patrol_bp, status_bp

    app.register_blueprint(status_bp, url_prefix='/api/v1')
    app.register_blueprint(patrol_bp, url_prefix='/api/v1/guild/<int:guild_id>/patrol')

    from .errors import register_error_handlers
    register_error_handlers(app)

    logger.info("Patrol API initialized")
    return app


def run_api(bot, host='0.0.0.0', port=None):
    """Run the API server against a running bot"""
    app = create_app(bot.patrol_timer, loop=bot.loop)
    port = port or int(os.getenv('API_PORT', 5000))
    debug = os.getenv('FLASK_ENV', 'production') == 'development'

    logger.info(f"Starting Patrol API on {host}:{port}")
    app.run(host=host, port=port, debug=debug, use_reloader=False)


def start_api_thread(bot, host='0.0.0.0', port=None) -> threading.Thread:
    """Serve the API from a daemon thread next to the bot"""
    thread = threading.Thread(target=run_api, args=(bot, host, port), name="patrol-api", daemon=True)
    thread.start()
    return thread
