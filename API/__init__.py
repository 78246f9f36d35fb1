# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

from .app import create_app, run_api, start_api_thread
