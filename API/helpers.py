# ============================================================================
# Patrolkeeper - Voice Patrol Time Tracking
# Copyright © 2025 404ConnerNotFound. All Rights Reserved.
# ============================================================================

import asyncio
from dataclasses import asdict
from datetime import datetime
from typing import Any, Coroutine

from flask import current_app

ASYNC_TIMEOUT = 10


def run_async(coro: Coroutine) -> Any:
    """Run a coroutine for a Flask view

    With a bot attached the coroutine runs on the bot's event loop, which owns
    the store's connections; otherwise it gets a private loop.
    """
    loop = current_app.config.get('LOOP')
    if loop is not None and loop.is_running():
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout=ASYNC_TIMEOUT)
    return asyncio.run(coro)


def get_timer():
    """Get the patrol timer from Flask app config"""
    return current_app.config['PATROL_TIMER']


def serialize(value: Any) -> Any:
    if isinstance(value, list):
        return [serialize(item) for item in value]
    if hasattr(value, '__dataclass_fields__'):
        return {key: serialize(item) for key, item in asdict(value).items()}
    if isinstance(value, dict):
        return {key: serialize(item) for key, item in value.items()}
    if isinstance(value, datetime):
        return value.isoformat()
    return value
