"""
Configuration for the BMM Portal

Defaults live in DEFAULT_CONFIG. A dictionary passed to ``create_app``
overrides them, and environment variables override both.
"""

import os
from datetime import timedelta
from typing import Any, Dict, Optional

DEFAULT_CONFIG: Dict[str, Any] = {
    'SECRET_KEY': 'bmm-portal-dev',
    'PERMANENT_SESSION_LIFETIME': timedelta(days=1),
    'DEBUG': True,
    'TESTING': False,

    # Event backend
    'BMM_API_URL': 'https://events.etu.nz/api',
    'BMM_API_TOKEN': None,
    'BMM_API_TIMEOUT': 10.0,
    'BMM_PORTAL_URL': 'https://events.etu.nz',
    'VENUE_CONFIG_PATH': None,

    # Ticket fetch after generation
    'TICKET_FETCH_ATTEMPTS': 3,
    'TICKET_FETCH_INITIAL_DELAY': 2.0,
    'TICKET_FETCH_RETRY_DELAY': 1.0,

    # Scanning
    'SCAN_SUPPRESSION_MS': 5000,
    'KEYSTROKE_IDLE_MS': 200,
    'KEYSTROKE_MIN_LENGTH': 3,
    'CAMERA_DEVICE': 0,
    'CAMERA_TIMEOUT': 30.0,
    'CHECKIN_STATION_TTL': 8 * 60 * 60,

    # Storage: memory, json or redis
    'STORAGE': 'memory',
    'FLOW_STORE_PATH': 'bmm_flows.json',
    'REDIS_URL': 'redis://localhost:6379/0',
    'FLOW_LOCK_TIMEOUT': 30.0,

    # Optional spreadsheet mirror of the check-in log
    'GOOGLE_SERVICE_ACCOUNT_JSON': None,
    'CHECKIN_SHEET_NAME': None,
    'CHECKIN_SHEET_BATCH': 10,

    'LOG_LEVEL': 'INFO',
    'LOG_FILE': None,
}

# Environment variable -> config key
ENVIRONMENT_KEYS = {
    'FLASK_SECRET_KEY': 'SECRET_KEY',
    'BMM_API_URL': 'BMM_API_URL',
    'BMM_API_TOKEN': 'BMM_API_TOKEN',
    'BMM_API_TIMEOUT': 'BMM_API_TIMEOUT',
    'BMM_PORTAL_URL': 'BMM_PORTAL_URL',
    'BMM_VENUE_CONFIG': 'VENUE_CONFIG_PATH',
    'BMM_STORAGE': 'STORAGE',
    'BMM_FLOW_STORE': 'FLOW_STORE_PATH',
    'REDIS_URL': 'REDIS_URL',
    'GOOGLE_SERVICE_ACCOUNT_JSON': 'GOOGLE_SERVICE_ACCOUNT_JSON',
    'CHECKIN_SHEET_NAME': 'CHECKIN_SHEET_NAME',
    'CAMERA_DEVICE': 'CAMERA_DEVICE',
    'CHECKIN_STATION_TTL': 'CHECKIN_STATION_TTL',
    'LOG_LEVEL': 'LOG_LEVEL',
    'LOG_FILE': 'LOG_FILE',
}


def _coerce(key: str, raw: str) -> Any:
    default = DEFAULT_CONFIG.get(key)
    if key == 'CAMERA_DEVICE':
        return int(raw) if raw.isdigit() else raw
    if isinstance(default, bool):
        return raw.strip().lower() in ('1', 'true', 'yes', 'on')
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def build_config(config: Optional[dict] = None, environ: Optional[dict] = None) -> Dict[str, Any]:
    """
    Merge defaults, explicit settings and environment variables

    Args:
        config: Optional configuration dictionary
        environ: Environment mapping, ``os.environ`` by default

    Returns:
        The effective configuration
    """
    merged = dict(DEFAULT_CONFIG)
    if config:
        merged.update(config)

    environ = os.environ if environ is None else environ
    for variable, key in ENVIRONMENT_KEYS.items():
        raw = environ.get(variable)
        if raw not in (None, ''):
            merged[key] = _coerce(key, raw)
    return merged
