"""
Shared utility functions for BioSync.
"""

import os
import sys
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional

from platformdirs import user_data_dir

from shared import APP_NAME


def get_resource_path(relative_path: str) -> Path:
    """Get absolute path to resource, works for dev and PyInstaller

    For bundled read-only resources like icons.
    Use get_data_path() for writable data like the store, logs and backups.
    """
    if getattr(sys, 'frozen', False):
        if hasattr(sys, '_MEIPASS'):
            # Onefile mode: bundled resources are in the temp extraction folder
            base_path = Path(sys._MEIPASS)
        else:
            base_path = Path(sys.executable).parent
    else:
        # Running in development - go up from shared/ to project root
        base_path = Path(__file__).parent.parent

    return base_path / relative_path


def get_data_dir() -> Path:
    """Get the writable per-user data directory.

    ``BIOSYNC_DATA_DIR`` overrides the platform location returned by
    ``platformdirs.user_data_dir``.
    """
    override = os.getenv('BIOSYNC_DATA_DIR')
    base_path = Path(override) if override else Path(user_data_dir(APP_NAME))

    try:
        base_path.mkdir(parents=True, exist_ok=True)
    except OSError:
        # Last-ditch fallback to executable dir if we cannot create user dir
        base_path = Path(sys.executable).parent

    return base_path


def get_data_path(relative_path: str) -> Path:
    """Get absolute path to writable data files (store, logs, backups)"""
    return get_data_dir() / relative_path


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string"""
    return utc_now().isoformat()


def parse_datetime(dt_str: Any) -> Optional[datetime]:
    """Parse a stored timestamp, return None if invalid.

    Accepts ISO 8601 (with or without ``Z``) and ``YYYY-MM-DD HH:MM:SS``.
    Naive values are taken as UTC.
    """
    if not dt_str or not isinstance(dt_str, str):
        return None
    try:
        parsed = datetime.fromisoformat(dt_str.replace('Z', '+00:00'))
    except ValueError:
        try:
            parsed = datetime.strptime(dt_str, '%Y-%m-%d %H:%M:%S')
        except ValueError:
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_valid_timestamp(value: Any) -> bool:
    """True for None or a parseable timestamp string"""
    return value is None or parse_datetime(value) is not None


def today_str() -> str:
    """Current local date as YYYY-MM-DD"""
    return date.today().isoformat()


def validate_server_url(url: str) -> bool:
    """Check that a URL is an absolute http(s) URL"""
    return bool(url) and url.strip().startswith(('http://', 'https://'))

