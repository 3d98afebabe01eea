"""Server configuration: directories and the optional settings file."""

from __future__ import annotations

from typing import Any

import json
import logging
import os
import pathlib
import tempfile


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
CACHE_DIR = APP_DIR / ".cache"
SERVER_SETTINGS_FILE = CACHE_DIR / "server_settings.json"

# Directory overrides (environment wins over defaults)
_HLS_DIR_ENV = "HLS_DIR"
_RECORDINGS_DIR_ENV = "RECORDINGS_DIR"
_PLAYLISTS_DIR_ENV = "PLAYLISTS_DIR"


def load_server_settings() -> dict[str, Any]:
    """Load server settings. Returns empty dict if file missing or unreadable."""
    if not SERVER_SETTINGS_FILE.exists():
        return {}
    try:
        data = json.loads(SERVER_SETTINGS_FILE.read_text())
    except (OSError, ValueError) as e:
        log.warning("Failed to read %s: %s", SERVER_SETTINGS_FILE, e)
        return {}
    return data if isinstance(data, dict) else {}


def _dir_from_env(env_name: str, default: pathlib.Path) -> pathlib.Path:
    custom = os.environ.get(env_name, "").strip()
    path = pathlib.Path(custom) if custom else default
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_hls_dir() -> pathlib.Path:
    """Root for per-session HLS output directories."""
    return _dir_from_env(_HLS_DIR_ENV, pathlib.Path(tempfile.gettempdir()) / "hls")


def get_recordings_dir() -> pathlib.Path:
    """Directory holding capture files and finished recordings."""
    return _dir_from_env(_RECORDINGS_DIR_ENV, CACHE_DIR / "recordings")


def get_playlists_dir() -> pathlib.Path:
    """Directory holding playlist JSON files."""
    return _dir_from_env(_PLAYLISTS_DIR_ENV, CACHE_DIR / "playlists")
