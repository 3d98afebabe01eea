"""Playlist store: one JSON file per playlist plus an active-playlist pointer."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import json
import logging
import pathlib
import re
import uuid

from errors import InvalidRequest, IOFailure, NotFound
import settings


log = logging.getLogger(__name__)

ACTIVE_FILE = ".active"

_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

# Fields a client may set, with their defaults on create
_FIELDS: dict[str, Any] = {
    "name": None,
    "channels": list,
    "rawContent": "",
    "url": None,
    "epgUrl": None,
    "xtream": None,
    "favoriteCategories": list,
    "favoriteChannels": list,
    "hiddenCategories": list,
    "hiddenChannels": list,
}


def _now() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def _playlist_path(playlist_id: str) -> pathlib.Path:
    if not _ID_RE.match(playlist_id or ""):
        raise NotFound("Playlist not found")
    return settings.get_playlists_dir() / f"{playlist_id}.json"


def _read(path: pathlib.Path) -> dict[str, Any]:
    return json.loads(path.read_text(encoding="utf-8"))


def _write(path: pathlib.Path, playlist: dict[str, Any]) -> None:
    try:
        path.write_text(json.dumps(playlist, indent=2), encoding="utf-8")
    except OSError as e:
        log.error("Failed to write playlist %s: %s", path, e)
        raise IOFailure("Failed to save playlist") from e


def list_playlists() -> list[dict[str, Any]]:
    """Playlist metadata (no channel data). Unreadable files are skipped."""
    playlists = []
    for path in sorted(settings.get_playlists_dir().glob("*.json")):
        try:
            data = _read(path)
        except (OSError, ValueError) as e:
            log.warning("Error reading playlist %s: %s", path.name, e)
            continue
        playlists.append(
            {
                "id": data.get("id"),
                "name": data.get("name"),
                "channelCount": len(data.get("channels") or []),
                "createdAt": data.get("createdAt"),
                "updatedAt": data.get("updatedAt"),
            }
        )
    return playlists


def get_playlist(playlist_id: str) -> dict[str, Any]:
    path = _playlist_path(playlist_id)
    if not path.exists():
        raise NotFound("Playlist not found")
    try:
        return _read(path)
    except (OSError, ValueError) as e:
        log.error("Error reading playlist %s: %s", playlist_id, e)
        raise IOFailure("Failed to read playlist") from e


def create_playlist(body: dict[str, Any]) -> dict[str, Any]:
    if not body.get("name"):
        raise InvalidRequest("Playlist name is required")
    now = _now()
    playlist: dict[str, Any] = {"id": str(uuid.uuid4())}
    for key, default in _FIELDS.items():
        value = body.get(key)
        playlist[key] = value if value else (default() if callable(default) else default)
    playlist["createdAt"] = now
    playlist["updatedAt"] = now
    _write(_playlist_path(playlist["id"]), playlist)
    log.info("Created playlist %s (%s)", playlist["name"], playlist["id"])
    return playlist


def update_playlist(playlist_id: str, body: dict[str, Any]) -> dict[str, Any]:
    """Apply a partial update. Fields absent from body keep their values."""
    existing = get_playlist(playlist_id)
    updated = {**existing, **{k: v for k, v in body.items() if k in _FIELDS}}
    updated["updatedAt"] = _now()
    _write(_playlist_path(playlist_id), updated)
    log.info("Updated playlist %s (%s)", updated.get("name"), playlist_id)
    return updated


def delete_playlist(playlist_id: str) -> dict[str, Any]:
    playlist = get_playlist(playlist_id)
    try:
        _playlist_path(playlist_id).unlink()
    except OSError as e:
        log.error("Failed to delete playlist %s: %s", playlist_id, e)
        raise IOFailure("Failed to delete playlist") from e
    log.info("Deleted playlist %s (%s)", playlist.get("name"), playlist_id)
    return {"message": "Playlist deleted", "id": playlist_id, "name": playlist.get("name")}


def get_active_playlist_id() -> str | None:
    path = settings.get_playlists_dir() / ACTIVE_FILE
    try:
        return path.read_text().strip() or None
    except FileNotFoundError:
        return None
    except OSError as e:
        log.warning("Error reading active playlist: %s", e)
        return None


def set_active_playlist_id(playlist_id: str | None) -> str | None:
    """Point at an existing playlist, or clear the pointer when playlist_id is empty."""
    path = settings.get_playlists_dir() / ACTIVE_FILE
    try:
        if playlist_id:
            if not _playlist_path(playlist_id).exists():
                raise NotFound("Playlist not found")
            path.write_text(playlist_id)
        else:
            path.unlink(missing_ok=True)
    except OSError as e:
        log.error("Failed to set active playlist: %s", e)
        raise IOFailure("Failed to set active playlist") from e
    log.info("Active playlist set to %s", playlist_id or "none")
    return playlist_id or None
