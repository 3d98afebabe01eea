"""HTTP surface: transcode sessions, HLS output, recordings, playlists."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import logging
import os

from fastapi import Body, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from pydantic import BaseModel

from encode_options import MANIFEST_NAME, resolve_encode_options
from errors import InvalidRequest, NotFound
import encode_options
import playlists
import recording
import settings
import supervisor
import transcode_session


log = logging.getLogger(__name__)

DEFAULT_PORT = 3001

_NO_CACHE = {"Cache-Control": "no-cache, no-store, must-revalidate"}


def _configure_logging() -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _configure_logging()
    encode_options.init(settings.load_server_settings)
    supervisor.cleanup_orphans()
    supervisor.install()
    log.info(
        "Transcoder ready (hls=%s recordings=%s playlists=%s)",
        settings.get_hls_dir(),
        settings.get_recordings_dir(),
        settings.get_playlists_dir(),
    )
    yield
    await supervisor.shutdown()


app = FastAPI(lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class RecordStartRequest(BaseModel):
    streamId: str | None = None
    channelName: str | None = None


class RecordStopRequest(BaseModel):
    recordingId: str | None = None


class ActivePlaylistRequest(BaseModel):
    playlistId: str | None = None


# ===========================================================================
# Transcode
# ===========================================================================


@app.get("/transcode")
async def start_transcode(
    url: str | None = None,
    hwaccel: str | None = None,
    hwdecode: str | None = None,
    preset: str | None = None,
    quality: str | None = None,
) -> dict[str, Any]:
    if not url:
        raise InvalidRequest("Missing url parameter")
    options = resolve_encode_options(hwaccel, hwdecode, preset, quality)
    return await transcode_session.start_transcode(url, options)


@app.delete("/stream/{session_id}")
async def stop_stream(session_id: str) -> dict[str, str]:
    return await supervisor.stop_stream(session_id)


@app.get("/streams")
async def list_streams() -> list[dict[str, Any]]:
    return transcode_session.list_sessions()


@app.get("/transcode/progress/{session_id}")
async def transcode_progress(session_id: str) -> dict[str, Any]:
    progress = transcode_session.get_session_progress(session_id)
    if progress is None:
        raise NotFound("Stream not found")
    return progress


@app.get("/hls/{session_id}/{filename}")
async def hls_file(session_id: str, filename: str) -> FileResponse:
    if filename == MANIFEST_NAME:
        media_type, headers = "application/vnd.apple.mpegurl", _NO_CACHE
    elif transcode_session.segment_sequence(filename) is not None:
        media_type, headers = "video/mp2t", None
    else:
        raise InvalidRequest("Invalid file name")
    session = transcode_session.get_session(session_id)
    if session is None:
        raise NotFound("Stream not found")
    path = session.output_dir / filename
    if not path.is_file():
        raise NotFound("File not found")
    return FileResponse(path, media_type=media_type, headers=headers)


# ===========================================================================
# Recording
# ===========================================================================


@app.post("/record/start")
async def record_start(req: RecordStartRequest) -> dict[str, Any]:
    if not req.streamId:
        raise InvalidRequest("Missing streamId")
    return await recording.start_recording(req.streamId, req.channelName)


@app.post("/record/stop")
async def record_stop(req: RecordStopRequest) -> dict[str, Any]:
    if not req.recordingId:
        raise InvalidRequest("Missing recordingId")
    return await recording.stop_recording(req.recordingId)


@app.get("/record/{recording_id}")
async def record_status(recording_id: str) -> dict[str, Any]:
    info = recording.get_recording(recording_id)
    if info is None:
        raise NotFound("Recording not found")
    return info


# Must be registered before /recordings/{filename}
@app.get("/recordings/active")
async def recordings_active() -> list[dict[str, Any]]:
    return recording.list_active_recordings()


@app.get("/recordings")
async def recordings_list() -> list[dict[str, Any]]:
    return recording.list_completed_recordings()


@app.get("/recordings/{filename}")
async def recording_download(filename: str) -> FileResponse:
    path = recording.resolve_recording_path(filename)
    return FileResponse(path, media_type="video/mp4", filename=path.name)


@app.delete("/recordings/{filename}")
async def recording_delete(filename: str) -> dict[str, Any]:
    return recording.delete_recording(filename)


# ===========================================================================
# Playlists
# ===========================================================================


@app.get("/playlists")
async def playlists_list() -> dict[str, Any]:
    return {"playlists": playlists.list_playlists()}


@app.post("/playlists", status_code=201)
async def playlists_create(body: dict[str, Any] = Body(...)) -> dict[str, Any]:
    return playlists.create_playlist(body)


# Must be registered before /playlists/{playlist_id}
@app.get("/playlists/active/current")
async def playlists_active() -> dict[str, Any]:
    return {"activePlaylistId": playlists.get_active_playlist_id()}


@app.put("/playlists/active/current")
async def playlists_set_active(req: ActivePlaylistRequest) -> dict[str, Any]:
    return {"activePlaylistId": playlists.set_active_playlist_id(req.playlistId)}


@app.get("/playlists/{playlist_id}")
async def playlists_get(playlist_id: str) -> dict[str, Any]:
    return playlists.get_playlist(playlist_id)


@app.put("/playlists/{playlist_id}")
async def playlists_update(playlist_id: str, body: dict[str, Any] = Body(...)) -> dict[str, Any]:
    return playlists.update_playlist(playlist_id, body)


@app.delete("/playlists/{playlist_id}")
async def playlists_delete(playlist_id: str) -> dict[str, Any]:
    return playlists.delete_playlist(playlist_id)


# ===========================================================================
# Health
# ===========================================================================


@app.get("/health")
async def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "activeStreamCount": len(transcode_session.registry),
        "activeRecordingCount": len(recording.recordings),
        "recordingsDir": str(settings.get_recordings_dir()),
        "playlistsDir": str(settings.get_playlists_dir()),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", DEFAULT_PORT)))
