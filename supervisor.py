"""Process-wide cleanup: explicit stops, shutdown, and leftovers from earlier runs."""

from __future__ import annotations

import asyncio
import logging
import shutil

from errors import NotFound
import recording
import settings
import transcode_session


log = logging.getLogger(__name__)

_FINALIZE_TIMEOUT_SEC = 30.0


def install() -> None:
    """Stopping a stream also stops (and finalizes) the recording bound to it."""
    transcode_session.add_teardown_hook(recording.stop_recording_for_stream)


async def stop_stream(session_id: str) -> dict[str, str]:
    """Explicit stop. Unknown or already torn-down ids raise NotFound."""
    if not await transcode_session.teardown(session_id):
        raise NotFound("Stream not found")
    return {"status": "stopped"}


async def shutdown(finalize_timeout_sec: float = _FINALIZE_TIMEOUT_SEC) -> None:
    """Tear down every stream and recording, then wait for pending remuxes."""
    session_ids = transcode_session.registry.ids()
    recording_ids = [r.id for r in recording.recordings.active()]
    log.info(
        "Shutting down %d stream(s) and %d recording(s)",
        len(session_ids),
        len(recording_ids),
    )
    await asyncio.gather(
        *(transcode_session.teardown(sid) for sid in session_ids),
        return_exceptions=True,
    )
    # Recordings whose stream was already gone are not reached by the cascade
    for recording_id in recording_ids:
        try:
            await recording.stop_recording(recording_id)
        except NotFound:
            pass
    if not await recording.wait_for_finalizers(finalize_timeout_sec):
        log.warning("Recording finalization still running after %.0fs", finalize_timeout_sec)


def cleanup_orphans() -> int:
    """Remove session dirs and leftover recording files from a previous run. Returns count removed."""
    removed = 0
    live = set(transcode_session.registry.ids())
    hls_dir = settings.get_hls_dir()
    for path in hls_dir.glob(f"{transcode_session.SESSION_DIR_PREFIX}*"):
        if not path.is_dir():
            continue
        if path.name[len(transcode_session.SESSION_DIR_PREFIX) :] in live:
            continue
        try:
            shutil.rmtree(path)
            removed += 1
        except OSError as e:
            log.warning("Failed to remove stale session dir %s: %s", path, e)

    active = recording.recordings.active()
    in_use = {r.capture_path.name for r in active} | {r.part_path.name for r in active}
    recordings_dir = settings.get_recordings_dir()
    leftovers = [
        *recordings_dir.glob(f"*{recording.CAPTURE_EXT}"),
        *recordings_dir.glob(f"*{recording.PART_EXT}"),
    ]
    for path in leftovers:
        if path.name in in_use:
            continue
        try:
            path.unlink()
            removed += 1
        except OSError as e:
            log.warning("Failed to remove orphaned recording file %s: %s", path, e)

    if removed:
        log.info("Removed %d leftover session dir(s) and recording file(s)", removed)
    return removed
