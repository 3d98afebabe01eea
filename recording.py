"""Recording: harvest rolling HLS segments into a capture file, remux on stop."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import IO, Any, Literal

import asyncio
import contextlib
import logging
import pathlib
import re
import threading
import time
import uuid

from encode_options import build_remux_cmd
from errors import Conflict, Forbidden, IOFailure, NotFound
import settings
import transcode_session


log = logging.getLogger(__name__)

_HARVEST_INTERVAL_SEC = 0.5
_FINISHED_HISTORY = 50
_STDERR_TAIL_CHARS = 1_000

RECORDING_EXT = ".mp4"
PART_EXT = ".part"  # remux target until the output is complete
CAPTURE_EXT = ".ts"

_UNSAFE_CHARS_RE = re.compile(r"[^a-zA-Z0-9_-]")

RecordingState = Literal["recording", "stopping", "completed", "failed"]


# ===========================================================================
# Data Types
# ===========================================================================


@dataclass(slots=True, eq=False)
class RecordingSession:
    id: str
    stream_session_id: str
    label: str
    filename: str
    capture_path: pathlib.Path
    output_path: pathlib.Path
    output_dir: pathlib.Path  # stream session's HLS directory (read-only here)
    source_url: str = ""
    last_sequence: int = -1
    segments_written: int = 0
    bytes_written: int = 0
    state: RecordingState = "recording"
    error: str = ""
    started_at: float = field(default_factory=time.time)
    ended_at: float | None = None
    capture: IO[bytes] | None = None
    task: asyncio.Task[None] | None = None

    @property
    def part_path(self) -> pathlib.Path:
        return self.capture_path.with_suffix(RECORDING_EXT + PART_EXT)

    def duration_ms(self) -> int:
        end = self.ended_at if self.ended_at is not None else time.time()
        return int((end - self.started_at) * 1000)

    def to_dict(self) -> dict[str, Any]:
        info = {
            "recordingId": self.id,
            "streamId": self.stream_session_id,
            "channelName": self.label,
            "filename": self.filename,
            "durationMs": self.duration_ms(),
            "status": self.state,
            "segments": self.segments_written,
            "bytes": self.bytes_written,
        }
        if self.error:
            info["error"] = self.error
        return info


class RecordingRegistry:
    """Owns active recordings and the one-recording-per-stream binding."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[str, RecordingSession] = {}
        self._by_stream: dict[str, str] = {}
        self._finished: deque[RecordingSession] = deque(maxlen=_FINISHED_HISTORY)

    def bind(self, recording: RecordingSession) -> None:
        """Insert a recording. Raises Conflict if its stream already has one."""
        with self._lock:
            if recording.stream_session_id in self._by_stream:
                raise Conflict("Already recording this stream")
            self._active[recording.id] = recording
            self._by_stream[recording.stream_session_id] = recording.id

    def begin_stop(self, recording_id: str) -> tuple[RecordingSession, bool]:
        """Move recording -> stopping. Returns (recording, transitioned)."""
        with self._lock:
            recording = self._active.get(recording_id)
            if recording is None:
                raise NotFound("Recording not found")
            if recording.state != "recording":
                return recording, False
            recording.state = "stopping"
            return recording, True

    def finish(self, recording: RecordingSession) -> None:
        """Move a finalized recording out of the active set."""
        with self._lock:
            self._active.pop(recording.id, None)
            if self._by_stream.get(recording.stream_session_id) == recording.id:
                del self._by_stream[recording.stream_session_id]
            self._finished.append(recording)

    def unbind(self, recording_id: str) -> None:
        with self._lock:
            recording = self._active.pop(recording_id, None)
            if recording and self._by_stream.get(recording.stream_session_id) == recording_id:
                del self._by_stream[recording.stream_session_id]

    def get(self, recording_id: str) -> RecordingSession | None:
        with self._lock:
            recording = self._active.get(recording_id)
            if recording is not None:
                return recording
            return next((r for r in self._finished if r.id == recording_id), None)

    def for_stream(self, stream_session_id: str) -> RecordingSession | None:
        with self._lock:
            recording_id = self._by_stream.get(stream_session_id)
            return self._active.get(recording_id) if recording_id else None

    def active(self) -> list[RecordingSession]:
        with self._lock:
            return sorted(self._active.values(), key=lambda r: r.started_at)

    def clear(self) -> None:
        with self._lock:
            self._active.clear()
            self._by_stream.clear()
            self._finished.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)


recordings = RecordingRegistry()
_finalizers: set[asyncio.Task[None]] = set()


# ===========================================================================
# Naming
# ===========================================================================


def sanitize_label(label: str | None) -> str:
    """Restrict a label to [A-Za-z0-9_-]; empty labels become 'recording'."""
    label = (label or "").strip()
    return _UNSAFE_CHARS_RE.sub("_", label) if label else "recording"


def _timestamp(now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"


def make_recording_filename(label: str | None, now: datetime | None = None) -> str:
    return f"{sanitize_label(label)}_{_timestamp(now)}{RECORDING_EXT}"


# ===========================================================================
# Harvesting
# ===========================================================================


def harvest_segments(recording: RecordingSession) -> int:
    """Append segments newer than the watermark to the capture, in sequence order.

    Segments that vanish between listing and reading (rolling window) are
    skipped. Returns the number of segments appended.
    """
    try:
        segments = transcode_session.list_segments(recording.output_dir)
    except OSError as e:
        log.warning("Recorder %s: cannot list %s: %s", recording.id, recording.output_dir, e)
        return 0

    assert recording.capture is not None
    written = 0
    for seq, path in segments:
        if seq <= recording.last_sequence:
            continue
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            log.debug("Recorder %s: segment %s was deleted, skipping", recording.id, path.name)
            continue
        except OSError as e:
            log.warning("Recorder %s: failed to read %s: %s", recording.id, path.name, e)
            continue
        recording.capture.write(data)
        recording.last_sequence = seq
        recording.segments_written += 1
        recording.bytes_written += len(data)
        written += 1
        log.debug("Recorder %s: wrote %s (%d bytes)", recording.id, path.name, len(data))
    return written


async def _harvest_loop(recording: RecordingSession, interval_sec: float) -> None:
    # A pass has no await points, so cancellation lands between passes only
    while True:
        try:
            harvest_segments(recording)
        except OSError as e:
            log.error("Recorder %s: capture write failed: %s", recording.id, e)
        await asyncio.sleep(interval_sec)


# ===========================================================================
# Start / Stop
# ===========================================================================


async def start_recording(
    stream_session_id: str,
    label: str | None = None,
    interval_sec: float = _HARVEST_INTERVAL_SEC,
) -> dict[str, Any]:
    """Start capturing a ready stream session's segments."""
    stream = transcode_session.get_session(stream_session_id)
    if stream is None:
        raise NotFound("Stream not found. Make sure the channel is playing before recording.")
    if stream.state != "ready":
        raise Conflict("Stream is not ready yet")

    recordings_dir = settings.get_recordings_dir()
    recording_id = str(uuid.uuid4())
    filename = make_recording_filename(label)
    recording = RecordingSession(
        id=recording_id,
        stream_session_id=stream_session_id,
        label=label or "Unknown",
        filename=filename,
        capture_path=recordings_dir / f"{recording_id}{CAPTURE_EXT}",
        output_path=recordings_dir / filename,
        output_dir=stream.output_dir,
        source_url=stream.source_url,
    )
    recordings.bind(recording)

    try:
        recording.capture = open(recording.capture_path, "ab")
    except OSError as e:
        recordings.unbind(recording_id)
        log.error("Recorder %s: failed to open capture file: %s", recording_id, e)
        raise IOFailure("Failed to start recording") from e

    recording.task = asyncio.create_task(_harvest_loop(recording, interval_sec))
    log.info(
        "Started recording %s of stream %s -> %s",
        recording_id,
        stream_session_id,
        recording.output_path,
    )
    return {"recordingId": recording_id, "filename": filename, "status": "recording"}


async def stop_recording(recording_id: str) -> dict[str, Any]:
    """Stop harvesting and schedule remux. Returns before finalization completes."""
    recording, transitioned = recordings.begin_stop(recording_id)
    response = {"recordingId": recording.id, "filename": recording.filename, "status": "stopping"}
    if not transitioned:
        return response

    log.info("Stopping recording %s", recording_id)
    # Timer first, then the file: no write may land on a closed handle
    if recording.task is not None:
        recording.task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await recording.task
        recording.task = None
    if recording.capture is not None:
        try:
            recording.capture.close()
        except OSError as e:
            log.warning("Recorder %s: failed to close capture: %s", recording_id, e)
        recording.capture = None
    recording.ended_at = time.time()

    task = asyncio.create_task(_finalize(recording))
    _finalizers.add(task)
    task.add_done_callback(_finalizers.discard)
    return response


def _unlink_quietly(path: pathlib.Path, what: str, recording_id: str) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.warning("Recorder %s: failed to delete %s: %s", recording_id, what, e)


async def _remux(recording: RecordingSession) -> tuple[int | None, str]:
    cmd = build_remux_cmd(str(recording.capture_path), str(recording.part_path))
    log.info("Recorder %s: remuxing: %s", recording.id, " ".join(cmd))
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        return None, str(e)
    _, stderr = await process.communicate()
    return process.returncode, (stderr or b"").decode(errors="replace")[-_STDERR_TAIL_CHARS:]


async def _finalize(recording: RecordingSession) -> None:
    """Remux the capture to the final container, then drop the capture file."""
    try:
        if recording.bytes_written == 0:
            recording.state = "failed"
            recording.error = "No segments captured"
        else:
            returncode, stderr = await _remux(recording)
            if returncode == 0:
                recording.part_path.replace(recording.output_path)
                recording.state = "completed"
            else:
                recording.state = "failed"
                recording.error = f"Remux exited with code {returncode}: {stderr.strip()}"
                _unlink_quietly(recording.part_path, "partial output", recording.id)
    except Exception as e:
        recording.state = "failed"
        recording.error = f"Finalization error: {e}"
        _unlink_quietly(recording.part_path, "partial output", recording.id)
        log.warning("Recorder %s: finalization error: %s", recording.id, e)
    finally:
        _unlink_quietly(recording.capture_path, "capture file", recording.id)
        recordings.finish(recording)

    if recording.state == "completed":
        log.info("Recording %s completed: %s", recording.id, recording.output_path)
    else:
        log.warning("Recording %s failed: %s", recording.id, recording.error)


async def stop_recording_for_stream(stream: transcode_session.StreamSession) -> None:
    """Teardown hook: finalize the recording bound to a stream that is going away."""
    recording = recordings.for_stream(stream.id)
    if recording is None:
        return
    log.info("Stream %s torn down, stopping bound recording %s", stream.id, recording.id)
    await stop_recording(recording.id)


async def wait_for_finalizers(timeout_sec: float) -> bool:
    """Wait for pending remux tasks. Returns False if any were still running at timeout."""
    pending = list(_finalizers)
    if not pending:
        return True
    _, still_running = await asyncio.wait(pending, timeout=timeout_sec)
    return not still_running


# ===========================================================================
# Query
# ===========================================================================


def get_recording(recording_id: str) -> dict[str, Any] | None:
    recording = recordings.get(recording_id)
    return recording.to_dict() if recording else None


def list_active_recordings() -> list[dict[str, Any]]:
    return [r.to_dict() for r in recordings.active()]


def list_completed_recordings() -> list[dict[str, Any]]:
    """Finished recording files, newest first."""
    files = []
    for path in settings.get_recordings_dir().glob(f"*{RECORDING_EXT}"):
        try:
            stat = path.stat()
        except OSError:
            continue
        files.append(
            {
                "filename": path.name,
                "size": stat.st_size,
                "created": datetime.fromtimestamp(stat.st_ctime, UTC).isoformat(),
                "modified": datetime.fromtimestamp(stat.st_mtime, UTC).isoformat(),
                "_mtime": stat.st_mtime,
            }
        )
    files.sort(key=lambda f: f["_mtime"], reverse=True)
    for f in files:
        del f["_mtime"]
    return files


# ===========================================================================
# Recording Files
# ===========================================================================


def resolve_recording_path(filename: str) -> pathlib.Path:
    """Resolve a recording filename inside the recordings directory.

    Raises Forbidden if it escapes the directory, NotFound if absent.
    """
    base = settings.get_recordings_dir().resolve()
    path = (base / filename).resolve()
    if path.parent != base or path.suffix != RECORDING_EXT:
        raise Forbidden()
    if not path.is_file():
        raise NotFound("Recording not found")
    return path


def delete_recording(filename: str) -> dict[str, Any]:
    path = resolve_recording_path(filename)
    try:
        path.unlink()
    except FileNotFoundError as e:
        raise NotFound("Recording not found") from e
    except OSError as e:
        log.error("Failed to delete recording %s: %s", path, e)
        raise IOFailure("Failed to delete recording") from e
    log.info("Deleted recording %s", path.name)
    return {"status": "deleted", "filename": path.name}
