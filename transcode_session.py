"""Transcode session lifecycle: registry, engine supervision, readiness."""

from __future__ import annotations

from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

import asyncio
import contextlib
import logging
import pathlib
import re
import shutil
import threading
import time
import urllib.parse
import uuid

from fastapi import HTTPException

from encode_options import (
    MANIFEST_NAME,
    SEG_PREFIX,
    SEG_SUFFIX,
    EncodeOptions,
    build_hls_cmd,
    get_user_agent,
    get_vaapi_device,
)
from errors import Aborted, IOFailure, ProcessFailure, ReadinessTimeout
import settings


log = logging.getLogger(__name__)

# Timing constants
_POLL_INTERVAL_SEC = 0.5
_READY_TIMEOUT_SEC = 20.0
_KILL_GRACE_SEC = 2.0

_MIN_READY_SEGMENTS = 3
_STDERR_TAIL_LINES = 50

SESSION_DIR_PREFIX = "stream_"

_SEGMENT_RE = re.compile(rf"^{SEG_PREFIX}(\d+){re.escape(SEG_SUFFIX)}$")

SessionState = Literal["starting", "ready", "failed", "stopped"]
TeardownHook = Callable[["StreamSession"], Awaitable[None]]

# Module state
_background_tasks: set[asyncio.Task[None]] = set()
_teardown_hooks: list[TeardownHook] = []


# ===========================================================================
# Dedup Keys
# ===========================================================================


def normalize_url(url: str) -> str:
    """Normalize a source URL so equivalent spellings share one session."""
    parsed = urllib.parse.urlsplit(url.strip())
    scheme = parsed.scheme.lower()
    try:
        host = parsed.hostname or ""
        port = parsed.port
    except ValueError:
        # Unparseable port: keep netloc as given (lowercased)
        return urllib.parse.urlunsplit(
            (scheme, parsed.netloc.lower(), parsed.path, parsed.query, "")
        )
    if ":" in host:
        host = f"[{host}]"
    netloc = host
    if parsed.username is not None:
        userinfo = parsed.username
        if parsed.password is not None:
            userinfo += f":{parsed.password}"
        netloc = f"{userinfo}@{netloc}"
    if port is not None and (scheme, port) not in (("http", 80), ("https", 443)):
        netloc += f":{port}"
    return urllib.parse.urlunsplit((scheme, netloc, parsed.path, parsed.query, ""))


@dataclass(frozen=True, slots=True)
class DedupKey:
    url: str
    options: EncodeOptions


def make_dedup_key(source_url: str, options: EncodeOptions) -> DedupKey:
    return DedupKey(normalize_url(source_url), options)


# ===========================================================================
# Sessions
# ===========================================================================


@dataclass(slots=True, eq=False)
class StreamSession:
    id: str
    source_url: str
    dedup_key: DedupKey
    output_dir: pathlib.Path
    created_at: float = field(default_factory=time.time)
    state: SessionState = "starting"
    process: Any = None
    torn_down: bool = False
    exited: bool = False  # engine exited on its own (not by teardown)
    failure: HTTPException | None = None
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=_STDERR_TAIL_LINES))
    stopped: asyncio.Event = field(default_factory=asyncio.Event)
    settled: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def manifest_path(self) -> pathlib.Path:
        return self.output_dir / MANIFEST_NAME

    @property
    def media_url(self) -> str:
        return f"/hls/{self.id}/{MANIFEST_NAME}"

    def uptime_ms(self) -> int:
        return int((time.time() - self.created_at) * 1000)


class SessionRegistry:
    """Owns the dedup-key -> session mapping. All mutation goes through these methods."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, StreamSession] = {}
        self._by_key: dict[DedupKey, str] = {}

    def get_or_create(
        self,
        key: DedupKey,
        factory: Callable[[], StreamSession],
    ) -> tuple[StreamSession, bool]:
        """Return (session, created). Lookup and insert happen under one lock."""
        with self._lock:
            existing_id = self._by_key.get(key)
            if existing_id:
                existing = self._sessions.get(existing_id)
                if existing is not None and not existing.torn_down:
                    return existing, False
            session = factory()
            self._sessions[session.id] = session
            self._by_key[key] = session.id
            return session, True

    def get(self, session_id: str) -> StreamSession | None:
        """Get a live (not torn down) session."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.torn_down:
                return None
            return session

    def claim_teardown(self, session_id: str) -> StreamSession | None:
        """Atomically mark a session torn down. Returns None if unknown or already claimed."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.torn_down:
                return None
            session.torn_down = True
            # Free the key now so a new request spawns a fresh session
            if self._by_key.get(session.dedup_key) == session_id:
                del self._by_key[session.dedup_key]
            return session

    def remove(self, session_id: str) -> bool:
        """Remove a session if present. Returns True if it was present."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            if self._by_key.get(session.dedup_key) == session_id:
                del self._by_key[session.dedup_key]
            return True

    def snapshot(self) -> list[StreamSession]:
        """Live sessions, oldest first."""
        with self._lock:
            sessions = [s for s in self._sessions.values() if not s.torn_down]
        return sorted(sessions, key=lambda s: s.created_at)

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._by_key.clear()

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for s in self._sessions.values() if not s.torn_down)


registry = SessionRegistry()


def _new_session(source_url: str, key: DedupKey) -> StreamSession:
    session_id = str(uuid.uuid4())
    return StreamSession(
        id=session_id,
        source_url=source_url,
        dedup_key=key,
        output_dir=settings.get_hls_dir() / f"{SESSION_DIR_PREFIX}{session_id}",
    )


# ===========================================================================
# Segment Helpers
# ===========================================================================


def segment_sequence(name: str) -> int | None:
    """Parse the sequence number from a segment filename, or None if not a segment."""
    match = _SEGMENT_RE.match(name)
    return int(match.group(1)) if match else None


def list_segments(output_dir: pathlib.Path) -> list[tuple[int, pathlib.Path]]:
    """List (sequence, path) for segment files, ascending by sequence number.

    Raises OSError if the directory cannot be listed.
    """
    segments = []
    for path in output_dir.iterdir():
        seq = segment_sequence(path.name)
        if seq is not None:
            segments.append((seq, path))
    segments.sort(key=lambda x: x[0])
    return segments


def _count_segments(output_dir: pathlib.Path) -> int:
    try:
        return len(list_segments(output_dir))
    except OSError:
        return 0


# ===========================================================================
# Engine Monitoring
# ===========================================================================


def _spawn_background_task(coro: Any) -> asyncio.Task[None]:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def _drain_stderr(process: asyncio.subprocess.Process, session: StreamSession) -> None:
    if process.stderr is None:
        return
    while True:
        line = await process.stderr.readline()
        if not line:
            break
        text = line.decode(errors="replace").rstrip()
        session.stderr_tail.append(text)
        is_fatal = "fatal" in text.lower() or "error" in text.lower()
        level = logging.WARNING if is_fatal else logging.DEBUG
        log.log(level, "ffmpeg:%s %s", session.id, text)


async def _monitor_engine(session: StreamSession) -> None:
    """Drain engine output, then tear the session down when the engine exits."""
    process = session.process
    await _drain_stderr(process, session)
    returncode = await process.wait()
    if session.torn_down:
        log.debug("ffmpeg:%s exited with code %s after teardown", session.id, returncode)
        return
    session.exited = True
    log.warning(
        "ffmpeg:%s exited with code %s: %s",
        session.id,
        returncode,
        "\n".join(list(session.stderr_tail)[-10:]) or "no output",
    )
    await teardown(session.id)


async def _terminate_engine(proc: Any, grace_sec: float = _KILL_GRACE_SEC) -> bool:
    """Stop process gracefully (SIGTERM, then SIGKILL after grace), return True if signalled."""
    if proc.returncode is not None:
        return False
    try:
        proc.terminate()
    except (ProcessLookupError, OSError):
        return False
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_sec)
        return True
    except TimeoutError:
        log.warning("ffmpeg pid=%s ignored SIGTERM, killing", getattr(proc, "pid", "?"))
    try:
        proc.kill()
    except (ProcessLookupError, OSError):
        return True
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(proc.wait(), timeout=grace_sec)
    return True


# ===========================================================================
# Teardown
# ===========================================================================


def add_teardown_hook(hook: TeardownHook) -> None:
    """Register a coroutine run for every session before its engine is stopped."""
    if hook not in _teardown_hooks:
        _teardown_hooks.append(hook)


async def _release(session: StreamSession) -> None:
    """Stop the engine, remove output, drop from registry. Best effort."""
    if session.process is not None and await _terminate_engine(session.process):
        log.info("Stopped ffmpeg for session %s", session.id)
    try:
        shutil.rmtree(session.output_dir)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning("Failed to remove %s: %s", session.output_dir, e)
    registry.remove(session.id)


async def teardown(session_id: str) -> bool:
    """Tear a session down exactly once. Returns False if unknown or already torn down.

    Reached from explicit stop, engine exit, creation failure, and shutdown.
    """
    session = registry.claim_teardown(session_id)
    if session is None:
        return False
    if session.state != "failed":
        session.state = "stopped"
    session.stopped.set()
    session.settled.set()

    for hook in list(_teardown_hooks):
        try:
            await hook(session)
        except Exception as e:
            log.warning("Teardown hook failed for session %s: %s", session_id, e)

    await _release(session)
    log.info("Stopped transcode session %s", session_id)
    return True


# ===========================================================================
# Start / Readiness
# ===========================================================================


def _exit_detail(session: StreamSession) -> str:
    code = session.process.returncode if session.process is not None else None
    return f"Transcoder exited with code {code} before stream was ready"


async def _wait_until_ready(
    session: StreamSession,
    timeout_sec: float = _READY_TIMEOUT_SEC,
    poll_sec: float = _POLL_INTERVAL_SEC,
) -> None:
    """Wait for manifest plus enough segments. Wakes immediately on teardown."""
    deadline = time.monotonic() + timeout_sec
    while True:
        if session.torn_down:
            if session.exited:
                raise ProcessFailure(_exit_detail(session))
            raise Aborted()
        manifest_exists = session.manifest_path.exists()
        if manifest_exists and _count_segments(session.output_dir) >= _MIN_READY_SEGMENTS:
            return
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            if manifest_exists:
                log.warning(
                    "Session %s: playlist has fewer than %d segments after %.0fs, continuing",
                    session.id,
                    _MIN_READY_SEGMENTS,
                    timeout_sec,
                )
                return
            raise ReadinessTimeout()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(session.stopped.wait(), timeout=min(poll_sec, remaining))


async def _launch(session: StreamSession) -> None:
    """Create the output directory and spawn the engine."""
    try:
        session.output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise IOFailure(f"Cannot create output directory: {e}") from e

    cmd = build_hls_cmd(
        session.source_url,
        session.dedup_key.options,
        str(session.output_dir),
        get_user_agent(),
        get_vaapi_device(),
    )
    log.info("Starting transcode session %s: %s", session.id, " ".join(cmd))

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        log.error("ffmpeg:%s failed to start: %s", session.id, e)
        raise ProcessFailure(f"Failed to start transcoder: {e}") from e

    if session.torn_down:
        # Stopped while spawning; teardown already ran without a process
        await _terminate_engine(process)
        raise Aborted()
    session.process = process
    _spawn_background_task(_monitor_engine(session))


async def _join_session(session: StreamSession) -> None:
    """Wait for an in-flight session created by another request to settle."""
    await session.settled.wait()
    if session.state == "ready" and not session.torn_down:
        return
    if session.failure is not None:
        raise session.failure
    raise Aborted()


def _session_response(session: StreamSession, status: str) -> dict[str, Any]:
    return {"sessionId": session.id, "mediaUrl": session.media_url, "status": status}


async def start_transcode(source_url: str, options: EncodeOptions) -> dict[str, Any]:
    """Start or reuse a transcode session.

    Concurrent calls with the same source and options share one engine process:
    the first caller creates it and gets status 'ready', the others join and get
    status 'active'. Raises HTTPException subclasses on failure.
    """
    key = make_dedup_key(source_url, options)
    session, created = registry.get_or_create(key, lambda: _new_session(source_url, key))

    if not created:
        log.info("Reusing session %s (%s) for %s", session.id, session.state, source_url[:80])
        await _join_session(session)
        return _session_response(session, "active")

    try:
        await _launch(session)
        await _wait_until_ready(session)
    except HTTPException as e:
        log.error(
            "Session %s failed: %s (ffmpeg: %s)",
            session.id,
            e.detail,
            "\n".join(list(session.stderr_tail)[-10:]) or "no output",
        )
        session.state = "failed"
        session.failure = e
        session.settled.set()
        await teardown(session.id)
        raise
    except asyncio.CancelledError:
        session.state = "failed"
        session.failure = Aborted()
        session.settled.set()
        _spawn_background_task(teardown(session.id))
        raise

    session.state = "ready"
    session.settled.set()
    log.info("HLS playlist ready for session %s", session.id)
    return _session_response(session, "ready")


# ===========================================================================
# Session Query
# ===========================================================================


def get_session(session_id: str) -> StreamSession | None:
    return registry.get(session_id)


def list_sessions() -> list[dict[str, Any]]:
    """Snapshot of live sessions."""
    return [
        {"sessionId": s.id, "sourceUrl": s.source_url, "uptimeMs": s.uptime_ms()}
        for s in registry.snapshot()
    ]


def get_session_progress(session_id: str) -> dict[str, Any] | None:
    """Get segment count and duration listed in a session's manifest."""
    session = registry.get(session_id)
    if session is None:
        return None
    try:
        content = session.manifest_path.read_text()
    except OSError:
        return {"segmentCount": 0, "duration": 0.0}
    durations = re.findall(r"#EXTINF:([\d.]+)", content)
    return {
        "segmentCount": len(durations),
        "duration": sum(float(d) for d in durations),
    }
