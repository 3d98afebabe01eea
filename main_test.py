"""Tests for main.py - FastAPI routes."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import os
import time

import pytest

from testing import FakeEngine, fake_remux_ok
import recording
import transcode_session


URL = "http://x/live.ts"


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def client(tmp_path: Path, engine: FakeEngine):
    """Test client running the app lifespan against temp directories."""
    from fastapi.testclient import TestClient

    transcode_session.registry.clear()
    transcode_session._teardown_hooks.clear()
    recording.recordings.clear()
    env = {
        "HLS_DIR": str(tmp_path / "hls"),
        "RECORDINGS_DIR": str(tmp_path / "recordings"),
        "PLAYLISTS_DIR": str(tmp_path / "playlists"),
    }
    with (
        patch.dict(os.environ, env),
        patch("asyncio.create_subprocess_exec", engine),
        patch("recording._remux", fake_remux_ok),
        patch("settings.load_server_settings", return_value={}),
    ):
        import main

        with TestClient(main.app) as client:
            yield client

    transcode_session.registry.clear()
    transcode_session._teardown_hooks.clear()
    recording.recordings.clear()


def _start(client, **params) -> dict:
    params.setdefault("url", URL)
    resp = client.get("/transcode", params=params)
    assert resp.status_code == 200, resp.text
    return resp.json()


def _wait_for_status(client, recording_id: str, status: str, timeout: float = 3.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        info = client.get(f"/record/{recording_id}").json()
        if info.get("status") == status or time.monotonic() > deadline:
            return info
        time.sleep(0.05)


class TestHealth:
    def test_health(self, client, tmp_path):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {
            "status": "ok",
            "activeStreamCount": 0,
            "activeRecordingCount": 0,
            "recordingsDir": str(tmp_path / "recordings"),
            "playlistsDir": str(tmp_path / "playlists"),
        }


class TestTranscodeRoutes:
    def test_missing_url(self, client):
        resp = client.get("/transcode")
        assert resp.status_code == 400
        assert resp.json() == {"detail": "Missing url parameter"}

    def test_ready_then_active(self, client, engine):
        first = _start(client, hwaccel="cpu", preset="fast", quality="balanced")
        second = _start(client, hwaccel="cpu", preset="fast", quality="balanced")
        assert first["status"] == "ready"
        assert second == {**first, "status": "active"}
        assert len(engine.processes) == 1
        assert client.get("/health").json()["activeStreamCount"] == 1

    def test_unknown_options_fall_back(self, client, engine):
        _start(client, hwaccel="warpdrive", quality="cinematic", preset="zippy")
        cmd = engine.commands[0]
        assert cmd[cmd.index("-c:v") + 1] == "libx264"
        assert cmd[cmd.index("-crf") + 1] == "23"
        assert cmd[cmd.index("-preset") + 1] == "fast"

    def test_list_and_progress(self, client):
        started = _start(client)
        streams = client.get("/streams").json()
        assert [s["sessionId"] for s in streams] == [started["sessionId"]]
        assert streams[0]["sourceUrl"] == URL
        progress = client.get(f"/transcode/progress/{started['sessionId']}")
        assert progress.json() == {"segmentCount": 3, "duration": 12.0}
        assert client.get("/transcode/progress/nope").status_code == 404

    def test_stop_twice(self, client, engine):
        started = _start(client)
        resp = client.delete(f"/stream/{started['sessionId']}")
        assert resp.json() == {"status": "stopped"}
        assert client.delete(f"/stream/{started['sessionId']}").status_code == 404
        assert client.get("/streams").json() == []
        assert engine.processes[0].terminate_calls == 1


class TestHlsRoutes:
    def test_manifest(self, client):
        started = _start(client)
        resp = client.get(started["mediaUrl"])
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/vnd.apple.mpegurl")
        assert resp.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        assert resp.text.startswith("#EXTM3U")

    def test_segment(self, client):
        started = _start(client)
        resp = client.get(f"/hls/{started['sessionId']}/segment001.ts")
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "video/mp2t"
        assert resp.content == b"<seg1>"

    def test_invalid_name(self, client):
        started = _start(client)
        assert client.get(f"/hls/{started['sessionId']}/secrets.txt").status_code == 400

    def test_missing(self, client):
        started = _start(client)
        assert client.get(f"/hls/{started['sessionId']}/segment099.ts").status_code == 404
        assert client.get("/hls/nope/playlist.m3u8").status_code == 404


class TestRecordingRoutes:
    def test_validation(self, client):
        assert client.post("/record/start", json={}).status_code == 400
        assert client.post("/record/stop", json={}).status_code == 400
        resp = client.post("/record/start", json={"streamId": "unknown-id", "channelName": "X"})
        assert resp.status_code == 404
        assert client.post("/record/stop", json={"recordingId": "nope"}).status_code == 404
        assert client.get("/record/nope").status_code == 404

    def test_scenario(self, client):
        started = _start(client, hwaccel="cpu", preset="fast", quality="balanced")
        again = _start(client, hwaccel="cpu", preset="fast", quality="balanced")
        assert again["sessionId"] == started["sessionId"]
        assert again["status"] == "active"

        resp = client.post(
            "/record/start", json={"streamId": started["sessionId"], "channelName": "News"}
        )
        assert resp.status_code == 200
        rec = resp.json()
        assert rec["status"] == "recording"
        assert rec["filename"].startswith("News_") and rec["filename"].endswith(".mp4")

        dup = client.post(
            "/record/start", json={"streamId": started["sessionId"], "channelName": "News"}
        )
        assert dup.status_code == 409

        active = client.get("/recordings/active").json()
        assert [r["recordingId"] for r in active] == [rec["recordingId"]]
        assert client.get("/health").json()["activeRecordingCount"] == 1

        time.sleep(0.2)
        stopped = client.post("/record/stop", json={"recordingId": rec["recordingId"]})
        assert stopped.json() == {
            "recordingId": rec["recordingId"],
            "filename": rec["filename"],
            "status": "stopping",
        }

        info = _wait_for_status(client, rec["recordingId"], "completed")
        assert info["status"] == "completed"
        listed = [f["filename"] for f in client.get("/recordings").json()]
        assert listed == [rec["filename"]]

        download = client.get(f"/recordings/{rec['filename']}")
        assert download.status_code == 200
        assert download.content == b"<seg0><seg1><seg2>"

        deleted = client.delete(f"/recordings/{rec['filename']}")
        assert deleted.json() == {"status": "deleted", "filename": rec["filename"]}
        assert client.get("/recordings").json() == []

    def test_not_ready_stream_conflicts(self, client):
        session = transcode_session.StreamSession(
            id="pending",
            source_url=URL,
            dedup_key=transcode_session.make_dedup_key(URL, transcode_session.EncodeOptions()),
            output_dir=Path("/nonexistent"),
        )
        transcode_session.registry.get_or_create(session.dedup_key, lambda: session)
        resp = client.post("/record/start", json={"streamId": "pending", "channelName": "X"})
        assert resp.status_code == 409
        transcode_session.registry.clear()

    def test_recording_files(self, client, tmp_path):
        rec_dir = tmp_path / "recordings"
        (rec_dir / "notes.txt").write_text("x")
        assert client.get("/recordings/notes.txt").status_code == 403
        assert client.get("/recordings/missing.mp4").status_code == 404
        assert client.delete("/recordings/missing.mp4").status_code == 404


class TestPlaylistRoutes:
    def test_crud(self, client):
        assert client.post("/playlists", json={"channels": []}).status_code == 400

        created = client.post("/playlists", json={"name": "Home", "channels": [{"name": "A"}]})
        assert created.status_code == 201
        playlist = created.json()

        listed = client.get("/playlists").json()["playlists"]
        assert [(p["id"], p["channelCount"]) for p in listed] == [(playlist["id"], 1)]

        updated = client.put(f"/playlists/{playlist['id']}", json={"name": "Renamed"})
        assert updated.json()["name"] == "Renamed"
        assert updated.json()["channels"] == [{"name": "A"}]

        assert client.get(f"/playlists/{playlist['id']}").json()["name"] == "Renamed"

        resp = client.delete(f"/playlists/{playlist['id']}")
        assert resp.json()["id"] == playlist["id"]
        assert client.get(f"/playlists/{playlist['id']}").status_code == 404

    def test_active_playlist(self, client):
        assert client.get("/playlists/active/current").json() == {"activePlaylistId": None}
        assert (
            client.put("/playlists/active/current", json={"playlistId": "missing"}).status_code
            == 404
        )
        playlist = client.post("/playlists", json={"name": "Home"}).json()
        resp = client.put("/playlists/active/current", json={"playlistId": playlist["id"]})
        assert resp.json() == {"activePlaylistId": playlist["id"]}
        assert client.get("/playlists/active/current").json() == {
            "activePlaylistId": playlist["id"]
        }
        resp = client.put("/playlists/active/current", json={"playlistId": None})
        assert resp.json() == {"activePlaylistId": None}


class TestLifespan:
    def test_shutdown_tears_down_streams(self, tmp_path, engine):
        from fastapi.testclient import TestClient

        transcode_session.registry.clear()
        transcode_session._teardown_hooks.clear()
        recording.recordings.clear()
        stale = tmp_path / "hls" / "stream_leftover"
        stale.mkdir(parents=True)
        env = {
            "HLS_DIR": str(tmp_path / "hls"),
            "RECORDINGS_DIR": str(tmp_path / "recordings"),
            "PLAYLISTS_DIR": str(tmp_path / "playlists"),
        }
        with (
            patch.dict(os.environ, env),
            patch("asyncio.create_subprocess_exec", engine),
            patch("recording._remux", fake_remux_ok),
            patch("settings.load_server_settings", return_value={}),
        ):
            import main

            with TestClient(main.app) as client:
                assert not stale.exists()
                started = _start(client)
                rec = client.post(
                    "/record/start",
                    json={"streamId": started["sessionId"], "channelName": "News"},
                ).json()
                time.sleep(0.2)

            assert len(transcode_session.registry) == 0
            assert engine.processes[0].returncode is not None
            assert recording.get_recording(rec["recordingId"])["status"] == "completed"
            assert list((tmp_path / "hls").iterdir()) == []

        transcode_session.registry.clear()
        transcode_session._teardown_hooks.clear()
        recording.recordings.clear()

    def test_import_leaves_logging_alone(self):
        import importlib

        import main

        with patch("logging.basicConfig") as basic_config:
            importlib.reload(main)
        basic_config.assert_not_called()

    def test_startup_configures_logging(self, tmp_path, engine):
        from fastapi.testclient import TestClient

        transcode_session.registry.clear()
        transcode_session._teardown_hooks.clear()
        env = {
            "HLS_DIR": str(tmp_path / "hls"),
            "RECORDINGS_DIR": str(tmp_path / "recordings"),
            "PLAYLISTS_DIR": str(tmp_path / "playlists"),
            "LOG_LEVEL": "debug",
        }
        with (
            patch.dict(os.environ, env),
            patch("asyncio.create_subprocess_exec", engine),
            patch("settings.load_server_settings", return_value={}),
            patch("logging.basicConfig") as basic_config,
        ):
            import main

            with TestClient(main.app) as client:
                assert client.get("/health").status_code == 200
        basic_config.assert_called_once()
        assert basic_config.call_args.kwargs["level"] == "DEBUG"
        transcode_session._teardown_hooks.clear()


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
