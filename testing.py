"""Test utilities."""

from __future__ import annotations

from collections.abc import Coroutine
from typing import Any, TypeVar

import asyncio
import pathlib
import sys
import warnings


# Suppress unawaited coroutine warnings from AsyncMock in tests.
warnings.filterwarnings("ignore", message="coroutine.*was never awaited")

T = TypeVar("T")

SAMPLE_MANIFEST = (
    "#EXTM3U\n"
    "#EXT-X-VERSION:3\n"
    "#EXT-X-TARGETDURATION:4\n"
    "#EXTINF:4.000000,\n"
    "segment000.ts\n"
    "#EXTINF:4.000000,\n"
    "segment001.ts\n"
    "#EXTINF:4.000000,\n"
    "segment002.ts\n"
)


def run_tests(test_file: str) -> None:
    """Run pytest on a test file with standard flags.

    Usage:
        if __name__ == "__main__":
            from testing import run_tests
            run_tests(__file__)
    """
    import pytest

    sys.exit(
        pytest.main(
            [
                test_file,
                "-v",
                "-s",
                "-W",
                "ignore::pytest.PytestAssertRewriteWarning",
                *sys.argv[1:],
            ]
        )
    )


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine to completion on a fresh event loop."""
    return asyncio.run(coro)


class FakeStderr:
    async def readline(self) -> bytes:
        return b""


class FakeProcess:
    """Fake asyncio subprocess: runs until terminated, killed, or exit() is called."""

    def __init__(self, pid: int = 4242, ignore_terminate: bool = False):
        self.pid = pid
        self.returncode: int | None = None
        self.stderr = FakeStderr()
        self.terminate_calls = 0
        self.kill_calls = 0
        self._ignore_terminate = ignore_terminate
        self._exited = asyncio.Event()

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
        self._exited.set()

    def terminate(self) -> None:
        self.terminate_calls += 1
        if not self._ignore_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.kill_calls += 1
        self.exit(-9)

    async def wait(self) -> int | None:
        await self._exited.wait()
        return self.returncode


class FakeEngine:
    """Stands in for asyncio.create_subprocess_exec when spawning ffmpeg.

    By default each spawn writes a manifest and three segments into the output
    directory named by the command, so the session becomes ready at once.
    """

    def __init__(self, write_output: bool = True, segments: int = 3):
        self.write_output = write_output
        self.segments = segments
        self.processes: list[FakeProcess] = []
        self.commands: list[tuple[str, ...]] = []

    async def __call__(self, *cmd: str, **_kwargs: Any) -> FakeProcess:
        await asyncio.sleep(0)
        self.commands.append(cmd)
        output_dir = pathlib.Path(cmd[-1]).parent
        if self.write_output:
            write_hls_output(output_dir, self.segments)
        process = FakeProcess(pid=4242 + len(self.processes))
        self.processes.append(process)
        return process


def write_hls_output(output_dir: pathlib.Path, segments: int = 3) -> None:
    """Write a manifest plus numbered segments whose bytes name their sequence."""
    output_dir.mkdir(parents=True, exist_ok=True)
    (output_dir / "playlist.m3u8").write_text(SAMPLE_MANIFEST)
    for seq in range(segments):
        (output_dir / f"segment{seq:03d}.ts").write_bytes(segment_bytes(seq))


def segment_bytes(seq: int) -> bytes:
    return f"<seg{seq}>".encode()


async def fake_remux_ok(recording: Any) -> tuple[int | None, str]:
    recording.part_path.write_bytes(recording.capture_path.read_bytes())
    return 0, ""


async def fake_remux_fail(recording: Any) -> tuple[int | None, str]:
    recording.part_path.write_bytes(b"partial")
    return 1, "Invalid data found when processing input"
