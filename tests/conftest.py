"""
Pytest fixtures for SceneCast tests.

Most tests run against a fake ``ffmpeg`` (a POSIX shell script) that writes
a small payload to its last argument, so the whole queue -> render ->
publish path runs without real media tools. Tests that need the real
binary are marked with @pytest.mark.requires_ffmpeg and skipped when
ffmpeg is not on PATH.
"""

import shutil
import stat
import tempfile
import time
from pathlib import Path
from typing import Any, Callable

import pytest

from src.config import Settings
from src.models.database import Database
from src.services.job_queue import JobQueue
from src.services.storage_service import LocalStorageService


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring real ffmpeg/ffprobe binaries (skipped when missing)"
    )


def _ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


# Skip decorator for tests requiring real ffmpeg
requires_ffmpeg = pytest.mark.skipif(
    not _ffmpeg_available(),
    reason="ffmpeg/ffprobe not installed"
)


FAKE_FFMPEG_TEMPLATE = """#!/bin/sh
# Fake ffmpeg: records its arguments, then writes a payload to the last one.
for arg in "$@"; do out="$arg"; done
line=$(printf '%s' "$*" | tr '\\n' ' ')
printf '%s\\n' "$line" >> "{log}"
n=$(cat "{counter}" 2>/dev/null || echo 0)
n=$((n + 1))
echo "$n" > "{counter}"
{sleep}
if [ "$n" -le {fail_times} ]; then
  echo "simulated failure $n" >&2
  exit 1
fi
{fail_match}
{write}
exit 0
"""


class FakeFFmpeg:
    """Handle on a generated fake ffmpeg script."""

    def __init__(self, path: Path, log_path: Path):
        self.path = path
        self.log_path = log_path

    @property
    def calls(self) -> list[str]:
        if not self.log_path.exists():
            return []
        return [line for line in self.log_path.read_text().splitlines() if line.strip()]

    def calls_matching(self, needle: str) -> list[str]:
        return [line for line in self.calls if needle in line]


@pytest.fixture
def temp_output_dir():
    """Temporary directory for test outputs."""
    with tempfile.TemporaryDirectory(prefix="scenecast_test_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_fake_ffmpeg(tmp_path) -> Callable[..., FakeFFmpeg]:
    """Factory for fake ffmpeg scripts.

    Args (keyword):
        sleep: seconds to sleep before doing anything
        fail_times: fail the first N invocations with exit code 1
        fail_match: fail every invocation whose arguments contain this text
        payload: file copied to the output instead of the default bytes
        write_output: set False to exit 0 without writing anything
    """
    counter = {"n": 0}

    def factory(
        sleep: float | None = None,
        fail_times: int = 0,
        fail_match: str | None = None,
        payload: Path | None = None,
        write_output: bool = True,
    ) -> FakeFFmpeg:
        counter["n"] += 1
        bin_dir = tmp_path / f"fakebin{counter['n']}"
        bin_dir.mkdir()
        script = bin_dir / "ffmpeg"
        log_path = bin_dir / "calls.log"

        if not write_output:
            write = ":"
        elif payload is not None:
            write = f'cp "{payload}" "$out"'
        else:
            write = "printf 'fake-media' > \"$out\""

        match_block = ""
        if fail_match:
            match_block = (
                f'case "$*" in *"{fail_match}"*) echo "simulated failure for {fail_match}" >&2; exit 1;; esac'
            )

        script.write_text(
            FAKE_FFMPEG_TEMPLATE.format(
                log=log_path,
                counter=bin_dir / "count",
                sleep=f"sleep {sleep}" if sleep else ":",
                fail_times=fail_times,
                fail_match=match_block,
                write=write,
            )
        )
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return FakeFFmpeg(script, log_path)

    return factory


@pytest.fixture
def fake_ffmpeg(make_fake_ffmpeg) -> FakeFFmpeg:
    return make_fake_ffmpeg()


@pytest.fixture
def make_settings(tmp_path) -> Callable[..., Settings]:
    """Settings isolated from the environment with fast retries."""

    def factory(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "database_url": f"sqlite:///{tmp_path / 'jobs.db'}",
            "local_storage_path": str(tmp_path / "storage"),
            "public_base_url": "http://testserver",
            "render_temp_dir": str(tmp_path / "work"),
            "render_worker_concurrency": 2,
            "render_scene_concurrency": 2,
            "render_poll_interval_s": 0.05,
            "render_heartbeat_interval_s": 0.1,
            "render_orphan_stale_after_s": 0.0,
            "render_retry_base_delay_s": 0.01,
            "publish_retry_base_delay_s": 0.01,
            "state_write_retry_delay_s": 0.01,
            "render_min_timeout_s": 10.0,
            "ffprobe_path": str(tmp_path / "no-ffprobe"),
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return factory


@pytest.fixture
def app_settings(make_settings, fake_ffmpeg) -> Settings:
    return make_settings(ffmpeg_path=str(fake_ffmpeg.path))


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'jobs.db'}")
    db.init_db()
    yield db
    db.dispose()


@pytest.fixture
def queue(database) -> JobQueue:
    return JobQueue(database, aging_s=60.0)


@pytest.fixture
def storage(tmp_path) -> LocalStorageService:
    return LocalStorageService(str(tmp_path / "storage"), "http://testserver")


@pytest.fixture
def media_dir(tmp_path) -> Path:
    """Small placeholder media files usable as local layer sources."""
    path = tmp_path / "media"
    path.mkdir()
    (path / "clip.mp4").write_bytes(b"video-bytes")
    (path / "logo.png").write_bytes(b"image-bytes")
    (path / "music.wav").write_bytes(b"audio-bytes")
    return path


# ============================================================================
# Project builders
# ============================================================================


def text_layer(layer_id: str, content: str = "Hello", start: float = 0.0, duration: float = 2.0, **style) -> dict:
    return {
        "id": layer_id,
        "type": "text",
        "startTime": start,
        "duration": duration,
        "x": 10,
        "y": 20,
        "width": 400,
        "height": 100,
        "content": content,
        "style": {"fontSize": 32, "color": "white", **style},
    }


def image_layer(layer_id: str, source: str, start: float = 0.0, duration: float = 2.0, z: int = 0) -> dict:
    return {
        "id": layer_id,
        "type": "image",
        "startTime": start,
        "duration": duration,
        "x": 0,
        "y": 0,
        "width": 640,
        "height": 360,
        "source": source,
        "style": {"zIndex": z},
    }


def video_layer(layer_id: str, source: str, start: float = 0.0, duration: float = 2.0, z: int = 0) -> dict:
    return {
        "id": layer_id,
        "type": "video",
        "startTime": start,
        "duration": duration,
        "x": 0,
        "y": 0,
        "width": 1280,
        "height": 720,
        "source": source,
        "style": {"zIndex": z},
    }


def audio_layer(layer_id: str, source: str, start: float = 0.0, duration: float = 2.0, volume: float = 1.0) -> dict:
    return {
        "id": layer_id,
        "type": "audio",
        "startTime": start,
        "duration": duration,
        "source": source,
        "style": {"volume": volume},
    }


def scene(scene_id: str, duration: float = 2.0, layers: list[dict] | None = None, **extra) -> dict:
    return {"id": scene_id, "duration": duration, "layers": layers or [], **extra}


def project_payload(project_id: str = "proj-1", scenes: list[dict] | None = None, **extra) -> dict:
    return {
        "projectId": project_id,
        "width": 1280,
        "height": 720,
        "frameRate": 30,
        "scenes": scenes or [scene("s1", layers=[text_layer("t1")])],
        **extra,
    }


def settings_payload(**overrides) -> dict:
    values = {"width": 1280, "height": 720, "frameRate": 30, "quality": "standard", "outputFormat": "mp4"}
    values.update(overrides)
    return values


def wait_for(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.05) -> bool:
    """Poll ``predicate`` until it returns True or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
