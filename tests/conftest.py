"""
Pytest fixtures for StreamVio transcoding tests.
Provides a temporary SQLite database, storage directories, a fake native
transcoder and a ready-to-use JobManager.
"""

import os
import stat
import tempfile
from pathlib import Path
from typing import AsyncGenerator

import pytest
from databases import Database

# Set up test paths BEFORE importing config
_test_temp_dir = tempfile.mkdtemp()
os.environ["STREAMVIO_TEST_MODE"] = "1"
os.environ.setdefault("STREAMVIO_STORAGE_PATH", _test_temp_dir)
os.environ.setdefault("STREAMVIO_DATABASE_URL", f"sqlite:///{Path(_test_temp_dir) / 'streamvio-test.db'}")

from engine.database import create_tables  # noqa: E402
from engine.events import EventChannel  # noqa: E402
from engine.job_manager import EngineSettings, JobManager  # noqa: E402
from engine.job_store import JobStore  # noqa: E402
from worker.backends import BackendSelector, FFmpegBackend, NativeBackend  # noqa: E402

# Behaviour is switched per test through FAKE_TRANSCODER_MODE:
#   ok        - write the requested output
#   fail      - print an error and exit 1
#   no_output - exit 0 without writing anything
#   slow      - sleep before writing (for cancellation tests)
FAKE_TRANSCODER_SCRIPT = """#!/bin/sh
mode="${FAKE_TRANSCODER_MODE:-ok}"
cmd="$1"
shift

case "$cmd" in
  info)
    if [ ! -f "$1" ]; then
      echo "Error: cannot open $1" >&2
      exit 1
    fi
    echo "Formato: mov,mp4,m4a"
    echo "Duración: ${FAKE_DURATION:-10.0} segundos"
    echo "Resolución: 1920x1080"
    echo "Codec de video: h264 (4800 kbps)"
    echo "Codec de audio: aac (192 kbps)"
    echo "Canales de audio: 2"
    echo "Frecuencia de muestreo: 48000 Hz"
    echo "Metadatos:"
    echo "  title: Test Movie"
    ;;
  transcode|thumbnail)
    case "$mode" in
      fail)
        echo "Error: encoder crashed" >&2
        exit 1
        ;;
      no_output)
        exit 0
        ;;
      slow)
        sleep 30
        ;;
    esac
    echo "$cmd $*" >> "${FAKE_TRANSCODER_LOG:-/dev/null}"
    printf 'fake-media-data' > "$2"
    ;;
  *)
    echo "unknown command: $cmd" >&2
    exit 2
    ;;
esac
"""


def write_executable(path: Path, content: str) -> Path:
    path.write_text(content)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture(scope="function")
def test_storage(tmp_path: Path) -> dict:
    """Create test storage directories."""
    media_dir = tmp_path / "media"
    output_dir = tmp_path / "transcoded"
    thumbnails_dir = tmp_path / "thumbnails"

    media_dir.mkdir(parents=True, exist_ok=True)
    output_dir.mkdir(parents=True, exist_ok=True)
    thumbnails_dir.mkdir(parents=True, exist_ok=True)

    return {
        "media": media_dir,
        "output": output_dir,
        "thumbnails": thumbnails_dir,
    }


@pytest.fixture(scope="function")
def test_db_url(tmp_path: Path) -> str:
    """Create a fresh SQLite database file with all tables."""
    db_url = f"sqlite:///{tmp_path / 'jobs.db'}"
    create_tables(db_url)
    return db_url


@pytest.fixture(scope="function")
async def test_database(test_db_url: str) -> AsyncGenerator[Database, None]:
    """Connected async database for each test."""
    database = Database(test_db_url)
    await database.connect()

    yield database

    await database.disconnect()


@pytest.fixture
def job_store(test_database: Database) -> JobStore:
    return JobStore(test_database, retention_seconds=3600)


@pytest.fixture
def sample_media(test_storage: dict) -> Path:
    """A source file named like a real upload."""
    path = test_storage["media"] / "movie.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 1024)
    return path


@pytest.fixture
def fake_transcoder(tmp_path: Path, monkeypatch) -> Path:
    """Executable stand-in for the native transcoder binary."""
    monkeypatch.setenv("FAKE_TRANSCODER_MODE", "ok")
    monkeypatch.setenv("FAKE_TRANSCODER_LOG", str(tmp_path / "fake-transcoder.log"))
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)
    return write_executable(bin_dir / "streamvio-core", FAKE_TRANSCODER_SCRIPT)


@pytest.fixture
def missing_ffmpeg(tmp_path: Path) -> FFmpegBackend:
    """ffmpeg backend pointing at executables that do not exist."""
    return FFmpegBackend(
        ffmpeg_path=str(tmp_path / "no-such-ffmpeg"),
        ffprobe_path=str(tmp_path / "no-such-ffprobe"),
    )


@pytest.fixture
def native_selector(fake_transcoder: Path, missing_ffmpeg: FFmpegBackend) -> BackendSelector:
    """Selector that can only use the fake native transcoder."""
    return BackendSelector(native=NativeBackend(str(fake_transcoder)), ffmpeg=missing_ffmpeg)


@pytest.fixture
def engine_settings(test_storage: dict) -> EngineSettings:
    return EngineSettings(
        output_dir=test_storage["output"],
        thumbnails_dir=test_storage["thumbnails"],
        max_concurrent_jobs=2,
        poll_interval=0.05,
        use_hardware_accel=False,
    )


@pytest.fixture
async def job_manager(job_store: JobStore, native_selector: BackendSelector, engine_settings: EngineSettings):
    """JobManager wired to the fake transcoder and a temporary database."""
    manager = JobManager(job_store, selector=native_selector, events=EventChannel(), settings=engine_settings)

    yield manager

    await manager.shutdown()
