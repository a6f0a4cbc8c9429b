import logging
import math
import os
from pathlib import Path
from typing import Optional

# Configure logger for config module warnings
logger = logging.getLogger(__name__)


def get_int_env(
    name: str,
    default: int,
    min_val: Optional[int] = None,
    max_val: Optional[int] = None,
) -> int:
    """Get an integer from environment variable with error handling and validation.

    Args:
        name: Environment variable name
        default: Default value if env var is missing or invalid
        min_val: Optional minimum value (inclusive)
        max_val: Optional maximum value (inclusive)

    Returns:
        Parsed integer value, or default if parsing fails or value is out of range
    """
    value = os.getenv(name)
    if value is None:
        return default

    try:
        result = int(value)
    except ValueError:
        logger.warning(f"Invalid {name}='{value}', using default {default}")
        return default

    # Range validation (only applied to user-provided values)
    if min_val is not None and result < min_val:
        logger.warning(f"{name}={result} is below minimum {min_val}, using default {default}")
        return default
    if max_val is not None and result > max_val:
        logger.warning(f"{name}={result} is above maximum {max_val}, using default {default}")
        return default

    return result


def get_float_env(
    name: str,
    default: float,
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
) -> float:
    """Get a float from environment variable with error handling and validation.

    Special values (inf, nan) are rejected the same way as unparseable input.
    """
    value = os.getenv(name)
    if value is None:
        return default

    try:
        result = float(value)
    except ValueError:
        logger.warning(f"Invalid {name}='{value}', using default {default}")
        return default

    if math.isinf(result) or math.isnan(result):
        logger.warning(f"Invalid {name}='{value}' (special float), using default {default}")
        return default

    if min_val is not None and result < min_val:
        logger.warning(f"{name}={result} is below minimum {min_val}, using default {default}")
        return default
    if max_val is not None and result > max_val:
        logger.warning(f"{name}={result} is above maximum {max_val}, using default {default}")
        return default

    return result


def get_bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() not in ("false", "0", "no", "off", "")


# Paths - configurable via environment variables
BASE_DIR = Path(__file__).parent
STORAGE_PATH = Path(os.getenv("STREAMVIO_STORAGE_PATH", "/var/lib/streamvio"))
OUTPUT_DIR = Path(os.getenv("STREAMVIO_OUTPUT_DIR", str(STORAGE_PATH / "transcoded")))
THUMBNAILS_DIR = Path(os.getenv("STREAMVIO_THUMBNAILS_DIR", str(STORAGE_PATH / "thumbnails")))

# Job rows live in SQLite; any SQLAlchemy URL supported by `databases` works
DATABASE_URL = os.getenv("STREAMVIO_DATABASE_URL", f"sqlite:///{BASE_DIR / 'streamvio.db'}")

# Ensure directories exist (skip in test/CI environments)
if not os.environ.get("STREAMVIO_TEST_MODE"):
    try:
        OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
        THUMBNAILS_DIR.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        logger.warning(f"Cannot create storage directories under {STORAGE_PATH}")

# Backends
# The native transcoder is preferred when the binary exists on disk;
# ffmpeg/ffprobe are the general-purpose fallback.
NATIVE_TRANSCODER_PATH = os.getenv("STREAMVIO_NATIVE_TRANSCODER_PATH", str(BASE_DIR / "bin" / "streamvio-core"))
FFMPEG_PATH = os.getenv("STREAMVIO_FFMPEG_PATH", "ffmpeg")
FFPROBE_PATH = os.getenv("STREAMVIO_FFPROBE_PATH", "ffprobe")
PREFER_HARDWARE_ACCEL = get_bool_env("STREAMVIO_PREFER_HARDWARE_ACCEL", True)

# Job manager
MAX_CONCURRENT_JOBS = get_int_env("STREAMVIO_MAX_CONCURRENT_JOBS", 2, min_val=1, max_val=64)
# In-memory job handles are purged this long after reaching a terminal state
JOB_RETENTION_SECONDS = get_int_env("STREAMVIO_JOB_RETENTION_SECONDS", 3600, min_val=0)
# 0 disables the wall-clock limit on a single encoder subprocess
ENCODER_TIMEOUT_SECONDS = get_int_env("STREAMVIO_ENCODER_TIMEOUT_SECONDS", 0, min_val=0)
# Probes are quick metadata reads; a hung probe is treated as a failure
PROBE_TIMEOUT_SECONDS = get_float_env("STREAMVIO_PROBE_TIMEOUT_SECONDS", 30.0, min_val=1.0)
# Seconds between SIGTERM and SIGKILL when stopping a process group
PROCESS_KILL_GRACE_SECONDS = get_float_env("STREAMVIO_PROCESS_KILL_GRACE_SECONDS", 5.0, min_val=0.1)
PROGRESS_POLL_INTERVAL = get_float_env("STREAMVIO_PROGRESS_POLL_INTERVAL", 2.5, min_val=2.0, max_val=3.0)

# Encoding
# Upper bound applied to every video bitrate handed to a backend (kbps)
MAX_VIDEO_BITRATE_KBPS = get_int_env("STREAMVIO_MAX_VIDEO_BITRATE_KBPS", 20000, min_val=100)
DEFAULT_PROFILE = os.getenv("STREAMVIO_DEFAULT_PROFILE", "standard")
DEFAULT_VIDEO_CODEC = os.getenv("STREAMVIO_DEFAULT_VIDEO_CODEC", "h264")
DEFAULT_AUDIO_CODEC = os.getenv("STREAMVIO_DEFAULT_AUDIO_CODEC", "aac")

# HLS settings
# Must match the segment length used when estimating HLS progress
HLS_SEGMENT_DURATION = get_int_env("STREAMVIO_HLS_SEGMENT_DURATION", 4, min_val=1, max_val=60)
HLS_AUDIO_BITRATE_KBPS = get_int_env("STREAMVIO_HLS_AUDIO_BITRATE_KBPS", 128, min_val=32)

# Default adaptive ladder, lowest rung first (bitrates in kbps)
HLS_LADDER = [
    {"name": "240p", "height": 240, "bitrate": 400},
    {"name": "360p", "height": 360, "bitrate": 800},
    {"name": "480p", "height": 480, "bitrate": 1400},
    {"name": "720p", "height": 720, "bitrate": 2800},
    {"name": "1080p", "height": 1080, "bitrate": 5000},
]

# Thumbnail settings
THUMBNAIL_WIDTH = get_int_env("STREAMVIO_THUMBNAIL_WIDTH", 320, min_val=16)
THUMBNAIL_OFFSET_SECONDS = get_float_env("STREAMVIO_THUMBNAIL_OFFSET_SECONDS", 5.0, min_val=0.0)
STORYBOARD_FRAME_WIDTH = get_int_env("STREAMVIO_STORYBOARD_FRAME_WIDTH", 160, min_val=16)
STORYBOARD_FRAME_COUNT = get_int_env("STREAMVIO_STORYBOARD_FRAME_COUNT", 10, min_val=1, max_val=500)

# Error message truncation limits
ERROR_SUMMARY_MAX_LENGTH = get_int_env("STREAMVIO_ERROR_SUMMARY_MAX_LENGTH", 100, min_val=10)
ERROR_DETAIL_MAX_LENGTH = get_int_env("STREAMVIO_ERROR_DETAIL_MAX_LENGTH", 500, min_val=10)
ERROR_LOG_MAX_LENGTH = get_int_env("STREAMVIO_ERROR_LOG_MAX_LENGTH", 2000, min_val=10)

# Redis Configuration (lifecycle event pub/sub)
# Empty string disables publishing; events are still delivered to in-process listeners
REDIS_URL = os.getenv("STREAMVIO_REDIS_URL", "")
REDIS_POOL_SIZE = get_int_env("STREAMVIO_REDIS_POOL_SIZE", 10, min_val=1)
REDIS_SOCKET_TIMEOUT = get_float_env("STREAMVIO_REDIS_SOCKET_TIMEOUT", 5.0, min_val=0.1)
REDIS_SOCKET_CONNECT_TIMEOUT = get_float_env("STREAMVIO_REDIS_SOCKET_CONNECT_TIMEOUT", 5.0, min_val=0.1)
REDIS_PUBSUB_PREFIX = os.getenv("STREAMVIO_REDIS_PUBSUB_PREFIX", "streamvio")

LOG_LEVEL = os.getenv("STREAMVIO_LOG_LEVEL", "INFO").upper()
