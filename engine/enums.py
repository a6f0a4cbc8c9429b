"""
Centralized enums for status values used throughout the engine.
Using str-based enums for database compatibility.
"""

from enum import Enum


class JobStatus(str, Enum):
    """Lifecycle status of a transcoding job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset([JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED])


class JobKind(str, Enum):
    """What a job produces."""

    SINGLE_FILE = "single_file"
    HLS = "hls"
    THUMBNAIL = "thumbnail"
    STORYBOARD = "storyboard"


class Operation(str, Enum):
    """Backend operations the selector knows how to build."""

    PROBE = "probe"
    TRANSCODE = "transcode"
    THUMBNAIL = "thumbnail"
    HLS = "hls"


class BackendKind(str, Enum):
    """External tool families."""

    NATIVE = "native"  # streamvio-core binary
    FFMPEG = "ffmpeg"  # ffmpeg / ffprobe pair


class ConnectionType(str, Enum):
    """Client network hints accepted by the profile selector."""

    SLOW_2G = "slow-2g"
    CELLULAR_2G = "2g"
    CELLULAR_3G = "3g"
    CELLULAR_4G = "4g"
    WIFI = "wifi"
    ETHERNET = "ethernet"
    UNKNOWN = "unknown"
