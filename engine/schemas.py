"""Validated request payloads accepted by the job manager and the profile selector."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import DEFAULT_PROFILE
from engine.enums import ConnectionType, JobKind

SUPPORTED_VIDEO_CODECS = frozenset(["h264", "hevc", "vp9", "av1"])
SUPPORTED_AUDIO_CODECS = frozenset(["aac", "mp3", "opus"])
SUPPORTED_FORMATS = frozenset(["mp4", "webm", "mkv", "mov"])


class TranscodeOptions(BaseModel):
    """Options for ``JobManager.start_job``.

    Profile field overrides (``width`` through ``format``) replace the
    catalog values for this job only.
    """

    model_config = ConfigDict(extra="forbid")

    kind: JobKind = JobKind.SINGLE_FILE
    profile: str = Field(default=DEFAULT_PROFILE, min_length=1, max_length=50)
    force_regenerate: bool = False

    width: Optional[int] = Field(default=None, ge=16, le=7680)
    height: Optional[int] = Field(default=None, ge=16, le=4320)
    video_bitrate: Optional[int] = Field(default=None, ge=1)
    audio_bitrate: Optional[int] = Field(default=None, ge=1)
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    format: Optional[str] = None
    use_hardware_accel: Optional[bool] = None

    # HLS
    max_height: Optional[int] = Field(default=None, ge=1)
    # Thumbnail
    time_offset: Optional[float] = Field(default=None, ge=0)
    # Storyboard
    frame_count: Optional[int] = Field(default=None, ge=1, le=500)

    @field_validator("profile", mode="before")
    @classmethod
    def normalize_profile(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("video_codec")
    @classmethod
    def validate_video_codec(cls, v):
        if v is None:
            return v
        v = v.lower()
        if v not in SUPPORTED_VIDEO_CODECS:
            raise ValueError(f"Unsupported video codec: {v}")
        return v

    @field_validator("audio_codec")
    @classmethod
    def validate_audio_codec(cls, v):
        if v is None:
            return v
        v = v.lower()
        if v not in SUPPORTED_AUDIO_CODECS:
            raise ValueError(f"Unsupported audio codec: {v}")
        return v

    @field_validator("format")
    @classmethod
    def validate_format(cls, v):
        if v is None:
            return v
        v = v.lower().lstrip(".")
        if v not in SUPPORTED_FORMATS:
            raise ValueError(f"Unsupported container format: {v}")
        return v


class DeviceHints(BaseModel):
    """Client capabilities used to pick a profile."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    is_mobile: bool = False
    is_tablet: bool = False
    connection_type: ConnectionType = ConnectionType.UNKNOWN
    # None or 0 means the bandwidth is unknown
    bandwidth_kbps: Optional[float] = Field(default=None, ge=0)

    @field_validator("connection_type", mode="before")
    @classmethod
    def normalize_connection_type(cls, v):
        if v is None:
            return ConnectionType.UNKNOWN
        if isinstance(v, str):
            v = v.strip().lower()
            if v not in {c.value for c in ConnectionType}:
                return ConnectionType.UNKNOWN
        return v
