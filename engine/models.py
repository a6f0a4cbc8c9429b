"""
Plain data types shared by the engine and the worker modules.

Catalog entries and probe results are immutable; TranscodeJob is the
mutable arena entry owned by the job manager.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from engine.enums import JobKind, JobStatus


@dataclass(frozen=True)
class TranscodeProfile:
    """Named encoding preset. Bitrates are in kbps."""

    name: str
    width: int
    height: int
    video_bitrate: int
    audio_bitrate: int
    video_codec: Optional[str] = "h264"
    audio_codec: Optional[str] = "aac"
    format: str = "mp4"

    @property
    def has_video(self) -> bool:
        return self.video_codec is not None and self.video_bitrate > 0

    @property
    def resolution(self) -> Optional[str]:
        if not self.has_video:
            return None
        return f"{self.width}x{self.height}"

    def with_overrides(self, **overrides: Any) -> "TranscodeProfile":
        """Copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if not changes:
            return self
        return replace(self, **changes)


@dataclass(frozen=True)
class MediaInfo:
    """Normalized probe result, identical whichever backend produced it."""

    path: str
    format: Optional[str] = None
    duration_ms: int = 0
    width: int = 0
    height: int = 0
    video_codec: Optional[str] = None
    video_bitrate: int = 0
    audio_codec: Optional[str] = None
    audio_bitrate: int = 0
    audio_channels: int = 0
    audio_sample_rate: int = 0
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        return self.duration_ms / 1000.0

    @property
    def has_video(self) -> bool:
        return self.video_codec is not None

    @property
    def has_audio(self) -> bool:
        return self.audio_codec is not None


@dataclass(frozen=True)
class VariantStream:
    name: str
    height: int
    bitrate: int  # kbps
    playlist_path: Path


@dataclass(frozen=True)
class HLSLadder:
    """Rungs of an adaptive set, lowest first, plus the master manifest."""

    job_id: Optional[int]
    output_dir: Path
    master_playlist_path: Path
    variants: Tuple[VariantStream, ...]

    @property
    def heights(self) -> Tuple[int, ...]:
        return tuple(variant.height for variant in self.variants)


@dataclass(frozen=True)
class StoryboardFrame:
    index: int
    offset: float  # seconds into the source
    path: Path


@dataclass(frozen=True)
class Storyboard:
    directory: Path
    frames: Tuple[StoryboardFrame, ...]


@dataclass(frozen=True)
class JobHandle:
    """Read-only snapshot of a job handed to callers.

    ``job_id`` is None for cache hits, which never get a row.
    """

    job_id: Optional[int]
    media_id: int
    kind: JobKind
    status: JobStatus
    output_path: str
    progress_percent: int = 0
    profile_name: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cached: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "JobHandle":
        from engine.job_state import JobRow

        job = JobRow.from_mapping(row)
        progress = 100 if job.status == JobStatus.COMPLETED else min(job.progress_percent, 99)
        return cls(
            job_id=row["id"],
            media_id=row["media_id"],
            kind=JobKind(row["kind"]),
            status=job.status,
            output_path=row["output_path"],
            progress_percent=progress,
            profile_name=row.get("profile_name"),
            error_message=job.error_message,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


@dataclass
class TranscodeJob:
    """Live arena entry. Mutated only by the job manager."""

    id: int
    media_id: int
    kind: JobKind
    input_path: Path
    output_path: Path
    profile: TranscodeProfile
    status: JobStatus = JobStatus.PENDING
    progress_percent: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    # Monotonic deadline after which the store may drop this entry
    retained_until: Optional[float] = None

    def to_handle(self) -> JobHandle:
        return JobHandle(
            job_id=self.id,
            media_id=self.media_id,
            kind=self.kind,
            status=self.status,
            output_path=str(self.output_path),
            progress_percent=self.progress_percent,
            profile_name=self.profile.name,
            error_message=self.error_message,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )
