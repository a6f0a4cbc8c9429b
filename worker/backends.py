"""
Execution backend selection.

Two external tool families can do the work:

- NATIVE: the streamvio-core binary (``info`` / ``transcode`` / ``thumbnail``)
- FFMPEG: the general-purpose ffmpeg + ffprobe pair (all operations)

The selector prefers the native binary when it is present on disk and falls
back to ffmpeg otherwise. A native command that turns out to be unrunnable
at spawn time gets exactly one retry against ffmpeg. Every command carries
its backend's own result parser, so callers always receive a MediaInfo
(probe) or a checked CommandResult (everything else).
"""

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from config import (
    ENCODER_TIMEOUT_SECONDS,
    ERROR_LOG_MAX_LENGTH,
    FFMPEG_PATH,
    FFPROBE_PATH,
    HLS_AUDIO_BITRATE_KBPS,
    HLS_SEGMENT_DURATION,
    MAX_VIDEO_BITRATE_KBPS,
    NATIVE_TRANSCODER_PATH,
    PREFER_HARDWARE_ACCEL,
    PROBE_TIMEOUT_SECONDS,
)
from engine.enums import BackendKind, Operation
from engine.errors import BackendExecutionError, BackendUnavailableError, ConfigurationError
from engine.metrics import BACKEND_FALLBACKS_TOTAL
from engine.models import HLSLadder, MediaInfo, TranscodeProfile
from worker.hls import build_hls_command
from worker.parsers import parse_ffprobe_json, parse_native_info
from worker.process import CommandResult, SpawnCallback, run_command

logger = logging.getLogger(__name__)

VIDEO_ENCODERS = {
    "h264": "libx264",
    "hevc": "libx265",
    "vp9": "libvpx-vp9",
    "av1": "libaom-av1",
}

AUDIO_ENCODERS = {
    "aac": "aac",
    "mp3": "libmp3lame",
    "opus": "libopus",
}

# Containers that need fragmenting to be probeable while still being written
_FRAGMENTED_CONTAINERS = frozenset(["mp4", "mov"])


@dataclass(frozen=True)
class BackendCommand:
    """A runnable command plus the parser for its output."""

    backend: BackendKind
    operation: Operation
    argv: Tuple[str, ...]
    parser: Callable[[CommandResult], Any] = field(compare=False)
    timeout: Optional[float] = None

    def parse(self, result: CommandResult) -> Any:
        if not result.ok:
            raise BackendExecutionError(
                f"{self.backend.value} {self.operation.value} exited with code {result.returncode}: "
                f"{result.stderr_tail()}",
                returncode=result.returncode,
                stderr=result.stderr[-ERROR_LOG_MAX_LENGTH:],
            )
        return self.parser(result)


def _checked(result: CommandResult) -> CommandResult:
    return result


def cap_video_bitrate(bitrate: int, ceiling: int = MAX_VIDEO_BITRATE_KBPS) -> int:
    return max(1, min(bitrate, ceiling))


class NativeBackend:
    """streamvio-core command builder."""

    kind = BackendKind.NATIVE
    operations: FrozenSet[Operation] = frozenset([Operation.PROBE, Operation.TRANSCODE, Operation.THUMBNAIL])

    def __init__(self, executable: str = NATIVE_TRANSCODER_PATH, max_video_bitrate: int = MAX_VIDEO_BITRATE_KBPS):
        self.executable = executable
        self.max_video_bitrate = max_video_bitrate

    def is_available(self, operation: Operation) -> bool:
        path = Path(self.executable)
        return path.is_file() and os.access(path, os.X_OK)

    def supports(self, operation: Operation, params: Dict[str, Any]) -> bool:
        if operation not in self.operations:
            return False
        profile = params.get("profile")
        # No audio-only mode in the native encoder
        if operation == Operation.TRANSCODE and profile is not None and not profile.has_video:
            return False
        return True

    def probe(self, input_path: Path) -> BackendCommand:
        path = str(input_path)
        return BackendCommand(
            backend=self.kind,
            operation=Operation.PROBE,
            argv=(self.executable, "info", path),
            parser=lambda result: parse_native_info(result.stdout, path),
            timeout=PROBE_TIMEOUT_SECONDS,
        )

    def transcode(
        self,
        input_path: Path,
        output_path: Path,
        profile: TranscodeProfile,
        use_hardware_accel: bool = PREFER_HARDWARE_ACCEL,
    ) -> BackendCommand:
        argv = [
            self.executable,
            "transcode",
            str(input_path),
            str(output_path),
            f"--format={profile.format}",
            f"--vcodec={profile.video_codec}",
            f"--acodec={profile.audio_codec}",
            f"--vbitrate={cap_video_bitrate(profile.video_bitrate, self.max_video_bitrate)}",
            f"--abitrate={profile.audio_bitrate}",
            f"--width={profile.width}",
            f"--height={profile.height}",
        ]
        if not use_hardware_accel:
            argv.append("--no-hwaccel")
        return BackendCommand(
            backend=self.kind,
            operation=Operation.TRANSCODE,
            argv=tuple(argv),
            parser=_checked,
            timeout=ENCODER_TIMEOUT_SECONDS or None,
        )

    def thumbnail(self, input_path: Path, output_path: Path, offset: float, width: int) -> BackendCommand:
        # The native binary picks its own thumbnail size
        return BackendCommand(
            backend=self.kind,
            operation=Operation.THUMBNAIL,
            argv=(self.executable, "thumbnail", str(input_path), str(output_path), f"{offset:.3f}"),
            parser=_checked,
            timeout=ENCODER_TIMEOUT_SECONDS or None,
        )


class FFmpegBackend:
    """ffmpeg / ffprobe command builder."""

    kind = BackendKind.FFMPEG
    operations: FrozenSet[Operation] = frozenset(Operation)

    def __init__(
        self,
        ffmpeg_path: str = FFMPEG_PATH,
        ffprobe_path: str = FFPROBE_PATH,
        max_video_bitrate: int = MAX_VIDEO_BITRATE_KBPS,
        segment_duration: int = HLS_SEGMENT_DURATION,
        hls_audio_bitrate: int = HLS_AUDIO_BITRATE_KBPS,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.max_video_bitrate = max_video_bitrate
        self.segment_duration = segment_duration
        self.hls_audio_bitrate = hls_audio_bitrate

    def is_available(self, operation: Operation) -> bool:
        executable = self.ffprobe_path if operation == Operation.PROBE else self.ffmpeg_path
        return shutil.which(executable) is not None

    def supports(self, operation: Operation, params: Dict[str, Any]) -> bool:
        return operation in self.operations

    def _base(self, use_hardware_accel: bool = False) -> List[str]:
        cmd = [self.ffmpeg_path, "-y", "-hide_banner", "-loglevel", "error"]
        if use_hardware_accel:
            # Decode-side only; ffmpeg silently uses software when no device fits
            cmd.extend(["-hwaccel", "auto"])
        return cmd

    def probe(self, input_path: Path) -> BackendCommand:
        path = str(input_path)
        return BackendCommand(
            backend=self.kind,
            operation=Operation.PROBE,
            argv=(self.ffprobe_path, "-v", "quiet", "-print_format", "json", "-show_format", "-show_streams", path),
            parser=lambda result: parse_ffprobe_json(result.stdout, path),
            timeout=PROBE_TIMEOUT_SECONDS,
        )

    def transcode(
        self,
        input_path: Path,
        output_path: Path,
        profile: TranscodeProfile,
        use_hardware_accel: bool = PREFER_HARDWARE_ACCEL,
    ) -> BackendCommand:
        cmd = self._base(use_hardware_accel)
        cmd.extend(["-i", str(input_path)])

        if profile.has_video:
            bitrate = cap_video_bitrate(profile.video_bitrate, self.max_video_bitrate)
            cmd.extend(
                [
                    "-c:v",
                    VIDEO_ENCODERS.get(profile.video_codec, "libx264"),
                    "-b:v",
                    f"{bitrate}k",
                    "-maxrate",
                    f"{bitrate}k",
                    "-bufsize",
                    f"{bitrate * 2}k",
                    "-vf",
                    f"scale=-2:{profile.height}",
                ]
            )
        else:
            cmd.append("-vn")

        cmd.extend(["-c:a", AUDIO_ENCODERS.get(profile.audio_codec, "aac"), "-b:a", f"{profile.audio_bitrate}k"])

        if profile.format in _FRAGMENTED_CONTAINERS:
            cmd.extend(["-movflags", "+frag_keyframe+empty_moov"])

        cmd.append(str(output_path))
        return BackendCommand(
            backend=self.kind,
            operation=Operation.TRANSCODE,
            argv=tuple(cmd),
            parser=_checked,
            timeout=ENCODER_TIMEOUT_SECONDS or None,
        )

    def thumbnail(self, input_path: Path, output_path: Path, offset: float, width: int) -> BackendCommand:
        cmd = self._base()
        cmd.extend(
            [
                "-ss",
                f"{offset:.3f}",
                "-i",
                str(input_path),
                "-vframes",
                "1",
                "-vf",
                f"scale={width}:-1",
                "-q:v",
                "2",
                str(output_path),
            ]
        )
        return BackendCommand(
            backend=self.kind,
            operation=Operation.THUMBNAIL,
            argv=tuple(cmd),
            parser=_checked,
            timeout=ENCODER_TIMEOUT_SECONDS or None,
        )

    def hls(
        self,
        input_path: Path,
        ladder: HLSLadder,
        has_audio: bool = True,
        video_codec: str = "h264",
        use_hardware_accel: bool = PREFER_HARDWARE_ACCEL,
    ) -> BackendCommand:
        cmd = build_hls_command(
            self.ffmpeg_path,
            input_path,
            ladder,
            video_encoder=VIDEO_ENCODERS.get(video_codec, "libx264"),
            segment_duration=self.segment_duration,
            has_audio=has_audio,
            audio_bitrate=self.hls_audio_bitrate,
            input_args=["-hwaccel", "auto"] if use_hardware_accel else (),
        )
        return BackendCommand(
            backend=self.kind,
            operation=Operation.HLS,
            argv=tuple(cmd),
            parser=_checked,
            timeout=ENCODER_TIMEOUT_SECONDS or None,
        )


class BackendSelector:
    """
    Picks a backend per operation and runs its command.

    Args:
        native: Preferred backend
        ffmpeg: Fallback backend
    """

    def __init__(self, native: Optional[NativeBackend] = None, ffmpeg: Optional[FFmpegBackend] = None):
        self.native = native or NativeBackend()
        self.ffmpeg = ffmpeg or FFmpegBackend()

    def _backend(self, kind: BackendKind):
        return self.native if kind == BackendKind.NATIVE else self.ffmpeg

    def candidates(self, operation: Operation, **params) -> List[BackendKind]:
        """Available backends able to run ``operation``, most preferred first."""
        kinds = []
        for backend in (self.native, self.ffmpeg):
            if backend.supports(operation, params) and backend.is_available(operation):
                kinds.append(backend.kind)
        return kinds

    def require(self, operation: Operation, **params) -> BackendKind:
        """
        Backend that would run ``operation``.

        Raises:
            ConfigurationError: If no backend is usable
        """
        candidates = self.candidates(operation, **params)
        if not candidates:
            raise ConfigurationError(
                f"No backend available for {operation.value}: native transcoder "
                f"'{self.native.executable}' and ffmpeg '{self.ffmpeg.ffmpeg_path}' are both unusable"
            )
        return candidates[0]

    def build(self, kind: BackendKind, operation: Operation, **params) -> BackendCommand:
        backend = self._backend(kind)
        if not backend.supports(operation, params):
            raise ConfigurationError(f"{kind.value} backend cannot run {operation.value}")
        return getattr(backend, operation.value)(**params)

    def select(self, operation: Operation, **params) -> BackendCommand:
        return self.build(self.require(operation, **params), operation, **params)

    async def _run(self, command: BackendCommand, on_spawn: Optional[SpawnCallback]) -> Any:
        result = await run_command(
            command.argv,
            timeout=command.timeout,
            on_spawn=on_spawn,
            context=f"{command.backend.value} {command.operation.value}",
        )
        return command.parse(result)

    async def execute(self, operation: Operation, on_spawn: Optional[SpawnCallback] = None, **params) -> Any:
        """
        Run ``operation`` on the preferred backend.

        Returns:
            MediaInfo for probes, the successful CommandResult otherwise

        Raises:
            ConfigurationError: No backend is usable
            BackendUnavailableError: Both backends failed to launch
            BackendExecutionError: Non-zero exit, timeout or unparseable output
        """
        command = self.select(operation, **params)
        try:
            return await self._run(command, on_spawn)
        except BackendUnavailableError as e:
            if command.backend != BackendKind.NATIVE or not self.ffmpeg.supports(operation, params):
                raise
            logger.warning(f"Native transcoder unavailable for {operation.value}, falling back to ffmpeg: {e}")
            BACKEND_FALLBACKS_TOTAL.labels(operation=operation.value).inc()

        fallback = self.build(BackendKind.FFMPEG, operation, **params)
        return await self._run(fallback, on_spawn)

    async def probe(self, input_path: Path, on_spawn: Optional[SpawnCallback] = None) -> MediaInfo:
        return await self.execute(Operation.PROBE, on_spawn=on_spawn, input_path=input_path)
