"""
Per-backend output parsers.

Both backends describe media differently: the native transcoder prints
labelled text lines, ffprobe prints JSON. Each parser normalizes its input
into a MediaInfo so callers never care which backend ran.
"""

import json
import logging
import math
import re
import unicodedata
from typing import Any, Dict, Optional

from engine.errors import BackendExecutionError
from engine.models import MediaInfo

logger = logging.getLogger(__name__)

_CODEC_WITH_BITRATE = re.compile(r"^(?P<codec>[^()]*?)\s*(?:\((?P<kbps>[\d.]+)\s*kbps\))?$")
_RESOLUTION = re.compile(r"^(?P<width>\d+)\s*x\s*(?P<height>\d+)")
_LEADING_NUMBER = re.compile(r"^-?[\d.]+")

# Native `info` labels (lower-cased, accents stripped) -> field
_NATIVE_LABELS = {
    "formato": "format",
    "duracion": "duration",
    "resolucion": "resolution",
    "codec de video": "video",
    "codec de audio": "audio",
    "canales de audio": "channels",
    "frecuencia de muestreo": "sample_rate",
    "metadatos": "metadata",
}


def _strip_accents(text: str) -> str:
    normalized = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in normalized if not unicodedata.combining(ch))


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _leading_float(text: str) -> Optional[float]:
    match = _LEADING_NUMBER.match(text.strip())
    if not match:
        return None
    try:
        result = float(match.group(0))
    except ValueError:
        return None
    if math.isnan(result) or math.isinf(result) or result < 0:
        return None
    return result


def _codec_and_bitrate(value: str):
    match = _CODEC_WITH_BITRATE.match(value.strip())
    if not match:
        return None, 0
    codec = match.group("codec").strip() or None
    return codec, _to_int(match.group("kbps"))


def parse_native_info(output: str, path: str) -> MediaInfo:
    """
    Parse the labelled text printed by ``streamvio-core info``.

    Example:
        Formato: mov,mp4,m4a,3gp,3g2,mj2
        Duración: 100.5 segundos
        Resolución: 1920x1080
        Codec de video: h264 (4800 kbps)
        Codec de audio: aac (192 kbps)
        Canales de audio: 2
        Frecuencia de muestreo: 48000 Hz
        Metadatos:
          title: Movie

    Raises:
        BackendExecutionError: If the required format/duration lines are absent
    """
    fields: Dict[str, Any] = {}
    metadata: Dict[str, str] = {}
    in_metadata = False

    for raw_line in output.splitlines():
        if not raw_line.strip():
            continue
        if in_metadata and raw_line[:1] in (" ", "\t"):
            key, sep, value = raw_line.strip().partition(":")
            if sep:
                metadata[key.strip()] = value.strip()
            continue
        in_metadata = False

        label, sep, value = raw_line.partition(":")
        if not sep:
            continue
        field = _NATIVE_LABELS.get(_strip_accents(label.strip().lower()))
        if field == "metadata":
            in_metadata = True
        elif field is not None:
            fields[field] = value.strip()

    if "format" not in fields or "duration" not in fields:
        raise BackendExecutionError(
            f"Unparseable native probe output for {path}",
            stderr=output[-500:],
            user_message="Could not read media file.",
        )

    duration = _leading_float(fields["duration"])
    width = height = 0
    resolution = _RESOLUTION.match(fields.get("resolution", ""))
    if resolution:
        width, height = int(resolution.group("width")), int(resolution.group("height"))

    video_codec, video_bitrate = _codec_and_bitrate(fields.get("video", ""))
    audio_codec, audio_bitrate = _codec_and_bitrate(fields.get("audio", ""))
    if not width or not height:
        video_codec = None

    return MediaInfo(
        path=path,
        format=fields["format"].split(",")[0].strip() or None,
        duration_ms=int(math.floor(duration * 1000)) if duration is not None else 0,
        width=width,
        height=height,
        video_codec=video_codec,
        video_bitrate=video_bitrate,
        audio_codec=audio_codec,
        audio_bitrate=audio_bitrate,
        audio_channels=_to_int(_leading_float(fields.get("channels", "")) or 0),
        audio_sample_rate=_to_int(_leading_float(fields.get("sample_rate", "")) or 0),
        metadata=metadata,
    )


def parse_ffprobe_json(output: str, path: str) -> MediaInfo:
    """
    Parse ``ffprobe -print_format json -show_format -show_streams`` output.

    Duration comes from the container and falls back to the longest stream,
    which is what a fragmented, still-growing output file reports.

    Raises:
        BackendExecutionError: If the output is not the expected JSON document
    """
    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        raise BackendExecutionError(
            f"Unparseable ffprobe output for {path}: {e}",
            stderr=output[-500:],
            user_message="Could not read media file.",
        ) from e
    if not isinstance(data, dict):
        raise BackendExecutionError(f"Unexpected ffprobe output for {path}", user_message="Could not read media file.")

    fmt = data.get("format") or {}
    streams = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)

    duration = _leading_float(str(fmt.get("duration", "")))
    if duration is None:
        stream_durations = [_leading_float(str(s.get("duration", ""))) for s in streams]
        stream_durations = [d for d in stream_durations if d is not None]
        duration = max(stream_durations) if stream_durations else None

    metadata = {str(k): str(v) for k, v in (fmt.get("tags") or {}).items()}
    format_name = fmt.get("format_name") or ""

    return MediaInfo(
        path=path,
        format=format_name.split(",")[0] or None,
        duration_ms=int(math.floor(duration * 1000)) if duration is not None else 0,
        width=_to_int(video.get("width")) if video else 0,
        height=_to_int(video.get("height")) if video else 0,
        video_codec=video.get("codec_name") if video else None,
        video_bitrate=_to_int(video.get("bit_rate")) // 1000 if video else 0,
        audio_codec=audio.get("codec_name") if audio else None,
        audio_bitrate=_to_int(audio.get("bit_rate")) // 1000 if audio else 0,
        audio_channels=_to_int(audio.get("channels")) if audio else 0,
        audio_sample_rate=_to_int(audio.get("sample_rate")) if audio else 0,
        metadata=metadata,
    )
