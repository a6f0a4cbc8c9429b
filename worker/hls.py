"""
HLS ladder planning, command building and output verification.

A ladder is encoded by a single ffmpeg invocation using -var_stream_map,
which writes every rung playlist, its segments and master.m3u8 in one pass:

    <basename>_hls/
        master.m3u8
        <basename>_240p.m3u8
        <basename>_240p_000.ts
        ...
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from config import HLS_LADDER, HLS_SEGMENT_DURATION
from engine.errors import OutputVerificationError
from engine.models import HLSLadder, VariantStream

logger = logging.getLogger(__name__)

MASTER_PLAYLIST_NAME = "master.m3u8"


@dataclass(frozen=True)
class Rung:
    name: str
    height: int
    bitrate: int  # kbps


DEFAULT_LADDER: Tuple[Rung, ...] = tuple(Rung(r["name"], r["height"], r["bitrate"]) for r in HLS_LADDER)


def filter_ladder(max_height: Optional[int] = None, ladder: Sequence[Rung] = DEFAULT_LADDER) -> List[Rung]:
    """
    Rungs no taller than ``max_height``, lowest first.

    Never empty: when every rung is too tall the lowest one is kept.
    """
    rungs = sorted(ladder, key=lambda rung: rung.height)
    if not rungs:
        raise ValueError("HLS ladder has no rungs")
    if max_height is None:
        return rungs
    selected = [rung for rung in rungs if rung.height <= max_height]
    if not selected:
        logger.info(f"No rung fits max_height={max_height}, using {rungs[0].name}")
        return [rungs[0]]
    return selected


def hls_output_dir(output_root: Path, basename: str) -> Path:
    return Path(output_root) / f"{basename}_hls"


def plan_ladder(
    input_path: Path,
    output_root: Path,
    max_height: Optional[int] = None,
    ladder: Sequence[Rung] = DEFAULT_LADDER,
    job_id: Optional[int] = None,
) -> HLSLadder:
    """Resolve rungs and on-disk paths for ``input_path``."""
    basename = Path(input_path).stem
    output_dir = hls_output_dir(output_root, basename)
    variants = tuple(
        VariantStream(
            name=rung.name,
            height=rung.height,
            bitrate=rung.bitrate,
            playlist_path=output_dir / f"{basename}_{rung.name}.m3u8",
        )
        for rung in filter_ladder(max_height, ladder)
    )
    return HLSLadder(
        job_id=job_id,
        output_dir=output_dir,
        master_playlist_path=output_dir / MASTER_PLAYLIST_NAME,
        variants=variants,
    )


def _basename(ladder: HLSLadder) -> str:
    return ladder.output_dir.name[: -len("_hls")]


def build_hls_command(
    ffmpeg_path: str,
    input_path: Path,
    ladder: HLSLadder,
    video_encoder: str = "libx264",
    segment_duration: int = HLS_SEGMENT_DURATION,
    has_audio: bool = True,
    audio_bitrate: int = 128,
    input_args: Iterable[str] = (),
) -> List[str]:
    """
    Build the ffmpeg command that encodes every rung of ``ladder`` at once.

    Keyframes are forced on segment boundaries so all rungs split at the
    same timestamps, which keeps client-side switching seamless.
    """
    basename = _basename(ladder)
    cmd = [ffmpeg_path, "-y", "-hide_banner", "-loglevel", "error"]
    cmd.extend(input_args)
    cmd.extend(["-i", str(input_path)])

    for _ in ladder.variants:
        cmd.extend(["-map", "0:v:0"])
        if has_audio:
            cmd.extend(["-map", "0:a:0"])

    for index, variant in enumerate(ladder.variants):
        bitrate = variant.bitrate
        cmd.extend(
            [
                f"-filter:v:{index}",
                f"scale=-2:{variant.height}",
                f"-c:v:{index}",
                video_encoder,
                f"-b:v:{index}",
                f"{bitrate}k",
                f"-maxrate:v:{index}",
                f"{bitrate}k",
                f"-bufsize:v:{index}",
                f"{bitrate * 2}k",
            ]
        )

    if has_audio:
        cmd.extend(["-c:a", "aac", "-b:a", f"{audio_bitrate}k", "-ac", "2"])
        stream_map = " ".join(f"v:{i},a:{i},name:{v.name}" for i, v in enumerate(ladder.variants))
    else:
        stream_map = " ".join(f"v:{i},name:{v.name}" for i, v in enumerate(ladder.variants))

    cmd.extend(
        [
            "-force_key_frames",
            f"expr:gte(t,n_forced*{segment_duration})",
            "-f",
            "hls",
            "-hls_time",
            str(segment_duration),
            "-hls_playlist_type",
            "vod",
            "-hls_flags",
            "independent_segments",
            "-hls_segment_filename",
            str(ladder.output_dir / f"{basename}_%v_%03d.ts"),
            "-master_pl_name",
            MASTER_PLAYLIST_NAME,
            "-var_stream_map",
            stream_map,
            str(ladder.output_dir / f"{basename}_%v.m3u8"),
        ]
    )
    return cmd


def count_rung_segments(ladder: HLSLadder) -> int:
    """
    Segments written so far by the slowest rung.

    All rungs advance together, so the minimum is the number of segments
    that exist for every rung.
    """
    basename = _basename(ladder)
    counts = {variant.name: 0 for variant in ladder.variants}
    for entry in ladder.output_dir.iterdir():
        if not entry.name.endswith(".ts"):
            continue
        for name in counts:
            if entry.name.startswith(f"{basename}_{name}_"):
                counts[name] += 1
                break
    return min(counts.values()) if counts else 0


def validate_hls_playlist(playlist_path: Path, check_segments: bool = True) -> Tuple[bool, Optional[str]]:
    """
    Validate a rung playlist is complete and well-formed.

    Returns:
        Tuple[bool, Optional[str]]: (is_valid, error_message)
    """
    if not playlist_path.exists():
        return False, "Playlist file does not exist"

    try:
        content = playlist_path.read_text()
    except OSError as e:
        return False, f"Error reading playlist: {e}"

    if not content.startswith("#EXTM3U"):
        return False, "Missing #EXTM3U header"

    # End marker is only written once the encoder finished the rung
    if "#EXT-X-ENDLIST" not in content:
        return False, "Missing #EXT-X-ENDLIST (incomplete transcode)"

    if not check_segments:
        return True, None

    segment_count = 0
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.endswith(".ts"):
            segment_path = playlist_path.parent / line
            if not segment_path.exists():
                return False, f"Missing segment file: {line}"
            if segment_path.stat().st_size == 0:
                return False, f"Empty segment file: {line}"
            segment_count += 1

    if segment_count == 0:
        return False, "Playlist contains no segment references"

    return True, None


def verify_ladder(ladder: HLSLadder) -> None:
    """
    Check the master manifest and every rung playlist after the encoder exits.

    Raises:
        OutputVerificationError: If any playlist is missing, truncated or
            not referenced from the master manifest
    """
    master = ladder.master_playlist_path
    if not master.exists():
        raise OutputVerificationError(f"Master playlist missing: {master}")
    try:
        master_content = master.read_text()
    except OSError as e:
        raise OutputVerificationError(f"Cannot read master playlist {master}: {e}") from e
    if not master_content.startswith("#EXTM3U"):
        raise OutputVerificationError(f"Master playlist {master} is missing #EXTM3U header")

    for variant in ladder.variants:
        if variant.playlist_path.name not in master_content:
            raise OutputVerificationError(f"Master playlist does not reference {variant.playlist_path.name}")
        valid, error = validate_hls_playlist(variant.playlist_path)
        if not valid:
            raise OutputVerificationError(f"Rung {variant.name} invalid: {error}")


def is_ladder_complete(master_playlist: Path) -> bool:
    """
    True when ``master_playlist`` lists at least one rung and every listed
    rung playlist is finished.

    ffmpeg writes the master manifest before the rungs are done, so its
    presence alone does not mean the ladder can be served.
    """
    try:
        content = master_playlist.read_text()
    except OSError:
        return False
    if not content.startswith("#EXTM3U"):
        return False

    lines = [line.strip() for line in content.splitlines()]
    rungs = [line for line in lines if line.endswith(".m3u8") and not line.startswith("#")]
    if not rungs:
        return False
    for name in rungs:
        valid, error = validate_hls_playlist(master_playlist.parent / name)
        if not valid:
            logger.info(f"HLS output {master_playlist.parent.name} incomplete: {name}: {error}")
            return False
    return True
