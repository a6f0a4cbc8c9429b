"""
Thumbnail and storyboard extraction.

Features:
- Single poster frame: ``<basename>_thumb.jpg`` (overwritten on regeneration)
- Storyboard of evenly spaced frames: ``<basename>_storyboard/<basename>_thumb_<n>.jpg``
- Atomic storyboard generation (``.partial`` dir -> rename), so a finished
  storyboard directory is never half-populated
"""

import logging
import shutil
from pathlib import Path
from typing import List, Optional

from config import STORYBOARD_FRAME_COUNT, STORYBOARD_FRAME_WIDTH, THUMBNAIL_OFFSET_SECONDS, THUMBNAIL_WIDTH
from engine.enums import Operation
from engine.errors import InputNotFoundError, MissingDurationError, OutputVerificationError
from engine.models import MediaInfo, Storyboard, StoryboardFrame
from worker.backends import BackendSelector
from worker.prober import MediaProber
from worker.process import SpawnCallback

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".partial"
STALE_SUFFIX = ".old"


def thumbnail_path(output_root: Path, input_path: Path) -> Path:
    return Path(output_root) / f"{Path(input_path).stem}_thumb.jpg"


def storyboard_dir(output_root: Path, input_path: Path) -> Path:
    return Path(output_root) / f"{Path(input_path).stem}_storyboard"


def storyboard_partial_dir(directory: Path) -> Path:
    return directory.with_name(directory.name + PARTIAL_SUFFIX)


def storyboard_frame_name(basename: str, index: int) -> str:
    return f"{basename}_thumb_{index}.jpg"


def storyboard_offsets(duration_seconds: Optional[float], count: int) -> List[float]:
    """
    ``count`` offsets strictly inside (0, duration): duration/(count+1) * i.

    Raises:
        MissingDurationError: If the duration is unknown or zero
        ValueError: If count is not positive
    """
    if count < 1:
        raise ValueError(f"Storyboard frame count must be positive, got {count}")
    if not duration_seconds or duration_seconds <= 0:
        raise MissingDurationError("Storyboard requires a known, non-zero duration")
    step = duration_seconds / (count + 1)
    return [step * i for i in range(1, count + 1)]


def _verify_image(path: Path) -> None:
    if not path.exists() or path.stat().st_size == 0:
        raise OutputVerificationError(f"Expected image not written: {path}")


class ThumbnailGenerator:
    """
    Args:
        selector: Backend selector used for frame extraction
        prober: Used to learn the source duration for storyboards
        output_root: Directory holding thumbnails and storyboard folders
    """

    def __init__(self, selector: BackendSelector, prober: MediaProber, output_root: Path):
        self.selector = selector
        self.prober = prober
        self.output_root = Path(output_root)

    async def generate_thumbnail(
        self,
        path: Path,
        time_offset: float = THUMBNAIL_OFFSET_SECONDS,
        duration_seconds: Optional[float] = None,
        on_spawn: Optional[SpawnCallback] = None,
    ) -> Path:
        """
        Extract one JPEG frame at ``time_offset`` seconds.

        When the source is known to be shorter than the offset, the middle
        frame is used instead.
        """
        path = Path(path)
        if not path.is_file():
            raise InputNotFoundError(f"Input not found: {path}")

        if duration_seconds and time_offset >= duration_seconds:
            logger.info(f"Thumbnail offset {time_offset}s beyond {duration_seconds}s for {path.name}, using midpoint")
            time_offset = duration_seconds / 2

        output = thumbnail_path(self.output_root, path)
        output.parent.mkdir(parents=True, exist_ok=True)
        # A stale file would pass verification even if extraction fails
        output.unlink(missing_ok=True)

        await self.selector.execute(
            Operation.THUMBNAIL,
            on_spawn=on_spawn,
            input_path=path,
            output_path=output,
            offset=time_offset,
            width=THUMBNAIL_WIDTH,
        )
        _verify_image(output)
        logger.info(f"Thumbnail generated: {output.name}")
        return output

    async def generate_storyboard(
        self,
        path: Path,
        count: int = STORYBOARD_FRAME_COUNT,
        media: Optional[MediaInfo] = None,
        on_spawn: Optional[SpawnCallback] = None,
    ) -> Storyboard:
        """
        Extract ``count`` evenly spaced frames.

        Raises:
            MissingDurationError: If the source duration is zero or unknown
        """
        path = Path(path)
        if media is None:
            media = await self.prober.probe(path, on_spawn=on_spawn)
        offsets = storyboard_offsets(media.duration_seconds, count)

        directory = storyboard_dir(self.output_root, path)
        partial = storyboard_partial_dir(directory)
        if partial.exists():
            shutil.rmtree(partial)
        partial.mkdir(parents=True)

        basename = path.stem
        for index, offset in enumerate(offsets, start=1):
            frame = partial / storyboard_frame_name(basename, index)
            await self.selector.execute(
                Operation.THUMBNAIL,
                on_spawn=on_spawn,
                input_path=path,
                output_path=frame,
                offset=offset,
                width=STORYBOARD_FRAME_WIDTH,
            )
            _verify_image(frame)

        # The previous storyboard stays readable until the new one is in place
        stale = directory.with_name(directory.name + STALE_SUFFIX)
        if stale.exists():
            shutil.rmtree(stale)
        if directory.exists():
            directory.rename(stale)
        partial.rename(directory)
        if stale.exists():
            shutil.rmtree(stale)

        frames = tuple(
            StoryboardFrame(index=i, offset=offset, path=directory / storyboard_frame_name(basename, i))
            for i, offset in enumerate(offsets, start=1)
        )
        logger.info(f"Storyboard generated: {len(frames)} frames in {directory.name}")
        return Storyboard(directory=directory, frames=frames)
