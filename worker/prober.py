"""Media probing through whichever backend the selector picks."""

import logging
from pathlib import Path
from typing import Optional

from engine.errors import InputNotFoundError
from engine.models import MediaInfo
from worker.backends import BackendSelector
from worker.process import SpawnCallback

logger = logging.getLogger(__name__)


class MediaProber:
    def __init__(self, selector: BackendSelector):
        self.selector = selector

    async def probe(self, path: Path, on_spawn: Optional[SpawnCallback] = None) -> MediaInfo:
        """
        Extract duration, resolution and codec metadata from ``path``.

        Raises:
            InputNotFoundError: If the file does not exist
            ConfigurationError: If no backend can probe
            BackendExecutionError: If the backend fails or prints garbage
        """
        path = Path(path)
        if not path.is_file():
            raise InputNotFoundError(f"Input not found: {path}")
        info = await self.selector.probe(path, on_spawn=on_spawn)
        logger.debug(
            f"Probed {path.name}: {info.format} {info.width}x{info.height} "
            f"{info.duration_ms}ms video={info.video_codec} audio={info.audio_codec}"
        )
        return info

    async def encoded_duration(self, path: Path) -> Optional[float]:
        """Seconds already encoded in a file that may still be growing.

        Returns None while the file does not exist yet.
        """
        path = Path(path)
        if not path.exists():
            return None
        info = await self.selector.probe(path)
        return info.duration_seconds
