"""
Polling-based progress estimation.

No backend pushes progress, so a periodic task samples the output on disk:

- single file: encoded duration of the partial output vs. the source
- HLS: segments written by the slowest rung times the segment length
- storyboard: frames extracted vs. frames requested

Estimates are capped at 99; only the job manager reports 100, after the
artifact has been verified.
"""

import asyncio
import logging
import math
from typing import Awaitable, Callable, Optional

from config import PROGRESS_POLL_INTERVAL
from engine.errors import TranscodeError

logger = logging.getLogger(__name__)

MAX_ESTIMATE = 99

Sampler = Callable[[], Awaitable[Optional[int]]]
Reporter = Callable[[int], Awaitable[None]]


def _ratio_percent(done: float, total: float) -> int:
    if total <= 0 or done <= 0:
        return 0
    return min(MAX_ESTIMATE, int(math.floor(done / total * 100)))


def single_file_percent(current_seconds: float, total_seconds: float) -> int:
    return _ratio_percent(current_seconds, total_seconds)


def hls_percent(segment_count: int, segment_duration: float, total_seconds: float) -> int:
    return _ratio_percent(segment_count * segment_duration, total_seconds)


def frames_percent(frames_done: int, frame_count: int) -> int:
    return _ratio_percent(frames_done, frame_count)


class ProgressEstimator:
    """
    Runs a sampler every ``interval`` seconds while ``is_active()`` holds.

    Args:
        interval: Seconds between samples
    """

    def __init__(self, interval: float = PROGRESS_POLL_INTERVAL):
        self.interval = interval

    async def poll(self, is_active: Callable[[], bool], sample: Sampler, report: Reporter) -> None:
        """
        Sample and report until the job stops being active.

        A failing sample skips that tick. The loop is meant to be cancelled
        by the owner as soon as the job leaves processing.
        """
        while is_active():
            await asyncio.sleep(self.interval)
            if not is_active():
                break
            try:
                percent = await sample()
            except (OSError, ValueError, TranscodeError) as e:
                logger.debug(f"Progress sample failed, skipping tick: {e}")
                continue
            if percent is None or not is_active():
                continue
            await report(percent)

    def start(self, is_active: Callable[[], bool], sample: Sampler, report: Reporter) -> "asyncio.Task[None]":
        return asyncio.create_task(self.poll(is_active, sample, report))


async def stop_polling(task: Optional["asyncio.Task[None]"]) -> None:
    """Cancel a poll task and wait for it to unwind."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
