"""
Job Manager - creates, runs and cancels transcoding jobs.

Lifecycle (see engine.job_state):
    start_job() -> row inserted (pending) -> slot free? launch : queue (FIFO)
    launch -> processing -> backend subprocess + progress polling
           -> artifact verified -> completed | failed | cancelled

The manager is the only writer of job rows and output artifacts. All state
for live jobs lives in the JobStore arena owned by this instance; nothing is
module-global.

Cancellation is cooperative: cancel_job() flags the job and signals the
subprocess group. Whatever exit the runner observes afterwards, the job is
recorded as cancelled, because the terminal status is decided in a single
synchronous step after the runner returns.
"""

import asyncio
import logging
import shutil
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Set, Tuple, Union

from config import (
    MAX_CONCURRENT_JOBS,
    OUTPUT_DIR,
    PREFER_HARDWARE_ACCEL,
    PROGRESS_POLL_INTERVAL,
    STORYBOARD_FRAME_COUNT,
    THUMBNAIL_OFFSET_SECONDS,
    THUMBNAILS_DIR,
)
from engine.enums import JobKind, JobStatus, Operation
from engine.errors import (
    BackendExecutionError,
    BackendUnavailableError,
    ConfigurationError,
    InputNotFoundError,
    InvalidTransitionError,
    JobNotFoundError,
    OutputVerificationError,
    TranscodeError,
    user_message_for,
)
from engine.events import EventChannel, JobCancelled, JobCompleted, JobFailed, JobProgress, JobStarted
from engine.job_state import job_state_machine
from engine.job_store import JobStore
from engine.metrics import (
    TRANSCODING_JOB_DURATION_SECONDS,
    TRANSCODING_JOBS_ACTIVE,
    TRANSCODING_JOBS_TOTAL,
    TRANSCODING_QUEUE_SIZE,
    init_app_info,
)
from engine.models import JobHandle, TranscodeJob, TranscodeProfile
from engine.profiles import ProfileCatalog
from engine.schemas import TranscodeOptions
from worker.backends import BackendSelector
from worker.hls import (
    DEFAULT_LADDER,
    MASTER_PLAYLIST_NAME,
    Rung,
    count_rung_segments,
    hls_output_dir,
    is_ladder_complete,
    plan_ladder,
    verify_ladder,
)
from worker.process import terminate_process_group
from worker.prober import MediaProber
from worker.progress import ProgressEstimator, frames_percent, hls_percent, single_file_percent, stop_polling
from worker.thumbnails import (
    ThumbnailGenerator,
    storyboard_dir,
    storyboard_partial_dir,
    thumbnail_path,
)

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Processing was interrupted."

_KIND_OPERATIONS = {
    JobKind.SINGLE_FILE: Operation.TRANSCODE,
    JobKind.HLS: Operation.HLS,
    JobKind.THUMBNAIL: Operation.THUMBNAIL,
    JobKind.STORYBOARD: Operation.THUMBNAIL,
}

# Kinds that must know the source duration before encoding
_PROBED_KINDS = frozenset([JobKind.SINGLE_FILE, JobKind.HLS, JobKind.STORYBOARD])


@dataclass
class EngineSettings:
    """Operator settings injected into the job manager."""

    output_dir: Path = OUTPUT_DIR
    thumbnails_dir: Path = THUMBNAILS_DIR
    max_concurrent_jobs: int = MAX_CONCURRENT_JOBS
    poll_interval: float = PROGRESS_POLL_INTERVAL
    use_hardware_accel: bool = PREFER_HARDWARE_ACCEL
    thumbnail_offset: float = THUMBNAIL_OFFSET_SECONDS
    storyboard_frame_count: int = STORYBOARD_FRAME_COUNT
    ladder: Tuple[Rung, ...] = DEFAULT_LADDER

    def __post_init__(self) -> None:
        self.output_dir = Path(self.output_dir)
        self.thumbnails_dir = Path(self.thumbnails_dir)
        if self.max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")


def output_path_for(kind: JobKind, input_path: Path, profile: TranscodeProfile, settings: EngineSettings) -> Path:
    """Deterministic artifact location for (basename, profile, kind)."""
    input_path = Path(input_path)
    if kind == JobKind.SINGLE_FILE:
        return settings.output_dir / f"{input_path.stem}_{profile.name}.{profile.format}"
    if kind == JobKind.HLS:
        return hls_output_dir(settings.output_dir, input_path.stem) / MASTER_PLAYLIST_NAME
    if kind == JobKind.THUMBNAIL:
        return thumbnail_path(settings.thumbnails_dir, input_path)
    return storyboard_dir(settings.thumbnails_dir, input_path)


def artifact_exists(kind: JobKind, output_path: Path) -> bool:
    if kind == JobKind.STORYBOARD:
        return output_path.is_dir() and any(output_path.glob("*.jpg"))
    if kind == JobKind.HLS:
        return is_ladder_complete(output_path)
    return output_path.is_file() and output_path.stat().st_size > 0


def remove_artifacts(kind: JobKind, output_path: Path, keep_finished_storyboard: bool = False) -> None:
    """
    Delete whatever an unfinished job of ``kind`` may have written at ``output_path``.

    With ``keep_finished_storyboard`` only the storyboard work directory is
    removed; a previous storyboard stays in place until the new one replaces it.
    """
    if kind == JobKind.HLS:
        targets = [output_path.parent]
    elif kind == JobKind.STORYBOARD:
        targets = [storyboard_partial_dir(output_path)]
        if not keep_finished_storyboard:
            targets.append(output_path)
    else:
        targets = [output_path]

    for target in targets:
        try:
            if target.is_dir():
                shutil.rmtree(target)
            else:
                target.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove partial output {target}: {e}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _ActiveJob:
    """Runtime bookkeeping for a pending or processing job."""

    job: TranscodeJob
    options: TranscodeOptions
    task: Optional["asyncio.Task[None]"] = None
    poll_task: Optional["asyncio.Task[None]"] = None
    process: Optional[asyncio.subprocess.Process] = None
    kill_task: Optional["asyncio.Task[None]"] = None
    cancel_requested: bool = False
    # Set once the manager has started writing at the output location
    output_touched: bool = False
    done: asyncio.Event = field(default_factory=asyncio.Event)


class JobManager:
    """
    Args:
        store: Row persistence plus the handle arena
        selector: Backend selector for every subprocess
        catalog: Profile catalog used to resolve option profiles
        events: Channel receiving lifecycle events
        settings: Operator settings
    """

    def __init__(
        self,
        store: JobStore,
        selector: Optional[BackendSelector] = None,
        catalog: Optional[ProfileCatalog] = None,
        events: Optional[EventChannel] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.store = store
        self.selector = selector or BackendSelector()
        self.catalog = catalog or ProfileCatalog()
        self.events = events or EventChannel()
        self.settings = settings or EngineSettings()
        self.prober = MediaProber(self.selector)
        self.thumbnails = ThumbnailGenerator(self.selector, self.prober, self.settings.thumbnails_dir)
        self.estimator = ProgressEstimator(self.settings.poll_interval)
        init_app_info()

        self._active: Dict[int, _ActiveJob] = {}
        self._running: Set[int] = set()
        self._queue: Deque[int] = deque()
        self._inflight: Dict[Path, int] = {}
        self._admission_lock = asyncio.Lock()
        self._runners: Dict[JobKind, Callable[[_ActiveJob], Awaitable[None]]] = {
            JobKind.SINGLE_FILE: self._run_single_file,
            JobKind.HLS: self._run_hls,
            JobKind.THUMBNAIL: self._run_thumbnail,
            JobKind.STORYBOARD: self._run_storyboard,
        }

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def queued_job_ids(self) -> List[int]:
        return list(self._queue)

    async def start_job(
        self,
        media_id: int,
        input_path: Union[str, Path],
        options: Union[TranscodeOptions, Mapping[str, Any], None] = None,
    ) -> JobHandle:
        """
        Create a job, or return an existing result for the same artifact.

        Raises:
            ConfigurationError: If no backend can serve the job kind; no row is written
            pydantic.ValidationError: If ``options`` is invalid
        """
        if not isinstance(options, TranscodeOptions):
            options = TranscodeOptions.model_validate(options or {})

        input_path = Path(input_path)
        kind = options.kind
        profile = self.catalog.lookup(options.profile).with_overrides(
            width=options.width,
            height=options.height,
            video_bitrate=options.video_bitrate,
            audio_bitrate=options.audio_bitrate,
            video_codec=options.video_codec,
            audio_codec=options.audio_codec,
            format=options.format,
        )

        self.selector.require(_KIND_OPERATIONS[kind], profile=profile)
        if kind in _PROBED_KINDS:
            self.selector.require(Operation.PROBE)

        output_path = output_path_for(kind, input_path, profile, self.settings)

        async with self._admission_lock:
            self.store.purge_expired()

            if not input_path.is_file():
                return await self._record_missing_input(media_id, kind, input_path, output_path, profile)

            inflight_id = self._inflight.get(output_path)
            if inflight_id is not None:
                logger.info(f"Job {inflight_id} already producing {output_path.name}, reusing it")
                return self._active[inflight_id].job.to_handle()

            if not options.force_regenerate and artifact_exists(kind, output_path):
                logger.info(f"Cache hit for {input_path.name} ({kind.value}, {profile.name}): {output_path}")
                TRANSCODING_JOBS_TOTAL.labels(kind=kind.value, status="cached").inc()
                return JobHandle(
                    job_id=None,
                    media_id=media_id,
                    kind=kind,
                    status=JobStatus.COMPLETED,
                    output_path=str(output_path),
                    progress_percent=100,
                    profile_name=profile.name,
                    cached=True,
                )

            job = TranscodeJob(
                id=0,
                media_id=media_id,
                kind=kind,
                input_path=input_path,
                output_path=output_path,
                profile=profile,
            )
            job.id = await self.store.insert_job(job)
            self.store.put(job)
            active = _ActiveJob(job=job, options=options)
            self._active[job.id] = active
            self._inflight[output_path] = job.id

            if len(self._running) < self.settings.max_concurrent_jobs:
                self._launch(active)
            else:
                self._queue.append(job.id)
                logger.info(f"Job {job.id} queued ({len(self._queue)} waiting)")
                self._update_gauges()

            return job.to_handle()

    async def cancel_job(self, job_id: int) -> JobHandle:
        """
        Cancel a pending or processing job and wait until it is recorded.

        Raises:
            JobNotFoundError: Unknown job id
            InvalidTransitionError: The job already reached a terminal state
        """
        active = self._active.get(job_id)
        if active is None:
            return await self._cancel_without_handle(job_id)

        job = active.job
        job_state_machine.validate_transition(job.status, JobStatus.CANCELLED)
        active.cancel_requested = True
        logger.info(f"Cancelling job {job_id} ({job.status.value})")

        if active.task is None:
            # Still queued: nothing was spawned or written
            if job_id in self._queue:
                self._queue.remove(job_id)
            await self._finish(active, None)
            return job.to_handle()

        if active.process is not None:
            await terminate_process_group(active.process, context=f"Job {job_id}")
        await active.done.wait()
        return job.to_handle()

    async def get_status(self, job_id: int) -> JobHandle:
        """
        Live handle when the job is in the arena, otherwise the persisted row.

        Raises:
            JobNotFoundError: Unknown job id
        """
        self.store.purge_expired()
        job = self.store.get(job_id)
        if job is not None:
            return job.to_handle()
        row = await self.store.get_row(job_id)
        if row is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return JobHandle.from_row(row)

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        media_id: Optional[int] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[JobHandle]:
        rows = await self.store.list_rows(status=status, media_id=media_id, limit=limit, offset=offset)
        handles = []
        for row in rows:
            live = self.store.get(row["id"])
            handles.append(live.to_handle() if live is not None else JobHandle.from_row(row))
        return handles

    async def wait(self, job_id: int, timeout: Optional[float] = None) -> JobHandle:
        """Block until ``job_id`` reaches a terminal state, then return its handle."""
        active = self._active.get(job_id)
        if active is not None:
            await asyncio.wait_for(active.done.wait(), timeout=timeout)
        return await self.get_status(job_id)

    def purge_expired(self) -> int:
        return self.store.purge_expired()

    async def recover_interrupted_jobs(self) -> int:
        """
        Fail rows left pending/processing by a previous process and remove
        their partial output, so it can never be mistaken for a cache hit.
        Called once at startup.
        """
        orphans = await self.store.find_orphans()
        for row in orphans:
            if row["status"] == JobStatus.PROCESSING.value:
                remove_artifacts(JobKind(row["kind"]), Path(row["output_path"]))
            await self.store.update(
                row["id"],
                status=JobStatus.FAILED,
                error_message=INTERRUPTED_MESSAGE,
                completed_at=_utcnow(),
            )
            logger.warning(f"Job {row['id']} was interrupted ({row['status']}), marked failed")
        return len(orphans)

    async def shutdown(self) -> None:
        """Cancel every queued and running job."""
        job_ids = list(self._queue) + [job_id for job_id in self._active if job_id not in self._queue]
        for job_id in job_ids:
            try:
                await self.cancel_job(job_id)
            except (InvalidTransitionError, JobNotFoundError):
                continue

    # =========================================================================
    # Admission
    # =========================================================================

    def _launch(self, active: _ActiveJob) -> None:
        job_id = active.job.id
        self._running.add(job_id)
        active.task = asyncio.create_task(self._run(active), name=f"transcode-job-{job_id}")
        TRANSCODING_JOBS_TOTAL.labels(kind=active.job.kind.value, status="started").inc()

    def _admit_next(self) -> None:
        while self._queue and len(self._running) < self.settings.max_concurrent_jobs:
            job_id = self._queue.popleft()
            active = self._active.get(job_id)
            if active is not None:
                self._launch(active)
        self._update_gauges()

    def _update_gauges(self) -> None:
        TRANSCODING_JOBS_ACTIVE.set(len(self._running))
        TRANSCODING_QUEUE_SIZE.set(len(self._queue))

    # =========================================================================
    # Job execution
    # =========================================================================

    def _is_processing(self, active: _ActiveJob) -> bool:
        return active.job.status == JobStatus.PROCESSING and not active.cancel_requested

    def _on_spawn(self, active: _ActiveJob):
        def on_spawn(process: asyncio.subprocess.Process) -> None:
            active.process = process
            if active.cancel_requested:
                active.kill_task = asyncio.create_task(
                    terminate_process_group(process, context=f"Job {active.job.id}")
                )

        return on_spawn

    def _use_hardware_accel(self, active: _ActiveJob) -> bool:
        if active.options.use_hardware_accel is not None:
            return active.options.use_hardware_accel
        return self.settings.use_hardware_accel

    async def _run(self, active: _ActiveJob) -> None:
        job = active.job
        error: Optional[BaseException] = None
        try:
            job_state_machine.validate_transition(job.status, JobStatus.PROCESSING)
            job.status = JobStatus.PROCESSING
            job.started_at = _utcnow()
            await self.store.update(job.id, status=JobStatus.PROCESSING, started_at=job.started_at)
            await self.events.publish(JobStarted(job_id=job.id, media_id=job.media_id, kind=job.kind))
            logger.info(f"Job {job.id} started: {job.kind.value} {job.input_path.name} -> {job.output_path.name}")

            if not active.cancel_requested:
                active.output_touched = True
                remove_artifacts(job.kind, job.output_path, keep_finished_storyboard=True)
                await self._runners[job.kind](active)
        except TranscodeError as e:
            error = e
        except Exception as e:
            # Unexpected failures still end the job instead of killing the manager
            logger.exception(f"Job {job.id} crashed: {e}")
            error = e
        finally:
            await stop_polling(active.poll_task)
            if active.kill_task is not None:
                await active.kill_task
            active.process = None

        await self._finish(active, error)

    async def _finish(self, active: _ActiveJob, error: Optional[BaseException]) -> None:
        job = active.job

        # Terminal status is decided here, before any await
        if active.cancel_requested:
            status, message = JobStatus.CANCELLED, None
        elif error is None:
            status, message = JobStatus.COMPLETED, None
        else:
            status, message = JobStatus.FAILED, user_message_for(error, context=f"job_id={job.id}")

        job_state_machine.validate_transition(job.status, status)
        job.status = status
        job.completed_at = _utcnow()
        job.error_message = message
        if status == JobStatus.COMPLETED:
            job.progress_percent = 100

        if status != JobStatus.COMPLETED and active.output_touched:
            remove_artifacts(job.kind, job.output_path)

        self._inflight.pop(job.output_path, None)
        self._running.discard(job.id)
        self._active.pop(job.id, None)
        self.store.retain(job)
        self._admit_next()

        TRANSCODING_JOBS_TOTAL.labels(kind=job.kind.value, status=status.value).inc()
        if job.started_at is not None:
            TRANSCODING_JOB_DURATION_SECONDS.labels(kind=job.kind.value).observe(
                (job.completed_at - job.started_at).total_seconds()
            )

        try:
            await self.store.update(
                job.id,
                status=status,
                completed_at=job.completed_at,
                progress_percent=job.progress_percent,
                error_message=message,
            )
        except Exception as e:
            logger.error(f"Failed to record final status {status.value} for job {job.id}: {e}")

        if status == JobStatus.COMPLETED:
            event = JobCompleted(job_id=job.id, media_id=job.media_id, kind=job.kind, output_path=str(job.output_path))
            logger.info(f"Job {job.id} completed: {job.output_path}")
        elif status == JobStatus.CANCELLED:
            event = JobCancelled(job_id=job.id, media_id=job.media_id, kind=job.kind)
            logger.info(f"Job {job.id} cancelled")
        else:
            event = JobFailed(job_id=job.id, media_id=job.media_id, kind=job.kind, error=message)
            logger.warning(f"Job {job.id} failed: {message}")

        active.done.set()
        await self.events.publish(event)

    async def _record_missing_input(
        self,
        media_id: int,
        kind: JobKind,
        input_path: Path,
        output_path: Path,
        profile: TranscodeProfile,
    ) -> JobHandle:
        error = InputNotFoundError(f"Input not found: {input_path}")
        now = _utcnow()
        job = TranscodeJob(
            id=0,
            media_id=media_id,
            kind=kind,
            input_path=input_path,
            output_path=output_path,
            profile=profile,
            status=JobStatus.FAILED,
            completed_at=now,
            error_message=user_message_for(error),
        )
        job.id = await self.store.insert_job(job)
        self.store.put(job)
        self.store.retain(job)
        TRANSCODING_JOBS_TOTAL.labels(kind=kind.value, status=JobStatus.FAILED.value).inc()
        await self.events.publish(JobFailed(job_id=job.id, media_id=media_id, kind=kind, error=job.error_message))
        return job.to_handle()

    async def _cancel_without_handle(self, job_id: int) -> JobHandle:
        job = self.store.get(job_id)
        if job is not None:
            raise InvalidTransitionError(f"Job {job_id} is already {job.status.value}")

        row = await self.store.get_row(job_id)
        if row is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        job_state_machine.validate_transition(row["status"], JobStatus.CANCELLED)

        # Left behind by a previous process: nothing is running, just record it
        await self.store.update(job_id, status=JobStatus.CANCELLED, completed_at=_utcnow(), error_message=None)
        return JobHandle.from_row(await self.store.get_row(job_id))

    def _start_progress(self, active: _ActiveJob, sample: Callable[[], Awaitable[Optional[int]]]) -> None:
        async def report(percent: int) -> None:
            await self._report_progress(active, percent)

        active.poll_task = self.estimator.start(lambda: self._is_processing(active), sample, report)

    async def _report_progress(self, active: _ActiveJob, percent: int) -> None:
        job = active.job
        if not self._is_processing(active):
            return
        percent = min(99, percent)
        if percent <= job.progress_percent:
            return
        job.progress_percent = percent
        try:
            await self.store.update(job.id, progress_percent=percent)
        except Exception as e:
            # Progress is advisory; the job keeps running
            logger.warning(f"Failed to persist progress for job {job.id}: {e}")
        await self.events.publish(JobProgress(job_id=job.id, media_id=job.media_id, kind=job.kind, percent=percent))

    # =========================================================================
    # Per-kind runners
    # =========================================================================

    async def _run_single_file(self, active: _ActiveJob) -> None:
        job = active.job
        media = await self.prober.probe(job.input_path, on_spawn=self._on_spawn(active))
        total = media.duration_seconds
        job.output_path.parent.mkdir(parents=True, exist_ok=True)

        if total > 0:

            async def sample() -> Optional[int]:
                current = await self.prober.encoded_duration(job.output_path)
                return None if current is None else single_file_percent(current, total)

            self._start_progress(active, sample)

        await self.selector.execute(
            Operation.TRANSCODE,
            on_spawn=self._on_spawn(active),
            input_path=job.input_path,
            output_path=job.output_path,
            profile=job.profile,
            use_hardware_accel=self._use_hardware_accel(active),
        )

        if not job.output_path.is_file() or job.output_path.stat().st_size == 0:
            raise OutputVerificationError(f"Transcode reported success but {job.output_path} is missing or empty")

    async def _run_hls(self, active: _ActiveJob) -> None:
        job = active.job
        media = await self.prober.probe(job.input_path, on_spawn=self._on_spawn(active))
        # Never upscale beyond the source unless a ceiling was requested
        max_height = active.options.max_height or (media.height or None)
        ladder = plan_ladder(job.input_path, self.settings.output_dir, max_height, self.settings.ladder, job_id=job.id)
        ladder.output_dir.mkdir(parents=True, exist_ok=True)

        total = media.duration_seconds
        segment_duration = self.selector.ffmpeg.segment_duration
        if total > 0:

            async def sample() -> Optional[int]:
                return hls_percent(count_rung_segments(ladder), segment_duration, total)

            self._start_progress(active, sample)

        await self.selector.execute(
            Operation.HLS,
            on_spawn=self._on_spawn(active),
            input_path=job.input_path,
            ladder=ladder,
            has_audio=media.has_audio,
            video_codec=job.profile.video_codec or "h264",
            use_hardware_accel=self._use_hardware_accel(active),
        )
        verify_ladder(ladder)

    async def _run_thumbnail(self, active: _ActiveJob) -> None:
        job = active.job
        duration = None
        try:
            media = await self.prober.probe(job.input_path, on_spawn=self._on_spawn(active))
            duration = media.duration_seconds
        except (BackendExecutionError, BackendUnavailableError, ConfigurationError) as e:
            logger.info(f"Probe failed for thumbnail of {job.input_path.name}, using offset as-is: {e}")

        offset = active.options.time_offset
        if offset is None:
            offset = self.settings.thumbnail_offset
        await self.thumbnails.generate_thumbnail(
            job.input_path,
            time_offset=offset,
            duration_seconds=duration,
            on_spawn=self._on_spawn(active),
        )

    async def _run_storyboard(self, active: _ActiveJob) -> None:
        job = active.job
        media = await self.prober.probe(job.input_path, on_spawn=self._on_spawn(active))
        count = active.options.frame_count or self.settings.storyboard_frame_count
        partial = storyboard_partial_dir(job.output_path)

        async def sample() -> Optional[int]:
            if not partial.is_dir():
                return None
            return frames_percent(len(list(partial.glob("*.jpg"))), count)

        self._start_progress(active, sample)
        await self.thumbnails.generate_storyboard(
            job.input_path,
            count=count,
            media=media,
            on_spawn=self._on_spawn(active),
        )
