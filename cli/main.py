#!/usr/bin/env python3
"""
StreamVio CLI - Command line interface for the transcoding engine.
"""

import argparse
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path

from databases import Database
from pydantic import ValidationError
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn

from config import DATABASE_URL, LOG_LEVEL
from engine.database import create_tables
from engine.enums import ConnectionType, JobKind, JobStatus
from engine.errors import TranscodeError
from engine.events import EventChannel, JobCancelled, JobCompleted, JobFailed, JobProgress, RedisEventPublisher
from engine.job_manager import JobManager
from engine.job_store import JobStore
from engine.models import JobHandle
from engine.profiles import ProfileCatalog, hints_from_user_agent
from engine.redis_client import RedisClient
from worker.backends import BackendSelector
from worker.prober import MediaProber

_TERMINAL_EVENTS = (JobCompleted, JobFailed, JobCancelled)


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def non_negative_float(value: str) -> float:
    f = float(value)
    if f < 0:
        raise argparse.ArgumentTypeError(f"must not be negative, got {f}")
    return f


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@asynccontextmanager
async def engine_session(database_url: str = DATABASE_URL):
    """Connected database, optional Redis publisher and a JobManager for one command."""
    create_tables(database_url)
    database = Database(database_url)
    await database.connect()

    events = EventChannel()
    redis_client = RedisClient()
    if redis_client.is_configured:
        await redis_client.connect()
        events.subscribe(RedisEventPublisher(redis_client))

    manager = JobManager(JobStore(database), events=events)
    try:
        yield manager
    finally:
        await manager.shutdown()
        await redis_client.close()
        await database.disconnect()


def _format_time(value) -> str:
    return value.isoformat(timespec="seconds")[:19] if value else "-"


def print_handle(handle: JobHandle) -> None:
    job_id = handle.job_id if handle.job_id is not None else "(cached)"
    print(f"Job:      {job_id}")
    print(f"Media:    {handle.media_id}")
    print(f"Kind:     {handle.kind.value}")
    print(f"Status:   {handle.status.value}")
    print(f"Progress: {handle.progress_percent}%")
    if handle.profile_name:
        print(f"Profile:  {handle.profile_name}")
    print(f"Output:   {handle.output_path}")
    if handle.started_at:
        print(f"Started:  {_format_time(handle.started_at)}")
    if handle.completed_at:
        print(f"Finished: {_format_time(handle.completed_at)}")
    if handle.error_message:
        print(f"Error:    {handle.error_message}")


async def follow_job(manager: JobManager, media_id: int, input_path: Path, options: dict) -> JobHandle:
    """Start a job and render its progress until it reaches a terminal state."""
    queue = manager.events.queue()
    try:
        handle = await manager.start_job(media_id, input_path, options)
        if handle.cached:
            print(f"Already generated: {handle.output_path} (use --force to regenerate)")
            return handle
        if handle.status.is_terminal:
            return handle

        with Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
        ) as progress:
            task_id = progress.add_task(f"{handle.kind.value} #{handle.job_id}", total=100)
            async for event in queue:
                if event.job_id != handle.job_id:
                    continue
                if isinstance(event, JobProgress):
                    progress.update(task_id, completed=event.percent)
                elif isinstance(event, _TERMINAL_EVENTS):
                    if isinstance(event, JobCompleted):
                        progress.update(task_id, completed=100)
                    break

        return await manager.get_status(handle.job_id)
    finally:
        queue.close()


def _run_job(args, options: dict) -> None:
    input_path = Path(args.file)
    # Unset flags fall back to the option defaults
    options = {key: value for key, value in options.items() if value is not None}

    async def run():
        async with engine_session() as manager:
            return await follow_job(manager, args.media_id, input_path, options)

    try:
        handle = asyncio.run(run())
    except ValidationError as e:
        print(f"Invalid options: {e.errors()[0]['msg']}")
        sys.exit(1)
    except TranscodeError as e:
        print(f"Error: {e.user_message}")
        sys.exit(1)

    print_handle(handle)
    if handle.status != JobStatus.COMPLETED:
        sys.exit(1)


def cmd_init_db(args):
    """Create database tables."""
    create_tables(DATABASE_URL)
    print("Database tables created successfully!")


def cmd_probe(args):
    """Show media information for a file."""
    prober = MediaProber(BackendSelector())
    try:
        info = asyncio.run(prober.probe(Path(args.file)))
    except TranscodeError as e:
        print(f"Error: {e.user_message}")
        sys.exit(1)

    print(f"File:       {info.path}")
    print(f"Format:     {info.format or '-'}")
    print(f"Duration:   {info.duration_seconds:.2f}s")
    if info.has_video:
        print(f"Video:      {info.video_codec} {info.width}x{info.height} {info.video_bitrate} kbps")
    if info.has_audio:
        print(
            f"Audio:      {info.audio_codec} {info.audio_bitrate} kbps, "
            f"{info.audio_channels} ch, {info.audio_sample_rate} Hz"
        )
    for key, value in sorted(info.metadata.items()):
        print(f"  {key}: {value}")


def cmd_profiles(args):
    """List transcoding profiles."""
    catalog = ProfileCatalog()
    print(f"{'Name':<14} {'Resolution':<12} {'Video':<12} {'Audio':<10} {'Codecs':<12} {'Format':<6}")
    print("-" * 70)
    for p in catalog.list_profiles():
        resolution = p.resolution or "-"
        video = f"{p.video_bitrate} kbps" if p.has_video else "-"
        codecs = f"{p.video_codec or '-'}/{p.audio_codec or '-'}"
        name = p.name + (" *" if p.name == catalog.default else "")
        audio = f"{p.audio_bitrate} kbps"
        print(f"{name:<14} {resolution:<12} {video:<12} {audio:<10} {codecs:<12} {p.format:<6}")


def cmd_select_profile(args):
    """Pick a profile from device hints."""
    hints = hints_from_user_agent(args.user_agent or "", args.connection, args.bandwidth)
    if args.mobile:
        hints = hints.model_copy(update={"is_mobile": True})
    if args.tablet:
        hints = hints.model_copy(update={"is_tablet": True})
    print(ProfileCatalog().select_optimal(hints))


def cmd_transcode(args):
    """Transcode a file to a single output."""
    options = {
        "kind": JobKind.SINGLE_FILE,
        "profile": args.profile,
        "force_regenerate": args.force,
        "format": args.format,
        "video_codec": args.video_codec,
        "audio_codec": args.audio_codec,
    }
    if args.hwaccel is not None:
        options["use_hardware_accel"] = args.hwaccel
    _run_job(args, options)


def cmd_hls(args):
    """Build an adaptive HLS ladder."""
    _run_job(
        args,
        {"kind": JobKind.HLS, "max_height": args.max_height, "force_regenerate": args.force},
    )


def cmd_thumbnail(args):
    """Extract a poster frame."""
    _run_job(
        args,
        {"kind": JobKind.THUMBNAIL, "time_offset": args.offset, "force_regenerate": args.force},
    )


def cmd_storyboard(args):
    """Extract evenly spaced preview frames."""
    _run_job(
        args,
        {"kind": JobKind.STORYBOARD, "frame_count": args.count, "force_regenerate": args.force},
    )


def cmd_status(args):
    """Show one job."""

    async def run():
        async with engine_session() as manager:
            return await manager.get_status(args.job_id)

    try:
        handle = asyncio.run(run())
    except TranscodeError as e:
        print(f"Error: {e.user_message}")
        sys.exit(1)
    print_handle(handle)


def cmd_jobs(args):
    """List jobs, newest first."""
    if args.offset < 0:
        raise CLIError(f"--offset must not be negative, got {args.offset}")

    async def run():
        async with engine_session() as manager:
            return await manager.list_jobs(
                status=JobStatus(args.status) if args.status else None,
                media_id=args.media_id,
                limit=args.limit,
                offset=args.offset,
            )

    handles = asyncio.run(run())
    if not handles:
        print("No jobs found.")
        return

    print(f"{'ID':<6} {'Media':<7} {'Kind':<12} {'Status':<11} {'Progress':<9} {'Started':<20} {'Output':<40}")
    print("-" * 110)
    for h in handles:
        output = h.output_path if len(h.output_path) <= 40 else ".." + h.output_path[-38:]
        print(
            f"{h.job_id:<6} {h.media_id:<7} {h.kind.value:<12} {h.status.value:<11} "
            f"{str(h.progress_percent) + '%':<9} {_format_time(h.started_at):<20} {output:<40}"
        )


def cmd_recover(args):
    """Fail jobs left unfinished by a previous run."""

    async def run():
        async with engine_session() as manager:
            return await manager.recover_interrupted_jobs()

    count = asyncio.run(run())
    if count:
        print(f"Marked {count} interrupted job(s) as failed.")
    else:
        print("No interrupted jobs found.")


def _add_job_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("file", help="Input media file")
    parser.add_argument(
        "-m", "--media-id", type=positive_int, default=1, help="Media ID the job belongs to (default: 1)"
    )
    parser.add_argument("-f", "--force", action="store_true", help="Regenerate even if the output already exists")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="streamvio-transcode", description="StreamVio transcoding engine")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    probe_parser = subparsers.add_parser("probe", help="Show media information")
    probe_parser.add_argument("file", help="Media file to probe")
    probe_parser.set_defaults(func=cmd_probe)

    profiles_parser = subparsers.add_parser("profiles", help="List transcoding profiles")
    profiles_parser.set_defaults(func=cmd_profiles)

    select_parser = subparsers.add_parser("select-profile", help="Pick a profile for a client")
    select_parser.add_argument("-u", "--user-agent", help="Client User-Agent header")
    select_parser.add_argument(
        "-c", "--connection", choices=[c.value for c in ConnectionType], help="Network connection type"
    )
    select_parser.add_argument("-b", "--bandwidth", type=positive_int, help="Measured bandwidth in kbps")
    select_parser.add_argument("--mobile", action="store_true", help="Treat the client as a phone")
    select_parser.add_argument("--tablet", action="store_true", help="Treat the client as a tablet")
    select_parser.set_defaults(func=cmd_select_profile)

    transcode_parser = subparsers.add_parser("transcode", help="Transcode to a single file")
    _add_job_arguments(transcode_parser)
    transcode_parser.add_argument("-p", "--profile", help="Profile name (default: standard)")
    transcode_parser.add_argument("--format", help="Override container format")
    transcode_parser.add_argument("--video-codec", help="Override video codec")
    transcode_parser.add_argument("--audio-codec", help="Override audio codec")
    hw_group = transcode_parser.add_mutually_exclusive_group()
    hw_group.add_argument("--hwaccel", dest="hwaccel", action="store_true", default=None, help="Use hardware decoding")
    hw_group.add_argument("--no-hwaccel", dest="hwaccel", action="store_false", help="Disable hardware decoding")
    transcode_parser.set_defaults(func=cmd_transcode)

    hls_parser = subparsers.add_parser("hls", help="Build an HLS ladder")
    _add_job_arguments(hls_parser)
    hls_parser.add_argument("--max-height", type=positive_int, help="Tallest rung (default: source height)")
    hls_parser.set_defaults(func=cmd_hls)

    thumb_parser = subparsers.add_parser("thumbnail", help="Extract a thumbnail")
    _add_job_arguments(thumb_parser)
    thumb_parser.add_argument("-t", "--offset", type=non_negative_float, help="Seconds into the media")
    thumb_parser.set_defaults(func=cmd_thumbnail)

    story_parser = subparsers.add_parser("storyboard", help="Extract a storyboard")
    _add_job_arguments(story_parser)
    story_parser.add_argument("-n", "--count", type=positive_int, help="Number of frames")
    story_parser.set_defaults(func=cmd_storyboard)

    status_parser = subparsers.add_parser("status", help="Show job status")
    status_parser.add_argument("job_id", type=positive_int, help="Job ID")
    status_parser.set_defaults(func=cmd_status)

    jobs_parser = subparsers.add_parser("jobs", help="List jobs")
    jobs_parser.add_argument("-s", "--status", choices=[s.value for s in JobStatus], help="Filter by status")
    jobs_parser.add_argument("-m", "--media-id", type=positive_int, help="Filter by media ID")
    jobs_parser.add_argument("-l", "--limit", type=positive_int, default=20, help="Maximum rows (default: 20)")
    jobs_parser.add_argument("-o", "--offset", type=int, default=0, help="Rows to skip")
    jobs_parser.set_defaults(func=cmd_jobs)

    recover_parser = subparsers.add_parser("recover", help="Fail jobs interrupted by a previous run")
    recover_parser.set_defaults(func=cmd_recover)

    return parser


def main(argv=None):
    configure_logging()
    args = build_parser().parse_args(argv)
    try:
        args.func(args)
    except CLIError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)


if __name__ == "__main__":
    main()
