"""
Tests for JobStore: row persistence and the in-memory handle arena.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

from engine.enums import JobKind, JobStatus
from engine.job_store import JobStore, target_format_for, target_resolution_for
from engine.models import TranscodeJob
from engine.profiles import ProfileCatalog

STANDARD = ProfileCatalog().lookup("standard")


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_job(job_id=1, kind=JobKind.SINGLE_FILE, status=JobStatus.PENDING):
    return TranscodeJob(
        id=job_id,
        media_id=10,
        kind=kind,
        input_path=Path("/media/movie.mp4"),
        output_path=Path("/out/movie_standard.mp4"),
        profile=STANDARD,
        status=status,
    )


def row_fields(media_id=10, status="pending", created_at=None, **extra):
    fields = {
        "media_id": media_id,
        "kind": JobKind.SINGLE_FILE,
        "status": status,
        "input_path": "/media/movie.mp4",
        "output_path": f"/out/movie_{media_id}.mp4",
        "profile_name": "standard",
    }
    if created_at is not None:
        fields["created_at"] = created_at
    fields.update(extra)
    return fields


class TestTargetColumns:
    def test_single_file(self):
        job = make_job()
        assert target_format_for(job) == "mp4"
        assert target_resolution_for(job) == "1280x720"

    def test_hls(self):
        job = make_job(kind=JobKind.HLS)
        assert target_format_for(job) == "hls"
        assert target_resolution_for(job) == "adaptive"

    def test_images(self):
        for kind in (JobKind.THUMBNAIL, JobKind.STORYBOARD):
            job = make_job(kind=kind)
            assert target_format_for(job) == "jpg"
            assert target_resolution_for(job) is None


class TestRows:
    """Tests for persisted rows."""

    async def test_insert_job_and_get_row(self, job_store):
        job_id = await job_store.insert_job(make_job())

        row = await job_store.get_row(job_id)

        assert row["media_id"] == 10
        assert row["kind"] == "single_file"
        assert row["status"] == "pending"
        assert row["profile_name"] == "standard"
        assert row["target_format"] == "mp4"
        assert row["target_resolution"] == "1280x720"
        assert row["progress_percent"] == 0
        assert row["created_at"] is not None

    async def test_get_missing_row(self, job_store):
        assert await job_store.get_row(12345) is None

    async def test_update(self, job_store):
        job_id = await job_store.insert(row_fields())

        await job_store.update(job_id, status=JobStatus.PROCESSING, progress_percent=40)

        row = await job_store.get_row(job_id)
        assert row["status"] == "processing"
        assert row["progress_percent"] == 40

    async def test_list_newest_first(self, job_store):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        first = await job_store.insert(row_fields(media_id=1, created_at=base))
        second = await job_store.insert(row_fields(media_id=2, created_at=base + timedelta(minutes=1)))
        third = await job_store.insert(row_fields(media_id=3, created_at=base + timedelta(minutes=2)))

        rows = await job_store.list_rows()

        assert [row["id"] for row in rows] == [third, second, first]

    async def test_list_filters_and_pages(self, job_store):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for i in range(5):
            await job_store.insert(
                row_fields(
                    media_id=7 if i % 2 else 8,
                    status="failed" if i == 4 else "completed",
                    created_at=base + timedelta(minutes=i),
                )
            )

        assert len(await job_store.list_rows(media_id=7)) == 2
        assert [row["status"] for row in await job_store.list_rows(status=JobStatus.FAILED)] == ["failed"]
        page = await job_store.list_rows(limit=2, offset=1)
        assert len(page) == 2
        assert page[0]["media_id"] == 7

    async def test_find_orphans_skips_live_jobs(self, job_store):
        orphan_id = await job_store.insert(row_fields(status="processing"))
        live_id = await job_store.insert(row_fields(status="pending"))
        await job_store.insert(row_fields(status="completed"))
        job_store.put(make_job(job_id=live_id))

        orphans = await job_store.find_orphans()

        assert [row["id"] for row in orphans] == [orphan_id]


class TestArena:
    """Tests for in-memory handle retention."""

    def test_put_get(self, test_database):
        store = JobStore(test_database)
        job = make_job(job_id=5)
        store.put(job)
        assert store.get(5) is job
        assert store.get(6) is None
        assert len(store) == 1
        assert list(store) == [job]

    def test_purge_after_retention(self, test_database):
        clock = FakeClock()
        store = JobStore(test_database, retention_seconds=60, clock=clock)
        done = make_job(job_id=1, status=JobStatus.COMPLETED)
        running = make_job(job_id=2, status=JobStatus.PROCESSING)
        store.put(done)
        store.put(running)
        store.retain(done)

        clock.now += 59
        assert store.purge_expired() == 0

        clock.now += 1
        assert store.purge_expired() == 1
        assert store.get(1) is None
        assert store.get(2) is running

    def test_terminal_without_retention_kept(self, test_database):
        store = JobStore(test_database, retention_seconds=0, clock=FakeClock())
        store.put(make_job(job_id=1, status=JobStatus.FAILED))
        assert store.purge_expired() == 0

    def test_iteration_tolerates_mutation(self, test_database):
        store = JobStore(test_database)
        store.put(make_job(job_id=1))
        store.put(make_job(job_id=2))
        for job in store:
            store.put(make_job(job_id=job.id + 10))
        assert len(store) == 4
