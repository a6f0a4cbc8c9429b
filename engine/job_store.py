"""
Job persistence plus the in-memory handle arena.

Rows in ``transcoding_jobs`` are the durable record of every job. Live
TranscodeJob entries sit in an arena keyed by job id and are purged
``retention_seconds`` after reaching a terminal state; the row stays.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

import sqlalchemy as sa
from databases import Database

from config import JOB_RETENTION_SECONDS
from engine.database import transcoding_jobs
from engine.db_retry import execute_with_retry
from engine.enums import JobKind, JobStatus
from engine.models import TranscodeJob

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 500


def target_format_for(job: TranscodeJob) -> str:
    if job.kind == JobKind.SINGLE_FILE:
        return job.profile.format
    if job.kind == JobKind.HLS:
        return "hls"
    return "jpg"


def target_resolution_for(job: TranscodeJob) -> Optional[str]:
    if job.kind == JobKind.SINGLE_FILE:
        return job.profile.resolution
    if job.kind == JobKind.HLS:
        return "adaptive"
    return None


class JobStore:
    """
    Args:
        database: Connected ``databases.Database``
        retention_seconds: How long terminal jobs stay in the arena
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        database: Database,
        retention_seconds: float = JOB_RETENTION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.database = database
        self.retention_seconds = retention_seconds
        self.clock = clock
        self._arena: Dict[int, TranscodeJob] = {}

    # =========================================================================
    # Persisted rows
    # =========================================================================

    async def insert(self, job_fields: Dict[str, Any]) -> int:
        """Insert a row and return its id."""
        values = dict(job_fields)
        values.setdefault("created_at", datetime.now(timezone.utc))
        values.setdefault("progress_percent", 0)
        for key in ("kind", "status"):
            if key in values and hasattr(values[key], "value"):
                values[key] = values[key].value
        query = transcoding_jobs.insert().values(**values)
        return await execute_with_retry(self.database.execute, query)

    async def insert_job(self, job: TranscodeJob) -> int:
        return await self.insert(
            {
                "media_id": job.media_id,
                "kind": job.kind,
                "status": job.status,
                "input_path": str(job.input_path),
                "output_path": str(job.output_path),
                "profile_name": job.profile.name,
                "target_format": target_format_for(job),
                "target_resolution": target_resolution_for(job),
                "error_message": job.error_message,
                "started_at": job.started_at,
                "completed_at": job.completed_at,
            }
        )

    async def update(self, job_id: int, **values: Any) -> None:
        if "status" in values and isinstance(values["status"], JobStatus):
            values["status"] = values["status"].value
        query = transcoding_jobs.update().where(transcoding_jobs.c.id == job_id).values(**values)
        await execute_with_retry(self.database.execute, query)

    async def get_row(self, job_id: int) -> Optional[Dict[str, Any]]:
        query = transcoding_jobs.select().where(transcoding_jobs.c.id == job_id)
        row = await execute_with_retry(self.database.fetch_one, query)
        return dict(row._mapping) if row is not None else None

    async def list_rows(
        self,
        status: Optional[JobStatus] = None,
        media_id: Optional[int] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Rows newest first, optionally filtered by status and media id."""
        query = transcoding_jobs.select()
        if status is not None:
            query = query.where(transcoding_jobs.c.status == JobStatus(status).value)
        if media_id is not None:
            query = query.where(transcoding_jobs.c.media_id == media_id)
        query = (
            query.order_by(
                sa.desc(sa.func.coalesce(transcoding_jobs.c.started_at, transcoding_jobs.c.created_at)),
                sa.desc(transcoding_jobs.c.id),
            )
            .limit(max(1, min(limit, MAX_LIST_LIMIT)))
            .offset(max(0, offset))
        )
        rows = await execute_with_retry(self.database.fetch_all, query)
        return [dict(row._mapping) for row in rows]

    async def find_orphans(self) -> List[Dict[str, Any]]:
        """Pending/processing rows with no live arena entry (left by a previous process)."""
        query = transcoding_jobs.select().where(
            transcoding_jobs.c.status.in_([JobStatus.PENDING.value, JobStatus.PROCESSING.value])
        )
        rows = await execute_with_retry(self.database.fetch_all, query)
        return [dict(row._mapping) for row in rows if row._mapping["id"] not in self._arena]

    # =========================================================================
    # In-memory arena
    # =========================================================================

    def put(self, job: TranscodeJob) -> None:
        self._arena[job.id] = job

    def get(self, job_id: int) -> Optional[TranscodeJob]:
        return self._arena.get(job_id)

    def __len__(self) -> int:
        return len(self._arena)

    def __iter__(self) -> Iterator[TranscodeJob]:
        return iter(list(self._arena.values()))

    def retain(self, job: TranscodeJob) -> None:
        """Start the retention window for a job that just reached a terminal state."""
        job.retained_until = self.clock() + self.retention_seconds

    def purge_expired(self) -> int:
        """Drop terminal arena entries whose retention window has passed."""
        now = self.clock()
        expired = [
            job_id
            for job_id, job in self._arena.items()
            if job.status.is_terminal and job.retained_until is not None and job.retained_until <= now
        ]
        for job_id in expired:
            del self._arena[job_id]
        if expired:
            logger.debug(f"Purged {len(expired)} expired job handles")
        return len(expired)
