"""
Transcoding Job State Machine - explicit lifecycle rules for transcoding jobs.

State Transition Diagram:
    PENDING ──> PROCESSING ──> COMPLETED
       │            │
       │            ├───────> FAILED
       │            │
       ├────────────┴───────> CANCELLED
       │
       └──> FAILED (input missing, nothing spawned)

Terminal states (completed, failed, cancelled) are final.

Usage:
    from engine.job_state import job_state_machine

    job_state_machine.validate_transition(job.status, JobStatus.PROCESSING)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Mapping, Optional, Union

from engine.enums import JobStatus
from engine.errors import InvalidTransitionError

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset([JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.CANCELLED]),
    JobStatus.PROCESSING: frozenset([JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED]),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def _ensure_utc_datetime(dt: Optional[Union[datetime, str]]) -> Optional[datetime]:
    """
    Normalize datetime to UTC timezone.

    SQLite hands back naive datetimes (or ISO strings); they were written
    as UTC so they are tagged as such.
    """
    if dt is None:
        return None
    if isinstance(dt, str):
        dt = datetime.fromisoformat(dt)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class JobRow:
    """
    State-relevant fields from a transcoding job row.

    All datetime fields are normalized to UTC timezone.
    """

    status: JobStatus
    progress_percent: int
    error_message: Optional[str]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "JobRow":
        progress = row.get("progress_percent") or 0
        return cls(
            status=JobStatus(row["status"]),
            progress_percent=max(0, min(100, int(progress))),
            error_message=row.get("error_message"),
            started_at=_ensure_utc_datetime(row.get("started_at")),
            completed_at=_ensure_utc_datetime(row.get("completed_at")),
        )


class TranscodingJobStateMachine:
    """
    Transition rules for transcoding jobs.

    Stateless; every method is a pure function of its arguments.
    """

    def _status(self, job: Union[JobStatus, str, JobRow, Mapping[str, Any]]) -> JobStatus:
        if isinstance(job, JobRow):
            return job.status
        if isinstance(job, (JobStatus, str)):
            return JobStatus(job)
        return JobStatus(job["status"])

    def can_transition(self, job, target: JobStatus) -> bool:
        return JobStatus(target) in _ALLOWED_TRANSITIONS[self._status(job)]

    def validate_transition(self, job, target: JobStatus) -> None:
        """Raise InvalidTransitionError unless ``job`` may move to ``target``."""
        current = self._status(job)
        if not self.can_transition(current, target):
            raise InvalidTransitionError(f"Invalid job transition {current.value} -> {JobStatus(target).value}")


# Stateless, safe to share
job_state_machine = TranscodingJobStateMachine()
