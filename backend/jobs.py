"""
In-memory job store. No database: every record lives in a dict owned by the
application (``app.state.jobs``). A server restart clears all jobs.

Records are frozen; every write replaces the whole job, so a reader always
sees a fully-formed snapshot.
"""

import random
import string
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

_ID_ALPHABET = string.digits + string.ascii_lowercase


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobResult(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    optimized: bool
    thumbnail_created: bool
    size_saved: Optional[int] = None
    error: Optional[str] = None


class Job(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    file_name: str
    file_type: str
    file_size: Union[int, float]
    status: JobStatus = JobStatus.PENDING
    created_at: datetime
    completed_at: Optional[datetime] = None
    result: Optional[JobResult] = None

    def to_status(self) -> Dict[str, object]:
        """Client-facing snapshot returned by the status endpoint."""
        return {
            "jobId": self.id,
            "status": self.status.value,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "createdAt": to_iso(self.created_at),
            "completedAt": to_iso(self.completed_at) if self.completed_at else None,
            "result": (
                self.result.model_dump(by_alias=True, exclude_none=True)
                if self.result
                else None
            ),
        }


def to_iso(ts: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a Z suffix."""
    return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStore:
    """Keyed registry of job records for the lifetime of the process."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}

    def put(self, job: Job) -> None:
        """Insert or overwrite the record for ``job.id``."""
        self._jobs[job.id] = job

    def get(self, job_id: str) -> Optional[Job]:
        """Return the current record, or None if the id was never stored."""
        return self._jobs.get(job_id)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def discard(self, job_id: str) -> None:
        """Drop a record that was never handed to the pipeline."""
        self._jobs.pop(job_id, None)


def new_job_id() -> str:
    """Millisecond timestamp plus a 9-char base-36 random suffix."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{time.time_ns() // 1_000_000}-{suffix}"


def create_job(store: JobStore, file_name: str, file_type: str, file_size: Union[int, float]) -> Job:
    """Create a pending job, store it and return it. A colliding id overwrites."""
    job = Job(
        id=new_job_id(),
        file_name=file_name,
        file_type=file_type,
        file_size=file_size,
        status=JobStatus.PENDING,
        created_at=utcnow(),
    )
    store.put(job)
    return job


def get_status(store: JobStore, job_id: str) -> Optional[Job]:
    """Read-only snapshot lookup for polling clients."""
    return store.get(job_id)
