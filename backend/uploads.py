"""
Upload acceptance: validate, create a job, schedule processing, return.

The pipeline is scheduled as a background asyncio task; the caller never
waits for it, so the upload response time does not include processing.
"""

import asyncio
import logging
import os
from typing import Any, Coroutine, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, StrictInt, StrictStr, confloat
from pydantic.alias_generators import to_camel

from instrument import capture_exception, start_span
from jobs import Job, JobStore, create_job
from processor import Simulation, process_media

logger = logging.getLogger("snaptrace.uploads")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
MAX_FILE_SIZE_MB: int = int(os.getenv("MAX_FILE_SIZE_MB", "50"))
IMAGES_ONLY: bool = os.getenv("IMAGES_ONLY", "true").lower() in {"1", "true", "yes"}

MISSING_FIELDS = "Missing required fields"
FILE_TOO_LARGE = f"File too large (max {MAX_FILE_SIZE_MB}MB)"
ONLY_IMAGES = "Only images are supported"


class UploadRejected(Exception):
    """The request failed validation. No job was created."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class UploadFailed(Exception):
    """Unexpected fault while accepting an upload."""


class JobScheduler:
    """
    Fire-and-forget runner for pipeline coroutines.

    Holds a reference to each task until it finishes so the event loop
    cannot garbage-collect it mid-flight. There is no cancellation: drain()
    waits for every scheduled pipeline to reach a terminal state.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        try:
            task = asyncio.create_task(coro, name=name)
        except RuntimeError:
            coro.close()
            raise
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s crashed", task.get_name(), exc_info=exc)
            capture_exception(exc)

    async def drain(self) -> None:
        if not self._tasks:
            return
        logger.info("Waiting for %d background job(s) to finish", len(self._tasks))
        await asyncio.gather(*list(self._tasks), return_exceptions=True)


# ---------------------------------------------------------------------------
# Request model
# ---------------------------------------------------------------------------

class UploadRequest(BaseModel):
    """
    Upload metadata as sent by the client.

    Fields are optional so that a missing one is reported as a rejection,
    not a parse error. Types are strict: a number sent as a string, or a
    boolean or non-finite size, fails to parse instead of being coerced.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    file_name: Optional[StrictStr] = None
    file_type: Optional[StrictStr] = None
    file_size: Optional[Union[StrictInt, confloat(strict=True, allow_inf_nan=False)]] = None


def validate_upload(upload: UploadRequest, images_only: bool = IMAGES_ONLY) -> Optional[str]:
    """Return the first validation failure, or None if the upload is acceptable."""
    if not upload.file_name or not upload.file_type or not upload.file_size or upload.file_size < 0:
        return MISSING_FIELDS
    if upload.file_size > MAX_FILE_SIZE_MB * 1024 * 1024:
        return FILE_TOO_LARGE
    if images_only and not upload.file_type.startswith("image/"):
        return ONLY_IMAGES
    return None


def accept_upload(
    store: JobStore,
    scheduler: JobScheduler,
    payload: Any,
    images_only: bool = IMAGES_ONLY,
    simulation: Optional[Simulation] = None,
) -> Job:
    """
    Validate *payload*, create a job and schedule its pipeline.

    Raises UploadRejected on a validation failure and UploadFailed on any
    other fault, including a body that does not parse as an UploadRequest.
    Must be called from within a running event loop.
    """
    rejection: Optional[str] = None
    job: Optional[Job] = None

    with start_span("upload.receive", "Receive upload", {"validation.passed": True}) as span:
        try:
            upload = UploadRequest.model_validate(payload)
            span.set_attribute("file.name", upload.file_name)
            span.set_attribute("file.size_bytes", upload.file_size)
            span.set_attribute("file.mime_type", upload.file_type)

            rejection = validate_upload(upload, images_only)
            if rejection:
                span.set_attribute("validation.passed", False)
                span.set_attribute("validation.error", rejection)
            else:
                job = create_job(store, upload.file_name, upload.file_type, upload.file_size)
                span.set_attribute("job.id", job.id)
                try:
                    scheduler.submit(process_media(store, job, simulation), name=f"process-{job.id}")
                except Exception:
                    # Never scheduled, so nothing would ever finalize it
                    store.discard(job.id)
                    raise
                logger.info("Received upload for %s (%.2fMB)", upload.file_name, upload.file_size / 1024 / 1024)

        except Exception as exc:
            logger.exception("Failed to receive upload")
            span.set_attribute("validation.passed", False)
            span.set_attribute("error.message", str(exc))
            capture_exception(exc)
            raise UploadFailed(str(exc)) from exc

    if rejection:
        logger.info("Rejected upload: %s", rejection)
        raise UploadRejected(rejection)
    return job
