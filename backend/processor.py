"""
Simulated media processing pipeline.

Key public names:
  Simulation                     : source of delays and random outcomes (swap it in tests)
  process_media(store, job, sim) : pending -> processing -> completed | failed
  size_bucket(file_size)         : small | medium | large, for span attributes
"""

import asyncio
import logging
import math
import os
import random
import time
from typing import List, Optional, Tuple

from instrument import capture_exception, start_span
from jobs import Job, JobResult, JobStatus, JobStore, utcnow

logger = logging.getLogger("snaptrace.processor")

# ---------------------------------------------------------------------------
# Configuration: delay ranges in milliseconds
# ---------------------------------------------------------------------------
OPTIMIZE_DELAY_MS: Tuple[int, int] = (
    int(os.getenv("OPTIMIZE_DELAY_MIN_MS", "500")),
    int(os.getenv("OPTIMIZE_DELAY_MAX_MS", "1500")),
)
THUMBNAIL_DELAY_MS: Tuple[int, int] = (
    int(os.getenv("THUMBNAIL_DELAY_MIN_MS", "300")),
    int(os.getenv("THUMBNAIL_DELAY_MAX_MS", "800")),
)

OPTIMIZATION_LEVELS = ("low", "medium", "high")
SIZE_REDUCTION_RANGE: Tuple[float, float] = (0.2, 0.5)
THUMBNAIL_FAILURE_RATE: float = 0.05

_MB = 1024 * 1024


class Simulation:
    """Timing and outcome source for the simulated steps."""

    def __init__(
        self,
        optimize_delay_ms: Tuple[int, int] = OPTIMIZE_DELAY_MS,
        thumbnail_delay_ms: Tuple[int, int] = THUMBNAIL_DELAY_MS,
        rng: Optional[random.Random] = None,
    ) -> None:
        for lo, hi in (optimize_delay_ms, thumbnail_delay_ms):
            if lo < 0 or lo > hi:
                raise ValueError(f"Invalid delay range: [{lo}, {hi}]")
        self.optimize_delay_ms = optimize_delay_ms
        self.thumbnail_delay_ms = thumbnail_delay_ms
        self.rng = rng or random.Random()

    def optimize_delay(self) -> float:
        """Seconds to spend in the optimize step."""
        return self.rng.uniform(*self.optimize_delay_ms) / 1000

    def thumbnail_delay(self) -> float:
        return self.rng.uniform(*self.thumbnail_delay_ms) / 1000

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def optimization_level(self) -> str:
        return self.rng.choice(OPTIMIZATION_LEVELS)

    def reduction_ratio(self) -> float:
        return self.rng.uniform(*SIZE_REDUCTION_RANGE)

    def thumbnail_created(self) -> bool:
        return self.rng.random() >= THUMBNAIL_FAILURE_RATE


def size_bucket(file_size: float) -> str:
    if file_size > 10 * _MB:
        return "large"
    if file_size > _MB:
        return "medium"
    return "small"


async def process_media(store: JobStore, job: Job, simulation: Optional[Simulation] = None) -> Job:
    """
    Run the simulated pipeline for *job* and return its terminal record.

    The job is re-stored as ``processing`` before any work starts. The
    terminal record (result and completion time together) is stored on
    every exit path. Faults are recorded on the job, never raised; a
    cancelled run is stored as failed before the cancellation propagates.
    """
    simulation = simulation or Simulation()
    logger.info("Starting processing for %s (job %s)", job.file_name, job.id)

    job = job.model_copy(update={"status": JobStatus.PROCESSING})
    store.put(job)
    final = job

    try:
        attributes = {
            "media.size_bytes": job.file_size,
            "media.mime_type": job.file_type,
            "media.size_bucket": size_bucket(job.file_size),
            "job.id": job.id,
        }
        with start_span("media.process", "Process media", attributes) as span:
            try:
                started = time.perf_counter()
                operations: List[str] = []

                if job.file_type.startswith("image/"):
                    logger.info("Optimizing image...")
                    await simulation.sleep(simulation.optimize_delay())
                    operations.append("optimize")

                    logger.info("Generating thumbnail...")
                    await simulation.sleep(simulation.thumbnail_delay())
                    operations.append("thumbnail")

                optimization_level = simulation.optimization_level()
                size_saved = math.floor(job.file_size * simulation.reduction_ratio())
                thumbnail_created = simulation.thumbnail_created()

                span.set_attribute("processing.operations", operations)
                span.set_attribute("processing.optimization_level", optimization_level)
                span.set_attribute("processing.thumbnail_created", thumbnail_created)
                span.set_attribute("processing.duration_ms", round((time.perf_counter() - started) * 1000))
                span.set_attribute("result.size_saved_bytes", size_saved)
                span.set_attribute("result.size_reduction_percent", round(size_saved / job.file_size * 100))
                span.set_attribute("result.status", "success")

                final = job.model_copy(
                    update={
                        "status": JobStatus.COMPLETED,
                        "completed_at": utcnow(),
                        "result": JobResult(
                            optimized=True,
                            thumbnail_created=thumbnail_created,
                            size_saved=size_saved,
                        ),
                    }
                )
                logger.info("Processing completed for %s (saved %.1fKB)", job.file_name, size_saved / 1024)

            except Exception as exc:
                final = _failed(job, exc)
                span.set_attribute("result.status", "failed")
                span.set_attribute("error.message", final.result.error)

    except Exception as exc:
        # The span could not be opened or closed
        if not final.status.is_terminal:
            final = _failed(job, exc)
        else:
            logger.warning("Tracing failed for job %s: %r", job.id, exc)

    finally:
        if not final.status.is_terminal:
            logger.warning("Processing interrupted for %s (job %s)", job.file_name, job.id)
            final = _terminal_failure(job, "Processing interrupted")
        store.put(final)

    return final


def _failed(job: Job, exc: Exception) -> Job:
    message = str(exc) or exc.__class__.__name__
    logger.error("Processing failed for %s: %s", job.file_name, message, exc_info=exc)
    capture_exception(exc)
    return _terminal_failure(job, message)


def _terminal_failure(job: Job, message: str) -> Job:
    return job.model_copy(
        update={
            "status": JobStatus.FAILED,
            "completed_at": utcnow(),
            "result": JobResult(optimized=False, thumbnail_created=False, error=message),
        }
    )
