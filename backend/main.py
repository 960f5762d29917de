"""
SnapTrace FastAPI backend.

Endpoints:
  POST /api/upload          : validate upload metadata, get back a jobId immediately
  GET  /api/status/{job_id} : poll status: pending | processing | completed | failed
  GET  /api/health          : liveness probe
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load .env before the modules below read their configuration
load_dotenv()

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from instrument import capture_exception, init_sentry
from jobs import JobStore, get_status, to_iso, utcnow
from logging_config import CorrelationIdMiddleware, setup_logging
from uploads import IMAGES_ONLY, JobScheduler, UploadFailed, UploadRejected, accept_upload

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
APP_NAME = "SnapTrace Backend"
PORT: int = int(os.getenv("PORT", "3001"))
FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:5173")
_DEFAULT_ORIGINS = [
    "http://localhost:5173",  # Vite default port
    "http://localhost:5174",  # Vite fallback port
    "http://127.0.0.1:5173",
    "http://127.0.0.1:5174",
]
_raw_origins = os.getenv("ALLOWED_ORIGINS", "")
ALLOWED_ORIGINS = (
    [o.strip() for o in _raw_origins.split(",") if o.strip()] if _raw_origins else list(_DEFAULT_ORIGINS)
)
if FRONTEND_URL and FRONTEND_URL not in ALLOWED_ORIGINS:
    ALLOWED_ORIGINS.append(FRONTEND_URL)

UPLOAD_FAILED = "Failed to process upload"

setup_logging()
init_sentry()
logger = logging.getLogger("snaptrace.main")


# ---------------------------------------------------------------------------
# App lifespan: own the job store and the background scheduler
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.jobs = JobStore()
    app.state.scheduler = JobScheduler()
    app.state.simulation = None  # default Simulation() per job
    app.state.images_only = IMAGES_ONLY
    logger.info("%s ready on port %d (images_only=%s)", APP_NAME, PORT, IMAGES_ONLY)

    yield  # application runs

    # No cancellation: every accepted job reaches a terminal state
    await app.state.scheduler.drain()


app = FastAPI(title="SnapTrace API", lifespan=lifespan)

app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "sentry-trace", "baggage"],
    expose_headers=["sentry-trace", "baggage"],
)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse({"error": "Internal server error"}, status_code=500)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.post("/api/upload")
async def upload(request: Request):
    """Accept an upload, start processing in the background, respond immediately."""
    try:
        payload = await request.json()
        job = accept_upload(
            request.app.state.jobs,
            request.app.state.scheduler,
            payload,
            images_only=request.app.state.images_only,
            simulation=request.app.state.simulation,
        )
    except UploadRejected as exc:
        return JSONResponse({"error": exc.reason}, status_code=400)
    except UploadFailed:
        return JSONResponse({"error": UPLOAD_FAILED}, status_code=500)
    except ValueError as exc:
        # Body is not valid JSON
        logger.warning("Malformed upload body: %s", exc)
        capture_exception(exc)
        return JSONResponse({"error": UPLOAD_FAILED}, status_code=500)

    return {
        "jobId": job.id,
        "status": "accepted",
        "message": "Upload received and processing started",
    }


@app.get("/api/status/{job_id}")
async def job_status(job_id: str, request: Request):
    """Poll the status of a job."""
    job = get_status(request.app.state.jobs, job_id)
    if job is None:
        return JSONResponse({"error": "Job not found"}, status_code=404)
    return job.to_status()


@app.get("/api/health")
async def health():
    return {
        "app": APP_NAME,
        "status": "healthy",
        "timestamp": to_iso(utcnow()),
    }


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=PORT)
