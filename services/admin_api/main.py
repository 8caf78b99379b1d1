"""Transcription Pipeline - Admin API FastAPI application.

Operational HTTP surface over the durable queue: enqueue, job status, removal,
queue stats, pause/resume and provider info. Workers run separately
(services.worker_transcription.run) against the same database.

Run with:
    uvicorn services.admin_api.main:app --reload  # dev server only
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse

from transcriber.asr import provider_info
from transcriber.config import ASR_PROVIDER
from transcriber.db import init_db
from transcriber.queue import JobQueue
from transcriber.schemas import (
    EnqueueResponse,
    ErrorResponse,
    JobStatusResponse,
    QueueControlResponse,
    QueueStats,
    RemoveJobResponse,
    TranscriptionJob,
)
from transcriber.status import SqlStatusStore

logger = logging.getLogger(__name__)

JOB_NOT_FOUND = "JOB_NOT_FOUND"
ENQUEUE_FAILED = "ENQUEUE_FAILED"

# --- Database Setup ---

# Module-level session factory (initialized on startup)
_session_factory = None


def get_session_factory():
    """Get the session factory.

    Raises:
        RuntimeError: If session factory not initialized (app lifespan not invoked).
    """
    if _session_factory is None:
        raise RuntimeError("Session factory not initialized. App lifespan not invoked?")
    return _session_factory


def get_queue() -> JobQueue:
    """Dependency that provides the job queue."""
    return JobQueue(get_session_factory())


def get_status_store() -> SqlStatusStore:
    """Dependency that provides the transcription status store."""
    return SqlStatusStore(get_session_factory())


# --- Lifespan ---


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the database on startup unless a test already did."""
    global _session_factory
    if _session_factory is None:
        _, _session_factory = init_db()
    yield


# --- FastAPI App ---


app = FastAPI(
    title="Transcription Pipeline - Admin API",
    description="Enqueue transcription jobs and operate the queue.",
    version="0.1.0",
    lifespan=lifespan,
)


# --- Error Handling ---


def make_error_response(status_code: int, error_code: str, error_message: str) -> JSONResponse:
    """Create a JSON error response."""
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error_code=error_code, error_message=error_message).model_dump(),
    )


def _job_not_found(job_id: str) -> JSONResponse:
    return make_error_response(404, JOB_NOT_FOUND, f"Job not found: {job_id}")


# --- Endpoints ---


@app.post(
    "/v1/jobs",
    response_model=EnqueueResponse,
    status_code=201,
    responses={500: {"model": ErrorResponse, "description": "Enqueue failed"}},
    summary="Enqueue a transcription job",
)
def enqueue_job(
    job: TranscriptionJob,
    queue: Annotated[JobQueue, Depends(get_queue)],
    store: Annotated[SqlStatusStore, Depends(get_status_store)],
):
    """Enqueue a job and mark its transcription 'pending'."""
    try:
        store.create_pending(job.transcription_id, job.user_id)
        job_id = queue.enqueue(job)
        status = queue.get_job_status(job_id)
    except Exception:
        logger.exception("Unexpected error enqueueing transcription %s", job.transcription_id)
        return make_error_response(500, ENQUEUE_FAILED, "An unexpected error occurred")

    return EnqueueResponse(job_id=job_id, priority=status.priority)


@app.get(
    "/v1/jobs/{job_id}",
    response_model=JobStatusResponse,
    responses={404: {"model": ErrorResponse, "description": "Job not found"}},
    summary="Get queue status of a job",
)
def get_job(job_id: str, queue: Annotated[JobQueue, Depends(get_queue)]):
    status = queue.get_job_status(job_id)
    if status is None:
        return _job_not_found(job_id)
    return status


@app.delete(
    "/v1/jobs/{job_id}",
    response_model=RemoveJobResponse,
    responses={404: {"model": ErrorResponse, "description": "Job not found"}},
    summary="Remove a job in any state",
)
def remove_job(job_id: str, queue: Annotated[JobQueue, Depends(get_queue)]):
    """Remove a job. An active job keeps running but its result is rejected."""
    if not queue.remove(job_id):
        return _job_not_found(job_id)
    return RemoveJobResponse(job_id=job_id, removed=True)


@app.get("/v1/queue/stats", response_model=QueueStats, summary="Job counts per state")
def queue_stats(queue: Annotated[JobQueue, Depends(get_queue)]):
    return queue.stats()


@app.post("/v1/queue/pause", response_model=QueueControlResponse, summary="Pause leasing")
def pause_queue(queue: Annotated[JobQueue, Depends(get_queue)]):
    queue.pause()
    return QueueControlResponse(paused=True)


@app.post("/v1/queue/resume", response_model=QueueControlResponse, summary="Resume leasing")
def resume_queue(queue: Annotated[JobQueue, Depends(get_queue)]):
    queue.resume()
    return QueueControlResponse(paused=False)


@app.get("/v1/provider", summary="ASR provider capabilities")
def get_provider_info():
    return provider_info(ASR_PROVIDER)


@app.get("/health", summary="Health check")
def health_check():
    """Simple health check endpoint."""
    return {"status": "ok"}


# --- For testing: allow overriding session factory ---


def override_session_factory(factory):
    """Override the session factory for testing."""
    global _session_factory
    _session_factory = factory
