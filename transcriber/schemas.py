"""Transcription Pipeline - Pydantic models.

Job payloads, results and API request/response bodies. The JSON Schema
contract for TranscriptionJobResult lives in specs/transcription_result.schema.json.
"""

from datetime import datetime  # noqa: I001
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AudioFormat(StrEnum):
    """Audio container/codec formats accepted by the pipeline."""

    MP3 = "mp3"
    WAV = "wav"
    M4A = "m4a"
    OPUS = "opus"
    OGG = "ogg"
    WEBM = "webm"


class JobState(StrEnum):
    """Queue-side lifecycle of a job."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


class TranscriptionStatus(StrEnum):
    """Status-store lifecycle of a transcription."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# --- Job Payload ---


class TranscriptionJob(BaseModel):
    """Immutable job payload submitted by the producer."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    transcription_id: str = Field(..., min_length=1, description="Unique transcription ID")
    user_id: str = Field(..., min_length=1, description="Owner of the transcription")
    audio_reference: str = Field(
        ..., min_length=1, description="Opaque audio locator (URL or local path)"
    )
    audio_format: AudioFormat = Field(..., description="Audio format")
    duration_seconds: float = Field(..., ge=0, description="Audio duration in seconds")
    audio_file_id: str | None = Field(
        default=None, description="Storage object key, carried for logging"
    )


# --- Transcript ---


class TranscriptSegment(BaseModel):
    """A contiguous, time-bounded slice of transcript text."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    start_time: float = Field(..., ge=0, description="Start in seconds")
    end_time: float = Field(..., ge=0, description="End in seconds")
    text: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0, le=1)
    speaker: str | None = Field(default=None, description="Speaker label when diarized")

    @model_validator(mode="after")
    def _end_not_before_start(self) -> "TranscriptSegment":
        if self.end_time < self.start_time:
            raise ValueError(
                f"end_time ({self.end_time}) must be >= start_time ({self.start_time})"
            )
        return self


class AsrTranscription(BaseModel):
    """Post-processed ASR output for one job."""

    model_config = ConfigDict(extra="forbid")

    text: str
    segments: list[TranscriptSegment] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0, le=1)
    duration: float = Field(default=0.0, ge=0)
    language: str
    provider: str


class TranscriptionJobResult(BaseModel):
    """Outcome of processing one leased job, returned for observability."""

    model_config = ConfigDict(extra="forbid")

    transcription_id: str
    status: Literal["completed", "failed"]
    text: str | None = None
    segments: list[TranscriptSegment] | None = None
    confidence: float | None = None
    error_message: str | None = None
    processed_at: datetime
    processing_time_ms: int = Field(..., ge=0)


# --- Queue Views ---


class QueueStats(BaseModel):
    """Job counts per queue state."""

    model_config = ConfigDict(extra="forbid")

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0


class JobStatusResponse(BaseModel):
    """Queue-side view of a single job."""

    model_config = ConfigDict(extra="forbid")

    job_id: str
    transcription_id: str
    state: JobState
    priority: int
    attempts_made: int
    max_attempts: int
    result: dict[str, Any] | None = None
    failed_reason: str | None = None
    created_at: datetime
    processed_at: datetime | None = None
    finished_at: datetime | None = None


# --- Notifications ---


class NotificationPayload(BaseModel):
    """Notification delivered to a user when a transcription finishes."""

    model_config = ConfigDict(extra="forbid")

    user_id: str
    transcription_id: str
    type: Literal["completed", "failed"]
    title: str
    message: str
    timestamp: datetime
    data: dict[str, Any] = Field(default_factory=dict)


# --- API Responses ---


class EnqueueResponse(BaseModel):
    """Response for a successful enqueue."""

    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="queued")
    job_id: str
    priority: int


class QueueControlResponse(BaseModel):
    """Response for pause/resume."""

    model_config = ConfigDict(extra="forbid")

    paused: bool


class RemoveJobResponse(BaseModel):
    """Response for job removal."""

    model_config = ConfigDict(extra="forbid")

    job_id: str
    removed: bool


class ErrorResponse(BaseModel):
    """Response for failed API operations."""

    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="error")
    error_code: str
    error_message: str


__all__ = [
    "AudioFormat",
    "JobState",
    "TranscriptionStatus",
    "TranscriptionJob",
    "TranscriptSegment",
    "AsrTranscription",
    "TranscriptionJobResult",
    "QueueStats",
    "JobStatusResponse",
    "NotificationPayload",
    "EnqueueResponse",
    "QueueControlResponse",
    "RemoveJobResponse",
    "ErrorResponse",
]
