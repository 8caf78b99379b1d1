"""Transcription Pipeline - Error taxonomy.

Every failure carries a stable error code (for logs and the queue's
failed_reason) and a short user-facing message (for the status store).
Retry counts and stack traces never reach the user-facing message.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    """Error codes for the transcription pipeline."""

    PROVIDER_ERROR = "PROVIDER_ERROR"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    JOB_STALLED = "JOB_STALLED"
    WORKER_ERROR = "WORKER_ERROR"


class PipelineError(Exception):
    """Base exception for pipeline errors."""

    retryable = True
    default_user_message = "Transcription failed"

    def __init__(self, error_code: str, message: str, user_message: str | None = None):
        self.error_code = error_code
        self.message = message
        self.user_message = user_message or self.default_user_message
        super().__init__(f"{error_code}: {message}")


class TransientProviderError(PipelineError):
    """The ASR call failed (network, quota, rate limit). Retried with backoff."""

    default_user_message = "The speech recognition service is temporarily unavailable"

    def __init__(self, reason: str):
        super().__init__(ErrorCode.PROVIDER_ERROR, f"ASR provider failed: {reason}")


class DownloadError(PipelineError):
    """Timeout or transport failure fetching the audio."""

    default_user_message = "Could not download the audio file"

    def __init__(self, reference: str, reason: str):
        self.reference = reference
        super().__init__(ErrorCode.DOWNLOAD_FAILED, f"Download failed for {reference}: {reason}")


class ValidationError(PipelineError):
    """Input the pipeline cannot process, e.g. an unsupported audio format. Never retried."""

    retryable = False
    default_user_message = "The audio file format is not supported"

    def __init__(self, reason: str):
        super().__init__(ErrorCode.VALIDATION_FAILED, reason)


class StalledJobError(PipelineError):
    """A lease expired without the job being completed."""

    default_user_message = "Transcription was interrupted and could not be completed"

    def __init__(self, job_id: str, stalled_count: int):
        self.job_id = job_id
        self.stalled_count = stalled_count
        super().__init__(
            ErrorCode.JOB_STALLED,
            f"Job {job_id} stalled ({stalled_count} times) without completing",
        )
