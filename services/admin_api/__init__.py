"""Transcription Pipeline - Admin API service.

FastAPI service for enqueueing jobs and operating the transcription queue.
"""

__all__: list[str] = []
