"""Transcription Pipeline - Status and notification driver.

Drives the transcription status state machine for one job attempt:

    pending -> processing -> (completed | failed)

Rules enforced by StatusTransition:
- 'processing' is written before any terminal write
- exactly one terminal write per attempt
- notification happens after the terminal write, is best-effort, and its
  outcome never changes the job outcome

Breaking a rule raises RuntimeError: it is a programming error in the caller,
not a job failure.

Collaborators are capabilities (StatusStore, Notifier); SqlStatusStore and
SqlNotifier are the SQLite-backed defaults.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy import select

from transcriber.models import Notification, Transcription, as_utc, utc_now
from transcriber.schemas import (
    AsrTranscription,
    NotificationPayload,
    TranscriptionJob,
    TranscriptionStatus,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

# Characters of transcript text included in the completion notification
TEXT_PREVIEW_CHARS = 100

# Columns the pipeline may write on a transcription record
STATUS_FIELDS = frozenset(
    {
        "status",
        "transcript_text",
        "segments",
        "confidence",
        "provider",
        "error_message",
        "completed_at",
        "failed_at",
        "updated_at",
    }
)


class StatusStore(Protocol):
    """External store of transcription records."""

    def update_status(self, transcription_id: str, fields: dict[str, Any]) -> None: ...


class Notifier(Protocol):
    """External notification channel."""

    def create_notification(self, payload: NotificationPayload) -> None: ...


# --- SQLite-backed Collaborators ---


class SqlStatusStore:
    """Status store backed by the transcriptions table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create_pending(self, transcription_id: str, user_id: str | None = None) -> None:
        """Create (or reset) a transcription record in 'pending' state."""
        session = self._session_factory()
        try:
            record = session.get(Transcription, transcription_id)
            if record is None:
                record = Transcription(transcription_id=transcription_id)
                session.add(record)
            record.user_id = user_id or record.user_id
            record.status = TranscriptionStatus.PENDING
            record.error_message = None
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def update_status(self, transcription_id: str, fields: dict[str, Any]) -> None:
        unknown = set(fields) - STATUS_FIELDS
        if unknown:
            raise ValueError(f"Unknown transcription fields: {sorted(unknown)}")

        session = self._session_factory()
        try:
            record = session.get(Transcription, transcription_id)
            if record is None:
                # The producer normally creates the record; tolerate its absence
                record = Transcription(transcription_id=transcription_id)
                session.add(record)
            for key, value in fields.items():
                setattr(record, key, value)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get(self, transcription_id: str) -> dict[str, Any] | None:
        """Read a transcription record as a plain dict."""
        session = self._session_factory()
        try:
            record = session.get(Transcription, transcription_id)
            if record is None:
                return None
            return {
                "transcription_id": record.transcription_id,
                "user_id": record.user_id,
                "status": record.status,
                "transcript_text": record.transcript_text,
                "segments": record.segments,
                "confidence": record.confidence,
                "provider": record.provider,
                "error_message": record.error_message,
                "completed_at": as_utc(record.completed_at),
                "failed_at": as_utc(record.failed_at),
                "updated_at": as_utc(record.updated_at),
            }
        finally:
            session.close()


class SqlNotifier:
    """In-app notifications stored in the notifications table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create_notification(self, payload: NotificationPayload) -> None:
        session = self._session_factory()
        try:
            session.add(
                Notification(
                    user_id=payload.user_id,
                    transcription_id=payload.transcription_id,
                    type=payload.type,
                    title=payload.title,
                    message=payload.message,
                    data=payload.model_dump(mode="json")["data"],
                    created_at=payload.timestamp,
                )
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def list_for_user(self, user_id: str) -> list[NotificationPayload]:
        session = self._session_factory()
        try:
            rows = (
                session.execute(
                    select(Notification)
                    .where(Notification.user_id == user_id)
                    .order_by(Notification.id)
                )
                .scalars()
                .all()
            )
            return [
                NotificationPayload(
                    user_id=row.user_id,
                    transcription_id=row.transcription_id,
                    type=row.type,
                    title=row.title,
                    message=row.message,
                    timestamp=as_utc(row.created_at),
                    data=row.data or {},
                )
                for row in rows
            ]
        finally:
            session.close()


# --- Driver ---


class StatusTransition:
    """Status writes for a single attempt of a single job."""

    def __init__(self, driver: StatusDriver, transcription_id: str, user_id: str):
        self._driver = driver
        self.transcription_id = transcription_id
        self.user_id = user_id
        self.processing_written = False
        self.terminal_status: str | None = None

    def processing(self) -> None:
        """Write 'processing'. Must precede any provider call."""
        if self.processing_written:
            raise RuntimeError(
                f"processing already written for transcription {self.transcription_id}"
            )
        self._driver.store.update_status(
            self.transcription_id,
            {"status": TranscriptionStatus.PROCESSING, "updated_at": self._driver.now()},
        )
        self.processing_written = True
        logger.debug("Transcription %s -> processing", self.transcription_id)

    def _check_terminal_allowed(self) -> None:
        if not self.processing_written:
            raise RuntimeError(
                f"terminal status before processing for transcription {self.transcription_id}"
            )
        if self.terminal_status is not None:
            raise RuntimeError(
                f"transcription {self.transcription_id} already {self.terminal_status}"
            )

    def completed(self, transcription: AsrTranscription) -> None:
        """Write 'completed' with text, segments and confidence."""
        self._check_terminal_allowed()
        now = self._driver.now()
        self._driver.store.update_status(
            self.transcription_id,
            {
                "status": TranscriptionStatus.COMPLETED,
                "transcript_text": transcription.text,
                "segments": [s.model_dump(mode="json") for s in transcription.segments],
                "confidence": transcription.confidence,
                "provider": transcription.provider,
                "error_message": None,
                "completed_at": now,
                "updated_at": now,
            },
        )
        self.terminal_status = TranscriptionStatus.COMPLETED
        logger.debug("Transcription %s -> completed", self.transcription_id)

    def failed(self, error_message: str) -> None:
        """Write 'failed' with a short user-facing message."""
        self._check_terminal_allowed()
        if not error_message:
            raise ValueError("error_message must be non-empty")
        now = self._driver.now()
        self._driver.store.update_status(
            self.transcription_id,
            {
                "status": TranscriptionStatus.FAILED,
                "error_message": error_message,
                "failed_at": now,
                "updated_at": now,
            },
        )
        self.terminal_status = TranscriptionStatus.FAILED
        logger.debug("Transcription %s -> failed", self.transcription_id)

    def notify(
        self,
        transcription: AsrTranscription | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Notify the user of the terminal outcome (best-effort).

        Returns:
            True if the notifier accepted the notification.
        """
        if self.terminal_status is None:
            raise RuntimeError(
                f"notify before terminal status for transcription {self.transcription_id}"
            )
        return self._driver.notify(
            user_id=self.user_id,
            transcription_id=self.transcription_id,
            status=self.terminal_status,
            transcription=transcription,
            error_message=error_message,
        )


class StatusDriver:
    """Creates StatusTransitions and sends notifications.

    Args:
        store: Status store collaborator.
        notifier: Notification collaborator.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        store: StatusStore,
        notifier: Notifier,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.notifier = notifier
        self.now = clock

    def begin(self, job: TranscriptionJob) -> StatusTransition:
        """Start the status sequence for one attempt of job."""
        return StatusTransition(self, job.transcription_id, job.user_id)

    def build_notification(
        self,
        user_id: str,
        transcription_id: str,
        status: str,
        transcription: AsrTranscription | None = None,
        error_message: str | None = None,
    ) -> NotificationPayload:
        data: dict[str, Any] = {"transcription_id": transcription_id, "status": str(status)}

        if status == TranscriptionStatus.COMPLETED:
            confidence = transcription.confidence if transcription is not None else 0.0
            data["confidence"] = confidence
            data["text_preview"] = (
                transcription.text[:TEXT_PREVIEW_CHARS] if transcription is not None else ""
            )
            return NotificationPayload(
                user_id=user_id,
                transcription_id=transcription_id,
                type="completed",
                title="Transcription completed",
                message=(
                    "Your transcription was processed successfully. "
                    f"Confidence: {confidence * 100:.0f}%"
                ),
                timestamp=self.now(),
                data=data,
            )

        return NotificationPayload(
            user_id=user_id,
            transcription_id=transcription_id,
            type="failed",
            title="Transcription failed",
            message=f"We could not process your transcription: {error_message or 'unknown error'}",
            timestamp=self.now(),
            data=data,
        )

    def notify(
        self,
        user_id: str,
        transcription_id: str,
        status: str,
        transcription: AsrTranscription | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Send a notification; failures are logged and never raised."""
        try:
            payload = self.build_notification(
                user_id, transcription_id, status, transcription, error_message
            )
            self.notifier.create_notification(payload)
        except Exception:
            # Notification is best-effort: the transcription outcome is already stored
            logger.exception(
                "Failed to notify user %s about transcription %s", user_id, transcription_id
            )
            return False

        logger.info(
            "Notified user %s: transcription %s %s", user_id, transcription_id, status
        )
        return True

    def fail_abandoned(self, transcription_id: str, user_id: str, error_message: str) -> None:
        """Fail a transcription whose worker died mid-attempt.

        Used by the stall sweep when a job is failed for good. The dead worker
        may have died before writing 'processing' (right after the lease), so
        the sequence is replayed in full: 'processing' is rewritten before the
        terminal 'failed'.
        """
        transition = StatusTransition(self, transcription_id, user_id)
        transition.processing()
        transition.failed(error_message)
        transition.notify(error_message=error_message)
