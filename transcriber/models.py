"""Transcription Pipeline - SQLAlchemy ORM models.

Tables:
1. queued_jobs     - durable job queue (one row per enqueued job)
2. queue_settings  - durable queue-wide flags (pause)
3. transcriptions  - status store read by clients polling a transcription
4. notifications   - in-app notification sink
"""

from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime (SQLite drops tzinfo on read)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class QueuedJob(Base):
    """A transcription job held by the queue.

    State machine: waiting -> active -> (completed | failed | delayed)
    delayed -> waiting once available_at passes.

    The autoincrement id doubles as the enqueue sequence: within a priority
    band, lower id is leased first.
    """

    __tablename__ = "queued_jobs"

    # Primary key / FIFO sequence
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Public job identifier
    job_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)

    # Job payload (immutable after enqueue)
    transcription_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    audio_reference: Mapped[str] = mapped_column(Text, nullable=False)
    audio_format: Mapped[str] = mapped_column(String(16), nullable=False)
    duration_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    audio_file_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Scheduling
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False, default="waiting")
    available_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Attempts
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    stalled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Lease
    lock_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lock_owner: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lock_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Outcome
    result_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    failed_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_queued_jobs_state_priority", "state", "priority", "id"),
        Index("ix_queued_jobs_lock_expires_at", "lock_expires_at"),
    )


class QueueSetting(Base):
    """Queue-wide key/value flag, shared by every process using the database."""

    __tablename__ = "queue_settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )


class Transcription(Base):
    """Status record for a transcription, polled by clients.

    Status: pending -> processing -> (completed | failed)
    """

    __tablename__ = "transcriptions"

    transcription_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)

    transcript_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    segments: Mapped[list | None] = mapped_column(JSON, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    provider: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Notification(Base):
    """A user notification about a finished transcription."""

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    transcription_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
