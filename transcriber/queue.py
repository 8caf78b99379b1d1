"""Transcription Pipeline - Durable job queue.

SQLite-backed, priority-ordered, at-least-once queue with leases.

Leasing:
- lease() claims the lowest (priority, enqueue sequence) waiting job with a
  compare-and-set UPDATE ... WHERE state='waiting'. A worker that loses the race
  moves on to the next candidate, so at most one valid lease exists per job.
- Every lease gets a fresh lock_token. complete/fail/renew_lock must present
  it; a stale token (job re-leased after a stall, or removed) is rejected.

Retry Semantics:
----------------
attempts_made counts finished attempts. On fail() or a stall:
  - attempts_made += 1
  - attempts_made < max_attempts: job goes to 'delayed' for
    BACKOFF_BASE_SECONDS * 2 ** (attempts_made - 1) (2s, 4s, ...), then back to
    'waiting' on the next lease() after the delay passes
  - otherwise: 'failed'
Non-retryable failures go straight to 'failed'. A job that stalls more than
max_stalled_count times is failed regardless of remaining attempts.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, update

from transcriber.config import (
    BACKOFF_BASE_SECONDS,
    COMPLETED_RETENTION_SECONDS,
    FAILED_RETENTION_SECONDS,
    LOCK_DURATION_SECONDS,
    MAX_ATTEMPTS,
    MAX_STALLED_COUNT,
)
from transcriber.errors import StalledJobError
from transcriber.models import QueuedJob, QueueSetting, as_utc, utc_now
from transcriber.priority import calculate_priority
from transcriber.schemas import JobState, JobStatusResponse, QueueStats, TranscriptionJob

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

PAUSED_SETTING_KEY = "paused"

# How many waiting jobs lease() tries before giving up on a contended round
LEASE_CANDIDATE_BATCH = 10

STALLED_ACTION_REQUEUED = "requeued"
STALLED_ACTION_FAILED = "failed"


# --- Result Types ---


@dataclass(frozen=True)
class QueuedJobRecord:
    """Detached snapshot of a queued job, handed to the leasing worker."""

    job_id: str
    job: TranscriptionJob
    priority: int
    state: str
    attempts_made: int
    max_attempts: int
    stalled_count: int
    lock_token: str | None
    lock_owner: str | None
    lock_expires_at: datetime | None


@dataclass(frozen=True)
class StalledJob:
    """Outcome of the stall sweep for one job."""

    job_id: str
    transcription_id: str
    user_id: str
    action: str
    attempts_made: int
    stalled_count: int
    delay_seconds: float | None = None
    error: StalledJobError | None = None


def _to_record(row: QueuedJob) -> QueuedJobRecord:
    return QueuedJobRecord(
        job_id=row.job_id,
        job=TranscriptionJob(
            transcription_id=row.transcription_id,
            user_id=row.user_id,
            audio_reference=row.audio_reference,
            audio_format=row.audio_format,
            duration_seconds=row.duration_seconds,
            audio_file_id=row.audio_file_id,
        ),
        priority=row.priority,
        state=row.state,
        attempts_made=row.attempts_made,
        max_attempts=row.max_attempts,
        stalled_count=row.stalled_count,
        lock_token=row.lock_token,
        lock_owner=row.lock_owner,
        lock_expires_at=as_utc(row.lock_expires_at),
    )


def _released_lock() -> dict[str, Any]:
    return {"lock_token": None, "lock_owner": None, "lock_expires_at": None}


class JobQueue:
    """Durable priority queue for transcription jobs.

    Every public method runs in its own short transaction, so one JobQueue can
    be shared by any number of threads; separate processes coordinate through
    the database.

    Args:
        session_factory: SQLAlchemy sessionmaker bound to the queue database.
        max_attempts: Total attempts per job.
        backoff_base_seconds: First retry delay; doubles per attempt.
        max_stalled_count: Stalls tolerated before a job is failed.
        clock: Returns the current UTC time (injectable for tests).
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_base_seconds: float = BACKOFF_BASE_SECONDS,
        max_stalled_count: int = MAX_STALLED_COUNT,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.max_stalled_count = max_stalled_count
        self._clock = clock

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def backoff_delay(self, attempts_made: int) -> float:
        """Delay before the retry that follows attempt number attempts_made."""
        return self.backoff_base_seconds * (2 ** max(attempts_made - 1, 0))

    # --- Producers ---

    def _new_row(self, job: TranscriptionJob | dict) -> QueuedJob:
        if not isinstance(job, TranscriptionJob):
            job = TranscriptionJob.model_validate(job)
        return QueuedJob(
            job_id=uuid.uuid4().hex,
            transcription_id=job.transcription_id,
            user_id=job.user_id,
            audio_reference=job.audio_reference,
            audio_format=str(job.audio_format),
            duration_seconds=job.duration_seconds,
            audio_file_id=job.audio_file_id,
            priority=calculate_priority(job.duration_seconds),
            state=JobState.WAITING,
            attempts_made=0,
            max_attempts=self.max_attempts,
            stalled_count=0,
            created_at=self._clock(),
        )

    def enqueue(self, job: TranscriptionJob | dict) -> str:
        """Add a job in 'waiting' state.

        Args:
            job: The job payload (a dict is validated into TranscriptionJob).

        Returns:
            The new job ID.
        """
        row = self._new_row(job)
        with self._session() as session:
            session.add(row)

        logger.info(
            "Enqueued transcription job: job_id=%s, transcription_id=%s, priority=%d",
            row.job_id,
            row.transcription_id,
            row.priority,
        )
        return row.job_id

    def enqueue_many(self, jobs: Iterable[TranscriptionJob | dict]) -> list[str]:
        """Add several jobs in one transaction, preserving their order.

        Returns:
            Job IDs in input order.
        """
        rows = [self._new_row(job) for job in jobs]
        with self._session() as session:
            for row in rows:
                session.add(row)
                # Flush one by one so enqueue sequence follows input order
                session.flush()

        logger.info("Enqueued %d transcription jobs", len(rows))
        return [row.job_id for row in rows]

    # --- Workers ---

    def _promote_delayed(self, now: datetime) -> int:
        with self._session() as session:
            promoted = session.execute(
                update(QueuedJob)
                .where(QueuedJob.state == JobState.DELAYED, QueuedJob.available_at <= now)
                .values(state=JobState.WAITING, available_at=None)
                .execution_options(synchronize_session=False)
            ).rowcount
        if promoted:
            logger.debug("Promoted %d delayed jobs to waiting", promoted)
        return promoted

    def lease(
        self,
        worker_id: str,
        lock_duration: float = LOCK_DURATION_SECONDS,
    ) -> QueuedJobRecord | None:
        """Claim the next eligible job.

        Args:
            worker_id: Identifier of the leasing worker (stored as lock_owner).
            lock_duration: Seconds until the lease expires unless renewed.

        Returns:
            Snapshot of the leased job with its lock_token, or None when the
            queue is paused or has nothing eligible.
        """
        if self.is_paused():
            return None

        now = self._clock()
        self._promote_delayed(now)

        with self._session() as session:
            candidate_ids = (
                session.execute(
                    select(QueuedJob.id)
                    .where(QueuedJob.state == JobState.WAITING)
                    .order_by(QueuedJob.priority, QueuedJob.id)
                    .limit(LEASE_CANDIDATE_BATCH)
                )
                .scalars()
                .all()
            )

            for row_id in candidate_ids:
                lock_token = uuid.uuid4().hex
                claimed = session.execute(
                    update(QueuedJob)
                    .where(QueuedJob.id == row_id, QueuedJob.state == JobState.WAITING)
                    .values(
                        state=JobState.ACTIVE,
                        lock_token=lock_token,
                        lock_owner=worker_id,
                        lock_expires_at=now + timedelta(seconds=lock_duration),
                        processed_at=now,
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount
                if claimed != 1:
                    # Another worker claimed it between select and update
                    continue

                row = session.execute(
                    select(QueuedJob)
                    .where(QueuedJob.id == row_id)
                    .execution_options(populate_existing=True)
                ).scalar_one()
                record = _to_record(row)
                logger.info(
                    "Leased job: job_id=%s, worker_id=%s, priority=%d, attempt=%d/%d",
                    record.job_id,
                    worker_id,
                    record.priority,
                    record.attempts_made + 1,
                    record.max_attempts,
                )
                return record

        return None

    def renew_lock(self, job_id: str, lock_token: str, extension: float) -> bool:
        """Extend a held lease.

        Returns:
            True if extended; False if the token is stale (lease lost).
        """
        now = self._clock()
        with self._session() as session:
            renewed = session.execute(
                update(QueuedJob)
                .where(
                    QueuedJob.job_id == job_id,
                    QueuedJob.state == JobState.ACTIVE,
                    QueuedJob.lock_token == lock_token,
                )
                .values(lock_expires_at=now + timedelta(seconds=extension))
                .execution_options(synchronize_session=False)
            ).rowcount

        if renewed != 1:
            logger.debug("Lock renewal rejected (lease lost): job_id=%s", job_id)
            return False
        return True

    def complete(self, job_id: str, lock_token: str, result: dict[str, Any] | None = None) -> bool:
        """Mark a leased job completed.

        Args:
            job_id: The job ID.
            lock_token: Token returned by lease().
            result: JSON-serializable result stored with the job.

        Returns:
            True on success; False if the token does not match (the job was
            re-leased, failed by the stall sweep, or removed).
        """
        now = self._clock()
        with self._session() as session:
            completed = session.execute(
                update(QueuedJob)
                .where(
                    QueuedJob.job_id == job_id,
                    QueuedJob.state == JobState.ACTIVE,
                    QueuedJob.lock_token == lock_token,
                )
                .values(
                    state=JobState.COMPLETED,
                    result_json=result,
                    failed_reason=None,
                    finished_at=now,
                    **_released_lock(),
                )
                .execution_options(synchronize_session=False)
            ).rowcount

        if completed != 1:
            logger.warning("Complete rejected (stale lock token): job_id=%s", job_id)
            return False

        logger.info("Job completed: job_id=%s", job_id)
        return True

    def fail(self, job_id: str, lock_token: str, error: str, retryable: bool = True) -> bool:
        """Record a failed attempt of a leased job.

        Args:
            job_id: The job ID.
            lock_token: Token returned by lease().
            error: Failure reason stored as failed_reason.
            retryable: False sends the job straight to 'failed'.

        Returns:
            True if recorded; False if the token does not match.
        """
        now = self._clock()
        with self._session() as session:
            row = session.execute(
                select(QueuedJob).where(
                    QueuedJob.job_id == job_id,
                    QueuedJob.state == JobState.ACTIVE,
                    QueuedJob.lock_token == lock_token,
                )
            ).scalar_one_or_none()

            if row is None:
                logger.warning("Fail rejected (stale lock token): job_id=%s", job_id)
                return False

            attempts_made = row.attempts_made + 1
            delay_seconds = None
            if retryable and attempts_made < row.max_attempts:
                delay_seconds = self.backoff_delay(attempts_made)
                values = {
                    "state": JobState.DELAYED,
                    "available_at": now + timedelta(seconds=delay_seconds),
                }
            else:
                values = {"state": JobState.FAILED, "finished_at": now}

            recorded = session.execute(
                update(QueuedJob)
                .where(
                    QueuedJob.id == row.id,
                    QueuedJob.state == JobState.ACTIVE,
                    QueuedJob.lock_token == lock_token,
                )
                .values(
                    attempts_made=attempts_made,
                    failed_reason=error,
                    **values,
                    **_released_lock(),
                )
                .execution_options(synchronize_session=False)
            ).rowcount

        if recorded != 1:
            logger.warning("Fail rejected (lock lost during update): job_id=%s", job_id)
            return False

        if delay_seconds is not None:
            logger.info(
                "Job attempt failed, retry scheduled: job_id=%s, attempt=%d/%d, delay=%.1fs",
                job_id,
                attempts_made,
                self.max_attempts,
                delay_seconds,
            )
        else:
            logger.warning(
                "Job failed: job_id=%s, attempts=%d, retryable=%s, error=%s",
                job_id,
                attempts_made,
                retryable,
                error,
            )
        return True

    # --- Maintenance ---

    def requeue_stalled(self) -> list[StalledJob]:
        """Recover active jobs whose lease expired.

        Each stalled job consumes an attempt. It returns to the queue with
        backoff while attempts remain and it has stalled at most
        max_stalled_count times; otherwise it is failed.

        Returns:
            One StalledJob per job touched.
        """
        now = self._clock()
        outcomes: list[StalledJob] = []

        with self._session() as session:
            rows = (
                session.execute(
                    select(QueuedJob).where(
                        QueuedJob.state == JobState.ACTIVE,
                        QueuedJob.lock_expires_at < now,
                    )
                )
                .scalars()
                .all()
            )

            for row in rows:
                stalled_count = row.stalled_count + 1
                attempts_made = row.attempts_made + 1
                error = None
                delay_seconds = None

                if stalled_count > self.max_stalled_count or attempts_made >= row.max_attempts:
                    error = StalledJobError(row.job_id, stalled_count)
                    action = STALLED_ACTION_FAILED
                    values = {
                        "state": JobState.FAILED,
                        "failed_reason": str(error),
                        "finished_at": now,
                    }
                else:
                    action = STALLED_ACTION_REQUEUED
                    delay_seconds = self.backoff_delay(attempts_made)
                    values = {
                        "state": JobState.DELAYED,
                        "available_at": now + timedelta(seconds=delay_seconds),
                    }

                # Skip if the owner renewed or finished in the meantime
                swept = session.execute(
                    update(QueuedJob)
                    .where(
                        QueuedJob.id == row.id,
                        QueuedJob.state == JobState.ACTIVE,
                        QueuedJob.lock_token == row.lock_token,
                        QueuedJob.lock_expires_at < now,
                    )
                    .values(
                        stalled_count=stalled_count,
                        attempts_made=attempts_made,
                        **values,
                        **_released_lock(),
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount
                if swept != 1:
                    continue

                logger.warning(
                    "Stalled job %s: job_id=%s, lock_owner=%s, stalled=%d/%d, attempts=%d/%d",
                    action,
                    row.job_id,
                    row.lock_owner,
                    stalled_count,
                    self.max_stalled_count,
                    attempts_made,
                    row.max_attempts,
                )
                outcomes.append(
                    StalledJob(
                        job_id=row.job_id,
                        transcription_id=row.transcription_id,
                        user_id=row.user_id,
                        action=action,
                        attempts_made=attempts_made,
                        stalled_count=stalled_count,
                        delay_seconds=delay_seconds,
                        error=error,
                    )
                )

        return outcomes

    def clean(
        self,
        completed_age_seconds: float = COMPLETED_RETENTION_SECONDS,
        failed_age_seconds: float = FAILED_RETENTION_SECONDS,
    ) -> int:
        """Delete terminal jobs older than their retention window.

        Returns:
            Number of jobs deleted.
        """
        now = self._clock()
        with self._session() as session:
            removed = 0
            for state, age in (
                (JobState.COMPLETED, completed_age_seconds),
                (JobState.FAILED, failed_age_seconds),
            ):
                removed += session.execute(
                    delete(QueuedJob)
                    .where(
                        QueuedJob.state == state,
                        QueuedJob.finished_at < now - timedelta(seconds=age),
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount

        if removed:
            logger.info("Cleaned %d terminal jobs past retention", removed)
        return removed

    # --- Admin ---

    def stats(self) -> QueueStats:
        """Count jobs per state."""
        with self._session() as session:
            counts = dict(
                session.execute(
                    select(QueuedJob.state, func.count()).group_by(QueuedJob.state)
                ).all()
            )
        return QueueStats(**{state.value: counts.get(state.value, 0) for state in JobState})

    def _set_paused(self, paused: bool) -> None:
        with self._session() as session:
            session.merge(QueueSetting(key=PAUSED_SETTING_KEY, value="1" if paused else "0"))

    def pause(self) -> None:
        """Stop handing out leases. Active jobs keep running."""
        self._set_paused(True)
        logger.info("Transcription queue paused")

    def resume(self) -> None:
        """Resume handing out leases."""
        self._set_paused(False)
        logger.info("Transcription queue resumed")

    def is_paused(self) -> bool:
        with self._session() as session:
            setting = session.get(QueueSetting, PAUSED_SETTING_KEY)
            return setting is not None and setting.value == "1"

    def remove(self, job_id: str) -> bool:
        """Delete a job in any state.

        Removing an active job invalidates its lock token: the original
        worker's later complete/fail is rejected. In-flight work is not
        interrupted.

        Returns:
            True if a job was deleted.
        """
        with self._session() as session:
            removed = session.execute(
                delete(QueuedJob)
                .where(QueuedJob.job_id == job_id)
                .execution_options(synchronize_session=False)
            ).rowcount

        if removed:
            logger.info("Removed job from queue: job_id=%s", job_id)
        return removed == 1

    def get_job_status(self, job_id: str) -> JobStatusResponse | None:
        """Queue-side status of a job, or None if unknown (or already purged)."""
        with self._session() as session:
            row = session.execute(
                select(QueuedJob).where(QueuedJob.job_id == job_id)
            ).scalar_one_or_none()
            if row is None:
                return None
            return JobStatusResponse(
                job_id=row.job_id,
                transcription_id=row.transcription_id,
                state=row.state,
                priority=row.priority,
                attempts_made=row.attempts_made,
                max_attempts=row.max_attempts,
                result=row.result_json,
                failed_reason=row.failed_reason,
                created_at=as_utc(row.created_at),
                processed_at=as_utc(row.processed_at),
                finished_at=as_utc(row.finished_at),
            )
