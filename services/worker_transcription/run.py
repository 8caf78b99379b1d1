"""Transcription Pipeline - Worker pool.

Pulls transcription jobs from the durable queue and runs them through
download -> ASR -> segment extraction -> status/notification.

Per leased job (process_job):
1. status 'processing' before any provider call
2. fetch audio with a hard timeout (DownloadError on timeout/transport error)
3. ASR provider call
4. segment extraction and confidence aggregation
5. terminal status write, then queue complete/fail, then best-effort notification

Failure handling:
- Every failure writes status 'failed' with a short user-facing message and
  calls queue.fail() with the error's retryable flag; the queue decides between
  a delayed retry and a final failure.
- A job whose lease was lost (stall sweep re-leased it, or it was removed) is
  not notified: the queue rejected the ack and the outcome belongs to whoever
  holds the lease now.

Threads:
- C worker threads, each leasing one job at a time
- a lock renewer per in-flight job (every lock_duration / 2)
- one stall sweeper per pool (every STALLED_INTERVAL_SECONDS)

How to run:
    python -m services.worker_transcription.run --concurrency 5 --provider google-cloud-speech
"""

from __future__ import annotations

import argparse
import logging
import os
import socket
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from transcriber.asr import (
    PROVIDER_GOOGLE,
    PROVIDER_STATIC,
    AsrProvider,
    TranscriptionOptions,
    get_provider,
)
from transcriber.config import (
    ASR_ENABLE_DIARIZATION,
    ASR_LANGUAGE_CODE,
    ASR_PROVIDER,
    DOWNLOAD_TIMEOUT_SECONDS,
    LOCK_DURATION_SECONDS,
    MAX_POLL_INTERVAL_SECONDS,
    POLL_INTERVAL_SECONDS,
    SEGMENT_MAX_WORDS,
    STALLED_INTERVAL_SECONDS,
    STATIC_RESPONSE_PATH,
    WORKER_CONCURRENCY,
)
from transcriber.errors import ErrorCode, PipelineError
from transcriber.models import utc_now
from transcriber.queue import STALLED_ACTION_FAILED, JobQueue, QueuedJobRecord, StalledJob
from transcriber.schemas import TranscriptionJobResult, TranscriptionStatus
from transcriber.segments import build_transcription
from transcriber.status import StatusDriver, StatusTransition
from transcriber.storage import AudioFetcher
from transcriber.utils.failpoints import maybe_fail

logger = logging.getLogger(__name__)

# User-facing message for failures that are not PipelineErrors
UNEXPECTED_ERROR_MESSAGE = "Transcription failed due to an internal error"


def _default_worker_prefix() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass
class WorkerPoolConfig:
    """Settings for one worker pool. Passed explicitly; nothing is read globally."""

    concurrency: int = WORKER_CONCURRENCY
    lock_duration: float = LOCK_DURATION_SECONDS
    stalled_interval: float = STALLED_INTERVAL_SECONDS
    poll_interval: float = POLL_INTERVAL_SECONDS
    max_poll_interval: float = MAX_POLL_INTERVAL_SECONDS
    download_timeout: float = DOWNLOAD_TIMEOUT_SECONDS
    language_code: str = ASR_LANGUAGE_CODE
    enable_diarization: bool = ASR_ENABLE_DIARIZATION
    segment_max_words: int = SEGMENT_MAX_WORDS
    worker_prefix: str = field(default_factory=_default_worker_prefix)

    @property
    def renew_interval(self) -> float:
        return self.lock_duration / 2

    def transcription_options(self) -> TranscriptionOptions:
        return TranscriptionOptions(
            language_code=self.language_code,
            enable_punctuation=True,
            enable_word_time_offsets=True,
            enable_diarization=self.enable_diarization,
            max_alternatives=1,
        )


# --- Job Processing ---


def _elapsed_ms(start_time: float) -> int:
    return int((time.monotonic() - start_time) * 1000)


def _describe_failure(exc: Exception) -> tuple[str, str, bool]:
    """Map an exception to (failed_reason, user_message, retryable)."""
    if isinstance(exc, PipelineError):
        return str(exc), exc.user_message, exc.retryable
    return f"{ErrorCode.WORKER_ERROR}: {exc!r}", UNEXPECTED_ERROR_MESSAGE, True


def process_job(
    record: QueuedJobRecord,
    queue: JobQueue,
    provider: AsrProvider,
    fetcher: AudioFetcher,
    driver: StatusDriver,
    config: WorkerPoolConfig,
) -> TranscriptionJobResult:
    """Run one leased job end to end.

    Never raises for job-level failures: the outcome is recorded in the status
    store and the queue, and returned.

    Args:
        record: The leased job (carries the lock token).
        queue: Queue the job was leased from.
        provider: ASR provider.
        fetcher: Audio download collaborator.
        driver: Status/notification driver.
        config: Pool settings.

    Returns:
        TranscriptionJobResult with status completed or failed.
    """
    job = record.job
    start_time = time.monotonic()
    transition = driver.begin(job)

    logger.info(
        "Processing transcription %s (job_id=%s, user=%s, format=%s, %.1fs)",
        job.transcription_id,
        record.job_id,
        job.user_id,
        job.audio_format,
        job.duration_seconds,
    )

    try:
        transition.processing()
        maybe_fail("WORKER_AFTER_PROCESSING")

        audio = fetcher.fetch(job.audio_reference, timeout=config.download_timeout)
        logger.info("Audio downloaded for %s: %d bytes", job.transcription_id, len(audio))

        response = provider.transcribe(audio, str(job.audio_format), config.transcription_options())
        transcription = build_transcription(
            response,
            language=config.language_code,
            provider=provider.name,
            max_words=config.segment_max_words,
        )
        transition.completed(transcription)
    except Exception as e:
        return _fail_job(record, queue, transition, e, start_time)

    maybe_fail("WORKER_BEFORE_COMPLETE")

    result = TranscriptionJobResult(
        transcription_id=job.transcription_id,
        status="completed",
        text=transcription.text,
        segments=transcription.segments,
        confidence=transcription.confidence,
        processed_at=utc_now(),
        processing_time_ms=_elapsed_ms(start_time),
    )

    if not queue.complete(record.job_id, record.lock_token, result.model_dump(mode="json")):
        logger.warning(
            "Lease lost before completion of %s (job_id=%s); skipping notification",
            job.transcription_id,
            record.job_id,
        )
        return result

    transition.notify(transcription=transcription)
    logger.info(
        "Transcription %s completed in %dms (confidence %.2f%%)",
        job.transcription_id,
        result.processing_time_ms,
        transcription.confidence * 100,
    )
    return result


def _fail_job(
    record: QueuedJobRecord,
    queue: JobQueue,
    transition: StatusTransition,
    exc: Exception,
    start_time: float,
) -> TranscriptionJobResult:
    job = record.job
    failed_reason, user_message, retryable = _describe_failure(exc)

    if isinstance(exc, PipelineError):
        logger.error("Transcription %s failed: %s", job.transcription_id, failed_reason)
    else:
        logger.exception("Unexpected error processing transcription %s", job.transcription_id)

    result = TranscriptionJobResult(
        transcription_id=job.transcription_id,
        status="failed",
        error_message=user_message,
        processed_at=utc_now(),
        processing_time_ms=_elapsed_ms(start_time),
    )

    try:
        if not transition.processing_written:
            transition.processing()
        transition.failed(user_message)
    except Exception:
        # Status store down: the queue still records the attempt below
        logger.exception("Failed to write failed status for %s", job.transcription_id)

    if not queue.fail(record.job_id, record.lock_token, failed_reason, retryable=retryable):
        logger.warning(
            "Lease lost before failure of %s (job_id=%s); skipping notification",
            job.transcription_id,
            record.job_id,
        )
        return result

    will_retry = retryable and record.attempts_made + 1 < record.max_attempts
    if will_retry:
        logger.info(
            "Transcription %s will be retried (attempt %d/%d)",
            job.transcription_id,
            record.attempts_made + 1,
            record.max_attempts,
        )
    elif transition.terminal_status == TranscriptionStatus.FAILED:
        transition.notify(error_message=user_message)

    return result


def sweep_stalled_jobs(queue: JobQueue, driver: StatusDriver) -> list[StalledJob]:
    """Recover expired leases and fail the transcriptions the sweep gave up on.

    Returns:
        The sweep outcomes.
    """
    outcomes = queue.requeue_stalled()
    for outcome in outcomes:
        if outcome.action != STALLED_ACTION_FAILED:
            continue
        message = outcome.error.user_message if outcome.error else UNEXPECTED_ERROR_MESSAGE
        try:
            driver.fail_abandoned(outcome.transcription_id, outcome.user_id, message)
        except Exception:
            logger.exception(
                "Failed to write failed status for stalled transcription %s",
                outcome.transcription_id,
            )
    return outcomes


# --- Threads ---


class LockRenewer(threading.Thread):
    """Renews a job's lease every lock_duration / 2 while it is processed."""

    def __init__(self, queue: JobQueue, record: QueuedJobRecord, lock_duration: float):
        super().__init__(name=f"lock-renewer-{record.job_id[:8]}", daemon=True)
        self.queue = queue
        self.record = record
        self.lock_duration = lock_duration
        self.lost = False
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.lock_duration / 2):
            try:
                renewed = self.queue.renew_lock(
                    self.record.job_id, self.record.lock_token, self.lock_duration
                )
            except Exception:
                logger.exception("Lock renewal error for job_id=%s", self.record.job_id)
                continue
            if not renewed:
                self.lost = True
                logger.warning("Lease lost for job_id=%s", self.record.job_id)
                return

    def stop(self) -> None:
        self._stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=self.lock_duration)


class TranscriptionWorker(threading.Thread):
    """One worker: lease, process, repeat until the pool stops."""

    def __init__(self, pool: WorkerPool, index: int):
        self.worker_id = f"{pool.config.worker_prefix}:{index}"
        super().__init__(name=f"transcription-worker-{index}", daemon=True)
        self.pool = pool

    def run(self) -> None:
        pool = self.pool
        config = pool.config
        delay = config.poll_interval

        while not pool.stopping.is_set():
            try:
                record = pool.queue.lease(self.worker_id, config.lock_duration)
            except Exception:
                logger.exception("Lease failed in %s", self.worker_id)
                record = None

            if record is None:
                if pool.burst:
                    return
                pool.stopping.wait(delay)
                delay = min(delay * 2, config.max_poll_interval)
                continue
            delay = config.poll_interval

            maybe_fail("WORKER_AFTER_LEASE")
            self._run_job(record)

    def _run_job(self, record: QueuedJobRecord) -> None:
        pool = self.pool
        renewer = LockRenewer(pool.queue, record, pool.config.lock_duration)
        renewer.start()
        pool._job_started()
        result = None
        try:
            result = process_job(
                record, pool.queue, pool.provider, pool.fetcher, pool.driver, pool.config
            )
        except Exception:
            # process_job handles job failures; this is a bug or a dead database
            logger.exception("Worker %s crashed on job_id=%s", self.worker_id, record.job_id)
        finally:
            renewer.stop()
            pool._job_finished(result)


class WorkerPool:
    """Bounded pool of transcription workers plus a stall sweeper.

    Args:
        queue: Shared job queue.
        provider: ASR provider.
        fetcher: Audio download collaborator.
        driver: Status/notification driver.
        config: Pool settings.
        burst: Workers exit once the queue has nothing to lease.
    """

    def __init__(
        self,
        queue: JobQueue,
        provider: AsrProvider,
        fetcher: AudioFetcher,
        driver: StatusDriver,
        config: WorkerPoolConfig | None = None,
        burst: bool = False,
    ):
        self.queue = queue
        self.provider = provider
        self.fetcher = fetcher
        self.driver = driver
        self.config = config or WorkerPoolConfig()
        self.burst = burst
        self.stopping = threading.Event()
        self._workers: list[TranscriptionWorker] = []
        self._sweeper: threading.Thread | None = None
        self._stats_lock = threading.Lock()
        self._active = 0
        self._processed = 0
        self._completed = 0
        self._failed = 0

    def _job_started(self) -> None:
        with self._stats_lock:
            self._active += 1

    def _job_finished(self, result: TranscriptionJobResult | None) -> None:
        with self._stats_lock:
            self._active -= 1
            self._processed += 1
            if result is not None and result.status == "completed":
                self._completed += 1
            else:
                self._failed += 1

    def _sweep_loop(self) -> None:
        while not self.stopping.wait(self.config.stalled_interval):
            try:
                sweep_stalled_jobs(self.queue, self.driver)
            except Exception:
                logger.exception("Stalled job sweep failed")

    @property
    def running(self) -> bool:
        return any(worker.is_alive() for worker in self._workers)

    def start(self) -> None:
        if self._workers:
            raise RuntimeError("Worker pool already started")
        if self.config.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.config.concurrency}")

        self.stopping.clear()
        self._workers = [
            TranscriptionWorker(self, index) for index in range(self.config.concurrency)
        ]
        for worker in self._workers:
            worker.start()

        self._sweeper = threading.Thread(
            target=self._sweep_loop, name="stalled-job-sweeper", daemon=True
        )
        self._sweeper.start()

        logger.info(
            "Transcription worker pool started: concurrency=%d, provider=%s, lock=%.0fs",
            self.config.concurrency,
            self.provider.name,
            self.config.lock_duration,
        )

    def join(self, timeout: float | None = None) -> None:
        """Wait for all workers to exit (burst mode or after stop)."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for worker in self._workers:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
            worker.join(remaining)

    def stop(self, timeout: float | None = 30.0) -> None:
        """Signal shutdown and wait for in-flight jobs to finish."""
        self.stopping.set()
        self.join(timeout)
        if self._sweeper is not None:
            self._sweeper.join(timeout)
        self._workers = []
        self._sweeper = None
        logger.info("Transcription worker pool stopped")

    def get_worker_stats(self) -> dict[str, Any]:
        """Queue counts plus pool status."""
        with self._stats_lock:
            pool_stats = {
                "running": self.running,
                "concurrency": self.config.concurrency,
                "active": self._active,
                "processed": self._processed,
                "completed": self._completed,
                "failed": self._failed,
            }
        return {"queue": self.queue.stats().model_dump(), "pool": pool_stats}


# --- Standalone Execution ---


def build_pool(
    db_path: Path | None = None,
    provider_name: str = ASR_PROVIDER,
    config: WorkerPoolConfig | None = None,
    burst: bool = False,
) -> WorkerPool:
    """Wire a pool against the SQLite queue and status store."""
    from transcriber.db import init_db
    from transcriber.status import SqlNotifier, SqlStatusStore
    from transcriber.storage import UrlAudioFetcher

    _, session_factory = init_db(db_path)
    provider_kwargs = {}
    if provider_name == PROVIDER_GOOGLE:
        provider_kwargs["credentials_json"] = os.environ.get("GOOGLE_CLOUD_CREDENTIALS")
    elif provider_name == PROVIDER_STATIC:
        provider_kwargs["response_path"] = STATIC_RESPONSE_PATH

    return WorkerPool(
        queue=JobQueue(session_factory),
        provider=get_provider(provider_name, **provider_kwargs),
        fetcher=UrlAudioFetcher(),
        driver=StatusDriver(SqlStatusStore(session_factory), SqlNotifier(session_factory)),
        config=config,
        burst=burst,
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the transcription worker pool")
    parser.add_argument("--concurrency", type=int, default=WORKER_CONCURRENCY)
    parser.add_argument("--provider", default=ASR_PROVIDER)
    parser.add_argument("--language", default=ASR_LANGUAGE_CODE)
    parser.add_argument("--lock-duration", type=float, default=LOCK_DURATION_SECONDS)
    parser.add_argument("--db-path", type=Path, default=None)
    parser.add_argument(
        "--burst", action="store_true", help="exit once the queue has nothing to lease"
    )
    args = parser.parse_args(argv)

    config = WorkerPoolConfig(
        concurrency=args.concurrency,
        language_code=args.language,
        lock_duration=args.lock_duration,
    )
    try:
        pool = build_pool(args.db_path, args.provider, config, burst=args.burst)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    pool.start()
    try:
        if args.burst:
            pool.join()
        else:
            while pool.running:
                time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        pool.stop()

    print(f"Stats: {pool.get_worker_stats()}")
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    sys.exit(main())
