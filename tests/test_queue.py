"""Tests for the durable job queue.

Covers:
- priority + FIFO lease order
- at-most-one lease under concurrent workers
- lock tokens: stale complete/fail/renew rejected
- retry with exponential backoff and exhaustion
- stall sweep (requeue vs fail)
- durable pause, removal, retention cleanup, stats
"""

import threading

import pytest
from pydantic import ValidationError as PydanticValidationError

from transcriber.errors import ErrorCode
from transcriber.queue import STALLED_ACTION_FAILED, STALLED_ACTION_REQUEUED, JobQueue
from transcriber.schemas import JobState


def _lease(queue, worker="worker-1", lock_duration=30):
    record = queue.lease(worker, lock_duration=lock_duration)
    assert record is not None
    return record


class TestEnqueue:
    def test_enqueue_assigns_priority_and_waiting_state(self, queue, make_job):
        job_id = queue.enqueue(make_job(duration_seconds=300))

        status = queue.get_job_status(job_id)
        assert status.state == JobState.WAITING
        assert status.priority == 1
        assert status.attempts_made == 0
        assert status.max_attempts == 3

    def test_enqueue_accepts_dict_payload(self, queue):
        job_id = queue.enqueue(
            {
                "transcription_id": "tr-dict",
                "user_id": "u",
                "audio_reference": "/tmp/a.wav",
                "audio_format": "wav",
                "duration_seconds": 1000,
            }
        )
        assert queue.get_job_status(job_id).priority == 3

    def test_enqueue_rejects_invalid_payload(self, queue):
        with pytest.raises(PydanticValidationError):
            queue.enqueue({"transcription_id": "tr-bad", "audio_format": "flac"})

    def test_enqueue_many_preserves_order(self, queue, make_job):
        job_ids = queue.enqueue_many(make_job(f"tr-{i}") for i in range(5))

        leased = [_lease(queue).job_id for _ in range(5)]
        assert leased == job_ids


class TestLeaseOrder:
    def test_priority_then_fifo(self, queue, make_job):
        queue.enqueue(make_job("long", duration_seconds=2000))
        queue.enqueue(make_job("short-a", duration_seconds=100))
        queue.enqueue(make_job("medium", duration_seconds=600))
        queue.enqueue(make_job("short-b", duration_seconds=50))

        order = [_lease(queue).job.transcription_id for _ in range(4)]
        assert order == ["short-a", "short-b", "medium", "long"]

    def test_empty_queue_returns_none(self, queue):
        assert queue.lease("worker-1") is None

    def test_lease_sets_lock(self, queue, make_job, clock):
        job_id = queue.enqueue(make_job())
        record = _lease(queue, worker="w-7", lock_duration=30)

        assert record.job_id == job_id
        assert record.state == JobState.ACTIVE
        assert record.lock_owner == "w-7"
        assert record.lock_token
        assert (record.lock_expires_at - clock()).total_seconds() == pytest.approx(30)

    def test_active_job_not_leased_twice(self, queue, make_job):
        queue.enqueue(make_job())
        _lease(queue)
        assert queue.lease("worker-2") is None


class TestConcurrentLease:
    def test_no_job_leased_twice(self, temp_db, make_job):
        """Eight threads draining twenty jobs never share a lease."""
        _, _, SessionFactory = temp_db
        queue = JobQueue(SessionFactory)
        queue.enqueue_many(make_job(f"tr-{i}") for i in range(20))

        leased: list[str] = []
        errors: list[BaseException] = []
        lock = threading.Lock()

        def drain(worker_id):
            try:
                while True:
                    record = queue.lease(worker_id)
                    if record is None:
                        return
                    with lock:
                        leased.append(record.job_id)
            except BaseException as e:  # surfaced in the main thread below
                errors.append(e)

        threads = [threading.Thread(target=drain, args=(f"w-{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        assert len(leased) == 20
        assert len(set(leased)) == 20


class TestLockTokens:
    def test_complete_with_valid_token(self, queue, make_job):
        job_id = queue.enqueue(make_job())
        record = _lease(queue)

        assert queue.complete(job_id, record.lock_token, {"text": "ok"}) is True
        status = queue.get_job_status(job_id)
        assert status.state == JobState.COMPLETED
        assert status.result == {"text": "ok"}
        assert status.finished_at is not None

    def test_complete_with_wrong_token_rejected(self, queue, make_job):
        job_id = queue.enqueue(make_job())
        _lease(queue)

        assert queue.complete(job_id, "not-the-token") is False
        assert queue.get_job_status(job_id).state == JobState.ACTIVE

    def test_complete_twice_rejected(self, queue, make_job):
        job_id = queue.enqueue(make_job())
        record = _lease(queue)
        assert queue.complete(job_id, record.lock_token) is True
        assert queue.complete(job_id, record.lock_token) is False
        assert queue.fail(job_id, record.lock_token, "late") is False

    def test_stale_token_after_stall_and_release(self, queue, make_job, clock):
        job_id = queue.enqueue(make_job())
        first = _lease(queue, lock_duration=30)

        clock.advance(31)
        outcomes = queue.requeue_stalled()
        assert [o.action for o in outcomes] == [STALLED_ACTION_REQUEUED]

        clock.advance(outcomes[0].delay_seconds)
        second = _lease(queue, worker="worker-2")
        assert second.job_id == job_id
        assert second.lock_token != first.lock_token

        assert queue.complete(job_id, first.lock_token) is False
        assert queue.fail(job_id, first.lock_token, "late failure") is False
        assert queue.renew_lock(job_id, first.lock_token, 30) is False
        status = queue.get_job_status(job_id)
        assert status.state == JobState.ACTIVE
        assert status.failed_reason is None

        assert queue.complete(job_id, second.lock_token) is True

    def test_complete_after_expiry_before_sweep_accepted(self, queue, make_job, clock):
        job_id = queue.enqueue(make_job())
        record = _lease(queue, lock_duration=30)

        clock.advance(45)
        assert queue.complete(job_id, record.lock_token) is True
        assert queue.requeue_stalled() == []

    def test_renew_lock_extends_expiry(self, queue, make_job, clock):
        job_id = queue.enqueue(make_job())
        record = _lease(queue, lock_duration=30)

        clock.advance(20)
        assert queue.renew_lock(job_id, record.lock_token, 30) is True
        clock.advance(20)
        assert queue.requeue_stalled() == []
        clock.advance(11)
        assert len(queue.requeue_stalled()) == 1


class TestRetryAndBackoff:
    def test_backoff_delays(self, queue):
        assert queue.backoff_delay(1) == 2
        assert queue.backoff_delay(2) == 4
        assert queue.backoff_delay(3) == 8

    def test_failed_attempt_is_delayed_then_retried(self, queue, make_job, clock):
        job_id = queue.enqueue(make_job())
        record = _lease(queue)

        assert queue.fail(job_id, record.lock_token, "PROVIDER_ERROR: boom") is True
        status = queue.get_job_status(job_id)
        assert status.state == JobState.DELAYED
        assert status.attempts_made == 1
        assert status.failed_reason == "PROVIDER_ERROR: boom"

        clock.advance(1.9)
        assert queue.lease("worker-1") is None
        clock.advance(0.1)
        retry = _lease(queue)
        assert retry.job_id == job_id
        assert retry.attempts_made == 1

    def test_exhausted_attempts_fail_permanently(self, queue, make_job, clock):
        job_id = queue.enqueue(make_job())

        for attempt in range(1, 4):
            record = _lease(queue)
            assert queue.fail(job_id, record.lock_token, f"attempt {attempt}") is True
            clock.advance(queue.backoff_delay(attempt))

        status = queue.get_job_status(job_id)
        assert status.state == JobState.FAILED
        assert status.attempts_made == 3

        clock.advance(3600)
        assert queue.lease("worker-1") is None
        assert queue.get_job_status(job_id).state == JobState.FAILED

    def test_non_retryable_fails_immediately(self, queue, make_job):
        job_id = queue.enqueue(make_job())
        record = _lease(queue)

        assert queue.fail(job_id, record.lock_token, "VALIDATION_FAILED: bad", retryable=False)
        status = queue.get_job_status(job_id)
        assert status.state == JobState.FAILED
        assert status.attempts_made == 1

    def test_delayed_job_keeps_priority_position(self, queue, make_job, clock):
        """A retried short job still goes before a waiting long job."""
        short_id = queue.enqueue(make_job("short", duration_seconds=10))
        record = _lease(queue)
        queue.fail(short_id, record.lock_token, "transient")
        queue.enqueue(make_job("long", duration_seconds=5000))

        clock.advance(2)
        assert _lease(queue).job.transcription_id == "short"


class TestStalledJobs:
    def test_stall_requeues_with_backoff(self, queue, make_job, clock):
        job_id = queue.enqueue(make_job("tr-stall"))
        _lease(queue, lock_duration=30)

        clock.advance(31)
        [outcome] = queue.requeue_stalled()
        assert outcome.job_id == job_id
        assert outcome.transcription_id == "tr-stall"
        assert outcome.action == STALLED_ACTION_REQUEUED
        assert outcome.stalled_count == 1
        assert outcome.attempts_made == 1
        assert outcome.delay_seconds == 2

        status = queue.get_job_status(job_id)
        assert status.state == JobState.DELAYED

    def test_stall_consumes_attempts(self, queue, make_job, clock):
        job_id = queue.enqueue(make_job())

        actions = []
        for _ in range(3):
            _lease(queue, lock_duration=30)
            clock.advance(31)
            [outcome] = queue.requeue_stalled()
            actions.append(outcome.action)
            clock.advance(60)

        assert actions == [STALLED_ACTION_REQUEUED, STALLED_ACTION_REQUEUED, STALLED_ACTION_FAILED]
        assert queue.get_job_status(job_id).state == JobState.FAILED

    def test_too_many_stalls_fail_regardless_of_attempts(self, temp_db, make_job, clock):
        _, _, SessionFactory = temp_db
        queue = JobQueue(SessionFactory, max_attempts=10, max_stalled_count=2, clock=clock)
        job_id = queue.enqueue(make_job())

        outcomes = []
        for _ in range(3):
            _lease(queue, lock_duration=30)
            clock.advance(31)
            outcomes.extend(queue.requeue_stalled())
            clock.advance(60)

        last = outcomes[-1]
        assert last.action == STALLED_ACTION_FAILED
        assert last.stalled_count == 3
        assert last.error.error_code == ErrorCode.JOB_STALLED
        status = queue.get_job_status(job_id)
        assert status.state == JobState.FAILED
        assert ErrorCode.JOB_STALLED in status.failed_reason

    def test_live_lease_not_swept(self, queue, make_job, clock):
        queue.enqueue(make_job())
        _lease(queue, lock_duration=30)
        clock.advance(29)
        assert queue.requeue_stalled() == []


class TestPause:
    def test_pause_blocks_leasing(self, queue, make_job):
        queue.enqueue(make_job())
        queue.pause()
        assert queue.is_paused() is True
        assert queue.lease("worker-1") is None

        queue.resume()
        assert queue.is_paused() is False
        assert queue.lease("worker-1") is not None

    def test_pause_is_durable_across_instances(self, temp_db, queue):
        _, _, SessionFactory = temp_db
        queue.pause()
        assert JobQueue(SessionFactory).is_paused() is True

    def test_active_job_completes_while_paused(self, queue, make_job):
        job_id = queue.enqueue(make_job())
        record = _lease(queue)
        queue.pause()
        assert queue.complete(job_id, record.lock_token) is True


class TestRemove:
    def test_remove_waiting_job(self, queue, make_job):
        job_id = queue.enqueue(make_job())
        assert queue.remove(job_id) is True
        assert queue.get_job_status(job_id) is None
        assert queue.lease("worker-1") is None

    def test_remove_unknown_job(self, queue):
        assert queue.remove("missing") is False

    def test_remove_active_job_rejects_late_writes(self, queue, make_job):
        job_id = queue.enqueue(make_job())
        record = _lease(queue)

        assert queue.remove(job_id) is True
        assert queue.complete(job_id, record.lock_token) is False
        assert queue.fail(job_id, record.lock_token, "late") is False
        assert queue.renew_lock(job_id, record.lock_token, 30) is False
        assert queue.get_job_status(job_id) is None


class TestCleanAndStats:
    def test_clean_respects_retention(self, queue, make_job, clock):
        done_id = queue.enqueue(make_job("done"))
        record = _lease(queue)
        queue.complete(done_id, record.lock_token)

        failed_id = queue.enqueue(make_job("bad"))
        record = _lease(queue)
        queue.fail(failed_id, record.lock_token, "bad input", retryable=False)

        clock.advance(3601)
        assert queue.clean() == 1
        assert queue.get_job_status(done_id) is None
        assert queue.get_job_status(failed_id) is not None

        clock.advance(86400)
        assert queue.clean() == 1
        assert queue.get_job_status(failed_id) is None

    def test_clean_keeps_non_terminal_jobs(self, queue, make_job, clock):
        queue.enqueue(make_job())
        clock.advance(10**6)
        assert queue.clean() == 0

    def test_stats_counts_each_state(self, queue, make_job):
        ids = queue.enqueue_many(make_job(f"tr-{i}") for i in range(4))
        first = _lease(queue)
        queue.complete(first.job_id, first.lock_token)
        second = _lease(queue)
        queue.fail(second.job_id, second.lock_token, "transient")
        _lease(queue)

        stats = queue.stats()
        assert stats.completed == 1
        assert stats.delayed == 1
        assert stats.active == 1
        assert stats.waiting == 1
        assert stats.failed == 0
        assert len(ids) == 4
