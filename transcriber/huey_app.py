"""Transcription Pipeline - Huey periodic maintenance.

Huey with a SQLite backend runs queue maintenance outside the worker pools:
- stalled-job sweep every minute (backstop for pools that are all down; each
  running pool also sweeps every STALLED_INTERVAL_SECONDS)
- retention cleanup of completed/failed jobs every 10 minutes

How to run:
1. Start the admin API:
   uvicorn services.admin_api.main:app --reload

2. Start one or more worker pools:
   python -m services.worker_transcription.run

3. Start the Huey consumer (runs the periodic tasks):
   huey_consumer.py transcriber.huey_app.huey
"""

from __future__ import annotations

import logging
from pathlib import Path

from huey import SqliteHuey, crontab

from transcriber.config import (
    COMPLETED_RETENTION_SECONDS,
    FAILED_RETENTION_SECONDS,
    HUEY_DB_PATH,
    QUEUE_DIR,
)

logger = logging.getLogger(__name__)


def _ensure_queue_dir() -> None:
    Path(QUEUE_DIR).mkdir(parents=True, exist_ok=True)


_ensure_queue_dir()

huey = SqliteHuey(
    name="transcriber_maintenance",
    filename=str(HUEY_DB_PATH),
    immediate=False,
)


def _build_queue_and_driver():
    from transcriber.db import init_db
    from transcriber.queue import JobQueue
    from transcriber.status import SqlNotifier, SqlStatusStore, StatusDriver

    _, session_factory = init_db()
    driver = StatusDriver(SqlStatusStore(session_factory), SqlNotifier(session_factory))
    return JobQueue(session_factory), driver


@huey.periodic_task(crontab(minute="*"))
def sweep_stalled_task() -> dict:
    """Recover jobs whose lease expired.

    Returns:
        Dict with requeued/failed counts (for logging/debugging).
    """
    # Import here to avoid circular imports
    from services.worker_transcription.run import sweep_stalled_jobs
    from transcriber.queue import STALLED_ACTION_FAILED

    queue, driver = _build_queue_and_driver()
    outcomes = sweep_stalled_jobs(queue, driver)
    failed = sum(1 for o in outcomes if o.action == STALLED_ACTION_FAILED)
    result = {"requeued": len(outcomes) - failed, "failed": failed}
    if outcomes:
        logger.info("Stalled job sweep: %s", result)
    return result


@huey.periodic_task(crontab(minute="*/10"))
def clean_retention_task() -> dict:
    """Delete terminal jobs past retention."""
    queue, _ = _build_queue_and_driver()
    removed = queue.clean(COMPLETED_RETENTION_SECONDS, FAILED_RETENTION_SECONDS)
    return {"removed": removed}
