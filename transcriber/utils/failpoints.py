"""Transcription Pipeline - Crash injection for resilience tests.

A failpoint kills the process on the spot (os._exit), the way a power loss or
OOM kill would: no finally blocks, no lock release, no status write. The stall
sweep is then expected to recover the job.

Only active when TRANSCRIBER_ENABLE_FAILPOINTS=1; otherwise maybe_fail() is a
no-op.

Environment variables:
- TRANSCRIBER_ENABLE_FAILPOINTS: "1" enables the system
- TRANSCRIBER_FAILPOINT: name of the failpoint to trigger (e.g. "WORKER_AFTER_LEASE")
- TRANSCRIBER_FAILPOINT_EXIT_CODE: exit code used when crashing (default: 42)
- TRANSCRIBER_FAILPOINT_ONCE: "1" clears the failpoint after it fires

Failpoints in the worker:
    WORKER_AFTER_LEASE       job leased, nothing written yet
    WORKER_AFTER_PROCESSING  'processing' written, provider not called
    WORKER_BEFORE_COMPLETE   status 'completed' written, queue not acked
"""

from __future__ import annotations

import os

PREFIX = "FAILPOINT_"
DEFAULT_EXIT_CODE = 42


def _normalize(name: str) -> str:
    name = name.upper()
    if name.startswith(PREFIX):
        name = name[len(PREFIX) :]
    return name


def is_failpoint_enabled() -> bool:
    return os.environ.get("TRANSCRIBER_ENABLE_FAILPOINTS") == "1"


def get_active_failpoint() -> str | None:
    """Name of the armed failpoint (without prefix), or None."""
    if not is_failpoint_enabled():
        return None
    target = os.environ.get("TRANSCRIBER_FAILPOINT", "")
    return _normalize(target) if target else None


def maybe_fail(point: str) -> None:
    """Crash the process if point is the armed failpoint.

    Args:
        point: Failpoint name; the FAILPOINT_ prefix is optional.
    """
    target = get_active_failpoint()
    if target is None or _normalize(point) != target:
        return

    try:
        exit_code = int(os.environ.get("TRANSCRIBER_FAILPOINT_EXIT_CODE", DEFAULT_EXIT_CODE))
    except ValueError:
        exit_code = DEFAULT_EXIT_CODE

    if os.environ.get("TRANSCRIBER_FAILPOINT_ONCE") == "1":
        # Only affects this process; a restarted child sees the parent's env
        os.environ.pop("TRANSCRIBER_FAILPOINT", None)
        os.environ.pop("TRANSCRIBER_FAILPOINT_ONCE", None)

    os._exit(exit_code)
