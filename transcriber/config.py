"""Transcription Pipeline - Configuration constants.

No external config libraries. Values that operators tune per deployment can be
overridden through TRANSCRIBER_* environment variables; invalid overrides fall
back to the defaults below.
"""

import os
from pathlib import Path

# Repository root (parent of transcriber/)
REPO_ROOT = Path(__file__).parent.parent.resolve()


def _get_env_int(name: str, default: int) -> int:
    """Read a positive integer from the environment.

    Args:
        name: Environment variable name.
        default: Value used when the variable is unset or invalid.

    Returns:
        The parsed value, or default.
    """
    env_val = os.environ.get(name)
    if env_val:
        try:
            value = int(env_val)
            if value > 0:
                return value
        except ValueError:
            pass
    return default


def _get_env_bool(name: str, default: bool) -> bool:
    env_val = os.environ.get(name)
    if env_val is None or env_val == "":
        return default
    return env_val.strip().lower() in ("1", "true", "yes", "on")


def _get_priority_bands() -> tuple[int, ...]:
    """Get priority band upper bounds (seconds) from the environment.

    TRANSCRIBER_PRIORITY_BANDS takes a comma separated, strictly increasing list,
    e.g. "300,900,1800". A job longer than the last bound lands in the last band.

    Returns:
        Tuple of band upper bounds in seconds.
    """
    default = (300, 900, 1800)
    env_val = os.environ.get("TRANSCRIBER_PRIORITY_BANDS")
    if not env_val:
        return default
    try:
        bands = tuple(int(part) for part in env_val.split(",") if part.strip())
    except ValueError:
        return default
    if not bands or any(b <= 0 for b in bands) or list(bands) != sorted(set(bands)):
        return default
    return bands


# Data directory (SQLite files live here)
DATA_DIR = Path(os.environ.get("TRANSCRIBER_DATA_DIR", REPO_ROOT / "data"))

# Database path (queue, status store, notifications)
DB_PATH = DATA_DIR / "transcriber.db"

# Huey database path for periodic maintenance tasks
QUEUE_DIR = DATA_DIR / "queue"
HUEY_DB_PATH = QUEUE_DIR / "huey.db"

# SQLite busy timeout in seconds; concurrent writers wait instead of erroring
SQLITE_BUSY_TIMEOUT_SECONDS = 30

# --- Queue policy ---

# Total attempts per job (initial attempt included)
MAX_ATTEMPTS = 3

# Exponential backoff: delay = BASE * 2 ** (attempts_made - 1) -> 2s, 4s, 8s...
BACKOFF_BASE_SECONDS = 2

# A job may be recovered from a stall this many times; the next stall fails it
MAX_STALLED_COUNT = 2

# Lease lock duration; workers renew at half this interval
LOCK_DURATION_SECONDS = _get_env_int("TRANSCRIBER_LOCK_DURATION_SEC", 30)

# How often the stalled-job sweep runs inside a worker pool
STALLED_INTERVAL_SECONDS = 5

# Retention of terminal jobs (advisory)
COMPLETED_RETENTION_SECONDS = 3600
FAILED_RETENTION_SECONDS = 86400

# Priority bands (upper bounds in seconds for priorities 1..N, last band is open)
PRIORITY_BANDS = _get_priority_bands()

# --- Worker policy ---

WORKER_CONCURRENCY = _get_env_int("TRANSCRIBER_WORKER_CONCURRENCY", 5)

# Lease polling: starts at POLL_INTERVAL and doubles up to MAX_POLL_INTERVAL
POLL_INTERVAL_SECONDS = 1.0
MAX_POLL_INTERVAL_SECONDS = 5.0

# Hard limit on a single audio download
DOWNLOAD_TIMEOUT_SECONDS = _get_env_int("TRANSCRIBER_DOWNLOAD_TIMEOUT_SEC", 300)

# --- ASR ---

ASR_PROVIDER = os.environ.get("TRANSCRIBER_ASR_PROVIDER", "google-cloud-speech")
ASR_LANGUAGE_CODE = os.environ.get("TRANSCRIBER_ASR_LANGUAGE_CODE", "pt-BR")
ASR_ENABLE_DIARIZATION = _get_env_bool("TRANSCRIBER_ASR_ENABLE_DIARIZATION", False)

# Fixed-size word window used by the segment extractor
SEGMENT_MAX_WORDS = 10

# Recognizer JSON payload returned by the "static" provider (empty response when unset)
STATIC_RESPONSE_PATH = os.environ.get("TRANSCRIBER_STATIC_RESPONSE_PATH") or None
