"""Transcription Pipeline - Priority classification.

Short recordings finish fast, so they are dequeued first to keep perceived
latency low. No band is ever skipped: long jobs still run once shorter ones
drain.
"""

from __future__ import annotations

from collections.abc import Sequence

from transcriber.config import PRIORITY_BANDS


def calculate_priority(duration_seconds: float, bands: Sequence[int] = PRIORITY_BANDS) -> int:
    """Map a job duration to a priority band.

    With the default bands: <=300s -> 1, <=900s -> 2, <=1800s -> 3, else 4.

    Args:
        duration_seconds: Audio duration in seconds.
        bands: Increasing upper bounds (seconds) for priorities 1..len(bands).

    Returns:
        Priority number (1 = dequeued first).

    Raises:
        ValueError: If duration_seconds is negative.
    """
    if duration_seconds < 0:
        raise ValueError(f"duration_seconds must be >= 0, got {duration_seconds}")

    for index, upper_bound in enumerate(bands):
        if duration_seconds <= upper_bound:
            return index + 1
    return len(bands) + 1
