"""Transcription Pipeline - Segment extraction and confidence aggregation.

Turns a recognizer's raw results into time-bounded transcript segments.

Cut rule: words of the best alternative are packed into fixed windows of
SEGMENT_MAX_WORDS words; the last window of each result may be shorter. This is
a word-count window, not a linguistic boundary detector. Replacing it with
pause- or punctuation-based segmentation only needs a new extract_segments.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Sequence
from datetime import timedelta
from typing import Any

from transcriber.asr import RecognitionResponse, RecognitionResult, WordInfo
from transcriber.config import SEGMENT_MAX_WORDS
from transcriber.schemas import AsrTranscription, TranscriptSegment

logger = logging.getLogger(__name__)

# "1.5s", "2", "0.25 s"
_TIME_STRING_RE = re.compile(r"^\s*(\d+(?:\.\d*)?|\.\d+)\s*s?\s*$", re.IGNORECASE)


# --- Time Parsing ---


def _seconds_nanos(seconds: Any, nanos: Any) -> float:
    try:
        return float(seconds or 0) + float(nanos or 0) / 1_000_000_000
    except (TypeError, ValueError):
        return 0.0


def parse_time(value: Any) -> float:
    """Parse a recognizer time offset into seconds.

    Accepts a number, a {seconds, nanos} pair (dict or object with those
    attributes), a timedelta, or a decimal string with optional "s" suffix.
    Missing, invalid, negative or non-finite input parses to 0.

    Args:
        value: Raw time value.

    Returns:
        Non-negative seconds.
    """
    if value is None or isinstance(value, bool):
        return 0.0

    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, timedelta):
        seconds = value.total_seconds()
    elif isinstance(value, str):
        match = _TIME_STRING_RE.match(value)
        seconds = float(match.group(1)) if match else 0.0
    elif isinstance(value, dict):
        seconds = _seconds_nanos(value.get("seconds"), value.get("nanos"))
    elif hasattr(value, "seconds"):
        seconds = _seconds_nanos(value.seconds, getattr(value, "nanos", 0))
    else:
        return 0.0

    if not math.isfinite(seconds) or seconds < 0:
        return 0.0
    return seconds


def _clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value or 0)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(confidence):
        return 0.0
    return min(max(confidence, 0.0), 1.0)


# --- Segment Extraction ---


def _close_segment(words: list[WordInfo], confidence: float) -> TranscriptSegment:
    start_time = parse_time(words[0].start_time)
    end_time = max(parse_time(words[-1].end_time), start_time)
    speaker_tag = words[0].speaker_tag
    return TranscriptSegment(
        start_time=start_time,
        end_time=end_time,
        text=" ".join(w.word.strip() for w in words),
        confidence=confidence,
        speaker=f"speaker_{speaker_tag}" if speaker_tag else None,
    )


def extract_segments(
    results: Sequence[RecognitionResult],
    max_words: int = SEGMENT_MAX_WORDS,
) -> list[TranscriptSegment]:
    """Pack recognized words into fixed-size segments.

    Only the first (best) alternative of each result is used. Each segment
    spans its first word's start to its last word's end and carries the
    alternative's confidence. Segments from successive results are
    concatenated in result order.

    Args:
        results: Recognizer results in order.
        max_words: Words per segment before a cut.

    Returns:
        Ordered segments; empty when there are no words.
    """
    if max_words < 1:
        raise ValueError(f"max_words must be >= 1, got {max_words}")

    segments: list[TranscriptSegment] = []

    for result in results:
        if not result.alternatives:
            continue
        alternative = result.alternatives[0]
        confidence = _clamp_confidence(alternative.confidence)

        # Empty words would produce empty segment text
        words = [w for w in alternative.words if (w.word or "").strip()]

        buffer: list[WordInfo] = []
        for index, word in enumerate(words):
            buffer.append(word)
            if len(buffer) >= max_words or index == len(words) - 1:
                segments.append(_close_segment(buffer, confidence))
                buffer = []

    return segments


def average_confidence(results: Sequence[RecognitionResult]) -> float:
    """Arithmetic mean of every alternative's confidence (0 when there are none)."""
    confidences = [
        _clamp_confidence(alternative.confidence)
        for result in results
        for alternative in result.alternatives
    ]
    if not confidences:
        return 0.0
    return math.fsum(confidences) / len(confidences)


def build_transcription(
    response: RecognitionResponse,
    language: str,
    provider: str,
    max_words: int = SEGMENT_MAX_WORDS,
) -> AsrTranscription:
    """Post-process a recognizer response.

    Args:
        response: Raw recognizer output.
        language: Language code the audio was recognized in.
        provider: Provider name, stored with the transcription.
        max_words: Words per segment before a cut.

    Returns:
        AsrTranscription with full text, segments, average confidence and
        duration (end of the last segment).
    """
    results = response.results
    if not results:
        logger.warning("Recognizer returned no results (provider=%s)", provider)
        return AsrTranscription(
            text="",
            segments=[],
            confidence=0.0,
            duration=0.0,
            language=language,
            provider=provider,
        )

    text = " ".join(
        result.alternatives[0].transcript.strip()
        for result in results
        if result.alternatives and (result.alternatives[0].transcript or "").strip()
    )
    segments = extract_segments(results, max_words=max_words)
    confidence = average_confidence(results)
    duration = segments[-1].end_time if segments else 0.0

    logger.info(
        "Transcription post-processed: %d chars, %d segments, confidence %.2f%%",
        len(text),
        len(segments),
        confidence * 100,
    )

    return AsrTranscription(
        text=text,
        segments=segments,
        confidence=confidence,
        duration=duration,
        language=language,
        provider=provider,
    )
