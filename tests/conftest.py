"""Shared pytest fixtures for Transcription Pipeline tests.

This module contains common fixtures used across multiple test files,
reducing duplication and improving test maintainability.
"""

import tempfile
import wave
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from services.admin_api.main import app, override_session_factory
from transcriber.asr import (
    RecognitionAlternative,
    RecognitionResponse,
    RecognitionResult,
    WordInfo,
)
from transcriber.db import init_db
from transcriber.queue import JobQueue
from transcriber.schemas import TranscriptionJob
from transcriber.status import SqlNotifier, SqlStatusStore, StatusDriver


class FakeClock:
    """Manually advanced UTC clock for queue and status tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _build_job(transcription_id: str = "tr-1", duration_seconds: float = 60.0, **overrides):
    """Build a valid TranscriptionJob with sensible defaults."""
    fields = {
        "transcription_id": transcription_id,
        "user_id": "user-1",
        "audio_reference": "https://storage.example.com/audio/tr-1.mp3",
        "audio_format": "mp3",
        "duration_seconds": duration_seconds,
    }
    fields.update(overrides)
    return TranscriptionJob(**fields)


def _build_response(words_per_result: list[list[str]], confidence: float = 0.9) -> RecognitionResponse:
    """Build a recognizer response; each word lasts 0.5s, back to back."""
    results = []
    t = 0.0
    for words in words_per_result:
        infos = []
        for word in words:
            infos.append(WordInfo(word=word, start_time=t, end_time=t + 0.5))
            t += 0.5
        results.append(
            RecognitionResult(
                alternatives=[
                    RecognitionAlternative(
                        transcript=" ".join(words), confidence=confidence, words=infos
                    )
                ]
            )
        )
    return RecognitionResponse(results=results)


@pytest.fixture
def temp_db():
    """Create a temporary database for testing.

    Creates an isolated SQLite database in a temporary directory.
    The database is cleaned up after the test completes.

    Yields:
        tuple: (db_path, engine, SessionFactory)
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        engine, SessionFactory = init_db(db_path)
        yield db_path, engine, SessionFactory
        engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(temp_db, clock):
    """JobQueue on the temporary database, driven by the fake clock."""
    _, _, SessionFactory = temp_db
    return JobQueue(SessionFactory, clock=clock)


@pytest.fixture
def status_store(temp_db):
    _, _, SessionFactory = temp_db
    return SqlStatusStore(SessionFactory)


@pytest.fixture
def notifier(temp_db):
    _, _, SessionFactory = temp_db
    return SqlNotifier(SessionFactory)


@pytest.fixture
def driver(status_store, notifier, clock):
    return StatusDriver(status_store, notifier, clock=clock)


@pytest.fixture
def client(temp_db):
    """Create a FastAPI test client bound to the temporary database.

    Yields:
        tuple: (test_client, SessionFactory)
    """
    db_path, engine, SessionFactory = temp_db
    override_session_factory(SessionFactory)

    with TestClient(app) as client:
        yield client, SessionFactory

    override_session_factory(None)


@pytest.fixture
def sample_audio_file():
    """Create a sample WAV audio file for testing.

    Creates a minimal valid WAV file (1 second of silence, mono, 16000 Hz).
    The file is automatically cleaned up after the test completes.

    Yields:
        Path: Path to the temporary WAV file.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "sample.wav"
        with wave.open(str(path), "wb") as wf:
            wf.setnchannels(1)
            wf.setsampwidth(2)
            wf.setframerate(16000)
            wf.writeframes(b"\x00" * 16000 * 2)
        yield path


@pytest.fixture
def make_job():
    """Factory for valid TranscriptionJobs."""
    return _build_job


@pytest.fixture
def make_response():
    """Factory for recognizer responses from lists of words."""
    return _build_response


class RecordingStatusStore:
    """In-memory StatusStore that keeps every write in order."""

    def __init__(self, fail_on: set[str] | None = None):
        self.writes: list[tuple[str, dict]] = []
        self.fail_on = fail_on or set()

    def update_status(self, transcription_id, fields):
        if fields.get("status") in self.fail_on:
            raise ConnectionError("status store unavailable")
        self.writes.append((transcription_id, dict(fields)))

    def statuses(self, transcription_id=None):
        return [
            str(fields["status"])
            for tid, fields in self.writes
            if transcription_id is None or tid == transcription_id
        ]

    def last(self, transcription_id=None):
        matching = [f for tid, f in self.writes if transcription_id is None or tid == transcription_id]
        return matching[-1]


class RecordingNotifier:
    """In-memory Notifier; raises on every call when broken=True."""

    def __init__(self, broken: bool = False):
        self.payloads = []
        self.broken = broken

    def create_notification(self, payload):
        if self.broken:
            raise ConnectionError("notification service down")
        self.payloads.append(payload)


@pytest.fixture
def recording_store():
    return RecordingStatusStore()


@pytest.fixture
def recording_notifier():
    return RecordingNotifier()


@pytest.fixture
def broken_notifier():
    return RecordingNotifier(broken=True)


@pytest.fixture
def failing_store():
    """Status store that rejects 'failed' writes."""
    return RecordingStatusStore(fail_on={"failed"})
