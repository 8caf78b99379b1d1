"""Tests for the Admin API endpoints."""

import pytest
from sqlalchemy import select

from transcriber.models import QueuedJob, Transcription


@pytest.fixture
def job_payload():
    return {
        "transcription_id": "tr-api-1",
        "user_id": "user-1",
        "audio_reference": "https://storage.example.com/a.mp3",
        "audio_format": "mp3",
        "duration_seconds": 120,
        "audio_file_id": "audio/tr-api-1.mp3",
    }


def _enqueue(test_client, payload):
    response = test_client.post("/v1/jobs", json=payload)
    assert response.status_code == 201
    return response.json()


class TestHealthCheck:
    """Tests for health check endpoint."""

    def test_health_check(self, client):
        """Health check should return ok."""
        test_client, _ = client
        response = test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestEnqueue:
    """Tests for POST /v1/jobs."""

    def test_enqueue_success(self, client, job_payload):
        test_client, SessionFactory = client
        data = _enqueue(test_client, job_payload)

        assert data["status"] == "queued"
        assert data["priority"] == 1
        assert data["job_id"]

        session = SessionFactory()
        try:
            row = session.execute(
                select(QueuedJob).where(QueuedJob.job_id == data["job_id"])
            ).scalar_one()
            assert row.state == "waiting"
            assert row.audio_file_id == "audio/tr-api-1.mp3"

            transcription = session.get(Transcription, "tr-api-1")
            assert transcription.status == "pending"
            assert transcription.user_id == "user-1"
        finally:
            session.close()

    def test_priority_from_duration(self, client, job_payload):
        test_client, _ = client
        job_payload["duration_seconds"] = 3600
        assert _enqueue(test_client, job_payload)["priority"] == 4

    def test_unsupported_format_rejected(self, client, job_payload):
        test_client, _ = client
        job_payload["audio_format"] = "flac"
        assert test_client.post("/v1/jobs", json=job_payload).status_code == 422

    def test_negative_duration_rejected(self, client, job_payload):
        test_client, _ = client
        job_payload["duration_seconds"] = -1
        assert test_client.post("/v1/jobs", json=job_payload).status_code == 422

    def test_extra_fields_rejected(self, client, job_payload):
        test_client, _ = client
        job_payload["retries"] = 5
        assert test_client.post("/v1/jobs", json=job_payload).status_code == 422

    def test_missing_field_rejected(self, client, job_payload):
        test_client, _ = client
        del job_payload["user_id"]
        assert test_client.post("/v1/jobs", json=job_payload).status_code == 422


class TestJobEndpoints:
    """Tests for GET/DELETE /v1/jobs/{job_id}."""

    def test_get_job(self, client, job_payload):
        test_client, _ = client
        job_id = _enqueue(test_client, job_payload)["job_id"]

        response = test_client.get(f"/v1/jobs/{job_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["job_id"] == job_id
        assert data["transcription_id"] == "tr-api-1"
        assert data["state"] == "waiting"
        assert data["attempts_made"] == 0

    def test_get_unknown_job(self, client):
        test_client, _ = client
        response = test_client.get("/v1/jobs/missing")
        assert response.status_code == 404
        assert response.json()["error_code"] == "JOB_NOT_FOUND"

    def test_delete_job(self, client, job_payload):
        test_client, _ = client
        job_id = _enqueue(test_client, job_payload)["job_id"]

        response = test_client.delete(f"/v1/jobs/{job_id}")
        assert response.status_code == 200
        assert response.json() == {"job_id": job_id, "removed": True}
        assert test_client.get(f"/v1/jobs/{job_id}").status_code == 404

    def test_delete_unknown_job(self, client):
        test_client, _ = client
        assert test_client.delete("/v1/jobs/missing").status_code == 404


class TestQueueEndpoints:
    """Tests for queue stats and pause/resume."""

    def test_stats(self, client, job_payload):
        test_client, _ = client
        _enqueue(test_client, job_payload)
        job_payload["transcription_id"] = "tr-api-2"
        _enqueue(test_client, job_payload)

        response = test_client.get("/v1/queue/stats")
        assert response.status_code == 200
        assert response.json() == {
            "waiting": 2,
            "active": 0,
            "completed": 0,
            "failed": 0,
            "delayed": 0,
        }

    def test_pause_and_resume(self, client):
        test_client, SessionFactory = client

        response = test_client.post("/v1/queue/pause")
        assert response.status_code == 200
        assert response.json() == {"paused": True}

        from transcriber.queue import JobQueue

        assert JobQueue(SessionFactory).is_paused() is True

        response = test_client.post("/v1/queue/resume")
        assert response.json() == {"paused": False}
        assert JobQueue(SessionFactory).is_paused() is False


class TestProviderInfo:
    def test_provider_info(self, client):
        test_client, _ = client
        response = test_client.get("/v1/provider")
        assert response.status_code == 200
        data = response.json()
        assert "mp3" in data["supported_formats"]
        assert "pt-BR" in data["supported_languages"]
        assert data["features"]["word_time_offsets"] is True
