#!/usr/bin/env python3
"""
End-to-end tests for the running pipeline:
- Text feedback through the sentiment queue into alerts
- Voice feedback through transcription and back into sentiment
- Ingestion priorities and bulk import
- FastAPI host endpoints
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from alert_engine import AlertEngine
from broadcaster import InMemoryBroadcaster, TOPIC_SENTIMENT_ANALYZED, TOPIC_FEEDBACK_NEW
from config import config
from database import FeedbackStore
from job_queue import JobQueue, JOB_SENTIMENT, JOB_TRANSCRIPTION
from main import create_app
from pipeline import FeedbackPipeline, VOICE_PLACEHOLDER
from schemas import AlertType, AlertSeverity, TranscriptionResult

COMMENT = "App keeps crashing when I try to view my statements."
TRANSCRIPT = "I was charged twice and the app will not let me dispute it"


def stt_double():
    client = MagicMock()
    client.submit_transcription = AsyncMock(return_value="tx-voice-1")
    client.poll_transcription = AsyncMock(return_value=TranscriptionResult(
        id="tx-voice-1", status="completed", text=TRANSCRIPT, confidence=0.88
    ))
    client.delete_transcript = AsyncMock(return_value=True)
    client.close = AsyncMock()
    return client


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
async def pipeline(store, make_classifier):
    """Pipeline over the test store with fake providers (not started)."""
    broadcaster = InMemoryBroadcaster()
    pipeline = FeedbackPipeline(
        store=store,
        queue=JobQueue(store.session_factory),
        classifier=make_classifier(),
        transcription_client=stt_double(),
        broadcaster=broadcaster,
        alert_engine=AlertEngine(store, broadcaster, high_volume_count_1h=10),
        sentiment_concurrency=3,
        poll_interval=0.01
    )
    yield pipeline
    if pipeline.running:
        await pipeline.shutdown(grace=1)


def analyzed_count(pipeline):
    async def predicate():
        return len(pipeline.broadcaster.events(TOPIC_SENTIMENT_ANALYZED))
    return predicate


# ============================================================================
# INGESTION TESTS
# ============================================================================

class TestIngestion:
    """Feedback creation and job priorities."""

    @pytest.mark.asyncio
    async def test_normal_feedback_is_queued_at_priority_5(self, pipeline):
        feedback, job_id = await pipeline.submit_feedback("IN_APP_SURVEY", COMMENT)

        job = await pipeline.queue.get_job(job_id)
        assert job.priority == 5
        assert job.payload == {
            "feedbackId": feedback.id,
            "text": COMMENT,
            "priority": 5,
            "channelId": "IN_APP_SURVEY"
        }
        assert pipeline.broadcaster.events(TOPIC_FEEDBACK_NEW)[0]["data"]["id"] == feedback.id

    @pytest.mark.asyncio
    async def test_vip_feedback_is_queued_at_priority_1(self, pipeline):
        _, job_id = await pipeline.submit_feedback("CHATBOT", "Where is my card?", customer_segment="VIP")

        assert (await pipeline.queue.get_job(job_id)).priority == 1

    @pytest.mark.asyncio
    async def test_empty_comment_is_stored_but_not_queued(self, pipeline, store):
        feedback, job_id = await pipeline.submit_feedback("WEB_FORM", "   ")

        assert job_id is None
        assert await store.get_feedback(feedback.id) is not None
        assert (await pipeline.queue.get_counts(JOB_SENTIMENT))["waiting"] == 0

    @pytest.mark.asyncio
    async def test_bulk_import_uses_normal_priority(self, pipeline):
        results = await pipeline.bulk_submit([
            {"channel": "EMAIL", "comment": "Love the new app", "customer_segment": "VIP"},
            {"channel": "SMS", "comment": ""},
            {"channel": "SOCIAL_MEDIA", "comment": "Fees are ridiculous", "metadata": {"handle": "@x"}}
        ])

        job_ids = [job_id for _, job_id in results]
        assert job_ids[1] is None
        for job_id in (job_ids[0], job_ids[2]):
            assert (await pipeline.queue.get_job(job_id)).priority == 5
        assert results[2][0].metadata_ == {"handle": "@x"}

    @pytest.mark.asyncio
    async def test_voice_feedback_queues_transcription(self, pipeline):
        feedback, job_id = await pipeline.submit_voice_feedback("s3://audio/call-1.mp3", {"callId": "c-1"})

        assert feedback.channel == "VOICE_CALL"
        assert feedback.comment == VOICE_PLACEHOLDER
        assert feedback.metadata_["transcriptionStatus"] == "pending"
        assert feedback.metadata_["callId"] == "c-1"

        job = await pipeline.queue.get_job(job_id)
        assert job.job_type == JOB_TRANSCRIPTION
        assert job.priority == 2
        assert job.max_attempts == 3
        assert job.backoff_delay == 5
        assert job.payload == {"feedbackId": feedback.id, "audioUrl": "s3://audio/call-1.mp3"}


# ============================================================================
# END-TO-END TESTS
# ============================================================================

class TestEndToEndWorkflow:
    """Running pipeline from submission to stored results and alerts."""

    @pytest.mark.asyncio
    async def test_tenth_negative_result_raises_high_volume_alert_once(self, pipeline, store, eventually):
        await pipeline.start(warm_up=False)

        async def analyzed(n):
            async def predicate():
                return await analyzed_count(pipeline)() >= n
            await eventually(predicate)

        for _ in range(9):
            await pipeline.submit_feedback("IN_APP_SURVEY", COMMENT)
        await analyzed(9)
        assert await store.list_alerts(AlertType.HIGH_VOLUME_NEGATIVE, "IN_APP_SURVEY") == []

        feedback, _ = await pipeline.submit_feedback("IN_APP_SURVEY", COMMENT)
        await analyzed(10)

        analysis = await store.get_analysis(feedback.id)
        assert analysis.sentiment in ("NEGATIVE", "VERY_NEGATIVE")

        for _ in range(5):
            await pipeline.submit_feedback("IN_APP_SURVEY", COMMENT)
        await analyzed(15)

        alerts = await store.list_alerts(AlertType.HIGH_VOLUME_NEGATIVE, "IN_APP_SURVEY")
        assert len(alerts) == 1
        assert alerts[0].severity == "HIGH"
        assert alerts[0].status == "OPEN"

    @pytest.mark.asyncio
    async def test_voice_feedback_is_transcribed_then_analyzed(self, pipeline, store, eventually):
        await pipeline.start(warm_up=False)

        feedback, _ = await pipeline.submit_voice_feedback("s3://audio/call-2.mp3")

        async def analyzed():
            return await store.get_analysis(feedback.id) is not None

        await eventually(analyzed)

        stored = await store.get_feedback(feedback.id)
        assert stored.comment == TRANSCRIPT
        assert stored.processed is True
        assert stored.metadata_["transcriptionStatus"] == "completed"
        assert stored.metadata_["transcriptId"] == "tx-voice-1"
        assert await store.count_analyses(feedback.id) == 1
        pipeline.transcription_client.submit_transcription.assert_awaited_once_with("s3://audio/call-2.mp3")

    @pytest.mark.asyncio
    async def test_start_recovers_stalled_jobs(self, pipeline, store, eventually):
        feedback, job_id = await pipeline.submit_feedback("EMAIL", "Statements are always late")
        await pipeline.queue.claim(JOB_SENTIMENT)  # left active by a "crashed" process

        await pipeline.start(warm_up=False)

        # the result is stored before the worker marks the job completed
        async def job_completed():
            return (await pipeline.queue.get_job(job_id)).status == "completed"

        await eventually(job_completed)
        assert await store.get_analysis(feedback.id) is not None

    @pytest.mark.asyncio
    async def test_queue_status(self, pipeline):
        await pipeline.submit_feedback("SMS", "Cannot log in")
        await pipeline.submit_voice_feedback("s3://audio/call-3.mp3")

        status = await pipeline.get_queue_status()

        assert status[JOB_SENTIMENT]["waiting"] == 1
        assert status[JOB_TRANSCRIPTION]["waiting"] == 1
        assert status[JOB_SENTIMENT]["workers_running"] is False


# ============================================================================
# API TESTS
# ============================================================================

class TestAPI:
    """FastAPI host endpoints."""

    @pytest.fixture
    def client(self, tmp_path, make_classifier):
        store = FeedbackStore(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
        pipeline = FeedbackPipeline(
            store=store,
            classifier=make_classifier(),
            transcription_client=stt_double(),
            broadcaster=InMemoryBroadcaster(),
            poll_interval=0.01
        )
        with TestClient(create_app(pipeline)) as client:
            yield client

    @property
    def headers(self):
        return {"X-API-Key": config.API_KEY}

    def test_rejects_wrong_api_key(self, client):
        response = client.post(
            "/feedback",
            json={"channel": "EMAIL", "comment": "hi"},
            headers={"X-API-Key": "wrong"}
        )

        assert response.status_code == 401

    def test_submit_feedback(self, client):
        response = client.post(
            "/feedback",
            json={"channel": "IN_APP_SURVEY", "comment": COMMENT, "customer_segment": "VIP"},
            headers=self.headers
        )

        assert response.status_code == 201
        body = response.json()
        assert body["channel"] == "IN_APP_SURVEY"
        assert body["queued"] is True
        assert body["job_id"]

    def test_invalid_channel(self, client):
        response = client.post(
            "/feedback",
            json={"channel": "CARRIER_PIGEON", "comment": "hi"},
            headers=self.headers
        )

        assert response.status_code == 422

    def test_bulk_and_voice(self, client):
        bulk = client.post(
            "/feedback/bulk",
            json={"items": [
                {"channel": "EMAIL", "comment": "Great support"},
                {"channel": "SMS", "comment": ""}
            ]},
            headers=self.headers
        )
        voice = client.post(
            "/feedback/voice",
            json={"audio_url": "s3://audio/call-9.mp3"},
            headers=self.headers
        )

        assert bulk.status_code == 201
        assert [item["queued"] for item in bulk.json()] == [True, False]
        assert voice.status_code == 202
        assert voice.json()["channel"] == "VOICE_CALL"

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert set(body["queues"]) == {JOB_SENTIMENT, JOB_TRANSCRIPTION}

    def test_failed_jobs_and_alerts(self, client):
        assert client.get("/queues/sentiment/failed", headers=self.headers).json() == []
        assert client.get("/queues/unknown/failed", headers=self.headers).status_code == 404

        response = client.patch(
            "/alerts/not-an-alert",
            json={"status": "RESOLVED"},
            headers=self.headers
        )
        assert response.status_code == 404

    def test_resolved_alert_cannot_be_reopened(self, client):
        engine = client.app.state.pipeline.alert_engine
        alert = client.portal.call(
            engine.create_alert,
            "EMAIL", AlertType.SYSTEM_ANOMALY, "Manual", "Investigate", AlertSeverity.LOW
        )

        resolved = client.patch(f"/alerts/{alert.id}", json={"status": "RESOLVED"}, headers=self.headers)
        reopened = client.patch(f"/alerts/{alert.id}", json={"status": "OPEN"}, headers=self.headers)

        assert resolved.status_code == 200
        assert resolved.json()["status"] == "RESOLVED"
        assert reopened.status_code == 409
        assert "already RESOLVED" in reopened.json()["detail"]


# ============================================================================
# RUN TESTS
# ============================================================================

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
