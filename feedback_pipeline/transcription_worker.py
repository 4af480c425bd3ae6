"""Transcription worker: turns voice feedback into text and hands it to sentiment."""
import logging

from pydantic import ValidationError

from config import config
from database import FeedbackStore
from job_queue import JobQueue, QueuedJob, UnrecoverableJobError, JOB_SENTIMENT
from models import utcnow
from schemas import TranscriptionJobPayload, SentimentJobPayload, FeedbackChannel
from transcription_client import (
    TranscriptionClient, TranscriptionFailedError, TranscriptionTimeoutError, transcript_is_empty
)

logger = logging.getLogger(__name__)


class EmptyTranscriptError(Exception):
    """Provider finished but returned no text. Retried like a transient error."""


class TranscriptionWorker:
    """Handler for `transcription` jobs.

    The provider transcript id is saved into the job payload right after
    submission, so a retried job resumes polling instead of re-submitting.
    """

    def __init__(
        self,
        store: FeedbackStore,
        transcription_client: TranscriptionClient,
        queue: JobQueue,
        poll_attempts: int = None,
        poll_interval: float = None
    ):
        self.store = store
        self.transcription_client = transcription_client
        self.queue = queue
        self.poll_attempts = poll_attempts or config.TRANSCRIPTION_POLL_ATTEMPTS
        self.poll_interval = (
            poll_interval if poll_interval is not None else config.TRANSCRIPTION_POLL_INTERVAL_SECONDS
        )

    async def process_job(self, job: QueuedJob) -> None:
        try:
            payload = TranscriptionJobPayload.model_validate(job.payload)
        except ValidationError as e:
            raise UnrecoverableJobError(f"Invalid transcription job payload: {e}") from e

        feedback_id = payload.feedback_id
        logger.info(f"Processing transcription job {job.id} for feedback {feedback_id}")

        try:
            await self._transcribe(job, payload)
        except Exception as e:
            await self._mark_failed(feedback_id, e)
            if isinstance(e, (TranscriptionFailedError, TranscriptionTimeoutError)):
                raise UnrecoverableJobError(str(e)) from e
            raise

    async def _transcribe(self, job: QueuedJob, payload: TranscriptionJobPayload) -> None:
        feedback_id = payload.feedback_id
        transcript_id = payload.transcript_id

        if transcript_id:
            logger.info(f"Resuming transcription {transcript_id} for feedback {feedback_id}")
        else:
            transcript_id = await self.transcription_client.submit_transcription(payload.audio_url)
            await job.update_data({**job.payload, "transcriptId": transcript_id})

        result = await self.transcription_client.poll_transcription(
            transcript_id,
            max_attempts=self.poll_attempts,
            interval=self.poll_interval
        )

        if transcript_is_empty(result):
            raise EmptyTranscriptError(f"Transcription {transcript_id} returned empty text")

        text = result.text.strip()
        await self.store.apply_transcript(feedback_id, text, {
            "transcriptionStatus": "completed",
            "transcriptId": transcript_id,
            "transcriptionConfidence": result.confidence,
            "transcribedAt": utcnow().isoformat()
        })

        sentiment_payload = SentimentJobPayload(
            feedback_id=feedback_id,
            text=text,
            priority=config.PRIORITY_TRANSCRIBED,
            channel_id=FeedbackChannel.VOICE_CALL
        )
        sentiment_job_id = await self.queue.enqueue(
            JOB_SENTIMENT,
            sentiment_payload.model_dump(by_alias=True, mode="json"),
            priority=config.PRIORITY_TRANSCRIBED,
            max_attempts=config.SENTIMENT_RETRY_ATTEMPTS,
            backoff_delay=config.SENTIMENT_RETRY_DELAY_SECONDS
        )

        logger.info(
            f"Transcription completed for feedback {feedback_id}, "
            f"queued sentiment job {sentiment_job_id}"
        )

        # The transcript now lives in the feedback row; provider copy is no longer needed
        try:
            await self.transcription_client.delete_transcript(transcript_id)
        except Exception as e:
            logger.warning(f"Transcript cleanup failed for {transcript_id}: {e}")

    async def _mark_failed(self, feedback_id: str, error: Exception) -> None:
        try:
            await self.store.update_metadata(feedback_id, {
                "transcriptionStatus": "failed",
                "transcriptionError": str(error)
            })
        except Exception as e:
            logger.error(f"Failed to record transcription failure for feedback {feedback_id}: {e}")

        logger.error(f"Transcription failed for feedback {feedback_id}: {error}")
