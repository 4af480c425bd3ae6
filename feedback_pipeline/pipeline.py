"""Composition root for the enrichment pipeline.

Builds the store, queue, classifier, transcription client, alert engine and
both workers, wires them together and owns their start/shutdown lifecycle.
Ingestion operations create feedback items and enqueue the first job.
"""
import asyncio
import logging
from typing import Optional, Dict, Any, List, Iterable, Tuple

from alert_engine import AlertEngine
from broadcaster import (
    EventBroadcaster, InMemoryBroadcaster, WebhookBroadcaster, FanOutBroadcaster, TOPIC_FEEDBACK_NEW
)
from cache import PredictionCache
from classifier_client import ClassifierClient, HuggingFaceInferenceBackend
from config import config
from database import FeedbackStore
from job_queue import JobQueue, QueueWorker, JOB_SENTIMENT, JOB_TRANSCRIPTION
from models import Feedback
from rate_limit import TokenBucket
from schemas import FeedbackChannel, SentimentJobPayload, TranscriptionJobPayload
from sentiment_worker import SentimentWorker
from transcription_client import TranscriptionClient
from transcription_worker import TranscriptionWorker

logger = logging.getLogger(__name__)

VOICE_PLACEHOLDER = "[Voice recording - awaiting transcription]"


def build_classifier() -> ClassifierClient:
    """Classifier with the backend and cache selected by configuration."""
    if config.CLASSIFIER_BACKEND == "local":
        # torch/transformers are an optional install
        from local_classifier import LocalTransformersBackend
        backend = LocalTransformersBackend()
    else:
        backend = HuggingFaceInferenceBackend()

    cache = PredictionCache() if config.CLASSIFIER_CACHE_ENABLED else None
    return ClassifierClient(backend=backend, cache=cache)


def build_broadcaster() -> EventBroadcaster:
    return FanOutBroadcaster(InMemoryBroadcaster(), WebhookBroadcaster())


class FeedbackPipeline:
    """Feedback enrichment pipeline.

    Every collaborator can be injected; anything omitted is built from
    `config`.
    """

    def __init__(
        self,
        store: Optional[FeedbackStore] = None,
        queue: Optional[JobQueue] = None,
        classifier: Optional[ClassifierClient] = None,
        transcription_client: Optional[TranscriptionClient] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        alert_engine: Optional[AlertEngine] = None,
        sentiment_concurrency: int = None,
        transcription_concurrency: int = None,
        sentiment_rate_limiter: Optional[TokenBucket] = None,
        transcription_rate_limiter: Optional[TokenBucket] = None,
        poll_interval: float = None
    ):
        self.store = store or FeedbackStore()
        self.queue = queue or JobQueue(self.store.session_factory)
        self.classifier = classifier or build_classifier()
        self.transcription_client = transcription_client or TranscriptionClient()
        self.broadcaster = broadcaster or build_broadcaster()
        self.alert_engine = alert_engine or AlertEngine(self.store, self.broadcaster)

        self.sentiment_worker = SentimentWorker(
            self.store, self.classifier, self.alert_engine, self.broadcaster
        )
        self.transcription_worker = TranscriptionWorker(
            self.store, self.transcription_client, self.queue
        )

        self.sentiment_concurrency = sentiment_concurrency or config.SENTIMENT_BATCH_SIZE
        self.transcription_concurrency = transcription_concurrency or config.TRANSCRIPTION_CONCURRENCY
        self.sentiment_rate_limiter = sentiment_rate_limiter or TokenBucket(
            config.SENTIMENT_RATE_LIMIT_MAX, config.SENTIMENT_RATE_LIMIT_SECONDS
        )
        self.transcription_rate_limiter = transcription_rate_limiter or TokenBucket(
            config.TRANSCRIPTION_RATE_LIMIT_MAX, config.TRANSCRIPTION_RATE_LIMIT_SECONDS
        )
        self.poll_interval = poll_interval

        self._sentiment_pool: Optional[QueueWorker] = None
        self._transcription_pool: Optional[QueueWorker] = None

    @property
    def running(self) -> bool:
        return self._sentiment_pool is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self, warm_up: bool = True) -> None:
        """Create tables, recover stalled jobs and warm the classifier models."""
        await self.store.init_db()
        await self.queue.recover_stalled()
        if warm_up:
            await self.classifier.warm_up()

    async def start(self, warm_up: bool = True) -> None:
        """Initialize and start both worker pools."""
        if self.running:
            return

        await self.init(warm_up=warm_up)

        self._sentiment_pool = self.queue.consume(
            JOB_SENTIMENT,
            self.sentiment_worker.process_job,
            concurrency=self.sentiment_concurrency,
            rate_limiter=self.sentiment_rate_limiter,
            poll_interval=self.poll_interval
        )
        self._transcription_pool = self.queue.consume(
            JOB_TRANSCRIPTION,
            self.transcription_worker.process_job,
            concurrency=self.transcription_concurrency,
            rate_limiter=self.transcription_rate_limiter,
            poll_interval=self.poll_interval
        )
        logger.info("Feedback pipeline started")

    async def shutdown(self, grace: float = None) -> None:
        """Stop workers, then close clients and the store.

        In-flight jobs get `grace` seconds to finish; the rest are cancelled
        and left in the queue for redelivery.
        """
        logger.info("Shutting down feedback pipeline...")
        pools = [pool for pool in (self._sentiment_pool, self._transcription_pool) if pool]
        if pools:
            await asyncio.gather(*(pool.close(grace) for pool in pools))
        self._sentiment_pool = None
        self._transcription_pool = None

        await self.classifier.close()
        await self.transcription_client.close()
        await self.broadcaster.close()
        await self.store.close()
        logger.info("Feedback pipeline stopped")

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def _enqueue_sentiment(self, feedback: Feedback, priority: int) -> str:
        payload = SentimentJobPayload(
            feedback_id=feedback.id,
            text=feedback.comment,
            priority=priority,
            channel_id=feedback.channel
        )
        return await self.queue.enqueue(
            JOB_SENTIMENT,
            payload.model_dump(by_alias=True, mode="json"),
            priority=priority,
            max_attempts=config.SENTIMENT_RETRY_ATTEMPTS,
            backoff_delay=config.SENTIMENT_RETRY_DELAY_SECONDS
        )

    async def submit_feedback(
        self,
        channel: FeedbackChannel,
        comment: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
        customer_segment: Optional[str] = None
    ) -> Tuple[Feedback, Optional[str]]:
        """Store a feedback item and queue it for enrichment.

        Returns:
            (feedback, sentiment job id or None when the comment is empty)
        """
        feedback = await self.store.create_feedback(channel, comment, metadata, customer_segment)
        self.broadcaster.publish(TOPIC_FEEDBACK_NEW, feedback.to_dict())

        job_id = None
        if comment and comment.strip():
            priority = config.PRIORITY_VIP if customer_segment == "VIP" else config.PRIORITY_NORMAL
            job_id = await self._enqueue_sentiment(feedback, priority)
            logger.info(f"Queued sentiment job {job_id} for feedback {feedback.id} (priority {priority})")

        return feedback, job_id

    async def bulk_submit(
        self,
        items: Iterable[Dict[str, Any]]
    ) -> List[Tuple[Feedback, Optional[str]]]:
        """Store many feedback items; all non-empty ones are queued at normal priority."""
        created = await self.store.bulk_create_feedback(items)
        results = []

        for feedback in created:
            self.broadcaster.publish(TOPIC_FEEDBACK_NEW, feedback.to_dict())
            job_id = None
            if feedback.comment and feedback.comment.strip():
                job_id = await self._enqueue_sentiment(feedback, config.PRIORITY_NORMAL)
            results.append((feedback, job_id))

        logger.info(
            f"Bulk import stored {len(created)} feedback items, "
            f"queued {sum(1 for _, job_id in results if job_id)} sentiment jobs"
        )
        return results

    async def submit_voice_feedback(
        self,
        audio_url: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Tuple[Feedback, str]:
        """Store a voice feedback placeholder and queue its transcription."""
        feedback = await self.store.create_feedback(
            FeedbackChannel.VOICE_CALL,
            VOICE_PLACEHOLDER,
            {**(metadata or {}), "audioUrl": audio_url, "transcriptionStatus": "pending"}
        )
        self.broadcaster.publish(TOPIC_FEEDBACK_NEW, feedback.to_dict())

        payload = TranscriptionJobPayload(feedback_id=feedback.id, audio_url=audio_url)
        job_id = await self.queue.enqueue(
            JOB_TRANSCRIPTION,
            payload.model_dump(by_alias=True, exclude_none=True),
            priority=config.PRIORITY_TRANSCRIPTION,
            max_attempts=config.TRANSCRIPTION_RETRY_ATTEMPTS,
            backoff_delay=config.TRANSCRIPTION_RETRY_DELAY_SECONDS
        )
        logger.info(f"Queued transcription job {job_id} for voice feedback {feedback.id}")
        return feedback, job_id

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_queue_status(self) -> Dict[str, Any]:
        status = {
            JOB_SENTIMENT: await self.queue.get_counts(JOB_SENTIMENT),
            JOB_TRANSCRIPTION: await self.queue.get_counts(JOB_TRANSCRIPTION)
        }
        for job_type, pool in ((JOB_SENTIMENT, self._sentiment_pool),
                               (JOB_TRANSCRIPTION, self._transcription_pool)):
            status[job_type]["workers_running"] = bool(pool and pool.running)
        return status
