"""Sentiment worker: enriches feedback text and stores the result."""
import logging

from pydantic import ValidationError

from alert_engine import AlertEngine
from broadcaster import EventBroadcaster, TOPIC_SENTIMENT_ANALYZED, TOPIC_METRICS_UPDATE
from classifier_client import ClassifierClient
from database import FeedbackStore, FeedbackNotFoundError
from job_queue import QueuedJob, UnrecoverableJobError
from schemas import SentimentJobPayload

logger = logging.getLogger(__name__)


class SentimentWorker:
    """Handler for `sentiment` jobs.

    Each job is analyzed, the result replaces any earlier one for the same
    feedback item, and the channel is evaluated for alerts.
    """

    def __init__(
        self,
        store: FeedbackStore,
        classifier: ClassifierClient,
        alert_engine: AlertEngine,
        broadcaster: EventBroadcaster
    ):
        self.store = store
        self.classifier = classifier
        self.alert_engine = alert_engine
        self.broadcaster = broadcaster

    async def process_job(self, job: QueuedJob) -> None:
        try:
            payload = SentimentJobPayload.model_validate(job.payload)
        except ValidationError as e:
            raise UnrecoverableJobError(f"Invalid sentiment job payload: {e}") from e

        feedback_id = payload.feedback_id
        logger.info(f"Processing sentiment job {job.id} for feedback {feedback_id}")

        analysis = await self.classifier.analyze_feedback(feedback_id, payload.text)

        try:
            stored = await self.store.replace_analysis(
                feedback_id, analysis, expected_text=payload.text
            )
        except FeedbackNotFoundError:
            logger.warning(f"Feedback {feedback_id} no longer exists, dropping sentiment job {job.id}")
            return

        if stored is None:
            logger.info(
                f"Feedback {feedback_id} changed since job {job.id} was queued, "
                f"discarding superseded result"
            )
            return

        if payload.channel_id is not None:
            channel = payload.channel_id.value
        else:
            feedback = await self.store.get_feedback(feedback_id)
            channel = feedback.channel if feedback else None

        if channel is None:
            logger.warning(f"No channel for feedback {feedback_id}, skipping alert evaluation")
            self.broadcaster.publish(TOPIC_SENTIMENT_ANALYZED, {
                "feedbackId": feedback_id,
                "sentiment": stored.to_dict()
            })
            return

        try:
            await self.alert_engine.check_thresholds(channel, analysis.sentiment)
        except Exception as e:
            logger.error(f"Alert evaluation failed for channel {channel}: {e}")

        self.broadcaster.publish(TOPIC_SENTIMENT_ANALYZED, {
            "feedbackId": feedback_id,
            "channel": channel,
            "sentiment": stored.to_dict()
        })

        try:
            stats = await self.alert_engine.window_stats(channel)
            self.broadcaster.publish(TOPIC_METRICS_UPDATE, stats)
        except Exception as e:
            logger.error(f"Failed to compute metrics for channel {channel}: {e}")

        logger.info(
            f"Sentiment analysis completed for feedback {feedback_id}: {analysis.sentiment.value}"
        )
