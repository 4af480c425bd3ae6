"""Database connection and feedback store operations."""
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List, Iterable

from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker, AsyncEngine
from sqlalchemy.pool import StaticPool

from config import config
from models import Base, Feedback, SentimentAnalysis, Alert, utcnow
from schemas import AnalysisResult, AlertStatus, ACTIVE_ALERT_STATUSES

logger = logging.getLogger(__name__)


class FeedbackNotFoundError(Exception):
    """Raised when a feedback item does not exist."""

    def __init__(self, feedback_id: str):
        self.feedback_id = feedback_id
        super().__init__(f"Feedback not found: {feedback_id}")


class AlertClosedError(Exception):
    """Raised when changing an alert that is already resolved or dismissed."""

    def __init__(self, alert_id: str, status: str):
        self.alert_id = alert_id
        self.status = status
        super().__init__(f"Alert {alert_id} is already {status}")


def _value(item: Any) -> Any:
    return getattr(item, "value", item)


def create_engine(database_url: str) -> AsyncEngine:
    """Create an async engine for the given URL."""
    kwargs: Dict[str, Any] = {"echo": False}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        # StaticPool for in-memory SQLite so every session sees the same database
        if ":memory:" in database_url:
            kwargs["poolclass"] = StaticPool
    return create_async_engine(database_url, **kwargs)


class FeedbackStore:
    """SQL-backed store for feedback items, analysis results and alerts."""

    def __init__(self, database_url: str = None, engine: AsyncEngine = None):
        self.engine = engine or create_engine(database_url or config.DATABASE_URL)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

    async def init_db(self) -> None:
        """Initialize database tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    def session(self) -> AsyncSession:
        """Get database session as context manager."""
        return self.session_factory()

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    async def create_feedback(
        self,
        channel: str,
        comment: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
        customer_segment: Optional[str] = None
    ) -> Feedback:
        feedback = Feedback(
            channel=_value(channel),
            comment=comment,
            metadata_=dict(metadata or {}),
            customer_segment=customer_segment,
            processed=False
        )
        async with self.session() as db:
            db.add(feedback)
            await db.commit()
            await db.refresh(feedback)
        return feedback

    async def bulk_create_feedback(self, items: Iterable[Dict[str, Any]]) -> List[Feedback]:
        """Create several feedback items in one transaction.

        Args:
            items: Dicts with channel, comment and optional metadata / customer_segment

        Returns:
            Created Feedback models in input order
        """
        created = [
            Feedback(
                channel=_value(item["channel"]),
                comment=item.get("comment"),
                metadata_=dict(item.get("metadata") or {}),
                customer_segment=item.get("customer_segment"),
                processed=False
            )
            for item in items
        ]
        async with self.session() as db:
            db.add_all(created)
            await db.commit()
            for feedback in created:
                await db.refresh(feedback)
        return created

    async def get_feedback(self, feedback_id: str) -> Optional[Feedback]:
        async with self.session() as db:
            return await db.get(Feedback, feedback_id)

    async def get_metadata(self, feedback_id: str) -> Dict[str, Any]:
        feedback = await self.get_feedback(feedback_id)
        return dict(feedback.metadata_ or {}) if feedback else {}

    async def update_metadata(self, feedback_id: str, updates: Dict[str, Any]) -> Feedback:
        """Merge `updates` into the feedback metadata map."""
        async with self.session() as db:
            feedback = await db.get(Feedback, feedback_id)
            if feedback is None:
                raise FeedbackNotFoundError(feedback_id)
            feedback.metadata_ = {**(feedback.metadata_ or {}), **updates}
            await db.commit()
            await db.refresh(feedback)
            return feedback

    async def apply_transcript(
        self,
        feedback_id: str,
        text: str,
        metadata_updates: Dict[str, Any]
    ) -> Feedback:
        """Replace the comment with a transcript and drop the stale analysis.

        The comment rewrite, metadata merge and analysis deletion commit
        together, so readers never see the new comment next to the old result.
        """
        async with self.session() as db:
            feedback = await db.get(Feedback, feedback_id)
            if feedback is None:
                raise FeedbackNotFoundError(feedback_id)

            feedback.comment = text
            feedback.processed = False
            feedback.metadata_ = {**(feedback.metadata_ or {}), **metadata_updates}
            result = await db.execute(
                delete(SentimentAnalysis).where(SentimentAnalysis.feedback_id == feedback_id)
            )
            await db.commit()
            await db.refresh(feedback)

        logger.info(
            f"Applied transcript to feedback {feedback_id} "
            f"(removed {result.rowcount} stale analysis)"
        )
        return feedback

    # ------------------------------------------------------------------
    # Analysis results
    # ------------------------------------------------------------------

    async def get_analysis(self, feedback_id: str) -> Optional[SentimentAnalysis]:
        async with self.session() as db:
            result = await db.execute(
                select(SentimentAnalysis).where(SentimentAnalysis.feedback_id == feedback_id)
            )
            return result.scalars().first()

    async def count_analyses(self, feedback_id: str) -> int:
        async with self.session() as db:
            result = await db.execute(
                select(func.count(SentimentAnalysis.id)).where(
                    SentimentAnalysis.feedback_id == feedback_id
                )
            )
            return result.scalar_one()

    async def replace_analysis(
        self,
        feedback_id: str,
        analysis: AnalysisResult,
        expected_text: Optional[str] = None,
        analyzed_at: Optional[datetime] = None
    ) -> Optional[SentimentAnalysis]:
        """Store an analysis result, deleting any prior one first.

        Args:
            feedback_id: Feedback the result belongs to
            analysis: Result to store
            expected_text: If given, the result is only stored while the
                feedback comment still equals this text
            analyzed_at: Override for the analysis timestamp

        Returns:
            The stored row, or None if the comment changed in the meantime

        Raises:
            FeedbackNotFoundError: If the feedback item does not exist
        """
        async with self.session() as db:
            feedback = await db.get(Feedback, feedback_id)
            if feedback is None:
                raise FeedbackNotFoundError(feedback_id)

            if expected_text is not None and feedback.comment != expected_text:
                return None

            await db.execute(
                delete(SentimentAnalysis).where(SentimentAnalysis.feedback_id == feedback_id)
            )
            row = SentimentAnalysis(
                feedback_id=feedback_id,
                sentiment=analysis.sentiment.value,
                score=analysis.score,
                confidence=analysis.confidence,
                primary_emotion=analysis.primary_emotion.value if analysis.primary_emotion else None,
                emotions=dict(analysis.emotions),
                key_phrases=list(analysis.key_phrases),
                word_count=analysis.word_count,
                detected_language="en",
                analyzed_at=analyzed_at or utcnow()
            )
            db.add(row)
            feedback.processed = True
            await db.commit()
            await db.refresh(row)
            return row

    async def delete_analysis(self, feedback_id: str) -> int:
        async with self.session() as db:
            result = await db.execute(
                delete(SentimentAnalysis).where(SentimentAnalysis.feedback_id == feedback_id)
            )
            await db.commit()
            return result.rowcount

    async def count_results(
        self,
        channel: str,
        since: datetime,
        sentiments: Optional[Iterable[str]] = None
    ) -> int:
        """Count analysis results for a channel analyzed at or after `since`."""
        query = (
            select(func.count(SentimentAnalysis.id))
            .join(Feedback, Feedback.id == SentimentAnalysis.feedback_id)
            .where(Feedback.channel == _value(channel), SentimentAnalysis.analyzed_at >= since)
        )
        if sentiments is not None:
            query = query.where(SentimentAnalysis.sentiment.in_([_value(s) for s in sentiments]))

        async with self.session() as db:
            result = await db.execute(query)
            return result.scalar_one()

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def find_active_alert(
        self,
        alert_type: str,
        channel: str,
        since: datetime
    ) -> Optional[Alert]:
        """Find an open or in-progress alert for (type, channel) created since `since`."""
        async with self.session() as db:
            result = await db.execute(
                select(Alert)
                .where(
                    Alert.type == _value(alert_type),
                    Alert.channel == _value(channel),
                    Alert.created_at >= since,
                    Alert.status.in_([s.value for s in ACTIVE_ALERT_STATUSES])
                )
                .order_by(Alert.created_at.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def create_alert(self, **fields: Any) -> Alert:
        alert = Alert(**fields)
        async with self.session() as db:
            db.add(alert)
            await db.commit()
            await db.refresh(alert)
        return alert

    async def update_alert(
        self,
        alert_id: str,
        status: AlertStatus,
        assigned_to: Optional[str] = None
    ) -> Optional[Alert]:
        """Move an open or in-progress alert to `status`.

        Returns:
            Updated Alert, or None if it does not exist

        Raises:
            AlertClosedError: If the alert is already resolved or dismissed
        """
        async with self.session() as db:
            alert = await db.get(Alert, alert_id)
            if alert is None:
                return None
            if alert.status not in {s.value for s in ACTIVE_ALERT_STATUSES}:
                raise AlertClosedError(alert_id, alert.status)

            alert.status = status.value
            if assigned_to is not None:
                alert.assigned_to = assigned_to
            if status in (AlertStatus.RESOLVED, AlertStatus.DISMISSED):
                alert.resolved_at = utcnow()
            await db.commit()
            await db.refresh(alert)
            return alert

    async def list_alerts(
        self,
        alert_type: Optional[str] = None,
        channel: Optional[str] = None
    ) -> List[Alert]:
        query = select(Alert).order_by(Alert.created_at.desc())
        if alert_type is not None:
            query = query.where(Alert.type == _value(alert_type))
        if channel is not None:
            query = query.where(Alert.channel == _value(channel))

        async with self.session() as db:
            result = await db.execute(query)
            return list(result.scalars().all())
