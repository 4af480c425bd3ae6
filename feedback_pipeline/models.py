"""Database models for feedback, analysis results, alerts and queued jobs."""
import uuid
from datetime import datetime, UTC
from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Boolean, Float, JSON, ForeignKey, Index
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(UTC)


def _uuid() -> str:
    return str(uuid.uuid4())


class Feedback(Base):
    """Feedback item."""

    __tablename__ = "feedback"

    id = Column(String(36), primary_key=True, default=_uuid)
    channel = Column(String(20), nullable=False, index=True)
    comment = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    customer_segment = Column(String(50), nullable=True)
    processed = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self):
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "channel": self.channel,
            "comment": self.comment,
            "metadata": self.metadata_ or {},
            "customer_segment": self.customer_segment,
            "processed": self.processed,
            "created_at": self.created_at.isoformat() if self.created_at else None
        }


class SentimentAnalysis(Base):
    """Analysis result; at most one per feedback item."""

    __tablename__ = "sentiment_analysis"

    id = Column(String(36), primary_key=True, default=_uuid)
    feedback_id = Column(
        String(36), ForeignKey("feedback.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    sentiment = Column(String(20), nullable=False, index=True)
    score = Column(Float, nullable=False)
    confidence = Column(Float, nullable=False)
    primary_emotion = Column(String(20), nullable=True)
    emotions = Column(JSON, nullable=False, default=dict)
    key_phrases = Column(JSON, nullable=False, default=list)
    word_count = Column(Integer, nullable=True)
    detected_language = Column(String(8), nullable=True)
    analyzed_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "feedback_id": self.feedback_id,
            "sentiment": self.sentiment,
            "score": self.score,
            "confidence": self.confidence,
            "primary_emotion": self.primary_emotion,
            "emotions": self.emotions or {},
            "key_phrases": self.key_phrases or [],
            "word_count": self.word_count,
            "analyzed_at": self.analyzed_at.isoformat() if self.analyzed_at else None
        }


class Alert(Base):
    """Alert raised by the alert engine or created manually."""

    __tablename__ = "alerts"

    id = Column(String(36), primary_key=True, default=_uuid)
    type = Column(String(30), nullable=False)
    severity = Column(String(10), nullable=False)
    channel = Column(String(20), nullable=True)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    status = Column(String(15), nullable=False, default="OPEN")
    assigned_to = Column(String(100), nullable=True)
    threshold = Column(JSON, nullable=True)  # thresholds in force when raised
    data = Column(JSON, nullable=True)  # observed values when raised
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_alerts_type_channel_created", "type", "channel", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity,
            "channel": self.channel,
            "title": self.title,
            "message": self.message,
            "status": self.status,
            "assigned_to": self.assigned_to,
            "threshold": self.threshold,
            "data": self.data,
            "created_at": self.created_at.isoformat() if self.created_at else None
        }


class QueueJob(Base):
    """Durable queue entry."""

    __tablename__ = "queue_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_type = Column(String(30), nullable=False)
    payload = Column(JSON, nullable=False)
    priority = Column(Integer, nullable=False, default=5)
    status = Column(String(10), nullable=False, default="waiting")  # waiting, active, completed, failed
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    backoff_delay = Column(Float, nullable=False, default=2.0)  # seconds
    available_at = Column(DateTime, default=utcnow, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_queue_jobs_claim", "job_type", "status", "priority", "id"),
    )
