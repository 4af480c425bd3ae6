"""Pydantic schemas for job payloads, classifier results and API requests."""
from enum import Enum
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, List, Any


class FeedbackChannel(str, Enum):
    IN_APP_SURVEY = "IN_APP_SURVEY"
    CHATBOT = "CHATBOT"
    VOICE_CALL = "VOICE_CALL"
    SOCIAL_MEDIA = "SOCIAL_MEDIA"
    EMAIL = "EMAIL"
    WEB_FORM = "WEB_FORM"
    SMS = "SMS"


class Sentiment(str, Enum):
    """Five ordered sentiment categories."""

    VERY_POSITIVE = "VERY_POSITIVE"
    POSITIVE = "POSITIVE"
    NEUTRAL = "NEUTRAL"
    NEGATIVE = "NEGATIVE"
    VERY_NEGATIVE = "VERY_NEGATIVE"


NEGATIVE_SENTIMENTS = (Sentiment.NEGATIVE, Sentiment.VERY_NEGATIVE)


class Emotion(str, Enum):
    JOY = "JOY"
    SATISFACTION = "SATISFACTION"
    NEUTRAL = "NEUTRAL"
    FRUSTRATION = "FRUSTRATION"
    ANGER = "ANGER"
    SADNESS = "SADNESS"
    CONFUSION = "CONFUSION"
    SURPRISE = "SURPRISE"


class AlertType(str, Enum):
    SENTIMENT_SPIKE = "SENTIMENT_SPIKE"
    HIGH_VOLUME_NEGATIVE = "HIGH_VOLUME_NEGATIVE"
    TRENDING_TOPIC = "TRENDING_TOPIC"
    CHANNEL_PERFORMANCE = "CHANNEL_PERFORMANCE"
    CUSTOMER_CHURN_RISK = "CUSTOMER_CHURN_RISK"
    SYSTEM_ANOMALY = "SYSTEM_ANOMALY"


class AlertSeverity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class AlertStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"


ACTIVE_ALERT_STATUSES = (AlertStatus.OPEN, AlertStatus.IN_PROGRESS)


# ============================================================================
# Queue payloads
# ============================================================================

class SentimentJobPayload(BaseModel):
    """Payload of a `sentiment` job as stored in the queue."""

    model_config = ConfigDict(populate_by_name=True)

    feedback_id: str = Field(..., alias="feedbackId")
    text: str
    priority: int = 5
    channel_id: Optional[FeedbackChannel] = Field(None, alias="channelId")


class TranscriptionJobPayload(BaseModel):
    """Payload of a `transcription` job as stored in the queue."""

    model_config = ConfigDict(populate_by_name=True)

    feedback_id: str = Field(..., alias="feedbackId")
    audio_url: str = Field(..., alias="audioUrl")
    transcript_id: Optional[str] = Field(None, alias="transcriptId")


# ============================================================================
# Classifier results
# ============================================================================

class SentimentResult(BaseModel):
    sentiment: Sentiment
    score: float = Field(..., ge=-1.0, le=1.0)
    confidence: float = Field(..., ge=0.0, le=1.0)


class EmotionResult(BaseModel):
    primary_emotion: Optional[Emotion] = None
    emotions: Dict[str, float] = Field(default_factory=dict)
    confidence: float = 0.0


class AnalysisResult(BaseModel):
    """Enrichment produced for one feedback item."""

    sentiment: Sentiment
    score: float = Field(..., ge=-1.0, le=1.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    primary_emotion: Optional[Emotion] = None
    emotions: Dict[str, float] = Field(default_factory=dict)
    key_phrases: List[str] = Field(default_factory=list, max_length=5)
    word_count: int = 0


# ============================================================================
# Speech-to-text results
# ============================================================================

class TranscriptWord(BaseModel):
    text: str
    start: int
    end: int
    confidence: float


class TranscriptionResult(BaseModel):
    id: str
    status: str  # queued, processing, completed, error
    text: Optional[str] = None
    confidence: Optional[float] = None
    words: Optional[List[TranscriptWord]] = None
    error: Optional[str] = None


# ============================================================================
# API requests / responses
# ============================================================================

class FeedbackRequest(BaseModel):
    """Request schema for feedback submission."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "channel": "IN_APP_SURVEY",
                "comment": "App keeps crashing when I try to view my statements.",
                "customer_segment": "VIP"
            }
        }
    )

    channel: FeedbackChannel
    comment: Optional[str] = Field(None, max_length=5000, description="Customer feedback text")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    customer_segment: Optional[str] = None


class BulkFeedbackRequest(BaseModel):
    items: List[FeedbackRequest] = Field(..., min_length=1, max_length=1000)


class VoiceFeedbackRequest(BaseModel):
    """Voice feedback whose audio is already in the object store."""

    audio_url: str = Field(..., description="Publicly fetchable audio URL")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class FeedbackAccepted(BaseModel):
    id: str
    channel: FeedbackChannel
    queued: bool = Field(..., description="Whether an enrichment job was enqueued")
    job_id: Optional[str] = None
    created_at: str


class AlertUpdateRequest(BaseModel):
    status: AlertStatus
    assigned_to: Optional[str] = None
