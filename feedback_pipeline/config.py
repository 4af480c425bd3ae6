"""Configuration management for the feedback pipeline."""
import os
from dotenv import load_dotenv

load_dotenv()


def _bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    """Application configuration."""

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # API Configuration
    API_KEY = os.getenv("API_KEY", "test-api-key-12345")

    # Database Configuration
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./feedback.db")

    # Hugging Face classifier configuration
    HUGGINGFACE_API_KEY = os.getenv("HUGGINGFACE_API_KEY", "")
    HUGGINGFACE_BASE_URL = os.getenv(
        "HUGGINGFACE_BASE_URL", "https://api-inference.huggingface.co/models"
    )
    SENTIMENT_MODEL = os.getenv(
        "SENTIMENT_MODEL", "distilbert-base-uncased-finetuned-sst-2-english"
    )
    EMOTION_MODEL = os.getenv(
        "EMOTION_MODEL", "j-hartmann/emotion-english-distilroberta-base"
    )
    CLASSIFIER_BACKEND = os.getenv("CLASSIFIER_BACKEND", "api")  # api or local
    CLASSIFIER_TIMEOUT_SECONDS = float(os.getenv("CLASSIFIER_TIMEOUT_SECONDS", "30"))

    # Cache Configuration
    CLASSIFIER_CACHE_ENABLED = _bool("CLASSIFIER_CACHE_ENABLED", "true")
    CACHE_MAX_SIZE = int(os.getenv("CACHE_MAX_SIZE", "1000"))
    CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", "3600"))

    # Sentiment processing
    SENTIMENT_BATCH_SIZE = int(os.getenv("SENTIMENT_BATCH_SIZE", "10"))
    SENTIMENT_RETRY_ATTEMPTS = int(os.getenv("SENTIMENT_RETRY_ATTEMPTS", "3"))
    SENTIMENT_RETRY_DELAY_SECONDS = float(os.getenv("SENTIMENT_RETRY_DELAY_SECONDS", "2"))
    MODEL_WARMUP_DELAY_SECONDS = float(os.getenv("MODEL_WARMUP_DELAY_SECONDS", "20"))
    SENTIMENT_RATE_LIMIT_MAX = int(os.getenv("SENTIMENT_RATE_LIMIT_MAX", "10"))
    SENTIMENT_RATE_LIMIT_SECONDS = float(os.getenv("SENTIMENT_RATE_LIMIT_SECONDS", "1"))

    # Sentiment score bands (applied to the provider confidence)
    SENTIMENT_VERY_THRESHOLD = float(os.getenv("SENTIMENT_VERY_THRESHOLD", "0.8"))
    SENTIMENT_MODERATE_THRESHOLD = float(os.getenv("SENTIMENT_MODERATE_THRESHOLD", "0.6"))

    # Speech-to-text configuration
    ASSEMBLYAI_API_KEY = os.getenv("ASSEMBLYAI_API_KEY", "")
    ASSEMBLYAI_BASE_URL = os.getenv("ASSEMBLYAI_BASE_URL", "https://api.assemblyai.com")
    TRANSCRIPTION_LANGUAGE_CODE = os.getenv("TRANSCRIPTION_LANGUAGE_CODE", "en")
    TRANSCRIPTION_CONCURRENCY = int(os.getenv("TRANSCRIPTION_CONCURRENCY", "3"))
    TRANSCRIPTION_RATE_LIMIT_MAX = int(os.getenv("TRANSCRIPTION_RATE_LIMIT_MAX", "10"))
    TRANSCRIPTION_RATE_LIMIT_SECONDS = float(os.getenv("TRANSCRIPTION_RATE_LIMIT_SECONDS", "60"))
    TRANSCRIPTION_POLL_ATTEMPTS = int(os.getenv("TRANSCRIPTION_POLL_ATTEMPTS", "60"))
    TRANSCRIPTION_POLL_INTERVAL_SECONDS = float(
        os.getenv("TRANSCRIPTION_POLL_INTERVAL_SECONDS", "5")
    )
    TRANSCRIPTION_RETRY_ATTEMPTS = int(os.getenv("TRANSCRIPTION_RETRY_ATTEMPTS", "3"))
    TRANSCRIPTION_RETRY_DELAY_SECONDS = float(
        os.getenv("TRANSCRIPTION_RETRY_DELAY_SECONDS", "5")
    )

    # Job queue
    QUEUE_POLL_INTERVAL_SECONDS = float(os.getenv("QUEUE_POLL_INTERVAL_SECONDS", "0.5"))
    QUEUE_KEEP_COMPLETED = int(os.getenv("QUEUE_KEEP_COMPLETED", "100"))
    QUEUE_KEEP_FAILED = int(os.getenv("QUEUE_KEEP_FAILED", "500"))
    WORKER_SHUTDOWN_GRACE_SECONDS = float(os.getenv("WORKER_SHUTDOWN_GRACE_SECONDS", "30"))

    # Alert thresholds
    ALERT_HIGH_VOLUME_COUNT_1H = int(os.getenv("ALERT_HIGH_VOLUME_COUNT_1H", "20"))
    ALERT_SPIKE_RATIO_1H = float(os.getenv("ALERT_SPIKE_RATIO_1H", "0.7"))
    ALERT_SPIKE_MIN_SAMPLE_1H = int(os.getenv("ALERT_SPIKE_MIN_SAMPLE_1H", "10"))
    ALERT_SPIKE_COUNT_1H = int(os.getenv("ALERT_SPIKE_COUNT_1H", "10"))
    ALERT_SPIKE_COUNT_24H = int(os.getenv("ALERT_SPIKE_COUNT_24H", "50"))
    ALERT_DEDUP_WINDOW_SECONDS = int(os.getenv("ALERT_DEDUP_WINDOW_SECONDS", "3600"))

    # Alert delivery
    ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL", "")
    ALERT_ENABLED = _bool("ALERT_ENABLED", "false")

    # Feedback channels
    SUPPORTED_CHANNELS = [
        "IN_APP_SURVEY",
        "CHATBOT",
        "VOICE_CALL",
        "SOCIAL_MEDIA",
        "EMAIL",
        "WEB_FORM",
        "SMS"
    ]

    # Job priorities (lower runs first)
    PRIORITY_VIP = 1
    PRIORITY_TRANSCRIBED = 1
    PRIORITY_TRANSCRIPTION = 2
    PRIORITY_NORMAL = 5


config = Config()
