"""Sentiment and emotion classification with retry and keyword fallback."""
import asyncio
import logging
from typing import Dict, Any, List, Optional, Iterable

import httpx

from config import config
from cache import PredictionCache
from fallback_analyzer import KeywordFallbackAnalyzer, extract_key_phrases, count_words
from schemas import SentimentResult, EmotionResult, AnalysisResult, Sentiment, Emotion

logger = logging.getLogger(__name__)

# Provider emotion label -> internal emotion. Unlisted labels are ignored.
EMOTION_MAPPING = {
    "joy": Emotion.JOY,
    "satisfaction": Emotion.SATISFACTION,
    "neutral": Emotion.NEUTRAL,
    "sadness": Emotion.SADNESS,
    "anger": Emotion.ANGER,
    "fear": Emotion.FRUSTRATION,
    "surprise": Emotion.SURPRISE,
    "disgust": Emotion.FRUSTRATION,
    "frustration": Emotion.FRUSTRATION,
    "confusion": Emotion.CONFUSION,
}


class ClassifierError(Exception):
    """Classifier provider failed or returned something unusable."""


class ModelLoadingError(ClassifierError):
    """Provider is still loading the model (HTTP 503)."""


class RateLimitedError(ClassifierError):
    """Provider rejected the request with a rate limit (HTTP 429)."""


def _normalize_predictions(data: Any) -> List[Dict[str, Any]]:
    """Flatten a provider response into a list of {label, score} dicts.

    The inference API answers `[[{...}, ...]]` for a single input, older
    models answer `[{...}, ...]` or a bare object.
    """
    if isinstance(data, list) and data and isinstance(data[0], list):
        data = data[0]
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not data:
        raise ClassifierError(f"Malformed classifier response: {data!r}")

    predictions = []
    for item in data:
        if not isinstance(item, dict) or "label" not in item or "score" not in item:
            raise ClassifierError(f"Malformed classifier prediction: {item!r}")
        predictions.append({"label": str(item["label"]), "score": float(item["score"])})
    return predictions


class HuggingFaceInferenceBackend:
    """Calls hosted text-classification models over HTTP."""

    def __init__(
        self,
        api_key: str = None,
        base_url: str = None,
        timeout: float = None,
        client: httpx.AsyncClient = None
    ):
        self.api_key = api_key if api_key is not None else config.HUGGINGFACE_API_KEY
        self.base_url = (base_url or config.HUGGINGFACE_BASE_URL).rstrip("/")
        self.client = client or httpx.AsyncClient(
            timeout=timeout or config.CLASSIFIER_TIMEOUT_SECONDS
        )

    async def predict(self, model: str, text: str) -> List[Dict[str, Any]]:
        """Classify `text` with `model`.

        Raises:
            ModelLoadingError: On HTTP 503
            RateLimitedError: On HTTP 429
            httpx.HTTPError: On any other transport or status error
            ClassifierError: On a malformed body
        """
        response = await self.client.post(
            f"{self.base_url}/{model}",
            json={"inputs": text},
            headers={"Authorization": f"Bearer {self.api_key}"}
        )

        if response.status_code == 503:
            raise ModelLoadingError(f"Model {model} is loading")
        if response.status_code == 429:
            raise RateLimitedError(f"Rate limited by provider for model {model}")
        response.raise_for_status()

        return _normalize_predictions(response.json())

    async def close(self) -> None:
        await self.client.aclose()


class ClassifierClient:
    """Maps provider predictions to the internal sentiment/emotion taxonomy.

    Retry policy per call:
    - model loading: sleep the warm-up delay, retry once
    - rate limited: sleep the retry delay, retry once
    - anything else, or a second failure: keyword fallback

    None of the public classify methods raise for a non-empty input.
    """

    def __init__(
        self,
        backend=None,
        fallback: KeywordFallbackAnalyzer = None,
        cache: Optional[PredictionCache] = None,
        sentiment_model: str = None,
        emotion_model: str = None,
        very_threshold: float = None,
        moderate_threshold: float = None,
        warmup_delay: float = None,
        retry_delay: float = None,
        sleep=asyncio.sleep
    ):
        self.backend = backend or HuggingFaceInferenceBackend()
        self.fallback = fallback or KeywordFallbackAnalyzer()
        self.cache = cache
        self.sentiment_model = sentiment_model or config.SENTIMENT_MODEL
        self.emotion_model = emotion_model or config.EMOTION_MODEL
        self.very_threshold = very_threshold if very_threshold is not None else config.SENTIMENT_VERY_THRESHOLD
        self.moderate_threshold = (
            moderate_threshold if moderate_threshold is not None else config.SENTIMENT_MODERATE_THRESHOLD
        )
        self.warmup_delay = warmup_delay if warmup_delay is not None else config.MODEL_WARMUP_DELAY_SECONDS
        self.retry_delay = retry_delay if retry_delay is not None else config.SENTIMENT_RETRY_DELAY_SECONDS
        self._sleep = sleep
        self.models_warmed = False

    async def warm_up(self) -> None:
        """Issue one request per model so the provider loads them."""
        if self.models_warmed:
            return

        logger.info("Warming up NLP models...")
        try:
            await asyncio.gather(
                self.backend.predict(self.sentiment_model, "Hello world"),
                self.backend.predict(self.emotion_model, "I am happy")
            )
            self.models_warmed = True
            logger.info("NLP models warmed up successfully")
        except Exception as e:
            logger.warning(f"Model warm-up failed, will warm up on first request: {e}")

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _predict(self, model: str, text: str) -> List[Dict[str, Any]]:
        if self.cache is not None:
            cached = self.cache.get(model, text)
            if cached is not None:
                return cached

        predictions = await self.backend.predict(model, text)

        if self.cache is not None:
            self.cache.set(model, text, predictions)
        return predictions

    async def _predict_with_retry(self, model: str, text: str) -> List[Dict[str, Any]]:
        try:
            return await self._predict(model, text)
        except ModelLoadingError:
            logger.warning(f"Model {model} is loading, waiting {self.warmup_delay}s for warm-up...")
            await self._sleep(self.warmup_delay)
        except RateLimitedError:
            logger.warning(f"Rate limit hit for {model}, retrying in {self.retry_delay}s...")
            await self._sleep(self.retry_delay)

        return await self._predict(model, text)

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def map_sentiment(self, label: str, score: float) -> SentimentResult:
        """Map a binary POSITIVE/NEGATIVE prediction onto five categories.

        score >= very threshold     -> extreme category, score unchanged
        score >= moderate threshold -> moderate category, score * 0.75
        otherwise                   -> neutral, score * 0.5
        NEGATIVE scores are negated first.
        """
        positive = label.upper() == "POSITIVE"
        signed = score if positive else -score

        if score >= self.very_threshold:
            sentiment = Sentiment.VERY_POSITIVE if positive else Sentiment.VERY_NEGATIVE
            mapped = signed
        elif score >= self.moderate_threshold:
            sentiment = Sentiment.POSITIVE if positive else Sentiment.NEGATIVE
            mapped = signed * 0.75
        else:
            sentiment = Sentiment.NEUTRAL
            mapped = signed * 0.5

        return SentimentResult(sentiment=sentiment, score=mapped, confidence=score)

    @staticmethod
    def map_emotions(predictions: Iterable[Dict[str, Any]]) -> EmotionResult:
        emotions: Dict[str, float] = {}
        primary: Optional[Emotion] = None
        max_score = 0.0

        for prediction in predictions:
            label = prediction["label"].lower()
            mapped = EMOTION_MAPPING.get(label)
            if mapped is None:
                continue

            emotions[label] = prediction["score"]
            if prediction["score"] > max_score:
                max_score = prediction["score"]
                primary = mapped

        return EmotionResult(primary_emotion=primary, emotions=emotions, confidence=max_score)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def classify_sentiment(self, text: str) -> SentimentResult:
        try:
            predictions = await self._predict_with_retry(self.sentiment_model, text)
            top = max(predictions, key=lambda p: p["score"])
            return self.map_sentiment(top["label"], top["score"])
        except Exception as e:
            logger.error(f"Sentiment classifier error, using fallback: {e}")
            return self.fallback.analyze_sentiment(text)

    async def classify_emotion(self, text: str) -> EmotionResult:
        try:
            predictions = await self._predict_with_retry(self.emotion_model, text)
            return self.map_emotions(predictions)
        except Exception as e:
            logger.error(f"Emotion classifier error, using fallback: {e}")
            return self.fallback.analyze_emotion(text)

    @staticmethod
    def neutral_result() -> AnalysisResult:
        """Fixed result for empty input."""
        return AnalysisResult(
            sentiment=Sentiment.NEUTRAL,
            score=0.0,
            confidence=0.5,
            primary_emotion=Emotion.NEUTRAL,
            emotions={"neutral": 1.0},
            key_phrases=[],
            word_count=0
        )

    async def analyze_feedback(self, feedback_id: str, text: Optional[str]) -> AnalysisResult:
        """Analyze one feedback text.

        Args:
            feedback_id: Used for logging only
            text: Feedback text; empty or whitespace-only short-circuits

        Returns:
            AnalysisResult with sentiment, emotions, key phrases and word count
        """
        logger.info(f"Starting sentiment analysis for feedback: {feedback_id}")

        if not text or not text.strip():
            logger.warning(f"Empty text for feedback: {feedback_id}, using neutral sentiment")
            return self.neutral_result()

        sentiment, emotion = await asyncio.gather(
            self.classify_sentiment(text),
            self.classify_emotion(text)
        )

        result = AnalysisResult(
            sentiment=sentiment.sentiment,
            score=sentiment.score,
            confidence=sentiment.confidence,
            primary_emotion=emotion.primary_emotion,
            emotions=emotion.emotions,
            key_phrases=extract_key_phrases(text),
            word_count=count_words(text)
        )

        logger.info(
            f"Sentiment analysis completed for feedback {feedback_id}: "
            f"{result.sentiment.value} (confidence {result.confidence:.2f}, "
            f"emotion {result.primary_emotion.value if result.primary_emotion else None})"
        )
        return result

    async def close(self) -> None:
        close = getattr(self.backend, "close", None)
        if close is not None:
            await close()
