"""Keyword-based fallback classification and local text features."""
import logging
import re
from collections import Counter
from typing import List

from schemas import SentimentResult, EmotionResult, Sentiment, Emotion

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "from", "as", "is", "was", "are", "were", "been", "be",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "can", "i", "you", "he", "she", "it", "we",
    "they", "my", "your", "his", "her", "its", "our", "their", "this", "that",
    "these", "those"
})

MAX_KEY_PHRASES = 5

_PUNCTUATION = re.compile(r"[^\w\s]")


def extract_key_phrases(text: str, limit: int = MAX_KEY_PHRASES) -> List[str]:
    """Return the most frequent content words of `text`.

    Lowercases, replaces punctuation with spaces, drops stop words and words
    of three characters or fewer, then ranks by frequency. Ties keep first
    occurrence order.
    """
    words = [
        word
        for word in _PUNCTUATION.sub(" ", text.lower()).split()
        if len(word) > 3 and word not in STOP_WORDS
    ]
    return [word for word, _ in Counter(words).most_common(limit)]


def count_words(text: str) -> int:
    return len(text.split())


class KeywordFallbackAnalyzer:
    """Rule-based sentiment and emotion used when the classifiers fail.

    Never raises and never touches the network, so a non-empty input always
    gets some analysis, only with lower confidence.
    """

    POSITIVE_WORDS = [
        "good", "great", "excellent", "love", "happy",
        "amazing", "wonderful", "fantastic", "best", "perfect"
    ]
    NEGATIVE_WORDS = [
        "bad", "poor", "hate", "terrible", "frustrated",
        "worst", "awful", "horrible", "disappointing", "useless"
    ]

    # Checked in order; first match wins
    EMOTION_KEYWORDS = [
        (Emotion.JOY, "joy", ["happy", "joy", "love"]),
        (Emotion.ANGER, "anger", ["angry", "anger", "furious"]),
        (Emotion.SADNESS, "sadness", ["sad", "disappointed"]),
        (Emotion.FRUSTRATION, "frustration", ["frustrated", "annoyed"]),
    ]

    def analyze_sentiment(self, text: str) -> SentimentResult:
        lower_text = text.lower()
        positive = sum(1 for word in self.POSITIVE_WORDS if word in lower_text)
        negative = sum(1 for word in self.NEGATIVE_WORDS if word in lower_text)

        logger.debug(f"Fallback sentiment counts: +{positive} / -{negative}")

        if negative > positive + 1:
            return SentimentResult(sentiment=Sentiment.NEGATIVE, score=-0.6, confidence=0.6)
        if positive > negative + 1:
            return SentimentResult(sentiment=Sentiment.POSITIVE, score=0.6, confidence=0.6)
        return SentimentResult(sentiment=Sentiment.NEUTRAL, score=0.0, confidence=0.5)

    def analyze_emotion(self, text: str) -> EmotionResult:
        lower_text = text.lower()

        for emotion, label, keywords in self.EMOTION_KEYWORDS:
            if any(keyword in lower_text for keyword in keywords):
                return EmotionResult(primary_emotion=emotion, emotions={label: 0.7}, confidence=0.7)

        return EmotionResult(
            primary_emotion=Emotion.NEUTRAL,
            emotions={"neutral": 0.8},
            confidence=0.8
        )
