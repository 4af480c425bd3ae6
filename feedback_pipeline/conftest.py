"""Shared fixtures: isolated SQLite store, queue, fake classifier backend."""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from broadcaster import InMemoryBroadcaster
from classifier_client import ClassifierClient
from database import FeedbackStore
from job_queue import JobQueue
from models import utcnow
from schemas import AnalysisResult

SENTIMENT_MODEL = "test/sentiment-model"
EMOTION_MODEL = "test/emotion-model"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
async def store(tmp_path):
    """Fresh file-backed SQLite store per test."""
    store = FeedbackStore(f"sqlite+aiosqlite:///{tmp_path / 'feedback.db'}")
    await store.init_db()
    yield store
    await store.close()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def queue(store, clock):
    return JobQueue(
        store.session_factory,
        default_max_attempts=3,
        default_backoff=2.0,
        keep_completed=100,
        keep_failed=500,
        clock=clock
    )


@pytest.fixture
def broadcaster():
    return InMemoryBroadcaster()


@pytest.fixture
def no_sleep():
    return AsyncMock()


@pytest.fixture
def make_backend():
    """Build a fake classifier backend.

    `sentiment` / `emotion` are either prediction lists or lists of side
    effects (exceptions or prediction lists) consumed one per call.
    """

    def factory(sentiment=None, emotion=None):
        sentiment = sentiment if sentiment is not None else [{"label": "NEGATIVE", "score": 0.95}]
        emotion = emotion if emotion is not None else [
            {"label": "anger", "score": 0.7},
            {"label": "sadness", "score": 0.2},
            {"label": "joy", "score": 0.1}
        ]
        queues = {SENTIMENT_MODEL: sentiment, EMOTION_MODEL: emotion}

        async def predict(model, text):
            outcome = queues[model]
            if outcome and isinstance(outcome[0], (list, BaseException)):
                outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome

        backend = MagicMock()
        backend.predict = AsyncMock(side_effect=predict)
        backend.close = AsyncMock()
        return backend

    return factory


@pytest.fixture
def make_classifier(make_backend, no_sleep):
    def factory(backend=None, cache=None, **kwargs):
        return ClassifierClient(
            backend=backend or make_backend(),
            cache=cache,
            sentiment_model=SENTIMENT_MODEL,
            emotion_model=EMOTION_MODEL,
            very_threshold=0.8,
            moderate_threshold=0.6,
            warmup_delay=20,
            retry_delay=2,
            sleep=no_sleep,
            **kwargs
        )

    return factory


@pytest.fixture
def seed_results(store):
    """Store `count` analysis results of `sentiment` on `channel`."""

    async def seed(channel, sentiment, count=1, analyzed_at=None):
        for _ in range(count):
            feedback = await store.create_feedback(channel, f"{sentiment.value} feedback")
            await store.replace_analysis(
                feedback.id,
                AnalysisResult(sentiment=sentiment, score=0.0, confidence=0.9),
                analyzed_at=analyzed_at
            )

    return seed


@pytest.fixture
def eventually():
    """Wait until an async predicate holds."""

    async def wait(predicate, timeout=5.0, interval=0.02):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if await predicate():
                return
            if loop.time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(interval)

    return wait

