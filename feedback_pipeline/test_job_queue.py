"""Tests for the durable job queue, its worker pool and the token bucket."""
import asyncio
from datetime import timedelta

import pytest

from job_queue import (
    JobQueue, UnrecoverableJobError, backoff_delay,
    JOB_SENTIMENT, JOB_TRANSCRIPTION, WAITING, ACTIVE, COMPLETED, FAILED
)
from rate_limit import TokenBucket


def naive(value):
    return value.replace(tzinfo=None)


# ============================================================================
# UNIT TESTS - ORDERING AND PAYLOADS
# ============================================================================

class TestQueueOrdering:
    """Priority first, then enqueue order."""

    @pytest.mark.asyncio
    async def test_lower_priority_value_dequeues_first(self, queue):
        normal_1 = await queue.enqueue(JOB_SENTIMENT, {"n": 1}, priority=5)
        vip = await queue.enqueue(JOB_SENTIMENT, {"n": 2}, priority=1)
        normal_2 = await queue.enqueue(JOB_SENTIMENT, {"n": 3}, priority=5)

        claimed = [(await queue.claim(JOB_SENTIMENT)).id for _ in range(3)]

        assert claimed == [vip, normal_1, normal_2]
        assert await queue.claim(JOB_SENTIMENT) is None

    @pytest.mark.asyncio
    async def test_job_types_are_separate(self, queue):
        await queue.enqueue(JOB_TRANSCRIPTION, {"feedbackId": "a"}, priority=2)

        assert await queue.claim(JOB_SENTIMENT) is None
        job = await queue.claim(JOB_TRANSCRIPTION)
        assert job.payload == {"feedbackId": "a"}
        assert job.priority == 2

    @pytest.mark.asyncio
    async def test_claim_marks_job_active(self, queue):
        job_id = await queue.enqueue(JOB_SENTIMENT, {"n": 1})
        await queue.claim(JOB_SENTIMENT)

        row = await queue.get_job(job_id)
        assert row.status == ACTIVE
        assert (await queue.get_counts(JOB_SENTIMENT))[ACTIVE] == 1

    @pytest.mark.asyncio
    async def test_update_data_persists_payload(self, queue):
        job_id = await queue.enqueue(JOB_TRANSCRIPTION, {"feedbackId": "a", "audioUrl": "s3://x"})
        job = await queue.claim(JOB_TRANSCRIPTION)

        await job.update_data({**job.payload, "transcriptId": "tx-1"})

        row = await queue.get_job(job_id)
        assert row.payload["transcriptId"] == "tx-1"
        assert job.payload["transcriptId"] == "tx-1"


# ============================================================================
# UNIT TESTS - RETRIES AND ARCHIVE
# ============================================================================

class TestQueueRetries:
    """Exponential backoff, attempt budget and the failure archive."""

    def test_backoff_doubles(self):
        assert [backoff_delay(2.0, n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    @pytest.mark.asyncio
    async def test_failed_job_becomes_available_after_backoff(self, queue, clock):
        job_id = await queue.enqueue(JOB_SENTIMENT, {"n": 1}, max_attempts=3, backoff_delay=2.0)
        start = clock.now

        job = await queue.claim(JOB_SENTIMENT)
        assert await queue.fail(job, RuntimeError("provider down")) is True

        row = await queue.get_job(job_id)
        assert row.status == WAITING
        assert row.attempts_made == 1
        assert row.last_error == "provider down"
        assert naive(row.available_at) == naive(start + timedelta(seconds=2))

        assert await queue.claim(JOB_SENTIMENT) is None
        clock.advance(seconds=2)
        job = await queue.claim(JOB_SENTIMENT)
        assert job.attempts_made == 1

        assert await queue.fail(job, RuntimeError("still down")) is True
        row = await queue.get_job(job_id)
        assert naive(row.available_at) == naive(clock.now + timedelta(seconds=4))

    @pytest.mark.asyncio
    async def test_exhausted_job_is_archived(self, queue, clock):
        job_id = await queue.enqueue(JOB_SENTIMENT, {"n": 1}, max_attempts=2, backoff_delay=1.0)

        job = await queue.claim(JOB_SENTIMENT)
        assert await queue.fail(job, RuntimeError("first")) is True
        clock.advance(seconds=1)
        job = await queue.claim(JOB_SENTIMENT)
        assert await queue.fail(job, RuntimeError("second")) is False

        clock.advance(hours=1)
        assert await queue.claim(JOB_SENTIMENT) is None

        failed = await queue.get_failed(JOB_SENTIMENT)
        assert [str(row.id) for row in failed] == [job_id]
        assert failed[0].attempts_made == 2
        assert failed[0].last_error == "second"

    @pytest.mark.asyncio
    async def test_unrecoverable_error_skips_retries(self, queue):
        job_id = await queue.enqueue(JOB_TRANSCRIPTION, {"n": 1}, max_attempts=3)

        job = await queue.claim(JOB_TRANSCRIPTION)
        assert await queue.fail(job, UnrecoverableJobError("provider error")) is False

        row = await queue.get_job(job_id)
        assert row.status == FAILED
        assert row.attempts_made == 1

    @pytest.mark.asyncio
    async def test_archive_is_bounded(self, store, clock):
        queue = JobQueue(store.session_factory, keep_completed=2, keep_failed=2, clock=clock)
        ids = []
        for n in range(3):
            ids.append(await queue.enqueue(JOB_SENTIMENT, {"n": n}, max_attempts=1))
            job = await queue.claim(JOB_SENTIMENT)
            await queue.fail(job, RuntimeError(f"failure {n}"))
            clock.advance(seconds=1)

        failed = await queue.get_failed(JOB_SENTIMENT)
        assert [str(row.id) for row in failed] == [ids[2], ids[1]]

    @pytest.mark.asyncio
    async def test_completed_jobs_are_pruned(self, store, clock):
        queue = JobQueue(store.session_factory, keep_completed=2, keep_failed=2, clock=clock)
        for n in range(4):
            await queue.enqueue(JOB_SENTIMENT, {"n": n})
            await queue.complete(await queue.claim(JOB_SENTIMENT))
            clock.advance(seconds=1)

        assert (await queue.get_counts(JOB_SENTIMENT))[COMPLETED] == 2


# ============================================================================
# UNIT TESTS - REDELIVERY
# ============================================================================

class TestQueueRedelivery:
    """At-least-once delivery across interruptions."""

    @pytest.mark.asyncio
    async def test_stalled_jobs_are_recovered(self, queue):
        job_id = await queue.enqueue(JOB_SENTIMENT, {"n": 1})
        await queue.claim(JOB_SENTIMENT)

        assert await queue.recover_stalled() == 1

        job = await queue.claim(JOB_SENTIMENT)
        assert job.id == job_id
        assert job.attempts_made == 0

    @pytest.mark.asyncio
    async def test_release_does_not_use_an_attempt(self, queue):
        job_id = await queue.enqueue(JOB_SENTIMENT, {"n": 1})
        job = await queue.claim(JOB_SENTIMENT)

        await queue.release(job)

        row = await queue.get_job(job_id)
        assert row.status == WAITING
        assert row.attempts_made == 0


# ============================================================================
# INTEGRATION TESTS - WORKER POOL
# ============================================================================

class TestQueueWorker:
    """Worker pools run handlers concurrently and shut down cleanly."""

    @pytest.mark.asyncio
    async def test_worker_processes_all_jobs(self, queue, eventually):
        seen = []

        async def handler(job):
            seen.append(job.payload["n"])

        for n in range(5):
            await queue.enqueue(JOB_SENTIMENT, {"n": n})

        worker = queue.consume(JOB_SENTIMENT, handler, concurrency=2, poll_interval=0.01)

        async def all_completed():
            return (await queue.get_counts(JOB_SENTIMENT))[COMPLETED] == 5

        await eventually(all_completed)
        await worker.close(grace=1)

        assert sorted(seen) == [0, 1, 2, 3, 4]
        assert worker.completed == 5
        assert not worker.running

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, queue, eventually):
        active = 0
        peak = 0

        async def handler(job):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.05)
            active -= 1

        for n in range(6):
            await queue.enqueue(JOB_SENTIMENT, {"n": n})

        worker = queue.consume(JOB_SENTIMENT, handler, concurrency=3, poll_interval=0.01)

        async def all_completed():
            return (await queue.get_counts(JOB_SENTIMENT))[COMPLETED] == 6

        await eventually(all_completed)
        await worker.close(grace=1)

        assert 1 <= peak <= 3

    @pytest.mark.asyncio
    async def test_handler_error_schedules_retry(self, queue, eventually):
        async def handler(job):
            raise RuntimeError("classifier exploded")

        job_id = await queue.enqueue(JOB_SENTIMENT, {"n": 1}, max_attempts=3, backoff_delay=60)
        worker = queue.consume(JOB_SENTIMENT, handler, poll_interval=0.01)

        async def retried():
            return (await queue.get_job(job_id)).attempts_made == 1

        await eventually(retried)
        await worker.close(grace=1)

        row = await queue.get_job(job_id)
        assert row.status == WAITING
        assert worker.failed == 1

    @pytest.mark.asyncio
    async def test_job_is_redelivered_when_completion_cannot_be_recorded(self, queue, eventually):
        seen = []
        record_completion = queue.complete
        errors = [RuntimeError("database is locked")]

        async def flaky_complete(job):
            if errors:
                raise errors.pop()
            await record_completion(job)

        async def handler(job):
            seen.append(job.id)

        queue.complete = flaky_complete
        job_id = await queue.enqueue(JOB_SENTIMENT, {"n": 1})
        worker = queue.consume(JOB_SENTIMENT, handler, poll_interval=0.01)

        async def completed():
            return (await queue.get_job(job_id)).status == COMPLETED

        await eventually(completed)
        await worker.close(grace=1)

        assert seen == [job_id, job_id]
        assert (await queue.get_job(job_id)).attempts_made == 0

    @pytest.mark.asyncio
    async def test_job_is_redelivered_when_failure_cannot_be_recorded(self, queue, eventually):
        record_failure = queue.fail
        errors = [RuntimeError("database is locked")]

        async def flaky_fail(job, error):
            if errors:
                raise errors.pop()
            return await record_failure(job, error)

        async def handler(job):
            raise RuntimeError("classifier exploded")

        queue.fail = flaky_fail
        job_id = await queue.enqueue(JOB_SENTIMENT, {"n": 1}, max_attempts=3, backoff_delay=60)
        worker = queue.consume(JOB_SENTIMENT, handler, poll_interval=0.01)

        async def retry_scheduled():
            return (await queue.get_job(job_id)).attempts_made == 1

        await eventually(retry_scheduled)
        await worker.close(grace=1)

        row = await queue.get_job(job_id)
        assert row.status == WAITING
        assert row.last_error == "classifier exploded"

    @pytest.mark.asyncio
    async def test_shutdown_releases_unfinished_jobs(self, queue, eventually):
        started = asyncio.Event()

        async def handler(job):
            started.set()
            await asyncio.Event().wait()

        job_id = await queue.enqueue(JOB_TRANSCRIPTION, {"n": 1})
        worker = queue.consume(JOB_TRANSCRIPTION, handler, poll_interval=0.01)

        await asyncio.wait_for(started.wait(), timeout=5)
        await worker.close(grace=0.05)

        row = await queue.get_job(job_id)
        assert row.status == WAITING
        assert row.attempts_made == 0

    @pytest.mark.asyncio
    async def test_worker_waits_for_rate_limit_token(self, queue, eventually):
        limiter = TokenBucket(max_tokens=1, period=60)
        seen = []

        async def handler(job):
            seen.append(job.id)

        await queue.enqueue(JOB_SENTIMENT, {"n": 1})
        await queue.enqueue(JOB_SENTIMENT, {"n": 2})
        worker = queue.consume(JOB_SENTIMENT, handler, rate_limiter=limiter, poll_interval=0.01)

        async def first_done():
            return len(seen) == 1

        await eventually(first_done)
        await asyncio.sleep(0.1)
        await worker.close(grace=0.05)

        assert len(seen) == 1
        counts = await queue.get_counts(JOB_SENTIMENT)
        assert counts[COMPLETED] == 1
        assert counts[WAITING] == 1


# ============================================================================
# UNIT TESTS - TOKEN BUCKET
# ============================================================================

class TestTokenBucket:
    """Token bucket limiter."""

    def test_burst_then_refill(self):
        now = [0.0]
        bucket = TokenBucket(max_tokens=10, period=1.0, clock=lambda: now[0])

        assert all(bucket.try_acquire() for _ in range(10))
        assert bucket.try_acquire() is False

        now[0] = 0.1
        assert bucket.try_acquire() is True
        assert bucket.try_acquire() is False

    @pytest.mark.asyncio
    async def test_acquire_sleeps_for_deficit(self):
        now = [0.0]
        waits = []

        async def fake_sleep(seconds):
            waits.append(seconds)
            now[0] += seconds

        bucket = TokenBucket(max_tokens=10, period=10.0, clock=lambda: now[0], sleep=fake_sleep)
        for _ in range(10):
            await bucket.acquire()
        await bucket.acquire()

        assert waits == [pytest.approx(1.0)]

    def test_rejects_invalid_limits(self):
        with pytest.raises(ValueError):
            TokenBucket(max_tokens=0, period=1.0)
