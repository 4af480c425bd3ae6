"""Durable priority job queue backed by the database.

Jobs are rows in `queue_jobs`. Workers claim the waiting row with the lowest
priority value (ties broken by enqueue order), run a handler and then mark
the row completed, schedule a retry with exponential backoff, or move it to
the failed archive.

Delivery is at-least-once: a job interrupted by shutdown is released back to
`waiting`, and rows left `active` by a crashed process are recovered by
`recover_stalled()` on the next start.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Optional, Dict, Any, List, Callable, Awaitable

from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import config
from models import QueueJob, utcnow
from rate_limit import TokenBucket

logger = logging.getLogger(__name__)

JOB_SENTIMENT = "sentiment"
JOB_TRANSCRIPTION = "transcription"

WAITING = "waiting"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"


class UnrecoverableJobError(Exception):
    """Raised by a handler when retrying the job cannot help."""


def backoff_delay(base_delay: float, attempts_made: int) -> float:
    """Delay before retry number `attempts_made` (1-based): base * 2^(n-1)."""
    return base_delay * (2 ** (attempts_made - 1))


class QueuedJob:
    """A claimed job as seen by a handler."""

    def __init__(self, queue: "JobQueue", row: QueueJob):
        self.queue = queue
        self.id = str(row.id)
        self.job_type = row.job_type
        self.payload: Dict[str, Any] = dict(row.payload or {})
        self.priority = row.priority
        self.attempts_made = row.attempts_made
        self.max_attempts = row.max_attempts

    async def update_data(self, payload: Dict[str, Any]) -> None:
        """Persist a new payload for this job, visible to later attempts."""
        await self.queue.update_payload(self.id, payload)
        self.payload = dict(payload)

    def __repr__(self) -> str:
        return f"<QueuedJob {self.job_type}#{self.id} priority={self.priority}>"


Handler = Callable[[QueuedJob], Awaitable[Any]]


class JobQueue:
    """Priority queue with retries and a bounded failure archive."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        default_max_attempts: int = None,
        default_backoff: float = None,
        keep_completed: int = None,
        keep_failed: int = None,
        clock=utcnow
    ):
        self.session_factory = session_factory
        self.default_max_attempts = default_max_attempts or config.SENTIMENT_RETRY_ATTEMPTS
        self.default_backoff = (
            default_backoff if default_backoff is not None else config.SENTIMENT_RETRY_DELAY_SECONDS
        )
        self.keep_completed = keep_completed if keep_completed is not None else config.QUEUE_KEEP_COMPLETED
        self.keep_failed = keep_failed if keep_failed is not None else config.QUEUE_KEEP_FAILED
        self._clock = clock

    def _session(self) -> AsyncSession:
        return self.session_factory()

    async def enqueue(
        self,
        job_type: str,
        payload: Dict[str, Any],
        priority: int = 5,
        max_attempts: int = None,
        backoff_delay: float = None
    ) -> str:
        """Add a job and return its id."""
        now = self._clock()
        row = QueueJob(
            job_type=job_type,
            payload=dict(payload),
            priority=priority,
            status=WAITING,
            attempts_made=0,
            max_attempts=max_attempts or self.default_max_attempts,
            backoff_delay=backoff_delay if backoff_delay is not None else self.default_backoff,
            available_at=now,
            created_at=now
        )
        async with self._session() as db:
            db.add(row)
            await db.commit()
            await db.refresh(row)

        logger.debug(f"Enqueued {job_type} job {row.id} with priority {priority}")
        return str(row.id)

    async def claim(self, job_type: str) -> Optional[QueuedJob]:
        """Atomically move the next available job to `active`.

        The conditional update only succeeds for the worker that still sees
        the row as waiting; losers retry with the next candidate.
        """
        async with self._session() as db:
            for _ in range(5):
                now = self._clock()
                result = await db.execute(
                    select(QueueJob.id)
                    .where(
                        QueueJob.job_type == job_type,
                        QueueJob.status == WAITING,
                        QueueJob.available_at <= now
                    )
                    .order_by(QueueJob.priority.asc(), QueueJob.id.asc())
                    .limit(1)
                )
                job_id = result.scalar()
                if job_id is None:
                    return None

                claimed = await db.execute(
                    update(QueueJob)
                    .where(QueueJob.id == job_id, QueueJob.status == WAITING)
                    .values(status=ACTIVE, started_at=now)
                )
                await db.commit()
                if claimed.rowcount == 1:
                    row = await db.get(QueueJob, job_id)
                    return QueuedJob(self, row)
        return None

    async def update_payload(self, job_id: str, payload: Dict[str, Any]) -> None:
        async with self._session() as db:
            await db.execute(
                update(QueueJob).where(QueueJob.id == int(job_id)).values(payload=dict(payload))
            )
            await db.commit()

    async def complete(self, job: QueuedJob) -> None:
        async with self._session() as db:
            await db.execute(
                update(QueueJob)
                .where(QueueJob.id == int(job.id))
                .values(status=COMPLETED, finished_at=self._clock())
            )
            await self._prune(db, job.job_type, COMPLETED, self.keep_completed)
            await db.commit()

    async def fail(self, job: QueuedJob, error: BaseException) -> bool:
        """Record a failed attempt.

        Returns:
            True if the job was scheduled for another attempt, False if it
            was moved to the failed archive
        """
        async with self._session() as db:
            row = await db.get(QueueJob, int(job.id))
            if row is None:
                return False

            now = self._clock()
            row.attempts_made += 1
            row.last_error = str(error)[:2000] or type(error).__name__
            retry = (
                not isinstance(error, UnrecoverableJobError)
                and row.attempts_made < row.max_attempts
            )

            if retry:
                delay = backoff_delay(row.backoff_delay, row.attempts_made)
                row.status = WAITING
                row.started_at = None
                row.available_at = now + timedelta(seconds=delay)
            else:
                row.status = FAILED
                row.finished_at = now
                await db.flush()
                await self._prune(db, row.job_type, FAILED, self.keep_failed)

            await db.commit()
            return retry

    async def release(self, job: QueuedJob) -> None:
        """Return an interrupted job to `waiting` without using an attempt."""
        async with self._session() as db:
            await db.execute(
                update(QueueJob)
                .where(QueueJob.id == int(job.id), QueueJob.status == ACTIVE)
                .values(status=WAITING, started_at=None)
            )
            await db.commit()

    async def recover_stalled(self, job_type: str = None) -> int:
        """Move jobs left `active` by a previous process back to `waiting`."""
        query = update(QueueJob).where(QueueJob.status == ACTIVE)
        if job_type is not None:
            query = query.where(QueueJob.job_type == job_type)

        async with self._session() as db:
            result = await db.execute(query.values(status=WAITING, started_at=None))
            await db.commit()

        if result.rowcount:
            logger.warning(f"Recovered {result.rowcount} stalled job(s) for redelivery")
        return result.rowcount

    async def _prune(self, db: AsyncSession, job_type: str, status: str, keep: int) -> None:
        newest = (
            select(QueueJob.id)
            .where(QueueJob.job_type == job_type, QueueJob.status == status)
            .order_by(QueueJob.finished_at.desc(), QueueJob.id.desc())
            .limit(keep)
        )
        await db.execute(
            delete(QueueJob).where(
                QueueJob.job_type == job_type,
                QueueJob.status == status,
                QueueJob.id.not_in(newest)
            )
        )

    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        async with self._session() as db:
            return await db.get(QueueJob, int(job_id))

    async def get_counts(self, job_type: str = None) -> Dict[str, int]:
        query = select(QueueJob.status, func.count(QueueJob.id)).group_by(QueueJob.status)
        if job_type is not None:
            query = query.where(QueueJob.job_type == job_type)

        async with self._session() as db:
            result = await db.execute(query)
            counts = {WAITING: 0, ACTIVE: 0, COMPLETED: 0, FAILED: 0}
            counts.update({status: count for status, count in result.all()})
            return counts

    async def get_failed(self, job_type: str, limit: int = 50) -> List[QueueJob]:
        async with self._session() as db:
            result = await db.execute(
                select(QueueJob)
                .where(QueueJob.job_type == job_type, QueueJob.status == FAILED)
                .order_by(QueueJob.finished_at.desc(), QueueJob.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    def consume(
        self,
        job_type: str,
        handler: Handler,
        concurrency: int = 1,
        rate_limiter: Optional[TokenBucket] = None,
        poll_interval: float = None
    ) -> "QueueWorker":
        """Start a worker pool that feeds `job_type` jobs to `handler`."""
        worker = QueueWorker(
            self,
            job_type,
            handler,
            concurrency=concurrency,
            rate_limiter=rate_limiter,
            poll_interval=poll_interval
        )
        worker.start()
        return worker


class QueueWorker:
    """Bounded pool of concurrent handler executions for one job type.

    Each slot claims one job, waits for a rate limit token, runs the handler
    to completion and then claims the next.
    """

    def __init__(
        self,
        queue: JobQueue,
        job_type: str,
        handler: Handler,
        concurrency: int = 1,
        rate_limiter: Optional[TokenBucket] = None,
        poll_interval: float = None
    ):
        self.queue = queue
        self.job_type = job_type
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.rate_limiter = rate_limiter
        self.poll_interval = (
            poll_interval if poll_interval is not None else config.QUEUE_POLL_INTERVAL_SECONDS
        )
        self.completed = 0
        self.failed = 0
        self._closing = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        self._closing.clear()
        self._tasks = [
            asyncio.create_task(self._run_slot(), name=f"{self.job_type}-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info(f"Started {self.job_type} worker with concurrency {self.concurrency}")

    async def close(self, grace: float = None) -> None:
        """Stop claiming, let in-flight jobs finish for `grace` seconds, then cancel."""
        grace = grace if grace is not None else config.WORKER_SHUTDOWN_GRACE_SECONDS
        logger.info(f"Closing {self.job_type} worker...")
        self._closing.set()

        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=grace)
            if pending:
                logger.warning(
                    f"{len(pending)} {self.job_type} job(s) still running after {grace}s, cancelling"
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        self._tasks = []
        logger.info(f"{self.job_type.capitalize()} worker closed")

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._closing.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _run_slot(self) -> None:
        while not self._closing.is_set():
            try:
                job = await self.queue.claim(self.job_type)
            except Exception as e:
                logger.error(f"{self.job_type} worker error while claiming: {e}")
                await self._idle()
                continue

            if job is None:
                await self._idle()
                continue

            try:
                await self._process(job)
            except Exception as e:
                logger.error(f"{self.job_type} worker error while finishing job {job.id}: {e}")
                await self._release_unfinished(job)

    async def _release_unfinished(self, job: QueuedJob) -> None:
        """Put a job whose outcome could not be recorded back to `waiting`.

        A job still `active` after a failed release is only recovered by
        `recover_stalled()` on the next start.
        """
        try:
            await self.queue.release(job)
        except Exception as e:
            logger.error(f"Could not release {self.job_type} job {job.id}, left active: {e}")
            return
        logger.warning(f"{self.job_type} job {job.id} released for redelivery")

    async def _process(self, job: QueuedJob) -> None:
        try:
            if self.rate_limiter is not None:
                await self.rate_limiter.acquire()
            await self.handler(job)
        except asyncio.CancelledError:
            logger.warning(f"{self.job_type} job {job.id} interrupted, releasing for redelivery")
            await asyncio.shield(self.queue.release(job))
            raise
        except Exception as e:
            self.failed += 1
            if await self.queue.fail(job, e):
                logger.warning(
                    f"{self.job_type} job {job.id} failed (attempt {job.attempts_made + 1}/"
                    f"{job.max_attempts}), retry scheduled: {e}"
                )
            else:
                logger.error(f"{self.job_type} job {job.id} failed permanently: {e}")
            return

        await self.queue.complete(job)
        self.completed += 1
        logger.info(f"{self.job_type.capitalize()} job completed: {job.id}")
