"""FastAPI host for the feedback enrichment pipeline."""
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, APIRouter, Depends, HTTPException, Header, Request, status
from fastapi.responses import JSONResponse

from config import config
from database import AlertClosedError
from job_queue import JOB_SENTIMENT, JOB_TRANSCRIPTION
from models import Feedback, QueueJob
from pipeline import FeedbackPipeline
from schemas import (
    FeedbackRequest, BulkFeedbackRequest, VoiceFeedbackRequest, FeedbackAccepted, AlertUpdateRequest
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

router = APIRouter()


async def verify_api_key(x_api_key: str = Header(...)) -> None:
    """Verify API key authentication.

    Stubbed authentication; a real deployment validates against its auth system.
    """
    if x_api_key != config.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key"
        )


def get_pipeline(request: Request) -> FeedbackPipeline:
    return request.app.state.pipeline


def _accepted(feedback: Feedback, job_id: Optional[str]) -> FeedbackAccepted:
    return FeedbackAccepted(
        id=feedback.id,
        channel=feedback.channel,
        queued=job_id is not None,
        job_id=job_id,
        created_at=feedback.created_at.isoformat()
    )


def _job_summary(job: QueueJob) -> dict:
    return {
        "id": str(job.id),
        "payload": job.payload,
        "priority": job.priority,
        "attempts_made": job.attempts_made,
        "max_attempts": job.max_attempts,
        "last_error": job.last_error,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "finished_at": job.finished_at.isoformat() if job.finished_at else None
    }


@router.post("/feedback", response_model=FeedbackAccepted, status_code=status.HTTP_201_CREATED)
async def submit_feedback(
    request: FeedbackRequest,
    pipeline: FeedbackPipeline = Depends(get_pipeline),
    _: None = Depends(verify_api_key)
):
    """Store feedback and queue it for sentiment enrichment.

    Enrichment runs asynchronously; the response only confirms storage and
    whether a job was queued (empty comments are stored but not queued).
    """
    feedback, job_id = await pipeline.submit_feedback(
        request.channel,
        request.comment,
        request.metadata,
        request.customer_segment
    )
    return _accepted(feedback, job_id)


@router.post(
    "/feedback/bulk",
    response_model=List[FeedbackAccepted],
    status_code=status.HTTP_201_CREATED
)
async def submit_bulk_feedback(
    request: BulkFeedbackRequest,
    pipeline: FeedbackPipeline = Depends(get_pipeline),
    _: None = Depends(verify_api_key)
):
    results = await pipeline.bulk_submit(item.model_dump() for item in request.items)
    return [_accepted(feedback, job_id) for feedback, job_id in results]


@router.post(
    "/feedback/voice",
    response_model=FeedbackAccepted,
    status_code=status.HTTP_202_ACCEPTED
)
async def submit_voice_feedback(
    request: VoiceFeedbackRequest,
    pipeline: FeedbackPipeline = Depends(get_pipeline),
    _: None = Depends(verify_api_key)
):
    """Queue transcription for an already uploaded recording."""
    feedback, job_id = await pipeline.submit_voice_feedback(request.audio_url, request.metadata)
    return _accepted(feedback, job_id)


@router.get("/queues/{job_type}/failed")
async def list_failed_jobs(
    job_type: str,
    limit: int = 50,
    pipeline: FeedbackPipeline = Depends(get_pipeline),
    _: None = Depends(verify_api_key)
):
    """List archived (dead) jobs for a job type."""
    if job_type not in (JOB_SENTIMENT, JOB_TRANSCRIPTION):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown job type")

    jobs = await pipeline.queue.get_failed(job_type, limit=min(limit, 500))
    return [_job_summary(job) for job in jobs]


@router.patch("/alerts/{alert_id}")
async def update_alert(
    alert_id: str,
    request: AlertUpdateRequest,
    pipeline: FeedbackPipeline = Depends(get_pipeline),
    _: None = Depends(verify_api_key)
):
    try:
        alert = await pipeline.alert_engine.update_status(alert_id, request.status, request.assigned_to)
    except AlertClosedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if alert is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return alert.to_dict()


@router.get("/health")
async def health_check(pipeline: FeedbackPipeline = Depends(get_pipeline)):
    """Health check endpoint.

    Returns worker state, queue counts and classifier warm-up status.
    """
    cache = pipeline.classifier.cache
    return {
        "status": "healthy" if pipeline.running else "degraded",
        "models_warmed": pipeline.classifier.models_warmed,
        "queues": await pipeline.get_queue_status(),
        "cache_stats": cache.get_stats() if cache is not None else None
    }


@router.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Feedback Enrichment Pipeline",
        "version": "1.0.0",
        "endpoints": {
            "submit": "POST /feedback",
            "bulk": "POST /feedback/bulk",
            "voice": "POST /feedback/voice",
            "failed_jobs": "GET /queues/{job_type}/failed",
            "update_alert": "PATCH /alerts/{alert_id}",
            "health": "GET /health"
        }
    }


async def global_exception_handler(request, exc):
    """Global exception handler for unexpected errors."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"}
    )


def create_app(pipeline: Optional[FeedbackPipeline] = None) -> FastAPI:
    """Build the application around `pipeline` (default: built from config)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        logger.info("Starting feedback pipeline...")
        app.state.pipeline = pipeline or FeedbackPipeline()
        await app.state.pipeline.start()
        logger.info("Application started successfully")
        yield
        logger.info("Application shutting down")
        await app.state.pipeline.shutdown()

    app = FastAPI(
        title="Feedback Enrichment Pipeline",
        description="Asynchronous sentiment, emotion and transcription enrichment with alerting",
        version="1.0.0",
        lifespan=lifespan
    )
    app.include_router(router)
    app.add_exception_handler(Exception, global_exception_handler)
    return app


app = create_app()
