"""API router for video job submission and queue monitoring."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from vidpipe.core.config import settings
from vidpipe.core.exceptions import QueueUnavailable
from vidpipe.modules.job.producer import VideoJobProducer, build_job
from vidpipe.modules.job.schemas import (
    DeadLetterInfo,
    DeadLetterListResponse,
    DeadLetterRequeueResponse,
    JobSubmitRequest,
    JobSubmitResponse,
    QueueStatsResponse,
)
from vidpipe.modules.queue.base import DurableQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/videos", tags=["videos"])


def get_queue(request: Request) -> DurableQueue:
    """Dependency returning the queue opened at application startup."""
    return request.app.state.queue


def get_producer(queue: DurableQueue = Depends(get_queue)) -> VideoJobProducer:
    """Dependency to get a VideoJobProducer instance."""
    return VideoJobProducer(queue)


def _unavailable(error: QueueUnavailable) -> HTTPException:
    return HTTPException(status_code=503, detail=f"Message broker unavailable: {error.message}")


# ==================== Job Submission ====================

@router.post("/jobs", response_model=JobSubmitResponse, status_code=202)
async def submit_job(
    request: JobSubmitRequest,
    producer: VideoJobProducer = Depends(get_producer),
) -> JobSubmitResponse:
    """Queue a video for transcoding.

    Returns once the broker has stored the job; transcoding happens in the
    worker pool.
    """
    job = build_job(
        source_path=request.source_path,
        user_id=request.user_id,
        quality=request.quality,
        video_id=request.video_id,
        output_path=request.output_path,
        thumbnail_time=request.thumbnail_time,
        callback_url=request.callback_url,
        metadata=request.metadata,
    )
    try:
        result = await producer.submit(job)
    except QueueUnavailable as e:
        raise _unavailable(e) from e

    return JobSubmitResponse(
        video_id=job.video_id,
        sequence=result.sequence,
        output_path=job.output_path,
        message=f"Video {job.video_id} queued for {len(job.quality)} renditions",
    )


# ==================== Monitoring ====================

@router.get("/queue/stats", response_model=QueueStatsResponse)
async def get_queue_stats(queue: DurableQueue = Depends(get_queue)) -> QueueStatsResponse:
    """Stream length, consumer backlog and dead-letter count."""
    try:
        info = await queue.stream_info(settings.STREAM_NAME)
    except QueueUnavailable as e:
        raise _unavailable(e) from e
    return QueueStatsResponse.from_info(info)


@router.get("/dead-letters", response_model=DeadLetterListResponse)
async def list_dead_letters(
    limit: int = Query(50, ge=1, le=500, description="Maximum entries to return"),
    queue: DurableQueue = Depends(get_queue),
) -> DeadLetterListResponse:
    """List dead-lettered jobs, newest first."""
    try:
        entries = await queue.dead_letters(settings.STREAM_NAME, limit=limit)
    except QueueUnavailable as e:
        raise _unavailable(e) from e
    items = [DeadLetterInfo.from_dead_letter(entry) for entry in entries]
    return DeadLetterListResponse(items=items, total=len(items))


@router.post("/dead-letters/{entry_id}/requeue", response_model=DeadLetterRequeueResponse)
async def requeue_dead_letter(
    entry_id: str,
    queue: DurableQueue = Depends(get_queue),
) -> DeadLetterRequeueResponse:
    """Publish a dead letter again with a fresh delivery budget."""
    try:
        sequence = await queue.requeue_dead_letter(settings.STREAM_NAME, entry_id)
    except QueueUnavailable as e:
        raise _unavailable(e) from e
    if sequence is None:
        raise HTTPException(status_code=404, detail="Dead letter not found")

    logger.info(f"Dead letter {entry_id} requeued as seq={sequence}", extra={"dead_letter_id": entry_id})
    return DeadLetterRequeueResponse(
        entry_id=entry_id,
        sequence=sequence,
        message=f"Dead letter {entry_id} requeued",
    )


@router.get("/health")
async def queue_health(queue: DurableQueue = Depends(get_queue)) -> dict:
    """Report whether the broker answers."""
    try:
        info = await queue.stream_info(settings.STREAM_NAME)
    except QueueUnavailable as e:
        raise _unavailable(e) from e
    return {"status": "healthy", "stream": info.name, "last_sequence": info.last_sequence}
