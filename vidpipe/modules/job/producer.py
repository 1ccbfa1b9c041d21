"""Job submission.

The producer publishes a job and returns as soon as the broker has stored
it; no transcoding happens on the submission path.
"""

import logging
import os
import uuid
from dataclasses import dataclass
from typing import Iterable, Optional

from vidpipe.core.config import settings
from vidpipe.core.exceptions import QueueUnavailable
from vidpipe.core.logging import get_correlation_id
from vidpipe.core.metrics import JOBS_SUBMITTED_TOTAL
from vidpipe.core.tracing import create_span
from vidpipe.modules.job import codec
from vidpipe.modules.job.models import Job, JobMetadata
from vidpipe.modules.queue.base import DurableQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of a successful submission."""
    accepted: bool
    sequence: int
    video_id: str


def build_job(
    source_path: str,
    user_id: str,
    quality: Iterable[str],
    video_id: Optional[str] = None,
    output_path: Optional[str] = None,
    thumbnail_time: Optional[str] = None,
    callback_url: Optional[str] = None,
    metadata: Optional[JobMetadata] = None,
    output_root: Optional[str] = None,
) -> Job:
    """Create a job, assigning a video_id and output directory when absent."""
    video_id = video_id or uuid.uuid4().hex
    return Job(
        video_id=video_id,
        source_path=source_path,
        output_path=output_path or os.path.join(output_root or settings.OUTPUT_ROOT, video_id),
        user_id=user_id,
        quality=tuple(quality),
        thumbnail_time=thumbnail_time,
        callback_url=callback_url,
        metadata=metadata,
    )


class VideoJobProducer:
    """Publishes transcoding jobs to the process subject."""

    def __init__(self, queue: DurableQueue, subject: Optional[str] = None):
        self.queue = queue
        self.subject = subject or settings.PROCESS_SUBJECT

    async def submit(self, job: Job) -> SubmitResult:
        """Publish one job.

        Submitting the same job twice is harmless: both deliveries write the
        same output directory.

        Raises:
            QueueUnavailable: If the broker did not store the job
        """
        headers = {"video_id": job.video_id}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["correlation_id"] = correlation_id

        with create_span("job.submit", attributes={"video.id": job.video_id, "messaging.destination": self.subject}):
            try:
                sequence = await self.queue.publish(self.subject, codec.encode(job), headers=headers)
            except QueueUnavailable:
                JOBS_SUBMITTED_TOTAL.labels(result="unavailable").inc()
                logger.error(f"Could not submit job {job.video_id}: broker unavailable")
                raise

        JOBS_SUBMITTED_TOTAL.labels(result="accepted").inc()
        logger.info(
            f"Job {job.video_id} submitted as seq={sequence}",
            extra={"video_id": job.video_id, "sequence": sequence, "qualities": list(job.quality)},
        )
        return SubmitResult(accepted=True, sequence=sequence, video_id=job.video_id)
