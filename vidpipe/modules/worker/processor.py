"""Per-delivery processing.

Every delivery moves through::

    received -> validating -> transcoding -> completed | failed

A delivery is acknowledged only after the master playlist is on disk, and
failures are always nak'd so the consumer's retry policy decides between
redelivery and dead-lettering.
"""

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional, Union

from vidpipe.core.exceptions import (
    EngineFailure,
    PipelineError,
    QueueUnavailable,
    ValidationError,
)
from vidpipe.core.logging import correlation_scope, log_error, log_warning
from vidpipe.core.metrics import (
    DELIVERIES_TOTAL,
    JOB_DURATION_SECONDS,
    JOBS_IN_FLIGHT,
    TRANSCODES_IN_PROGRESS,
)
from vidpipe.core.tracing import create_span, record_exception
from vidpipe.modules.job import codec
from vidpipe.modules.job.models import (
    DeliveryState,
    FailedEvent,
    Job,
    ProcessedEvent,
    RenditionSummary,
)
from vidpipe.modules.queue.base import Delivery
from vidpipe.modules.transcoding.ffmpeg import TranscodingEngine
from vidpipe.modules.transcoding.manifest import write_master_manifest
from vidpipe.modules.transcoding.models import MasterManifest, RenditionOutput, unknown_qualities
from vidpipe.modules.transcoding.storage import OutputLayout
from vidpipe.modules.worker.notifier import CompletionNotifier

logger = logging.getLogger(__name__)

REASON_UNEXPECTED = "unexpected_error"


def validate_job(job: Job) -> None:
    """Check a decoded job before any transcoding work starts.

    Raises:
        ValidationError: On an unknown quality label or unreadable source
    """
    unknown = unknown_qualities(job.quality)
    if unknown:
        raise ValidationError(f"Unknown quality labels: {', '.join(unknown)}")
    if not os.path.isfile(job.source_path):
        raise ValidationError(f"Source file not found: {job.source_path}")
    if not os.access(job.source_path, os.R_OK):
        raise ValidationError(f"Source file not readable: {job.source_path}")


class JobProcessor:
    """Runs the state machine for one delivery at a time.

    Args:
        engine: Transcoding engine, invoked from worker threads
        notifier: Post-ack event publisher and callback sender
        engine_slots: Bound on concurrent engine invocations in this process,
            shared by every job the processor handles
        rendition_parallelism: Renditions of one job encoded at once
        heartbeat_interval: Seconds between deadline extensions while
            transcoding, None to disable
    """

    def __init__(
        self,
        engine: TranscodingEngine,
        notifier: CompletionNotifier,
        engine_slots: Union[int, asyncio.Semaphore] = 1,
        rendition_parallelism: int = 1,
        heartbeat_interval: Optional[float] = None,
    ):
        self.engine = engine
        self.notifier = notifier
        if isinstance(engine_slots, int):
            engine_slots = asyncio.Semaphore(engine_slots)
        self.engine_slots = engine_slots
        self.rendition_parallelism = max(1, rendition_parallelism)
        self.heartbeat_interval = heartbeat_interval

    async def process(self, delivery: Delivery) -> DeliveryState:
        """Process one delivery and settle it with ack or nak.

        Returns:
            The final state, COMPLETED or FAILED

        Raises:
            QueueUnavailable: If the broker was lost before the delivery
                could be settled; it will be redelivered after ack_wait
        """
        correlation_id = delivery.headers.get("video_id") or f"seq-{delivery.sequence}"
        started = time.monotonic()
        state = DeliveryState.FAILED
        JOBS_IN_FLIGHT.inc()
        try:
            with correlation_scope(correlation_id), create_span(
                "job.process",
                attributes={
                    "messaging.message_id": delivery.message_id,
                    "messaging.sequence": delivery.sequence,
                    "messaging.delivery_count": delivery.num_delivered,
                },
            ):
                state = await self._run(delivery)
            return state
        finally:
            JOBS_IN_FLIGHT.dec()
            JOB_DURATION_SECONDS.labels(state=state.value).observe(time.monotonic() - started)

    async def _run(self, delivery: Delivery) -> DeliveryState:
        state = DeliveryState.RECEIVED
        job: Optional[Job] = None

        if delivery.is_redelivery:
            logger.info(f"Redelivery {delivery.num_delivered} of seq={delivery.sequence}")

        try:
            job = codec.decode(delivery.data)
            with correlation_scope(job.video_id):
                state = DeliveryState.VALIDATING
                validate_job(job)

                state = DeliveryState.TRANSCODING
                manifest = await self.transcode_job(delivery, job)
        except QueueUnavailable:
            raise
        except PipelineError as e:
            await self._fail(delivery, job, state, e.reason, e.message, e)
            return DeliveryState.FAILED
        except Exception as e:
            log_error(logger, f"Unexpected error while {state.value} seq={delivery.sequence}", e)
            await self._fail(delivery, job, state, REASON_UNEXPECTED, str(e), e)
            return DeliveryState.FAILED

        with correlation_scope(job.video_id):
            await delivery.ack()
            DELIVERIES_TOTAL.labels(state=DeliveryState.COMPLETED.value, reason="").inc()
            logger.info(
                f"Video {job.video_id} completed with {len(manifest.renditions)} renditions",
                extra={"video_id": job.video_id, "master_playlist": manifest.path},
            )
            await self.notifier.notify_completed(build_processed_event(job, manifest), job.callback_url)
        return DeliveryState.COMPLETED

    async def _fail(
        self,
        delivery: Delivery,
        job: Optional[Job],
        state: DeliveryState,
        reason: str,
        error: str,
        exception: Exception,
    ) -> None:
        record_exception(exception, attributes={"pipeline.state": state.value})
        DELIVERIES_TOTAL.labels(state=DeliveryState.FAILED.value, reason=reason).inc()
        log_warning(
            logger,
            f"Delivery seq={delivery.sequence} failed while {state.value}: {error}",
            reason=reason,
            delivery_count=delivery.num_delivered,
        )

        dead_lettered = await delivery.nak(reason=reason, error=error)
        if dead_lettered:
            await self.notifier.publish_failed(FailedEvent(
                video_id=job.video_id if job else None,
                user_id=job.user_id if job else None,
                reason=reason,
                error=error,
                deliveries=delivery.num_delivered,
                sequence=delivery.sequence,
                failed_at=datetime.now(timezone.utc),
            ))

    # ==================== Transcoding ====================

    async def transcode_job(self, delivery: Delivery, job: Job) -> MasterManifest:
        """Encode every requested rendition, then write the master playlist.

        Raises:
            EngineFailure: If any rendition fails; no manifest is written
        """
        layout = OutputLayout(job.output_path)
        heartbeat = self._start_heartbeat(delivery)
        try:
            await asyncio.to_thread(layout.ensure)
            # The master must not point at renditions this attempt rewrites
            await asyncio.to_thread(layout.remove_master)
            renditions = await self._transcode_renditions(job)
            thumbnail = await self._extract_thumbnail(job, layout)
            return await asyncio.to_thread(write_master_manifest, layout, renditions, thumbnail)
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)

    async def _transcode_renditions(self, job: Job) -> list[RenditionOutput]:
        if self.rendition_parallelism == 1:
            return [await self._transcode_one(job, quality) for quality in job.quality]

        limit = asyncio.Semaphore(self.rendition_parallelism)

        async def bounded(quality: str) -> RenditionOutput:
            async with limit:
                return await self._transcode_one(job, quality)

        # Threads cannot be cancelled, so let every started rendition finish
        results = await asyncio.gather(*(bounded(q) for q in job.quality), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    async def _transcode_one(self, job: Job, quality: str) -> RenditionOutput:
        with create_span("transcode.rendition", attributes={"video.id": job.video_id, "video.quality": quality}):
            async with self.engine_slots:
                TRANSCODES_IN_PROGRESS.inc()
                try:
                    return await asyncio.to_thread(self.engine.transcode, job.source_path, job.output_path, quality)
                finally:
                    TRANSCODES_IN_PROGRESS.dec()

    async def _extract_thumbnail(self, job: Job, layout: OutputLayout) -> Optional[str]:
        if not job.thumbnail_time:
            return None
        try:
            async with self.engine_slots:
                return await asyncio.to_thread(
                    self.engine.extract_thumbnail, job.source_path, layout.thumbnail_path, job.thumbnail_time
                )
        except EngineFailure as e:
            log_warning(logger, f"Thumbnail for {job.video_id} skipped: {e.message}")
            return None

    # ==================== Heartbeat ====================

    def _start_heartbeat(self, delivery: Delivery) -> Optional[asyncio.Task]:
        if not self.heartbeat_interval:
            return None
        return asyncio.create_task(self._heartbeat(delivery))

    async def _heartbeat(self, delivery: Delivery) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await delivery.in_progress()
            except QueueUnavailable as e:
                # The transcode keeps going; a lapsed deadline only means a
                # redelivery will overwrite the same output.
                log_warning(logger, f"Heartbeat for seq={delivery.sequence} failed: {e.message}")


def build_processed_event(job: Job, manifest: MasterManifest) -> ProcessedEvent:
    return ProcessedEvent(
        video_id=job.video_id,
        user_id=job.user_id,
        output_path=job.output_path,
        master_playlist=manifest.path,
        renditions=[
            RenditionSummary(
                quality=r.quality,
                playlist=r.playlist_path,
                bandwidth=r.bitrate,
                resolution=r.scale,
                segments=len(r.segments),
            )
            for r in manifest.renditions
        ],
        thumbnail=manifest.thumbnail_path,
        metadata=job.metadata,
        completed_at=datetime.now(timezone.utc),
    )
