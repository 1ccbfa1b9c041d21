"""Queue module.

Durable subject-addressed streams with consumer groups, backed by Redis
Streams in production and by an in-process implementation in tests.
"""

from typing import Optional

from vidpipe.core.config import settings
from vidpipe.modules.queue.base import (
    AckState,
    ConsumerConfig,
    DeadLetter,
    Delivery,
    DurableQueue,
    StreamConfig,
    StreamInfo,
    Subscription,
    subject_matches,
)
from vidpipe.modules.queue.policy import (
    RetryPolicy,
    dead_letter_retention_from_settings,
    redelivery_policy_from_settings,
)


def stream_config_from_settings() -> StreamConfig:
    """Stream declaration for the configured video subjects."""
    return StreamConfig(
        name=settings.STREAM_NAME,
        subjects=(
            settings.UPLOAD_SUBJECT,
            settings.PROCESS_SUBJECT,
            settings.PROCESSED_SUBJECT,
            settings.FAILED_SUBJECT,
            settings.THUMBNAIL_SUBJECT,
            settings.METADATA_SUBJECT,
        ),
        max_msgs=settings.STREAM_MAX_MSGS,
        max_age=float(settings.STREAM_MAX_AGE_SECONDS) if settings.STREAM_MAX_AGE_SECONDS else None,
        dead_letter_max_age=dead_letter_retention_from_settings(),
    )


def consumer_config_from_settings(name: Optional[str] = None) -> ConsumerConfig:
    """Transcoder consumer group declaration."""
    return ConsumerConfig(
        name=name or settings.CONSUMER_NAME,
        filter_subject=settings.PROCESS_SUBJECT,
        ack_wait=settings.ACK_WAIT_SECONDS,
        retry=redelivery_policy_from_settings(),
    )


def create_queue(backend: Optional[str] = None) -> DurableQueue:
    """Create the configured queue backend.

    Args:
        backend: ``redis`` or ``memory``; defaults to QUEUE_BACKEND
    """
    backend = backend or settings.QUEUE_BACKEND
    if backend == "redis":
        from vidpipe.core.redis import create_redis
        from vidpipe.modules.queue.redis_streams import RedisStreamQueue

        return RedisStreamQueue(
            create_redis(),
            block_limit=min(settings.FETCH_TIMEOUT_SECONDS, settings.REDIS_SOCKET_TIMEOUT_SECONDS / 2),
        )
    if backend == "memory":
        from vidpipe.modules.queue.memory import InMemoryQueue

        return InMemoryQueue()
    raise ValueError(f"Unknown queue backend: {backend!r}")


async def setup_queue(queue: DurableQueue, consumer: Optional[str] = None) -> StreamConfig:
    """Declare the video stream and a transcoder consumer group.

    Args:
        queue: Queue backend
        consumer: Group name; defaults to CONSUMER_NAME
    """
    stream = stream_config_from_settings()
    await queue.declare_stream(stream)
    await queue.declare_consumer(stream.name, consumer_config_from_settings(consumer))
    return stream


__all__ = [
    "AckState",
    "ConsumerConfig",
    "DeadLetter",
    "Delivery",
    "DurableQueue",
    "RetryPolicy",
    "StreamConfig",
    "StreamInfo",
    "Subscription",
    "consumer_config_from_settings",
    "create_queue",
    "setup_queue",
    "stream_config_from_settings",
    "subject_matches",
]
