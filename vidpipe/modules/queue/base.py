"""Durable, subject-addressed queue with consumer groups.

A stream retains messages published to its subjects. Each named consumer
keeps its own cursor and acknowledgment state; within one consumer every
message is held by at most one member at a time. A delivery that is not
acknowledged before its deadline is handed out again, and once the retry
policy is exhausted the message moves to the stream's dead-letter stream.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Optional

from vidpipe.core.metrics import DEAD_LETTERS_TOTAL
from vidpipe.modules.queue.policy import RetryPolicy

logger = logging.getLogger(__name__)

REASON_ACK_WAIT_EXPIRED = "ack_wait_expired"


class AckState(str, Enum):
    """Acknowledgment state of one delivery."""
    PENDING = "pending"
    ACKED = "acked"
    NAKD = "nakd"


@dataclass(frozen=True)
class StreamConfig:
    """Stream declaration: subjects captured and retention limits."""
    name: str
    subjects: tuple[str, ...]
    max_msgs: Optional[int] = None
    max_age: Optional[float] = None
    dead_letter_max_age: Optional[float] = None

    @property
    def dead_letter_stream(self) -> str:
        return f"{self.name}.DLQ"

    def captures(self, subject: str) -> bool:
        return any(subject_matches(pattern, subject) for pattern in self.subjects)


@dataclass(frozen=True)
class ConsumerConfig:
    """Durable consumer group declaration."""
    name: str
    filter_subject: str
    ack_wait: float = 120.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        if self.ack_wait <= 0:
            raise ValueError("ack_wait must be positive")
        if self.retry.longest_delay > self.ack_wait:
            raise ValueError(
                f"redelivery wait ({self.retry.longest_delay}s) must not exceed ack_wait ({self.ack_wait}s)"
            )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "filter_subject": self.filter_subject,
            "ack_wait": self.ack_wait,
            "retry": self.retry.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConsumerConfig":
        return cls(
            name=data["name"],
            filter_subject=data["filter_subject"],
            ack_wait=float(data["ack_wait"]),
            retry=RetryPolicy.from_dict(data["retry"]),
        )


@dataclass
class Delivery:
    """One attempt by the queue to hand a message to a consumer member."""
    stream: str
    consumer: str
    subject: str
    data: bytes
    sequence: int
    message_id: str
    num_delivered: int
    deadline: float
    headers: dict = field(default_factory=dict)
    ack_state: AckState = AckState.PENDING
    _queue: Optional["DurableQueue"] = field(default=None, repr=False, compare=False)

    @property
    def is_redelivery(self) -> bool:
        return self.num_delivered > 1

    async def ack(self) -> None:
        await self._require_queue().ack(self)

    async def nak(
        self,
        reason: Optional[str] = None,
        error: Optional[str] = None,
        delay: Optional[float] = None,
    ) -> bool:
        return await self._require_queue().nak(self, reason=reason, error=error, delay=delay)

    async def in_progress(self) -> None:
        await self._require_queue().in_progress(self)

    def _require_queue(self) -> "DurableQueue":
        if self._queue is None:
            raise RuntimeError("Delivery is not bound to a queue")
        return self._queue


@dataclass(frozen=True)
class DeadLetter:
    """A message that exhausted its delivery attempts."""
    entry_id: str
    stream: str
    consumer: str
    subject: str
    data: bytes
    sequence: int
    deliveries: int
    reason: str
    error: Optional[str]
    dead_lettered_at: float


@dataclass(frozen=True)
class ConsumerInfo:
    name: str
    filter_subject: str
    pending: int
    ack_wait: float
    max_deliveries: int


@dataclass(frozen=True)
class StreamInfo:
    name: str
    subjects: tuple[str, ...]
    messages: int
    last_sequence: int
    dead_letters: int
    consumers: list[ConsumerInfo]


def subject_matches(pattern: str, subject: str) -> bool:
    """Match a dotted subject against a pattern.

    ``*`` matches exactly one token and ``>`` matches one or more trailing
    tokens, e.g. ``video.*`` matches ``video.process`` but not
    ``video.process.retry``, while ``video.>`` matches both.
    """
    pattern_tokens = pattern.split(".")
    subject_tokens = subject.split(".")

    for i, token in enumerate(pattern_tokens):
        if token == ">":
            return i == len(pattern_tokens) - 1 and len(subject_tokens) > i
        if i >= len(subject_tokens):
            return False
        if token != "*" and token != subject_tokens[i]:
            return False

    return len(pattern_tokens) == len(subject_tokens)


class Subscription:
    """Pull handle on a durable consumer.

    Deliveries are only taken from the broker when ``fetch`` is called, so a
    caller that stops fetching leaves the backlog on the broker.
    """

    def __init__(self, queue: "DurableQueue", config: ConsumerConfig):
        self.queue = queue
        self.config = config

    async def fetch(self, batch: int = 1, timeout: float = 0.0) -> list[Delivery]:
        """Pull up to ``batch`` deliveries, waiting at most ``timeout`` seconds."""
        if batch < 1:
            return []
        return await self.queue.fetch(self.config.name, batch=batch, timeout=timeout)

    async def __aiter__(self) -> AsyncIterator[Delivery]:
        while True:
            for delivery in await self.fetch(batch=1, timeout=1.0):
                yield delivery


class DurableQueue(ABC):
    """At-least-once message channel with explicit acknowledgment."""

    @abstractmethod
    async def declare_stream(self, config: StreamConfig) -> None:
        """Create or update a stream."""

    @abstractmethod
    async def declare_consumer(self, stream: str, config: ConsumerConfig) -> None:
        """Create or update a durable consumer and persist its policy."""

    @abstractmethod
    async def consumer_config(self, name: str) -> Optional[ConsumerConfig]:
        """Return the persisted configuration of a consumer, if declared."""

    @abstractmethod
    async def publish(self, subject: str, payload: bytes, headers: Optional[dict] = None) -> int:
        """Append a message and return its stream sequence number.

        Raises:
            QueueUnavailable: If the broker cannot be reached
        """

    @abstractmethod
    async def fetch(self, consumer: str, batch: int = 1, timeout: float = 0.0) -> list[Delivery]:
        """Pull deliveries for a consumer: expired or nak'd messages, then new ones."""

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        """Mark a delivery permanently complete. Acking twice is a no-op."""

    @abstractmethod
    async def nak(
        self,
        delivery: Delivery,
        reason: Optional[str] = None,
        error: Optional[str] = None,
        delay: Optional[float] = None,
    ) -> bool:
        """Signal failure. Returns True if the message was dead-lettered."""

    @abstractmethod
    async def in_progress(self, delivery: Delivery) -> None:
        """Push the delivery deadline out by one ack_wait."""

    @abstractmethod
    async def dead_letters(self, stream: str, limit: int = 100) -> list[DeadLetter]:
        """List dead-lettered messages, newest first."""

    @abstractmethod
    async def requeue_dead_letter(self, stream: str, entry_id: str) -> Optional[int]:
        """Republish a dead letter and drop it from the dead-letter stream."""

    @abstractmethod
    async def stream_info(self, stream: str) -> StreamInfo:
        """Summarize a stream, its consumers and its dead-letter stream."""

    async def close(self) -> None:
        """Release broker resources."""

    async def subscribe(
        self,
        subject_filter: str,
        consumer: str,
        stream: Optional[str] = None,
        ack_wait: Optional[float] = None,
        retry: Optional[RetryPolicy] = None,
    ) -> Subscription:
        """Bind to a durable consumer, declaring it if needed.

        Explicit ``ack_wait``/``retry`` values update the stored policy;
        otherwise the policy already stored on the broker is used.
        """
        config = await self.consumer_config(consumer)
        if config is None or ack_wait is not None or retry is not None:
            if stream is None:
                raise ValueError(f"Consumer {consumer!r} is not declared; a stream name is required")
            base = config or ConsumerConfig(name=consumer, filter_subject=subject_filter)
            config = ConsumerConfig(
                name=consumer,
                filter_subject=subject_filter,
                ack_wait=ack_wait if ack_wait is not None else base.ack_wait,
                retry=retry or base.retry,
            )
            await self.declare_consumer(stream, config)
        elif config.filter_subject != subject_filter:
            raise ValueError(
                f"Consumer {consumer!r} filters {config.filter_subject!r}, not {subject_filter!r}"
            )
        return Subscription(self, config)

    def _record_dead_letter(self, dead_letter: DeadLetter) -> None:
        DEAD_LETTERS_TOTAL.labels(reason=dead_letter.reason).inc()
        logger.warning(
            f"Message seq={dead_letter.sequence} on {dead_letter.subject} dead-lettered "
            f"after {dead_letter.deliveries} deliveries: {dead_letter.reason}",
            extra={
                "stream": dead_letter.stream,
                "consumer": dead_letter.consumer,
                "dead_letter_id": dead_letter.entry_id,
            },
        )
