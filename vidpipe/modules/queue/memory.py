"""In-process queue backend.

Implements the same delivery, redelivery and dead-letter semantics as the
Redis backend inside a single event loop. Used by the test suite and for
running the API and a worker in one process during local development.
"""

import asyncio
import itertools
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from vidpipe.modules.queue.base import (
    AckState,
    ConsumerConfig,
    ConsumerInfo,
    DeadLetter,
    Delivery,
    DurableQueue,
    StreamConfig,
    StreamInfo,
    REASON_ACK_WAIT_EXPIRED,
    subject_matches,
)


@dataclass
class _Message:
    sequence: int
    subject: str
    data: bytes
    headers: dict
    published_at: float


@dataclass
class _Pending:
    message: _Message
    num_delivered: int
    eligible_at: float
    reason: Optional[str] = None
    error: Optional[str] = None


class _ConsumerState:
    def __init__(self, stream: str, config: ConsumerConfig):
        self.stream = stream
        self.config = config
        self.cursor = 0
        self.pending: "OrderedDict[int, _Pending]" = OrderedDict()


class _StreamState:
    def __init__(self, config: StreamConfig):
        self.config = config
        self.messages: "OrderedDict[int, _Message]" = OrderedDict()
        self.last_sequence = 0
        self.dead_letters: "OrderedDict[str, DeadLetter]" = OrderedDict()


class InMemoryQueue(DurableQueue):
    """Single-process durable queue.

    Args:
        clock: Time source in seconds, injectable so tests can move time
        poll_interval: How often a waiting fetch re-checks redelivery timers
    """

    def __init__(self, clock: Callable[[], float] = time.time, poll_interval: float = 0.05):
        self.clock = clock
        self.poll_interval = poll_interval
        self._streams: dict[str, _StreamState] = {}
        self._consumers: dict[str, _ConsumerState] = {}
        self._dead_letter_ids = itertools.count(1)
        self._published = asyncio.Event()

    # ==================== Declarations ====================

    async def declare_stream(self, config: StreamConfig) -> None:
        state = self._streams.get(config.name)
        if state is None:
            self._streams[config.name] = _StreamState(config)
        else:
            state.config = config
            self._apply_retention(state)

    async def declare_consumer(self, stream: str, config: ConsumerConfig) -> None:
        if stream not in self._streams:
            raise KeyError(f"Stream {stream!r} is not declared")
        existing = self._consumers.get(config.name)
        if existing is None:
            self._consumers[config.name] = _ConsumerState(stream, config)
        else:
            existing.config = config

    async def consumer_config(self, name: str) -> Optional[ConsumerConfig]:
        state = self._consumers.get(name)
        return state.config if state else None

    # ==================== Publish ====================

    async def publish(self, subject: str, payload: bytes, headers: Optional[dict] = None) -> int:
        stream = self._stream_for_subject(subject)
        stream.last_sequence += 1
        message = _Message(
            sequence=stream.last_sequence,
            subject=subject,
            data=bytes(payload),
            headers=dict(headers or {}),
            published_at=self.clock(),
        )
        stream.messages[message.sequence] = message
        self._apply_retention(stream)

        self._published.set()
        self._published = asyncio.Event()
        return message.sequence

    # ==================== Consume ====================

    async def fetch(self, consumer: str, batch: int = 1, timeout: float = 0.0) -> list[Delivery]:
        state = self._consumer(consumer)
        loop = asyncio.get_running_loop()
        give_up_at = loop.time() + max(timeout, 0.0)

        while True:
            deliveries = self._collect(state, batch)
            remaining = give_up_at - loop.time()
            if deliveries or remaining <= 0:
                return deliveries

            published = self._published
            try:
                await asyncio.wait_for(published.wait(), timeout=min(remaining, self.poll_interval))
            except asyncio.TimeoutError:
                pass

    def _collect(self, state: _ConsumerState, batch: int) -> list[Delivery]:
        stream = self._streams[state.stream]
        config = state.config
        now = self.clock()
        deliveries: list[Delivery] = []

        # Expired or nak'd deliveries first
        for sequence, pending in list(state.pending.items()):
            if len(deliveries) >= batch:
                return deliveries
            if pending.eligible_at > now:
                continue
            if config.retry.is_exhausted(pending.num_delivered):
                self._dead_letter(state, sequence, pending, pending.reason or REASON_ACK_WAIT_EXPIRED)
                continue
            pending.num_delivered += 1
            pending.eligible_at = now + config.ack_wait
            state.pending.move_to_end(sequence)
            deliveries.append(self._delivery(state, pending))

        # Then new messages in publish order
        for sequence, message in stream.messages.items():
            if len(deliveries) >= batch:
                break
            if sequence <= state.cursor:
                continue
            state.cursor = sequence
            if not subject_matches(config.filter_subject, message.subject):
                continue
            pending = _Pending(message=message, num_delivered=1, eligible_at=now + config.ack_wait)
            state.pending[sequence] = pending
            deliveries.append(self._delivery(state, pending))

        return deliveries

    def _delivery(self, state: _ConsumerState, pending: _Pending) -> Delivery:
        message = pending.message
        return Delivery(
            stream=state.stream,
            consumer=state.config.name,
            subject=message.subject,
            data=message.data,
            sequence=message.sequence,
            message_id=str(message.sequence),
            num_delivered=pending.num_delivered,
            deadline=pending.eligible_at,
            headers=dict(message.headers),
            _queue=self,
        )

    # ==================== Acknowledgment ====================

    async def ack(self, delivery: Delivery) -> None:
        if delivery.ack_state == AckState.ACKED:
            return
        state = self._consumer(delivery.consumer)
        state.pending.pop(delivery.sequence, None)
        delivery.ack_state = AckState.ACKED

    async def nak(
        self,
        delivery: Delivery,
        reason: Optional[str] = None,
        error: Optional[str] = None,
        delay: Optional[float] = None,
    ) -> bool:
        if delivery.ack_state == AckState.ACKED:
            return False
        state = self._consumer(delivery.consumer)
        pending = state.pending.get(delivery.sequence)
        if pending is None or pending.num_delivered != delivery.num_delivered:
            # Already settled, or handed to another member after the deadline
            delivery.ack_state = AckState.NAKD
            return False

        pending.reason = reason or pending.reason
        pending.error = error or pending.error
        delivery.ack_state = AckState.NAKD

        retry = state.config.retry
        if retry.is_exhausted(pending.num_delivered):
            self._dead_letter(state, delivery.sequence, pending, pending.reason or "max_deliveries")
            return True

        wait = delay if delay is not None else retry.calculate_delay(pending.num_delivered)
        pending.eligible_at = self.clock() + wait
        return False

    async def in_progress(self, delivery: Delivery) -> None:
        state = self._consumer(delivery.consumer)
        pending = state.pending.get(delivery.sequence)
        if (
            pending is not None
            and pending.num_delivered == delivery.num_delivered
            and delivery.ack_state == AckState.PENDING
        ):
            pending.eligible_at = self.clock() + state.config.ack_wait
            delivery.deadline = pending.eligible_at

    # ==================== Dead letters ====================

    def _dead_letter(self, state: _ConsumerState, sequence: int, pending: _Pending, reason: str) -> None:
        stream = self._streams[state.stream]
        state.pending.pop(sequence, None)
        entry = DeadLetter(
            entry_id=str(next(self._dead_letter_ids)),
            stream=state.stream,
            consumer=state.config.name,
            subject=pending.message.subject,
            data=pending.message.data,
            sequence=pending.message.sequence,
            deliveries=pending.num_delivered,
            reason=reason,
            error=pending.error,
            dead_lettered_at=self.clock(),
        )
        stream.dead_letters[entry.entry_id] = entry
        self._trim_dead_letters(stream)
        self._record_dead_letter(entry)

    async def dead_letters(self, stream: str, limit: int = 100) -> list[DeadLetter]:
        state = self._stream(stream)
        self._trim_dead_letters(state)
        return list(reversed(state.dead_letters.values()))[:limit]

    async def requeue_dead_letter(self, stream: str, entry_id: str) -> Optional[int]:
        state = self._stream(stream)
        entry = state.dead_letters.pop(entry_id, None)
        if entry is None:
            return None
        return await self.publish(entry.subject, entry.data)

    async def stream_info(self, stream: str) -> StreamInfo:
        state = self._stream(stream)
        self._apply_retention(state)
        self._trim_dead_letters(state)
        consumers = [
            ConsumerInfo(
                name=c.config.name,
                filter_subject=c.config.filter_subject,
                pending=len(c.pending),
                ack_wait=c.config.ack_wait,
                max_deliveries=c.config.retry.max_attempts,
            )
            for c in self._consumers.values()
            if c.stream == stream
        ]
        return StreamInfo(
            name=stream,
            subjects=state.config.subjects,
            messages=len(state.messages),
            last_sequence=state.last_sequence,
            dead_letters=len(state.dead_letters),
            consumers=consumers,
        )

    # ==================== Helpers ====================

    def _apply_retention(self, state: _StreamState) -> None:
        config = state.config
        if config.max_age is not None:
            cutoff = self.clock() - config.max_age
            while state.messages and next(iter(state.messages.values())).published_at < cutoff:
                state.messages.popitem(last=False)
        if config.max_msgs is not None:
            while len(state.messages) > config.max_msgs:
                state.messages.popitem(last=False)

    def _trim_dead_letters(self, state: _StreamState) -> None:
        max_age = state.config.dead_letter_max_age
        if max_age is None:
            return
        cutoff = self.clock() - max_age
        while state.dead_letters and next(iter(state.dead_letters.values())).dead_lettered_at < cutoff:
            state.dead_letters.popitem(last=False)

    def _stream_for_subject(self, subject: str) -> _StreamState:
        for state in self._streams.values():
            if state.config.captures(subject):
                return state
        raise KeyError(f"No stream captures subject {subject!r}")

    def _stream(self, name: str) -> _StreamState:
        if name not in self._streams:
            raise KeyError(f"Stream {name!r} is not declared")
        return self._streams[name]

    def _consumer(self, name: str) -> _ConsumerState:
        if name not in self._consumers:
            raise KeyError(f"Consumer {name!r} is not declared")
        return self._consumers[name]
