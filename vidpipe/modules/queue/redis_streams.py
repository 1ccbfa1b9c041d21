"""Redis Streams queue backend.

Layout, for stream ``S``:

- ``S:<subject>``      one Redis stream per subject, holding the messages
- ``S:seq``            stream-wide sequence counter
- ``S:subjects``       set of subjects published so far
- ``S:consumers``      hash of consumer name -> persisted ConsumerConfig
- ``S:<consumer>:failures``  last nak reason per pending message id
- ``S.DLQ``            dead-letter stream

Each consumer is a Redis consumer group on every subject stream its filter
matches. Deliveries nobody acknowledged are taken back with XAUTOCLAIM once
idle for ``ack_wait``; a nak rewinds the message's idle time so that it
becomes claimable again after the redelivery wait.
"""

import asyncio
import json
import logging
import os
import socket
import time
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from vidpipe.core.exceptions import QueueUnavailable
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

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.5


@contextmanager
def broker_call(operation: str) -> Iterator[None]:
    """Translate connection failures into QueueUnavailable."""
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError, OSError) as e:
        raise QueueUnavailable(f"Broker unreachable during {operation}: {e}") from e


def default_member_name() -> str:
    """Unique consumer-group member name for this process."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


def _field(fields: dict, name: str, default=None):
    value = fields.get(name.encode("utf-8"), fields.get(name, default))
    return value


class RedisStreamQueue(DurableQueue):
    """Durable queue on Redis Streams consumer groups.

    Args:
        client: ``redis.asyncio`` client created without ``decode_responses``
        member: Name of this process inside every consumer group
        block_limit: Upper bound for XREADGROUP BLOCK, kept below the
            client's socket timeout
    """

    def __init__(
        self,
        client: redis.Redis,
        member: Optional[str] = None,
        block_limit: float = 2.0,
    ):
        self.client = client
        self.member = member or default_member_name()
        self.block_limit = block_limit
        self._streams: dict[str, StreamConfig] = {}
        self._consumers: dict[str, tuple[str, ConsumerConfig]] = {}
        self._groups: set[tuple[str, str]] = set()

    # ==================== Key helpers ====================

    @staticmethod
    def subject_key(stream: str, subject: str) -> str:
        return f"{stream}:{subject}"

    @staticmethod
    def _seq_key(stream: str) -> str:
        return f"{stream}:seq"

    @staticmethod
    def _subjects_key(stream: str) -> str:
        return f"{stream}:subjects"

    @staticmethod
    def _consumers_key(stream: str) -> str:
        return f"{stream}:consumers"

    @staticmethod
    def _failures_key(stream: str, consumer: str) -> str:
        return f"{stream}:{consumer}:failures"

    # ==================== Declarations ====================

    async def declare_stream(self, config: StreamConfig) -> None:
        self._streams[config.name] = config
        with broker_call("declare_stream"):
            await self.client.hset(
                f"{config.name}:config",
                mapping={
                    "subjects": json.dumps(list(config.subjects)),
                    "max_msgs": json.dumps(config.max_msgs),
                    "max_age": json.dumps(config.max_age),
                    "dead_letter_max_age": json.dumps(config.dead_letter_max_age),
                },
            )

    async def declare_consumer(self, stream: str, config: ConsumerConfig) -> None:
        with broker_call("declare_consumer"):
            await self.client.hset(self._consumers_key(stream), config.name, json.dumps(config.to_dict()))
        self._consumers[config.name] = (stream, config)
        await self._ensure_groups(stream, config)

    async def consumer_config(self, name: str) -> Optional[ConsumerConfig]:
        if name in self._consumers:
            return self._consumers[name][1]
        for stream in self._streams:
            with broker_call("consumer_config"):
                raw = await self.client.hget(self._consumers_key(stream), name)
            if raw:
                config = ConsumerConfig.from_dict(json.loads(raw))
                self._consumers[name] = (stream, config)
                return config
        return None

    async def _ensure_groups(self, stream: str, config: ConsumerConfig) -> list[str]:
        keys = []
        for subject in await self._subjects_for(stream, config.filter_subject):
            key = self.subject_key(stream, subject)
            keys.append(key)
            if (key, config.name) in self._groups:
                continue
            try:
                with broker_call("xgroup_create"):
                    # id=0 so messages published before the group existed are delivered
                    await self.client.xgroup_create(key, config.name, id="0", mkstream=True)
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise
            self._groups.add((key, config.name))
        return keys

    async def _subjects_for(self, stream: str, filter_subject: str) -> list[str]:
        config = self._stream_config(stream)
        subjects = {s for s in config.subjects if "*" not in s and ">" not in s}
        with broker_call("smembers"):
            subjects.update(_text(s) for s in await self.client.smembers(self._subjects_key(stream)))
        return sorted(s for s in subjects if subject_matches(filter_subject, s))

    # ==================== Publish ====================

    async def publish(self, subject: str, payload: bytes, headers: Optional[dict] = None) -> int:
        config = self._stream_for_subject(subject)
        key = self.subject_key(config.name, subject)

        with broker_call("publish"):
            sequence = int(await self.client.incr(self._seq_key(config.name)))
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.xadd(
                    key,
                    {
                        "subject": subject,
                        "seq": sequence,
                        "data": payload,
                        "headers": json.dumps(headers or {}),
                    },
                    maxlen=config.max_msgs,
                    approximate=config.max_msgs is not None,
                )
                if config.max_age is not None:
                    pipe.xtrim(key, minid=self._min_id(config.max_age), approximate=True)
                pipe.sadd(self._subjects_key(config.name), subject)
                await pipe.execute()
        return sequence

    # ==================== Consume ====================

    async def fetch(self, consumer: str, batch: int = 1, timeout: float = 0.0) -> list[Delivery]:
        stream, config = await self._consumer(consumer)
        keys = await self._ensure_groups(stream, config)
        if not keys:
            return []

        deadline = time.monotonic() + max(timeout, 0.0)
        while True:
            deliveries = await self._reclaim(stream, config, keys, batch)
            remaining = batch - len(deliveries)

            if remaining > 0:
                wait = 0.0 if deliveries else max(deadline - time.monotonic(), 0.0)
                deliveries.extend(await self._read_new(stream, config, keys, remaining, wait))

            if deliveries or time.monotonic() >= deadline:
                return deliveries

    async def _reclaim(
        self,
        stream: str,
        config: ConsumerConfig,
        keys: list[str],
        batch: int,
    ) -> list[Delivery]:
        deliveries: list[Delivery] = []
        min_idle = int(config.ack_wait * 1000)

        for key in keys:
            if len(deliveries) >= batch:
                break
            with broker_call("xautoclaim"):
                result = await self.client.xautoclaim(
                    key, config.name, self.member, min_idle,
                    start_id="0-0", count=batch - len(deliveries),
                )
            for message_id, fields in result[1]:
                if fields is None:
                    continue
                message_id = _text(message_id)
                times_delivered = await self._times_delivered(key, config.name, message_id)
                if times_delivered > config.retry.max_attempts:
                    failure = await self._last_failure(stream, config.name, message_id)
                    await self._dead_letter(
                        stream, config, key, message_id, fields,
                        deliveries=times_delivered - 1,
                        reason=failure.get("reason") or REASON_ACK_WAIT_EXPIRED,
                        error=failure.get("error"),
                    )
                    continue
                deliveries.append(self._delivery(stream, config, message_id, fields, times_delivered))
        return deliveries

    async def _read_new(
        self,
        stream: str,
        config: ConsumerConfig,
        keys: list[str],
        count: int,
        wait: float,
    ) -> list[Delivery]:
        deliveries: list[Delivery] = []

        # One subject: block on the server. Several: poll each key so that
        # no more than ``count`` messages are taken from the broker.
        if len(keys) == 1:
            block = max(int(min(wait, self.block_limit) * 1000), 1) if wait > 0 else None
            with broker_call("xreadgroup"):
                result = await self.client.xreadgroup(
                    config.name, self.member, {keys[0]: ">"}, count=count, block=block,
                )
            for _key, messages in result or []:
                for message_id, fields in messages:
                    deliveries.append(self._delivery(stream, config, _text(message_id), fields, 1))
            return deliveries

        for key in keys:
            if len(deliveries) >= count:
                break
            with broker_call("xreadgroup"):
                result = await self.client.xreadgroup(
                    config.name, self.member, {key: ">"}, count=count - len(deliveries),
                )
            for _key, messages in result or []:
                for message_id, fields in messages:
                    deliveries.append(self._delivery(stream, config, _text(message_id), fields, 1))

        if not deliveries and wait > 0:
            await asyncio.sleep(min(wait, POLL_INTERVAL_SECONDS))
        return deliveries

    def _delivery(
        self,
        stream: str,
        config: ConsumerConfig,
        message_id: str,
        fields: dict,
        times_delivered: int,
    ) -> Delivery:
        return Delivery(
            stream=stream,
            consumer=config.name,
            subject=_text(_field(fields, "subject", b"")),
            data=_field(fields, "data", b""),
            sequence=int(_field(fields, "seq", 0)),
            message_id=message_id,
            num_delivered=times_delivered,
            deadline=time.time() + config.ack_wait,
            headers=json.loads(_text(_field(fields, "headers", b"{}"))),
            _queue=self,
        )

    async def _times_delivered(self, key: str, group: str, message_id: str) -> int:
        with broker_call("xpending_range"):
            pending = await self.client.xpending_range(key, group, min=message_id, max=message_id, count=1)
        if not pending:
            return 1
        return int(pending[0]["times_delivered"])

    async def _holds(self, key: str, delivery: Delivery) -> bool:
        """Whether this member still owns the same delivery the broker has pending."""
        with broker_call("xpending_range"):
            pending = await self.client.xpending_range(
                key, delivery.consumer, min=delivery.message_id, max=delivery.message_id, count=1,
            )
        if not pending:
            return False
        entry = pending[0]
        return (
            _text(entry["consumer"]) == self.member
            and int(entry["times_delivered"]) == delivery.num_delivered
        )

    # ==================== Acknowledgment ====================

    async def ack(self, delivery: Delivery) -> None:
        if delivery.ack_state == AckState.ACKED:
            return
        key = self.subject_key(delivery.stream, delivery.subject)
        with broker_call("ack"):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.xack(key, delivery.consumer, delivery.message_id)
                pipe.hdel(self._failures_key(delivery.stream, delivery.consumer), delivery.message_id)
                await pipe.execute()
        # Only marked once the broker has confirmed the ack
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
        _, config = await self._consumer(delivery.consumer)
        key = self.subject_key(delivery.stream, delivery.subject)
        failures_key = self._failures_key(delivery.stream, delivery.consumer)

        if not await self._holds(key, delivery):
            # Already settled, or reclaimed by another member after the deadline
            delivery.ack_state = AckState.NAKD
            return False

        if config.retry.is_exhausted(delivery.num_delivered):
            failure = await self._last_failure(delivery.stream, delivery.consumer, delivery.message_id)
            await self._dead_letter(
                delivery.stream, config, key, delivery.message_id,
                {b"subject": delivery.subject, b"seq": delivery.sequence, b"data": delivery.data},
                deliveries=delivery.num_delivered,
                reason=reason or failure.get("reason") or "max_deliveries",
                error=error or failure.get("error"),
            )
            delivery.ack_state = AckState.NAKD
            return True

        wait = delay if delay is not None else config.retry.calculate_delay(delivery.num_delivered)
        # Claimable again once idle reaches ack_wait, i.e. ``wait`` seconds from now
        idle = int(max(config.ack_wait - wait, 0.0) * 1000)
        with broker_call("nak"):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(failures_key, delivery.message_id, json.dumps({"reason": reason, "error": error}))
                pipe.xclaim(
                    key, delivery.consumer, self.member, 0, [delivery.message_id],
                    idle=idle, justid=True,
                )
                await pipe.execute()
        delivery.ack_state = AckState.NAKD
        return False

    async def in_progress(self, delivery: Delivery) -> None:
        if delivery.ack_state != AckState.PENDING:
            return
        _, config = await self._consumer(delivery.consumer)
        key = self.subject_key(delivery.stream, delivery.subject)
        if not await self._holds(key, delivery):
            return
        with broker_call("in_progress"):
            await self.client.xclaim(
                key, delivery.consumer, self.member, 0, [delivery.message_id],
                idle=0, justid=True,
            )
        delivery.deadline = time.time() + config.ack_wait

    async def _last_failure(self, stream: str, consumer: str, message_id: str) -> dict:
        with broker_call("hget"):
            raw = await self.client.hget(self._failures_key(stream, consumer), message_id)
        return json.loads(raw) if raw else {}

    # ==================== Dead letters ====================

    async def _dead_letter(
        self,
        stream: str,
        config: ConsumerConfig,
        key: str,
        message_id: str,
        fields: dict,
        deliveries: int,
        reason: str,
        error: Optional[str],
    ) -> None:
        stream_config = self._stream_config(stream)
        dead_letter_key = stream_config.dead_letter_stream
        now = time.time()
        entry = {
            "stream": stream,
            "consumer": config.name,
            "subject": _text(_field(fields, "subject", b"")),
            "seq": int(_field(fields, "seq", 0)),
            "data": _field(fields, "data", b""),
            "deliveries": deliveries,
            "reason": reason,
            "error": error or "",
            "message_id": message_id,
            "dead_lettered_at": now,
        }

        with broker_call("dead_letter"):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.xadd(dead_letter_key, entry)
                if stream_config.dead_letter_max_age is not None:
                    pipe.xtrim(dead_letter_key, minid=self._min_id(stream_config.dead_letter_max_age), approximate=True)
                pipe.xack(key, config.name, message_id)
                pipe.hdel(self._failures_key(stream, config.name), message_id)
                result = await pipe.execute()

        self._record_dead_letter(DeadLetter(
            entry_id=_text(result[0]),
            stream=stream,
            consumer=config.name,
            subject=entry["subject"],
            data=entry["data"],
            sequence=entry["seq"],
            deliveries=deliveries,
            reason=reason,
            error=error,
            dead_lettered_at=now,
        ))

    async def dead_letters(self, stream: str, limit: int = 100) -> list[DeadLetter]:
        dead_letter_key = self._stream_config(stream).dead_letter_stream
        with broker_call("dead_letters"):
            entries = await self.client.xrevrange(dead_letter_key, count=limit)
        return [self._dead_letter_from_entry(entry_id, fields) for entry_id, fields in entries]

    async def requeue_dead_letter(self, stream: str, entry_id: str) -> Optional[int]:
        dead_letter_key = self._stream_config(stream).dead_letter_stream
        with broker_call("requeue_dead_letter"):
            entries = await self.client.xrange(dead_letter_key, min=entry_id, max=entry_id, count=1)
        if not entries:
            return None
        dead_letter = self._dead_letter_from_entry(*entries[0])
        sequence = await self.publish(dead_letter.subject, dead_letter.data)
        with broker_call("requeue_dead_letter"):
            await self.client.xdel(dead_letter_key, entry_id)
        return sequence

    def _dead_letter_from_entry(self, entry_id, fields: dict) -> DeadLetter:
        error = _text(_field(fields, "error", b""))
        return DeadLetter(
            entry_id=_text(entry_id),
            stream=_text(_field(fields, "stream", b"")),
            consumer=_text(_field(fields, "consumer", b"")),
            subject=_text(_field(fields, "subject", b"")),
            data=_field(fields, "data", b""),
            sequence=int(_field(fields, "seq", 0)),
            deliveries=int(_field(fields, "deliveries", 0)),
            reason=_text(_field(fields, "reason", b"")),
            error=error or None,
            dead_lettered_at=float(_field(fields, "dead_lettered_at", 0)),
        )

    async def stream_info(self, stream: str) -> StreamInfo:
        config = self._stream_config(stream)
        subjects = await self._subjects_for(stream, ">")
        messages = 0
        pending: dict[str, int] = {}

        with broker_call("stream_info"):
            for subject in subjects:
                key = self.subject_key(stream, subject)
                messages += int(await self.client.xlen(key))
                for group in await self.client.xinfo_groups(key):
                    name = _text(group["name"])
                    pending[name] = pending.get(name, 0) + int(group["pending"])
            last_sequence = int(await self.client.get(self._seq_key(stream)) or 0)
            dead_letters = int(await self.client.xlen(config.dead_letter_stream))
            raw_consumers = await self.client.hgetall(self._consumers_key(stream))

        consumers = []
        for raw in raw_consumers.values():
            consumer = ConsumerConfig.from_dict(json.loads(raw))
            consumers.append(ConsumerInfo(
                name=consumer.name,
                filter_subject=consumer.filter_subject,
                pending=pending.get(consumer.name, 0),
                ack_wait=consumer.ack_wait,
                max_deliveries=consumer.retry.max_attempts,
            ))

        return StreamInfo(
            name=stream,
            subjects=config.subjects,
            messages=messages,
            last_sequence=last_sequence,
            dead_letters=dead_letters,
            consumers=consumers,
        )

    async def close(self) -> None:
        await self.client.aclose()

    # ==================== Helpers ====================

    @staticmethod
    def _min_id(max_age: float) -> str:
        return f"{int((time.time() - max_age) * 1000)}-0"

    def _stream_config(self, stream: str) -> StreamConfig:
        if stream not in self._streams:
            raise KeyError(f"Stream {stream!r} is not declared")
        return self._streams[stream]

    def _stream_for_subject(self, subject: str) -> StreamConfig:
        for config in self._streams.values():
            if config.captures(subject):
                return config
        raise KeyError(f"No stream captures subject {subject!r}")

    async def _consumer(self, name: str) -> tuple[str, ConsumerConfig]:
        if name not in self._consumers:
            if await self.consumer_config(name) is None:
                raise KeyError(f"Consumer {name!r} is not declared")
        return self._consumers[name]
