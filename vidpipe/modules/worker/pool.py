"""Worker pool: pulls deliveries and runs them with bounded concurrency.

The pool only asks the broker for as many deliveries as it has free slots,
so a saturated worker leaves the backlog on the broker for other members
of the consumer group.
"""

import asyncio
import logging
from typing import Optional

from vidpipe.core.config import settings
from vidpipe.core.exceptions import QueueUnavailable
from vidpipe.core.logging import log_error, log_warning
from vidpipe.modules.job.models import DeliveryState
from vidpipe.modules.queue import setup_queue
from vidpipe.modules.queue.base import Delivery, DurableQueue, Subscription
from vidpipe.modules.worker.processor import JobProcessor

logger = logging.getLogger(__name__)


class WorkerPool:
    """Consumes one durable consumer with at most ``concurrency`` jobs in flight.

    Args:
        queue: Queue backend
        processor: Per-delivery state machine
        consumer: Durable consumer (group) name
        concurrency: Maximum deliveries held at once
        fetch_timeout: Seconds one fetch may wait for new work
        reconnect_delay: Pause after the broker became unreachable
        shutdown_grace: Seconds to wait for in-flight jobs on stop
    """

    def __init__(
        self,
        queue: DurableQueue,
        processor: JobProcessor,
        consumer: Optional[str] = None,
        concurrency: Optional[int] = None,
        fetch_timeout: Optional[float] = None,
        reconnect_delay: Optional[float] = None,
        shutdown_grace: Optional[float] = None,
    ):
        self.queue = queue
        self.processor = processor
        self.consumer = consumer or settings.CONSUMER_NAME
        self.concurrency = concurrency or settings.MAX_CONCURRENT_TRANSCODES
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.fetch_timeout = fetch_timeout if fetch_timeout is not None else settings.FETCH_TIMEOUT_SECONDS
        self.reconnect_delay = reconnect_delay if reconnect_delay is not None else settings.RECONNECT_DELAY_SECONDS
        self.shutdown_grace = shutdown_grace if shutdown_grace is not None else settings.SHUTDOWN_GRACE_SECONDS

        self.stats = {DeliveryState.COMPLETED: 0, DeliveryState.FAILED: 0, "interrupted": 0}
        self._tasks: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def free_slots(self) -> int:
        return max(self.concurrency - len(self._tasks), 0)

    def stop(self) -> None:
        """Stop fetching; ``run`` returns once in-flight jobs drain."""
        if not self._stopping.is_set():
            logger.info(f"Stopping worker pool with {self.in_flight} jobs in flight")
        self._stopping.set()

    async def run(self) -> None:
        """Fetch and process deliveries until ``stop`` is called."""
        subscription = await self._subscribe()
        if subscription is None:
            return
        logger.info(
            f"Worker pool consuming {subscription.config.filter_subject} as {self.consumer} "
            f"(concurrency={self.concurrency})"
        )
        try:
            while not self._stopping.is_set():
                if self.free_slots == 0:
                    await asyncio.wait(self._tasks, timeout=self.fetch_timeout, return_when=asyncio.FIRST_COMPLETED)
                    continue

                try:
                    deliveries = await subscription.fetch(batch=self.free_slots, timeout=self.fetch_timeout)
                except QueueUnavailable as e:
                    log_warning(logger, f"Broker unavailable, retrying in {self.reconnect_delay}s: {e.message}")
                    await self._pause(self.reconnect_delay)
                    continue

                for delivery in deliveries:
                    self._spawn(delivery)
        finally:
            await self._drain()

    async def _subscribe(self) -> Optional[Subscription]:
        """Declare the stream and consumer, then bind; waits out broker outages."""
        while not self._stopping.is_set():
            try:
                await setup_queue(self.queue, self.consumer)
                return await self.queue.subscribe(
                    settings.PROCESS_SUBJECT, self.consumer, stream=settings.STREAM_NAME
                )
            except QueueUnavailable as e:
                log_warning(
                    logger,
                    f"Cannot bind consumer {self.consumer}, retrying in {self.reconnect_delay}s: {e.message}",
                )
                await self._pause(self.reconnect_delay)
        return None

    def _spawn(self, delivery: Delivery) -> None:
        task = asyncio.create_task(self._handle(delivery), name=f"delivery-{delivery.sequence}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle(self, delivery: Delivery) -> None:
        try:
            state = await self.processor.process(delivery)
            self.stats[state] += 1
        except QueueUnavailable as e:
            self.stats["interrupted"] += 1
            log_warning(
                logger,
                f"Delivery seq={delivery.sequence} left unsettled, broker unavailable: {e.message}",
            )
        except Exception as e:
            self.stats["interrupted"] += 1
            log_error(logger, f"Delivery seq={delivery.sequence} crashed", e)

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _drain(self) -> None:
        if not self._tasks:
            return
        logger.info(f"Waiting up to {self.shutdown_grace}s for {len(self._tasks)} in-flight jobs")
        _, pending = await asyncio.wait(set(self._tasks), timeout=self.shutdown_grace)
        if pending:
            # Unsettled deliveries are redelivered to another member after ack_wait
            log_warning(logger, f"Abandoning {len(pending)} jobs after shutdown grace period")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
