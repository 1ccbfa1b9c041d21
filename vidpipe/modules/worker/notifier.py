"""Post-acknowledgment notifications.

Runs only after the broker confirmed the ack, so nothing here can cause a
job to be processed again. Failures are logged and counted.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

from vidpipe.core.config import settings
from vidpipe.core.exceptions import QueueUnavailable
from vidpipe.core.logging import log_error, log_warning
from vidpipe.core.metrics import CALLBACKS_TOTAL
from vidpipe.modules.job.codec import encode_event
from vidpipe.modules.job.models import FailedEvent, ProcessedEvent
from vidpipe.modules.queue.base import DurableQueue
from vidpipe.modules.queue.policy import RetryPolicy, callback_policy_from_settings

logger = logging.getLogger(__name__)

# Client errors other than these will not succeed on retry
RETRYABLE_CLIENT_STATUSES = frozenset((408, 425, 429))


def callback_payload(event: ProcessedEvent) -> dict:
    """Body POSTed to a job's callback_url."""
    return {
        "video_id": event.video_id,
        "status": event.status,
        "master_playlist": event.master_playlist,
        "renditions": [r.model_dump() for r in event.renditions],
    }


class CompletionNotifier:
    """Publishes pipeline events and calls completion webhooks."""

    def __init__(
        self,
        queue: DurableQueue,
        client: Optional[httpx.AsyncClient] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.queue = queue
        self.policy = policy or callback_policy_from_settings()
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.CALLBACK_TIMEOUT_SECONDS)
        return self._client

    async def notify_completed(self, event: ProcessedEvent, callback_url: Optional[str]) -> None:
        await self.publish_processed(event)
        if callback_url:
            await self.send_callback(callback_url, callback_payload(event))
        else:
            CALLBACKS_TOTAL.labels(result="skipped").inc()

    async def publish_processed(self, event: ProcessedEvent) -> Optional[int]:
        return await self._publish(settings.PROCESSED_SUBJECT, event)

    async def publish_failed(self, event: FailedEvent) -> Optional[int]:
        return await self._publish(settings.FAILED_SUBJECT, event)

    async def _publish(self, subject: str, event) -> Optional[int]:
        try:
            return await self.queue.publish(subject, encode_event(event), headers={"video_id": event.video_id or ""})
        except QueueUnavailable as e:
            log_error(logger, f"Could not publish {subject} for {event.video_id}", e, subject=subject)
            return None

    async def send_callback(self, url: str, payload: dict) -> bool:
        """POST the completion payload, retrying transient failures.

        Returns:
            True if the endpoint answered with a 2xx status
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self.client.post(url, json=payload)
                if response.is_success:
                    CALLBACKS_TOTAL.labels(result="success").inc()
                    logger.info(
                        f"Callback for {payload.get('video_id')} delivered on attempt {attempt}",
                        extra={"callback_url": url, "status_code": response.status_code},
                    )
                    return True
                error = f"HTTP {response.status_code}"
                retryable = response.status_code >= 500 or response.status_code in RETRYABLE_CLIENT_STATUSES
            except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
                error = f"Invalid callback URL: {e}"
                retryable = False
            except httpx.TimeoutException:
                error = f"Request timed out after {settings.CALLBACK_TIMEOUT_SECONDS}s"
                retryable = True
            except httpx.RequestError as e:
                error = f"Request error: {e}"
                retryable = True

            if not retryable or self.policy.is_exhausted(attempt):
                CALLBACKS_TOTAL.labels(result="failure").inc()
                log_warning(
                    logger,
                    f"Callback for {payload.get('video_id')} failed after {attempt} attempts: {error}",
                    callback_url=url,
                )
                return False

            await self._sleep(self.policy.calculate_delay(attempt))

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
