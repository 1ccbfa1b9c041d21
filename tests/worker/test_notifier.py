"""Tests for completion callbacks, event publishing and the worker command."""

import asyncio
import os
import signal
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from vidpipe.core.config import settings
from vidpipe.core.exceptions import QueueUnavailable
from vidpipe.modules.job.models import FailedEvent, ProcessedEvent, RenditionSummary
from vidpipe.modules.queue.memory import InMemoryQueue
from vidpipe.modules.queue.policy import RetryPolicy
from vidpipe.modules.worker import cli
from vidpipe.modules.worker.cli import build_parser, main
from vidpipe.modules.worker.notifier import CompletionNotifier, callback_payload


def processed_event() -> ProcessedEvent:
    return ProcessedEvent(
        video_id="v1",
        user_id="u1",
        output_path="/out/v1",
        master_playlist="/out/v1/master.m3u8",
        renditions=[RenditionSummary(quality="480p", playlist="/out/v1/480p.m3u8",
                                     bandwidth=1_528_000, resolution="854x480", segments=3)],
        completed_at=datetime.now(timezone.utc),
    )


def make_notifier(handler, max_attempts: int = 3, queue=None):
    sleep = AsyncMock()
    notifier = CompletionNotifier(
        queue or MagicMock(publish=AsyncMock(return_value=1)),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        policy=RetryPolicy(max_attempts=max_attempts, initial_delay=1.0, backoff_multiplier=2.0, max_delay=10.0),
        sleep=sleep,
    )
    return notifier, sleep


class TestSendCallback:

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self) -> None:
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(204)

        notifier, sleep = make_notifier(handler)

        assert await notifier.send_callback("http://hooks.test/done", {"video_id": "v1"}) is True
        assert len(requests) == 1
        assert requests[0].method == "POST"
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_server_errors_are_retried_with_backoff(self) -> None:
        statuses = iter([503, 502, 200])
        notifier, sleep = make_notifier(lambda request: httpx.Response(next(statuses)))

        assert await notifier.send_callback("http://hooks.test/done", {"video_id": "v1"}) is True
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.parametrize("status,attempts", [(404, 1), (400, 1), (429, 3), (500, 3)])
    @pytest.mark.asyncio
    async def test_retry_depends_on_status(self, status, attempts) -> None:
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(status)

        notifier, _ = make_notifier(handler)

        assert await notifier.send_callback("http://hooks.test/done", {"video_id": "v1"}) is False
        assert len(requests) == attempts

    @pytest.mark.asyncio
    async def test_timeouts_are_retried(self) -> None:
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        notifier, sleep = make_notifier(handler, max_attempts=2)

        assert await notifier.send_callback("http://hooks.test/done", {"video_id": "v1"}) is False
        assert sleep.await_count == 1

    @pytest.mark.parametrize("exc", [httpx.UnsupportedProtocol, httpx.InvalidURL])
    @pytest.mark.asyncio
    async def test_bad_callback_url_is_not_retried(self, exc) -> None:
        requests = []

        def handler(request):
            requests.append(request)
            if exc is httpx.InvalidURL:
                raise exc("Invalid non-printable ASCII character in URL")
            raise exc("Request URL has an unsupported protocol 'ftp://'.", request=request)

        notifier, sleep = make_notifier(handler)

        assert await notifier.send_callback("ftp://hooks.test/done", {"video_id": "v1"}) is False
        assert len(requests) == 1
        sleep.assert_not_awaited()


class TestNotifyCompleted:

    @pytest.mark.asyncio
    async def test_event_published_and_callback_sent(self) -> None:
        bodies = []

        def handler(request):
            bodies.append(request.content)
            return httpx.Response(200)

        notifier, _ = make_notifier(handler)
        event = processed_event()

        await notifier.notify_completed(event, "http://hooks.test/done")

        subject, payload = notifier.queue.publish.await_args.args
        assert subject == "video.processed"
        assert b'"master_playlist":"/out/v1/master.m3u8"' in payload
        assert len(bodies) == 1

    @pytest.mark.asyncio
    async def test_no_callback_url_skips_http(self) -> None:
        handler = MagicMock(return_value=httpx.Response(200))
        notifier, _ = make_notifier(handler)

        await notifier.notify_completed(processed_event(), None)

        handler.assert_not_called()
        notifier.queue.publish.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_publish_failure_is_reported_not_raised(self) -> None:
        queue = MagicMock(publish=AsyncMock(side_effect=QueueUnavailable("Broker unreachable during publish")))
        notifier, _ = make_notifier(lambda request: httpx.Response(200), queue=queue)

        result = await notifier.publish_failed(FailedEvent(
            video_id="v1", reason="engine_failure", error="exit 1",
            deliveries=3, sequence=4, failed_at=datetime.now(timezone.utc),
        ))

        assert result is None
        assert queue.publish.await_args.args[0] == "video.failed"

    def test_callback_payload_shape(self) -> None:
        payload = callback_payload(processed_event())

        assert payload == {
            "video_id": "v1",
            "status": "completed",
            "master_playlist": "/out/v1/master.m3u8",
            "renditions": [{
                "quality": "480p",
                "playlist": "/out/v1/480p.m3u8",
                "bandwidth": 1_528_000,
                "resolution": "854x480",
                "segments": 3,
            }],
        }


class TestWorkerCommand:

    def test_parser_defaults_follow_settings(self) -> None:
        args = build_parser().parse_args([])

        assert args.concurrency == 2
        assert args.processes == 1
        assert args.consumer == "video-transcoders"

    def test_parser_overrides(self) -> None:
        args = build_parser().parse_args(["--concurrency", "4", "--processes", "3", "--consumer", "hd-transcoders"])

        assert (args.concurrency, args.processes, args.consumer) == (4, 3, "hd-transcoders")

    @pytest.mark.parametrize("argv", [["--concurrency", "0"], ["--processes", "0"]])
    def test_invalid_counts_exit_with_usage_error(self, argv) -> None:
        assert main(argv) == 2

    @pytest.mark.asyncio
    async def test_worker_outlasts_unreachable_broker_and_stops_on_sigterm(self, monkeypatch) -> None:
        queue = InMemoryQueue(poll_interval=0.01)
        real_declare = queue.declare_stream
        attempts = []

        async def flaky_declare(config):
            attempts.append(config.name)
            if len(attempts) < 3:
                raise QueueUnavailable("Broker unreachable during declare")
            await real_declare(config)

        queue.declare_stream = flaky_declare
        monkeypatch.setattr(cli, "create_queue", lambda: queue)
        monkeypatch.setattr(settings, "RECONNECT_DELAY_SECONDS", 0.01)
        monkeypatch.setattr(settings, "FETCH_TIMEOUT_SECONDS", 0.05)

        worker = asyncio.create_task(cli.run_worker(1, "hd-transcoders"))
        deadline = asyncio.get_running_loop().time() + 5.0
        while await queue.consumer_config("hd-transcoders") is None:
            assert not worker.done(), "worker exited while the broker was down"
            assert asyncio.get_running_loop().time() < deadline
            await asyncio.sleep(0.01)
        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.wait_for(worker, timeout=5.0)

        assert len(attempts) == 3
        config = await queue.consumer_config("hd-transcoders")
        assert config.ack_wait == settings.ACK_WAIT_SECONDS
