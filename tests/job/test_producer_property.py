"""Tests for job submission.

**Feature: vidpipe, Property 2: Job Submission**
"""

import os
from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import given, settings, strategies as st

from vidpipe.core.exceptions import QueueUnavailable
from vidpipe.modules.job import codec
from vidpipe.modules.job.producer import SubmitResult, VideoJobProducer, build_job

from conftest import CONSUMER, make_job


class TestBuildJob:
    """**Feature: vidpipe, Property 2: Job Submission**"""

    @given(count=st.integers(min_value=2, max_value=50))
    @settings(max_examples=20)
    def test_generated_video_ids_are_unique(self, count: int) -> None:
        """*For any* batch of jobs built without an id, every video_id SHALL differ."""
        jobs = [build_job("/in/a.mp4", "u1", ["720p"], output_root="/out") for _ in range(count)]

        assert len({job.video_id for job in jobs}) == count

    def test_output_path_defaults_under_output_root(self) -> None:
        job = build_job("/in/a.mp4", "u1", ["720p"], video_id="v42", output_root="/srv/hls")

        assert job.output_path == os.path.join("/srv/hls", "v42")

    def test_explicit_output_path_is_kept(self) -> None:
        job = build_job("/in/a.mp4", "u1", ["720p"], video_id="v1", output_path="/out/v1")

        assert job.output_path == "/out/v1"


class TestVideoJobProducer:
    """**Feature: vidpipe, Property 2: Job Submission**"""

    @pytest.mark.asyncio
    async def test_submit_publishes_one_message(self, queue, tmp_path) -> None:
        producer = VideoJobProducer(queue)
        job = make_job("/in/v1.mp4", str(tmp_path / "v1"))

        result = await producer.submit(job)

        assert result == SubmitResult(accepted=True, sequence=1, video_id="v1")
        subscription = await queue.subscribe("video.process", CONSUMER)
        deliveries = await subscription.fetch(batch=10)
        assert len(deliveries) == 1
        assert codec.decode(deliveries[0].data) == job
        assert deliveries[0].headers["video_id"] == "v1"

    @pytest.mark.asyncio
    async def test_duplicate_submissions_are_accepted(self, queue, tmp_path) -> None:
        producer = VideoJobProducer(queue)
        job = make_job("/in/v1.mp4", str(tmp_path / "v1"))

        first = await producer.submit(job)
        second = await producer.submit(job)

        assert first.accepted and second.accepted
        assert second.sequence > first.sequence

    @pytest.mark.asyncio
    async def test_unreachable_broker_raises_queue_unavailable(self) -> None:
        broken_queue = MagicMock()
        broken_queue.publish = AsyncMock(side_effect=QueueUnavailable("Broker unreachable during publish"))
        producer = VideoJobProducer(broken_queue)

        with pytest.raises(QueueUnavailable):
            await producer.submit(make_job("/in/v1.mp4", "/out/v1"))

        broken_queue.publish.assert_awaited_once()
        assert broken_queue.publish.await_args.args[0] == "video.process"
