"""Shared fixtures: in-memory queue with a controllable clock and a fake engine."""

import os
import threading
import time
from typing import Optional

import pytest
import pytest_asyncio

from vidpipe.core.exceptions import EngineFailure
from vidpipe.modules.job.models import Job
from vidpipe.modules.queue.base import ConsumerConfig, StreamConfig
from vidpipe.modules.queue.memory import InMemoryQueue
from vidpipe.modules.queue.policy import RetryPolicy
from vidpipe.modules.transcoding.ffmpeg import TranscodingEngine, read_segments
from vidpipe.modules.transcoding.models import RenditionOutput, get_preset
from vidpipe.modules.transcoding.storage import OutputLayout

STREAM = "VIDEOS"
CONSUMER = "video-transcoders"
PROCESS_SUBJECT = "video.process"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEngine(TranscodingEngine):
    """Writes small HLS playlists instead of running ffmpeg.

    Records how many transcodes overlap so tests can check concurrency
    bounds, and fails for the qualities listed in ``fail_qualities``.
    """

    def __init__(self, segments: int = 3, delay: float = 0.0, fail_qualities=(), fail_thumbnail: bool = False):
        self.segments = segments
        self.delay = delay
        self.fail_qualities = set(fail_qualities)
        self.fail_thumbnail = fail_thumbnail
        self.calls: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def transcode(self, source: str, output_dir: str, quality: str) -> RenditionOutput:
        with self._lock:
            self.calls.append((source, quality))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if quality in self.fail_qualities:
                raise EngineFailure(f"ffmpeg exited with code 1: cannot encode {quality}", quality=quality)

            layout = OutputLayout(output_dir)
            layout.ensure()
            layout.remove_rendition(quality)
            lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:4"]
            for i in range(self.segments):
                name = f"{quality}_{i:03d}.ts"
                with open(os.path.join(output_dir, name), "wb") as f:
                    f.write(b"\x47" * 188)
                lines.extend(["#EXTINF:4.000000,", name])
            lines.append("#EXT-X-ENDLIST")
            with open(layout.playlist_path(quality), "w", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")

            preset = get_preset(quality)
            return RenditionOutput(
                quality=quality,
                playlist_path=layout.playlist_path(quality),
                segments=tuple(read_segments(layout.playlist_path(quality))),
                bitrate=preset.bandwidth,
                scale=preset.scale,
            )
        finally:
            with self._lock:
                self.active -= 1

    def extract_thumbnail(self, source: str, destination: str, at: str) -> str:
        if self.fail_thumbnail:
            raise EngineFailure("ffmpeg produced no thumbnail")
        with open(destination, "wb") as f:
            f.write(b"\xff\xd8\xff")
        return destination


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stream_config() -> StreamConfig:
    return StreamConfig(
        name=STREAM,
        subjects=("video.upload", "video.process", "video.processed", "video.failed"),
        max_msgs=1000,
        max_age=7 * 24 * 3600,
        dead_letter_max_age=30 * 24 * 3600,
    )


@pytest.fixture
def consumer_config() -> ConsumerConfig:
    return ConsumerConfig(
        name=CONSUMER,
        filter_subject=PROCESS_SUBJECT,
        ack_wait=120.0,
        retry=RetryPolicy(max_attempts=3, initial_delay=30.0, max_delay=120.0),
    )


@pytest_asyncio.fixture
async def queue(clock, stream_config, consumer_config) -> InMemoryQueue:
    q = InMemoryQueue(clock=clock, poll_interval=0.01)
    await q.declare_stream(stream_config)
    await q.declare_consumer(STREAM, consumer_config)
    return q


@pytest.fixture
def source_file(tmp_path) -> str:
    path = tmp_path / "in" / "v1.mp4"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42")
    return str(path)


def make_job(source_path: str, output_path: str, quality=("720p", "480p"), video_id: str = "v1", **kwargs) -> Job:
    return Job(
        video_id=video_id,
        source_path=source_path,
        output_path=output_path,
        user_id=kwargs.pop("user_id", "u1"),
        quality=tuple(quality),
        **kwargs,
    )


def read_text(path: str) -> Optional[str]:
    if not os.path.exists(path):
        return None
    with open(path, encoding="utf-8") as f:
        return f.read()
